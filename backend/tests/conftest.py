"""
Shared test fixtures for the Allnimall billing backend test suite.
"""

from datetime import UTC, datetime

import pytest
import structlog
from fastapi.testclient import TestClient

from allnimall.models.billing import BillingCycle, Plan
from allnimall.models.usage import FeatureFlag, UsagePeriod

TEST_CRON_SECRET = "cron-test-secret"


@pytest.fixture(autouse=True)
def _set_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Set environment variables for tests so Settings never reaches real services."""
    monkeypatch.setenv("SUPABASE_URL", "")
    monkeypatch.setenv("SUPABASE_SECRET_KEY", "")
    monkeypatch.setenv("MIDTRANS__SERVER_KEY", "")
    monkeypatch.setenv("CRON_SECRET", TEST_CRON_SECRET)


@pytest.fixture(autouse=True)
def _configure_structlog_for_tests():
    """Configure structlog for tests using a simple, deterministic setup."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(0),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


@pytest.fixture
def client() -> TestClient:
    """FastAPI TestClient wrapping the main application."""
    # Clear the lru_cache so settings pick up test env vars
    from allnimall.config import get_settings

    get_settings.cache_clear()

    from allnimall.main import app

    test_client = TestClient(app)
    yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def now() -> datetime:
    return datetime(2026, 3, 10, 9, 0, tzinfo=UTC)


@pytest.fixture
def basic_plan() -> Plan:
    """Entry plan: one store, 50 products."""
    return Plan(
        id="plan-basic",
        name="Basic",
        price=99000,
        billing_cycle=BillingCycle.MONTHLY,
        features=["product_management", "store_management", "user_management"],
        limits={"products": 50, "stores": 1, "users": 2, "customers": 100,
                "product_management": 50, "store_management": 1, "user_management": 2},
        sort_order=1,
    )


@pytest.fixture
def pro_plan() -> Plan:
    """Growth plan: ten stores, unlimited products."""
    return Plan(
        id="plan-pro",
        name="Pro",
        price=299000,
        billing_cycle=BillingCycle.MONTHLY,
        features=["product_management", "store_management", "user_management", "reporting"],
        limits={"products": -1, "stores": 10, "users": 10, "customers": -1,
                "store_management": 10, "user_management": 10},
        sort_order=2,
    )


@pytest.fixture
def sample_flags() -> list[FeatureFlag]:
    """Flags for the basic and pro plans plus plan-agnostic defaults."""
    return [
        FeatureFlag(feature_name="product_management", plan_id="plan-basic", usage_limit=50,
                    reset_period=UsagePeriod.MONTHLY, category="catalog"),
        FeatureFlag(feature_name="store_management", plan_id="plan-basic", usage_limit=1,
                    category="operations"),
        FeatureFlag(feature_name="reporting", plan_id="plan-basic", enabled=False,
                    category="analytics"),
        FeatureFlag(feature_name="product_management", plan_id="plan-pro", usage_limit=None,
                    category="catalog"),
        FeatureFlag(feature_name="store_management", plan_id="plan-pro", usage_limit=10,
                    category="operations"),
        FeatureFlag(feature_name="reporting", plan_id="plan-pro", category="analytics"),
        FeatureFlag(feature_name="general_access", plan_id=None, category="core",
                    is_core_feature=True),
    ]

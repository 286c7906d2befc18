"""Integration tests for plan validation endpoints."""

from datetime import UTC, datetime, timedelta

from allnimall.auth import AuthenticatedUser, get_current_user
from allnimall.config import get_settings
from allnimall.constants import DIMENSION_FEATURES
from allnimall.main import attach_services
from allnimall.models.billing import Subscription, SubscriptionStatus
from allnimall.models.usage import FeatureUsageRecord


async def _fake_user() -> AuthenticatedUser:
    return AuthenticatedUser(id="user-1", email="owner@petshop.test")


def _wire(client, flags, plans, *, products_used: int = 0, current_usage=None):
    get_settings.cache_clear()
    attach_services(client.app, get_settings(), None, None)
    client.app.dependency_overrides[get_current_user] = _fake_user
    state = client.app.state
    state.feature_resolver.flag_repository.flags = list(flags)
    repo = state.billing_service.repository
    for plan in plans:
        repo.plans[plan.id] = plan
    repo.subscriptions["sub-1"] = Subscription(
        id="sub-1",
        user_id="user-1",
        plan_id="plan-basic",
        status=SubscriptionStatus.ACTIVE,
        start_date=datetime.now(UTC) - timedelta(days=10),
        next_billing_date=datetime.now(UTC) + timedelta(days=20),
    )
    for dimension, count in (current_usage or {}).items():
        feature = DIMENSION_FEATURES[dimension]
        state.usage_ledger.repository.records[("user-1", feature)] = FeatureUsageRecord(
            user_id="user-1",
            feature_name=feature,
            usage_count=count,
            usage_limit=0,
            reset_date=datetime.now(UTC) + timedelta(days=20),
        )
    state.usage_ledger.repository.records[("user-1", "product_management")] = FeatureUsageRecord(
        user_id="user-1",
        feature_name="product_management",
        usage_count=products_used,
        usage_limit=50,
        reset_date=datetime.now(UTC) + timedelta(days=20),
    )
    return repo


class TestValidateAction:
    def test_batch_that_overflows_is_denied(self, client, sample_flags, basic_plan):
        _wire(client, sample_flags, [basic_plan], products_used=49)

        response = client.post(
            "/api/v1/validation/action",
            json={"feature_name": "product_management", "action_type": "create", "action_count": 2},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["is_valid"] is False
        assert data["denial"] == "usage_limit_exceeded"
        assert data["usage_info"] == {"current": 49, "limit": 50, "remaining": 1}

    def test_batch_actions_keyed_by_feature_and_action(self, client, sample_flags, basic_plan):
        _wire(client, sample_flags, [basic_plan])

        response = client.post(
            "/api/v1/validation/actions",
            json={"actions": [{"feature_name": "reporting", "action_type": "read"}]},
        )

        assert response.status_code == 200
        assert response.json()["reporting:read"]["is_valid"] is False

    def test_api_request_mapping(self, client, sample_flags, basic_plan):
        _wire(client, sample_flags, [basic_plan], products_used=50)

        response = client.post(
            "/api/v1/validation/api-request", json={"endpoint": "/api/products", "method": "POST"}
        )

        assert response.json()["is_valid"] is False


class TestRestrictionsAndRecommendation:
    def test_restrictions(self, client, sample_flags, basic_plan):
        _wire(client, sample_flags, [basic_plan], products_used=50)

        response = client.get("/api/v1/validation/restrictions")

        features = {r["feature"]: r for r in response.json()}
        assert features["product_management"]["can_perform"] is False

    def test_recommendation(self, client, sample_flags, basic_plan, pro_plan):
        _wire(client, sample_flags, [basic_plan, pro_plan], current_usage={"stores": 3})

        response = client.get("/api/v1/validation/recommendation")

        assert response.json()["recommended_plan"]["id"] == "plan-pro"


class TestPlanChange:
    def test_downgrade_over_capacity_is_refused(self, client, sample_flags, basic_plan, pro_plan):
        _wire(client, sample_flags, [basic_plan, pro_plan], current_usage={"stores": 12})

        response = client.post("/api/v1/validation/upgrade", json={"target_plan_id": "plan-pro"})

        assert response.status_code == 200
        assert response.json()["can_upgrade"] is False

    def test_preview_and_request(self, client, sample_flags, basic_plan, pro_plan):
        repo = _wire(client, sample_flags, [basic_plan, pro_plan])

        preview = client.post("/api/v1/validation/plan-change", json={"target_plan_id": "plan-pro"})
        requested = client.post(
            "/api/v1/validation/plan-change/request",
            json={"target_plan_id": "plan-pro", "reason": "More stores"},
        )
        listed = client.get("/api/v1/validation/plan-change/requests")

        assert preview.json()["change_type"] == "upgrade"
        assert preview.json()["proration_amount"] > 0
        assert requested.json()["request"]["status"] == "pending"
        assert len(repo.plan_change_requests) == 1
        assert [r["id"] for r in listed.json()] == [requested.json()["request"]["id"]]

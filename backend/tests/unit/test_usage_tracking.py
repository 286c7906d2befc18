"""Unit tests for usage tracking, limit reporting and usage warnings."""

from datetime import UTC, datetime, timedelta

from allnimall.config import BillingConfig
from allnimall.models.billing import Subscription, SubscriptionStatus
from allnimall.models.usage import FeatureUsageRecord
from allnimall.services.billing_repository import InMemoryBillingRepository
from allnimall.services.feature_access import (
    FeatureAccessResolver,
    InMemoryFeatureFlagRepository,
)
from allnimall.services.flag_cache import PlanFlagCache
from allnimall.services.usage_ledger import InMemoryUsageRepository, UsageLedger
from allnimall.services.usage_tracking import (
    InMemoryWarningRepository,
    UsageTrackingService,
    severity_for,
)

NOW = datetime(2026, 3, 10, 9, 0, tzinfo=UTC)


def make_service(flags, *, usage=None, plan_id="plan-basic"):
    billing_repo = InMemoryBillingRepository()
    usage_repo = InMemoryUsageRepository()
    billing_repo.subscriptions["sub-1"] = Subscription(
        id="sub-1",
        user_id="user-a",
        plan_id=plan_id,
        status=SubscriptionStatus.ACTIVE,
        start_date=NOW - timedelta(days=1),
    )
    for feature, (count, limit) in (usage or {}).items():
        usage_repo.records[("user-a", feature)] = FeatureUsageRecord(
            user_id="user-a",
            feature_name=feature,
            usage_count=count,
            usage_limit=limit,
            reset_date=NOW + timedelta(days=20),
        )
    ledger = UsageLedger(usage_repo, now_provider=lambda: NOW)
    resolver = FeatureAccessResolver(
        InMemoryFeatureFlagRepository(flags), billing_repo, ledger, PlanFlagCache()
    )
    warnings = InMemoryWarningRepository()
    service = UsageTrackingService(
        resolver, ledger, warnings, BillingConfig(), now_provider=lambda: NOW
    )
    return service, usage_repo, warnings


class TestTrackUsage:
    async def test_increment_below_threshold_has_no_notification(self, sample_flags):
        service, usage_repo, warnings = make_service(
            sample_flags, usage={"product_management": (10, 50)}
        )

        result = await service.track_usage("user-a", "product_management")

        assert result.success is True
        assert result.notification is None
        assert result.usage_limit.current_usage == 11
        assert usage_repo.records[("user-a", "product_management")].usage_count == 11
        assert warnings.warnings == {}

    async def test_crossing_near_limit_warns_once(self, sample_flags):
        service, _, warnings = make_service(
            sample_flags, usage={"product_management": (42, 50)}
        )

        first = await service.track_usage("user-a", "product_management")
        second = await service.track_usage("user-a", "product_management")

        assert first.notification.type == "warning"
        assert first.usage_limit.is_near_limit is True
        assert second.notification.type == "warning"
        assert len(warnings.warnings) == 1

    async def test_reaching_limit_reports_limit_reached(self, sample_flags):
        service, _, warnings = make_service(
            sample_flags, usage={"product_management": (49, 50)}
        )

        result = await service.track_usage("user-a", "product_management")

        assert result.success is True
        assert result.usage_limit.is_at_limit is True
        assert result.notification.type == "limit_reached"
        assert result.notification.upgrade_required is True
        stored = list(warnings.warnings.values())
        assert stored[0].warning_type == "limit_reached"
        assert stored[0].severity == "high"

    async def test_at_limit_is_rejected(self, sample_flags):
        service, usage_repo, _ = make_service(
            sample_flags, usage={"product_management": (50, 50)}
        )

        result = await service.track_usage("user-a", "product_management")

        assert result.success is False
        assert result.notification.type == "limit_reached"
        assert usage_repo.records[("user-a", "product_management")].usage_count == 50

    async def test_batch_over_limit_is_rejected_by_ledger(self, sample_flags):
        service, usage_repo, _ = make_service(
            sample_flags, usage={"product_management": (48, 50)}
        )

        result = await service.track_usage("user-a", "product_management", 5)

        assert result.success is False
        assert result.notification.type == "limit_reached"
        assert usage_repo.records[("user-a", "product_management")].usage_count == 48

    async def test_disabled_feature_fails_without_notification(self, sample_flags):
        service, _, _ = make_service(sample_flags)

        result = await service.track_usage("user-a", "reporting")

        assert result.success is False
        assert result.notification is None

    async def test_untracked_feature_succeeds(self, sample_flags):
        service, _, _ = make_service(sample_flags)

        result = await service.track_usage("user-a", "general_access")

        assert result.success is True
        assert result.usage_limit is None


class TestUsageLimits:
    async def test_unlimited_feature_has_no_limit(self, sample_flags):
        service, _, _ = make_service(
            sample_flags, plan_id="plan-pro", usage={"product_management": (500, 0)}
        )

        assert await service.get_usage_limit("user-a", "product_management") is None

    async def test_percentage_and_flags(self, sample_flags):
        service, _, _ = make_service(sample_flags, usage={"product_management": (25, 50)})

        usage_limit = await service.get_usage_limit("user-a", "product_management")

        assert usage_limit.usage_percentage == 50.0
        assert usage_limit.remaining == 25
        assert usage_limit.is_near_limit is False
        assert usage_limit.is_at_limit is False

    async def test_summary(self, sample_flags):
        service, _, _ = make_service(
            sample_flags,
            usage={"product_management": (45, 50), "store_management": (1, 1)},
        )
        await service.create_usage_warning("user-a", "store_management", "Store limit reached")

        summary = await service.get_usage_summary("user-a")

        assert summary.total_features == 2
        assert summary.features_near_limit == 2
        assert summary.features_at_limit == 1
        assert summary.active_warnings == 1


class TestWarnings:
    async def test_mark_as_read_hides_warning(self, sample_flags):
        service, _, _ = make_service(sample_flags)
        warning = await service.create_usage_warning("user-a", "product_management", "Almost full")

        assert await service.mark_warning_as_read("user-a", warning.id) is True
        assert await service.get_usage_warnings("user-a") == []

    async def test_cannot_mark_another_users_warning(self, sample_flags):
        service, _, _ = make_service(sample_flags)
        warning = await service.create_usage_warning("user-b", "product_management", "Almost full")

        assert await service.mark_warning_as_read("user-a", warning.id) is False

    def test_severity_bands(self):
        assert severity_for(0.5) == "low"
        assert severity_for(0.9) == "medium"
        assert severity_for(1.0) == "high"

"""Unit tests for the feature access resolver and the plan flag cache."""

from datetime import UTC, datetime, timedelta

from allnimall.models.billing import Subscription, SubscriptionStatus
from allnimall.models.usage import DenialCode, FeatureFlag, FeatureUsageRecord
from allnimall.services.billing_repository import InMemoryBillingRepository
from allnimall.services.feature_access import (
    FeatureAccessResolver,
    InMemoryFeatureFlagRepository,
    select_flag,
)
from allnimall.services.flag_cache import PlanFlagCache
from allnimall.services.usage_ledger import InMemoryUsageRepository, UsageLedger

NOW = datetime(2026, 3, 10, 9, 0, tzinfo=UTC)


class FakeTimer:
    """Manually advanced monotonic clock for TTL checks."""

    def __init__(self) -> None:
        self.value = 0.0

    def __call__(self) -> float:
        return self.value


def make_resolver(
    flags: list[FeatureFlag],
    *,
    plan_id: str | None = "plan-basic",
    usage: dict[str, int] | None = None,
    timer: FakeTimer | None = None,
):
    flag_repo = InMemoryFeatureFlagRepository(flags)
    billing_repo = InMemoryBillingRepository()
    usage_repo = InMemoryUsageRepository()
    if plan_id:
        billing_repo.subscriptions["sub-1"] = Subscription(
            id="sub-1",
            user_id="user-a",
            plan_id=plan_id,
            status=SubscriptionStatus.ACTIVE,
            start_date=NOW - timedelta(days=3),
        )
    for feature, count in (usage or {}).items():
        usage_repo.records[("user-a", feature)] = FeatureUsageRecord(
            user_id="user-a",
            feature_name=feature,
            usage_count=count,
            usage_limit=50,
            reset_date=NOW + timedelta(days=20),
        )
    cache = PlanFlagCache(ttl_seconds=300, timer=timer or FakeTimer())
    resolver = FeatureAccessResolver(
        flag_repo, billing_repo, UsageLedger(usage_repo, now_provider=lambda: NOW), cache
    )
    return resolver, flag_repo, billing_repo


class TestSelectFlag:
    def test_plan_scoped_flag_beats_default(self):
        flags = [
            FeatureFlag(feature_name="reporting", plan_id=None, enabled=True),
            FeatureFlag(feature_name="reporting", plan_id="plan-basic", enabled=False),
        ]

        assert select_flag(flags, "reporting").plan_id == "plan-basic"

    def test_default_used_when_no_plan_flag(self):
        flags = [FeatureFlag(feature_name="general_access", plan_id=None)]

        assert select_flag(flags, "general_access").plan_id is None
        assert select_flag(flags, "unknown") is None


class TestCheckAccess:
    async def test_no_active_subscription(self, sample_flags):
        resolver, _, _ = make_resolver(sample_flags, plan_id=None)

        access = await resolver.check_access("user-a", "product_management")

        assert access.has_access is False
        assert access.denial == DenialCode.NO_ACTIVE_SUBSCRIPTION
        assert access.reason == "No active subscription found"

    async def test_unknown_feature(self, sample_flags):
        resolver, _, _ = make_resolver(sample_flags)

        access = await resolver.check_access("user-a", "teleportation")

        assert access.has_access is False
        assert access.denial == DenialCode.FEATURE_NOT_FOUND

    async def test_disabled_feature(self, sample_flags):
        resolver, _, _ = make_resolver(sample_flags)

        access = await resolver.check_access("user-a", "reporting")

        assert access.has_access is False
        assert access.denial == DenialCode.FEATURE_DISABLED
        assert access.reason == "Feature reporting is disabled for this plan"

    async def test_limited_feature_under_limit(self, sample_flags):
        resolver, _, _ = make_resolver(sample_flags, usage={"product_management": 20})

        access = await resolver.check_access("user-a", "product_management")

        assert access.has_access is True
        assert access.usage_count == 20
        assert access.usage_limit == 50
        assert access.remaining == 30

    async def test_limited_feature_at_limit_is_denied(self, sample_flags):
        resolver, _, _ = make_resolver(sample_flags, usage={"product_management": 50})

        access = await resolver.check_access("user-a", "product_management")

        assert access.has_access is False
        assert access.denial == DenialCode.USAGE_LIMIT_EXCEEDED
        assert access.remaining == 0

    async def test_untracked_limited_feature_counts_as_zero(self, sample_flags):
        resolver, _, _ = make_resolver(sample_flags)

        access = await resolver.check_access("user-a", "product_management")

        assert access.has_access is True
        assert access.usage_count == 0
        assert access.remaining == 50

    async def test_unlimited_feature_skips_usage(self, sample_flags):
        resolver, _, _ = make_resolver(sample_flags, plan_id="plan-pro")

        access = await resolver.check_access("user-a", "product_management")

        assert access.has_access is True
        assert access.usage_limit is None

    async def test_plan_agnostic_default_applies(self, sample_flags):
        resolver, _, _ = make_resolver(sample_flags)

        access = await resolver.check_access("user-a", "general_access")

        assert access.has_access is True

    async def test_explicit_plan_skips_subscription_lookup(self, sample_flags):
        resolver, _, _ = make_resolver(sample_flags, plan_id=None)

        access = await resolver.check_access("user-a", "reporting", plan_id="plan-pro")

        assert access.has_access is True

    async def test_check_multiple(self, sample_flags):
        resolver, _, _ = make_resolver(sample_flags)

        results = await resolver.check_multiple("user-a", ["product_management", "reporting"])

        assert results["product_management"].has_access is True
        assert results["reporting"].has_access is False


class TestFlagCaching:
    async def test_flags_served_from_cache_within_ttl(self, sample_flags):
        timer = FakeTimer()
        resolver, flag_repo, _ = make_resolver(sample_flags, timer=timer)

        await resolver.check_access("user-a", "product_management")
        timer.value = 299
        await resolver.check_access("user-a", "store_management")

        assert flag_repo.list_calls == 1

    async def test_flags_reloaded_after_ttl(self, sample_flags):
        timer = FakeTimer()
        resolver, flag_repo, _ = make_resolver(sample_flags, timer=timer)

        await resolver.check_access("user-a", "product_management")
        timer.value = 301
        await resolver.check_access("user-a", "product_management")

        assert flag_repo.list_calls == 2

    async def test_invalidate_plan_picks_up_admin_edit(self, sample_flags):
        resolver, flag_repo, _ = make_resolver(sample_flags)
        assert (await resolver.check_access("user-a", "reporting")).has_access is False

        for flag in flag_repo.flags:
            if flag.feature_name == "reporting" and flag.plan_id == "plan-basic":
                flag.enabled = True
        stale = await resolver.check_access("user-a", "reporting")
        resolver.invalidate_plan("plan-basic")
        fresh = await resolver.check_access("user-a", "reporting")

        assert stale.has_access is False
        assert fresh.has_access is True

    def test_invalidate_plan_drops_all_key(self):
        cache = PlanFlagCache(timer=FakeTimer())
        cache.set(None, [])
        cache.set("plan-basic", [])
        cache.set("plan-pro", [])

        cache.invalidate_plan("plan-basic")

        assert "plan-basic" not in cache
        assert None not in cache
        assert "plan-pro" in cache

    def test_clear_drops_everything(self):
        cache = PlanFlagCache(timer=FakeTimer())
        cache.set("plan-basic", [])

        cache.clear()

        assert "plan-basic" not in cache


class TestCatalogViews:
    async def test_categories_are_sorted_and_unique(self, sample_flags):
        resolver, _, _ = make_resolver(sample_flags)

        assert await resolver.get_categories() == ["analytics", "catalog", "core", "operations"]

    async def test_features_by_category(self, sample_flags):
        resolver, _, _ = make_resolver(sample_flags)

        flags = await resolver.features_by_category("catalog", plan_id="plan-basic")

        assert [f.feature_name for f in flags] == ["product_management"]

    async def test_plan_feature_mapping(self, sample_flags, basic_plan):
        resolver, _, billing_repo = make_resolver(sample_flags)
        billing_repo.plans[basic_plan.id] = basic_plan

        mapping = await resolver.get_plan_feature_mapping("plan-basic")

        assert mapping.plan_name == "Basic"
        assert {f.feature_name for f in mapping.features} == {
            "product_management",
            "store_management",
            "reporting",
            "general_access",
        }

    async def test_plan_feature_mapping_unknown_plan(self, sample_flags):
        resolver, _, _ = make_resolver(sample_flags)

        assert await resolver.get_plan_feature_mapping("nope") is None

    async def test_all_plan_feature_mappings_cover_active_plans(
        self, sample_flags, basic_plan, pro_plan
    ):
        resolver, _, billing_repo = make_resolver(sample_flags)
        retired = basic_plan.model_copy(update={"id": "plan-legacy", "is_active": False})
        for plan in (pro_plan, basic_plan, retired):
            billing_repo.plans[plan.id] = plan

        mappings = await resolver.get_all_plan_feature_mappings()

        assert [m.plan_id for m in mappings] == ["plan-basic", "plan-pro"]
        assert mappings[1].limits["stores"] == 10
        pro_features = {f.feature_name: f for f in mappings[1].features}
        assert pro_features["reporting"].enabled is True

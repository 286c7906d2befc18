"""Feature access resolution: plan flags combined with ledger quota."""

from typing import Protocol

import structlog

from allnimall.exceptions import UsageRecordNotFound
from allnimall.models.usage import (
    DenialCode,
    FeatureAccess,
    FeatureFlag,
    PlanFeatureMapping,
)
from allnimall.services.billing_repository import BillingRepository
from allnimall.services.flag_cache import PlanFlagCache
from allnimall.services.supabase_client import fetch_rows
from allnimall.services.usage_ledger import UsageLedger

logger = structlog.get_logger(__name__)

NO_ACTIVE_SUBSCRIPTION_REASON = "No active subscription found"
FEATURE_NOT_FOUND_REASON = "Feature not found"


def disabled_reason(feature_name: str) -> str:
    return f"Feature {feature_name} is disabled for this plan"


def limit_exceeded_reason(feature_name: str) -> str:
    return f"Usage limit exceeded for {feature_name}"


class FeatureFlagRepository(Protocol):
    """Storage contract for feature flag definitions."""

    async def list_flags(self, plan_id: str | None) -> list[FeatureFlag]:
        """Flags scoped to ``plan_id`` plus plan-agnostic defaults; all flags when None."""


class InMemoryFeatureFlagRepository:
    """In-memory repository used for tests and local fallback."""

    def __init__(self, flags: list[FeatureFlag] | None = None) -> None:
        self.flags: list[FeatureFlag] = list(flags or [])
        self.list_calls = 0

    async def list_flags(self, plan_id: str | None) -> list[FeatureFlag]:
        self.list_calls += 1
        if plan_id is None:
            return [flag.model_copy() for flag in self.flags]
        return [
            flag.model_copy()
            for flag in self.flags
            if flag.plan_id is None or flag.plan_id == plan_id
        ]


class SupabaseFeatureFlagRepository:
    """Supabase-backed feature flag repository."""

    def __init__(self, client, table: str):
        self.client = client
        self.table = table

    async def list_flags(self, plan_id: str | None) -> list[FeatureFlag]:
        query = self.client.table(self.table).select("*").is_("deleted_at", "null")
        if plan_id:
            query = query.or_(f"plan_id.eq.{plan_id},plan_id.is.null")
        rows = await fetch_rows(query, operation="feature_flags_list")
        return [FeatureFlag.model_validate(row) for row in rows]


def select_flag(flags: list[FeatureFlag], feature_name: str) -> FeatureFlag | None:
    """Pick the flag for a feature; a plan-scoped row beats the plan-agnostic default."""
    default: FeatureFlag | None = None
    for flag in flags:
        if flag.feature_name != feature_name:
            continue
        if flag.plan_id is not None:
            return flag
        default = default or flag
    return default


class FeatureAccessResolver:
    """Answers "is feature X usable by user Y" as a single decision."""

    def __init__(
        self,
        flag_repository: FeatureFlagRepository,
        billing_repository: BillingRepository,
        ledger: UsageLedger,
        cache: PlanFlagCache,
    ) -> None:
        self.flag_repository = flag_repository
        self.billing_repository = billing_repository
        self.ledger = ledger
        self.cache = cache

    async def get_feature_flags(self, plan_id: str | None = None) -> list[FeatureFlag]:
        cached = self.cache.get(plan_id)
        if cached is not None:
            return cached
        flags = await self.flag_repository.list_flags(plan_id)
        self.cache.set(plan_id, flags)
        return flags

    def invalidate_plan(self, plan_id: str) -> None:
        """Drop cached flags after an admin edits a plan."""
        self.cache.invalidate_plan(plan_id)
        logger.info("feature_flag_cache_invalidated", plan_id=plan_id)

    def clear_cache(self) -> None:
        self.cache.clear()

    async def check_access(
        self, user_id: str, feature_name: str, plan_id: str | None = None
    ) -> FeatureAccess:
        if plan_id is None:
            subscription = await self.billing_repository.get_active_subscription(user_id)
            if subscription is None:
                return FeatureAccess(
                    has_access=False,
                    reason=NO_ACTIVE_SUBSCRIPTION_REASON,
                    denial=DenialCode.NO_ACTIVE_SUBSCRIPTION,
                )
            plan_id = subscription.plan_id

        flag = select_flag(await self.get_feature_flags(plan_id), feature_name)
        if flag is None:
            return FeatureAccess(
                has_access=False,
                reason=FEATURE_NOT_FOUND_REASON,
                denial=DenialCode.FEATURE_NOT_FOUND,
            )
        if not flag.enabled:
            return FeatureAccess(
                has_access=False,
                reason=disabled_reason(feature_name),
                denial=DenialCode.FEATURE_DISABLED,
            )

        if not flag.usage_limit or flag.usage_limit <= 0:
            return FeatureAccess(has_access=True)

        limit = flag.usage_limit
        try:
            usage = await self.ledger.get_usage(user_id, feature_name)
            count, reset_date = usage.count, usage.reset_date
        except UsageRecordNotFound:
            # Untracked so far: nothing consumed yet.
            count, reset_date = 0, None

        if count >= limit:
            return FeatureAccess(
                has_access=False,
                reason=limit_exceeded_reason(feature_name),
                denial=DenialCode.USAGE_LIMIT_EXCEEDED,
                usage_count=count,
                usage_limit=limit,
                remaining=0,
                reset_date=reset_date,
            )

        return FeatureAccess(
            has_access=True,
            usage_count=count,
            usage_limit=limit,
            remaining=limit - count,
            reset_date=reset_date,
        )

    async def check_multiple(
        self, user_id: str, feature_names: list[str], plan_id: str | None = None
    ) -> dict[str, FeatureAccess]:
        return {
            name: await self.check_access(user_id, name, plan_id) for name in feature_names
        }

    async def get_categories(self) -> list[str]:
        flags = await self.get_feature_flags(None)
        return sorted({flag.category for flag in flags if flag.category})

    async def features_by_category(
        self, category: str, plan_id: str | None = None
    ) -> list[FeatureFlag]:
        return [flag for flag in await self.get_feature_flags(plan_id) if flag.category == category]

    async def get_plan_feature_mapping(self, plan_id: str) -> PlanFeatureMapping | None:
        plan = await self.billing_repository.get_plan(plan_id)
        if plan is None:
            return None
        return PlanFeatureMapping(
            plan_id=plan.id,
            plan_name=plan.name,
            features=await self.get_feature_flags(plan.id),
            limits=plan.limits,
            restrictions=plan.restrictions,
        )

    async def get_all_plan_feature_mappings(self) -> list[PlanFeatureMapping]:
        mappings = []
        for plan in await self.billing_repository.list_active_plans():
            mapping = await self.get_plan_feature_mapping(plan.id)
            if mapping is not None:
                mappings.append(mapping)
        return mappings

"""Plan validation: action permission, plan change eligibility and proration."""

import math
import uuid
from datetime import datetime, timedelta

import structlog

from allnimall.config import BillingConfig
from allnimall.constants import ENDPOINT_FEATURES, METHOD_ACTIONS
from allnimall.exceptions import UsageRecordNotFound
from allnimall.models.billing import (
    CAPACITY_DIMENSIONS,
    Plan,
    PlanChangeRequest,
    PlanChangeType,
    Subscription,
    is_unlimited,
)
from allnimall.models.usage import (
    DenialCode,
    KnownFeature,
    PlanChangePreview,
    PlanRecommendation,
    PlanRestriction,
    PlanSummary,
    RecommendedPlan,
    UpgradeEligibility,
    UsageInfo,
    ValidationResult,
)
from allnimall.services.billing_repository import BillingRepository
from allnimall.services.feature_access import (
    NO_ACTIVE_SUBSCRIPTION_REASON,
    FeatureAccessResolver,
    limit_exceeded_reason,
    select_flag,
)
from allnimall.services.supabase_client import utcnow
from allnimall.services.usage_ledger import UsageLedger

logger = structlog.get_logger(__name__)

PLAN_NOT_FOUND_REASON = "Plan information not found"
TARGET_PLAN_NOT_FOUND_REASON = "Target plan not found"
EXCEEDS_TARGET_LIMITS_REASON = "Current usage exceeds target plan limits"


def calculate_proration(
    from_plan: Plan, to_plan: Plan, days_remaining: int, days_per_month: int = 30
) -> float:
    """Prorated charge (positive) or credit (negative) for switching plans.

    Approximation: ``(dailyRate(to) - dailyRate(from)) * daysRemaining`` where a
    daily rate is the monthly price over a fixed 30-day month.
    """
    daily_from = from_plan.monthly_price / days_per_month
    daily_to = to_plan.monthly_price / days_per_month
    return round((daily_to - daily_from) * days_remaining, 2)


def change_type_for(from_plan: Plan, to_plan: Plan) -> PlanChangeType:
    if to_plan.monthly_price > from_plan.monthly_price:
        return PlanChangeType.UPGRADE
    if to_plan.monthly_price < from_plan.monthly_price:
        return PlanChangeType.DOWNGRADE
    return PlanChangeType.LATERAL


def _fits(plan: Plan, usage: dict[str, int]) -> bool:
    for dimension in CAPACITY_DIMENSIONS:
        limit = plan.limit_for(dimension)
        if is_unlimited(limit):
            continue
        if usage.get(dimension.value, 0) > limit:
            return False
    return True


def _summary(plan: Plan) -> PlanSummary:
    return PlanSummary(id=plan.id, name=plan.name, limits=plan.limits)


class PlanValidationEngine:
    """Single entry point for "may this user do this action" and plan changes."""

    def __init__(
        self,
        repository: BillingRepository,
        resolver: FeatureAccessResolver,
        ledger: UsageLedger,
        config: BillingConfig,
        now_provider=utcnow,
    ) -> None:
        self.repository = repository
        self.resolver = resolver
        self.ledger = ledger
        self.config = config
        self.now_provider = now_provider

    async def _active_plan(self, user_id: str) -> tuple[Subscription | None, Plan | None]:
        subscription = await self.repository.get_active_subscription(user_id)
        if subscription is None:
            return None, None
        return subscription, await self.repository.get_plan(subscription.plan_id)

    async def validate_action(
        self, user_id: str, feature_name: str, action_type: str, count: int = 1
    ) -> ValidationResult:
        """Check plan enablement and that ``count`` more units fit the quota."""
        if count < 1:
            raise ValueError("Action count must be a positive integer")

        subscription, plan = await self._active_plan(user_id)
        if subscription is None:
            return ValidationResult(
                is_valid=False,
                reason=NO_ACTIVE_SUBSCRIPTION_REASON,
                denial=DenialCode.NO_ACTIVE_SUBSCRIPTION,
            )
        if plan is None:
            return ValidationResult(
                is_valid=False,
                reason=PLAN_NOT_FOUND_REASON,
                denial=DenialCode.PLAN_NOT_FOUND,
            )

        current_plan = _summary(plan)
        access = await self.resolver.check_access(user_id, feature_name, plan.id)

        usage_info = None
        if access.usage_limit is not None and access.usage_limit > 0:
            current = access.usage_count or 0
            usage_info = UsageInfo(
                current=current,
                limit=access.usage_limit,
                remaining=max(0, access.usage_limit - current),
            )

        if not access.has_access:
            logger.info(
                "plan_action_denied",
                user_id=user_id,
                feature_name=feature_name,
                action_type=action_type,
                denial=access.denial,
            )
            return ValidationResult(
                is_valid=False,
                reason=access.reason,
                denial=access.denial,
                current_plan=current_plan,
                usage_info=usage_info,
            )

        if usage_info is not None and usage_info.current + count > usage_info.limit:
            logger.info(
                "plan_action_denied",
                user_id=user_id,
                feature_name=feature_name,
                action_type=action_type,
                requested=count,
                denial=DenialCode.USAGE_LIMIT_EXCEEDED,
            )
            return ValidationResult(
                is_valid=False,
                reason=limit_exceeded_reason(feature_name),
                denial=DenialCode.USAGE_LIMIT_EXCEEDED,
                current_plan=current_plan,
                usage_info=usage_info,
            )

        return ValidationResult(is_valid=True, current_plan=current_plan, usage_info=usage_info)

    async def validate_multiple_actions(
        self, user_id: str, actions: list[dict]
    ) -> dict[str, ValidationResult]:
        """Validate several ``{"feature_name", "action_type", "action_count"}`` entries."""
        results: dict[str, ValidationResult] = {}
        for action in actions:
            key = f"{action['feature_name']}:{action['action_type']}"
            results[key] = await self.validate_action(
                user_id,
                action["feature_name"],
                action["action_type"],
                action.get("action_count") or 1,
            )
        return results

    async def validate_api_request(
        self, user_id: str, endpoint: str, method: str
    ) -> ValidationResult:
        feature_name = ENDPOINT_FEATURES.get(endpoint, KnownFeature.GENERAL_ACCESS.value)
        action_type = METHOD_ACTIONS.get(method.upper(), "read")
        return await self.validate_action(user_id, feature_name, action_type)

    async def get_plan_restrictions(self, user_id: str) -> list[PlanRestriction]:
        """Read-only usage-vs-limit report for every limited feature of the plan."""
        _, plan = await self._active_plan(user_id)
        if plan is None:
            return []

        flags = await self.resolver.get_feature_flags(plan.id)
        restrictions: list[PlanRestriction] = []
        for feature_name in dict.fromkeys(flag.feature_name for flag in flags):
            flag = select_flag(flags, feature_name)
            if flag is None or not flag.enabled or not flag.usage_limit or flag.usage_limit <= 0:
                continue
            try:
                current = (await self.ledger.get_usage(user_id, feature_name)).count
            except UsageRecordNotFound:
                current = 0
            can_perform = current < flag.usage_limit
            restrictions.append(
                PlanRestriction(
                    feature=feature_name,
                    limit=flag.usage_limit,
                    current=current,
                    can_perform=can_perform,
                    reason=None if can_perform else "Usage limit reached",
                )
            )
        return restrictions

    async def can_upgrade_to_plan(self, user_id: str, target_plan_id: str) -> UpgradeEligibility:
        """Deny any change whose target caps are below current consumption."""
        subscription = await self.repository.get_active_subscription(user_id)
        if subscription is None:
            return UpgradeEligibility(can_upgrade=False, reason=NO_ACTIVE_SUBSCRIPTION_REASON)

        target = await self.repository.get_plan(target_plan_id)
        if target is None:
            return UpgradeEligibility(can_upgrade=False, reason=TARGET_PLAN_NOT_FOUND_REASON)

        return await self.check_capacity(user_id, target)

    async def check_capacity(self, user_id: str, target: Plan) -> UpgradeEligibility:
        """Compare current consumption with ``target``'s caps, whatever the subscription status."""
        current_usage = await self.ledger.get_dimension_usage(user_id)
        if not _fits(target, current_usage):
            logger.info(
                "plan_change_exceeds_limits",
                user_id=user_id,
                target_plan_id=target.id,
                current_usage=current_usage,
            )
            return UpgradeEligibility(
                can_upgrade=False,
                reason=EXCEEDS_TARGET_LIMITS_REASON,
                current_usage=current_usage,
                target_limits=target.limits,
            )

        return UpgradeEligibility(
            can_upgrade=True,
            current_usage=current_usage,
            target_limits=target.limits,
        )

    async def get_recommended_plan(self, user_id: str) -> PlanRecommendation:
        """Cheapest active plan, other than the current one, that fits current usage."""
        subscription, current_plan = await self._active_plan(user_id)
        if subscription is None:
            return PlanRecommendation()

        usage = await self.ledger.get_dimension_usage(user_id)
        current_summary = _summary(current_plan) if current_plan else None

        for plan in await self.repository.list_active_plans(order_by="price"):
            if plan.id == subscription.plan_id:
                continue
            if _fits(plan, usage):
                return PlanRecommendation(
                    recommended_plan=RecommendedPlan(
                        id=plan.id,
                        name=plan.name,
                        price=plan.price,
                        reason="Plan can accommodate your current usage",
                    ),
                    current_plan=current_summary,
                    usage_analysis=usage,
                )

        return PlanRecommendation(current_plan=current_summary, usage_analysis=usage)

    async def preview_plan_change(
        self, user_id: str, target_plan_id: str, now: datetime | None = None
    ) -> PlanChangePreview:
        moment = now or self.now_provider()
        subscription, from_plan = await self._active_plan(user_id)
        if subscription is None or from_plan is None:
            return PlanChangePreview(
                can_change=False,
                reason=NO_ACTIVE_SUBSCRIPTION_REASON,
                to_plan_id=target_plan_id,
            )

        to_plan = await self.repository.get_plan(target_plan_id)
        if to_plan is None:
            return PlanChangePreview(
                can_change=False,
                reason=TARGET_PLAN_NOT_FOUND_REASON,
                from_plan_id=from_plan.id,
                to_plan_id=target_plan_id,
            )
        if to_plan.id == from_plan.id:
            return PlanChangePreview(
                can_change=False,
                reason="Already subscribed to this plan",
                from_plan_id=from_plan.id,
                to_plan_id=to_plan.id,
            )

        days_remaining = 0
        if subscription.next_billing_date is not None:
            seconds_left = (subscription.next_billing_date - moment).total_seconds()
            days_remaining = max(0, math.ceil(seconds_left / 86400))

        eligibility = await self.can_upgrade_to_plan(user_id, to_plan.id)
        return PlanChangePreview(
            can_change=eligibility.can_upgrade,
            reason=eligibility.reason,
            from_plan_id=from_plan.id,
            to_plan_id=to_plan.id,
            change_type=change_type_for(from_plan, to_plan),
            proration_amount=calculate_proration(
                from_plan, to_plan, days_remaining, self.config.proration_days_per_month
            ),
            days_remaining=days_remaining,
            effective_date=moment + timedelta(days=self.config.plan_change_effective_days),
        )

    async def request_plan_change(
        self,
        user_id: str,
        target_plan_id: str,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> tuple[PlanChangePreview, PlanChangeRequest | None]:
        """Persist a pending change request when the preview allows it."""
        moment = now or self.now_provider()
        preview = await self.preview_plan_change(user_id, target_plan_id, now=moment)
        if not preview.can_change:
            return preview, None

        subscription = await self.repository.get_active_subscription(user_id)
        request = await self.repository.insert_plan_change_request(
            PlanChangeRequest(
                id=str(uuid.uuid4()),
                user_id=user_id,
                subscription_id=subscription.id,
                from_plan_id=preview.from_plan_id,
                to_plan_id=preview.to_plan_id,
                change_type=preview.change_type,
                proration_amount=preview.proration_amount,
                effective_date=preview.effective_date,
                reason=reason,
                created_at=moment,
            )
        )
        logger.info(
            "plan_change_requested",
            user_id=user_id,
            request_id=request.id,
            change_type=request.change_type,
            proration_amount=request.proration_amount,
        )
        return preview, request

    async def list_plan_change_requests(self, user_id: str) -> list[PlanChangeRequest]:
        return await self.repository.list_plan_change_requests(user_id)

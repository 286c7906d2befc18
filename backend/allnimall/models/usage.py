"""Usage, feature access and plan validation models."""

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field

from allnimall.models.billing import PlanChangeType


class UsagePeriod(str, Enum):
    """Reset cadence of a usage counter."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class KnownFeature(str, Enum):
    """Feature names used across the CMS. Flags may define others."""

    PRODUCT_MANAGEMENT = "product_management"
    STORE_MANAGEMENT = "store_management"
    USER_MANAGEMENT = "user_management"
    CUSTOMER_MANAGEMENT = "customer_management"
    SALES_MANAGEMENT = "sales_management"
    INVENTORY_MANAGEMENT = "inventory_management"
    REPORTING = "reporting"
    POS_ACCESS = "pos_access"
    ONLINE_STORE = "online_store"
    API_ACCESS = "api_access"
    GENERAL_ACCESS = "general_access"


class DenialCode(str, Enum):
    """Why a feature or action was denied."""

    NO_ACTIVE_SUBSCRIPTION = "no_active_subscription"
    PLAN_NOT_FOUND = "plan_not_found"
    FEATURE_NOT_FOUND = "feature_not_found"
    FEATURE_DISABLED = "feature_disabled"
    USAGE_LIMIT_EXCEEDED = "usage_limit_exceeded"


class FeatureUsageRecord(BaseModel):
    """Per-user, per-feature counter."""

    user_id: str
    feature_name: str
    usage_count: int = Field(default=0, ge=0)
    usage_limit: int = 0
    reset_date: datetime
    last_reset_date: datetime | None = None
    usage_period: UsagePeriod = UsagePeriod.MONTHLY
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None


class UsageSnapshot(BaseModel):
    """Current counter state returned by the ledger."""

    count: int
    limit: int
    reset_date: datetime


class FeatureFlag(BaseModel):
    """Plan-scoped (or plan-agnostic when plan_id is None) capability flag."""

    feature_name: str
    plan_id: str | None = None
    enabled: bool = True
    usage_limit: int | None = None
    reset_period: UsagePeriod | None = None
    description: str | None = None
    category: str | None = None
    is_core_feature: bool = False


class FeatureAccess(BaseModel):
    """Single access decision for a (user, feature) pair."""

    has_access: bool
    reason: str | None = None
    denial: DenialCode | None = None
    usage_count: int | None = None
    usage_limit: int | None = None
    remaining: int | None = None
    reset_date: datetime | None = None


class PlanFeatureMapping(BaseModel):
    """A plan with its resolved feature flags."""

    plan_id: str
    plan_name: str
    features: list[FeatureFlag]
    limits: dict[str, int]
    restrictions: dict[str, bool]


class UsageInfo(BaseModel):
    """Quota figures rendered in upgrade prompts."""

    current: int
    limit: int
    remaining: int


class PlanSummary(BaseModel):
    """Compact plan view attached to validation results."""

    id: str
    name: str
    limits: dict[str, int] = Field(default_factory=dict)


class ValidationResult(BaseModel):
    """Answer to "may this user perform this action now"."""

    is_valid: bool
    reason: str | None = None
    denial: DenialCode | None = None
    current_plan: PlanSummary | None = None
    usage_info: UsageInfo | None = None


class PlanRestriction(BaseModel):
    """Usage-vs-limit line for one limited feature."""

    feature: str
    action: str = "usage"
    limit: int
    current: int
    can_perform: bool
    reason: str | None = None


class UpgradeEligibility(BaseModel):
    """Whether current usage fits inside a target plan."""

    can_upgrade: bool
    reason: str | None = None
    current_usage: dict[str, int] = Field(default_factory=dict)
    target_limits: dict[str, int] = Field(default_factory=dict)


class RecommendedPlan(BaseModel):
    id: str
    name: str
    price: float
    reason: str


class PlanRecommendation(BaseModel):
    """Cheapest active plan accommodating current usage."""

    recommended_plan: RecommendedPlan | None = None
    current_plan: PlanSummary | None = None
    usage_analysis: dict[str, int] = Field(default_factory=dict)


class PlanChangePreview(BaseModel):
    """Eligibility and proration for a prospective plan change.

    ``proration_amount`` is an approximation: daily rates assume 30-day months.
    Positive means the user owes money, negative is a credit.
    """

    can_change: bool
    reason: str | None = None
    from_plan_id: str | None = None
    to_plan_id: str
    change_type: PlanChangeType | None = None
    proration_amount: float = 0.0
    days_remaining: int = 0
    effective_date: datetime | None = None


class UsageLimit(BaseModel):
    """Dashboard view of one limited feature."""

    feature_name: str
    current_usage: int
    limit: int
    remaining: int
    reset_date: datetime | None = None
    usage_percentage: float
    is_near_limit: bool
    is_at_limit: bool


class UsageNotification(BaseModel):
    """Transient notice returned with a tracking call."""

    type: Literal["warning", "limit_reached", "overage"]
    feature_name: str
    message: str
    action_required: bool
    upgrade_required: bool


class UsageTrackResult(BaseModel):
    """Outcome of reporting usage after a feature-gated action."""

    success: bool
    usage_limit: UsageLimit | None = None
    notification: UsageNotification | None = None


class UsageWarning(BaseModel):
    """Persisted usage warning shown in the notification centre."""

    id: str
    user_id: str
    feature_name: str
    warning_type: Literal["threshold", "limit_reached", "overage"] = "threshold"
    message: str
    severity: Literal["low", "medium", "high"] = "medium"
    created_at: datetime
    is_read: bool = False
    read_at: datetime | None = None


class UsageSummary(BaseModel):
    """Aggregate usage figures for the subscription dashboard."""

    total_features: int = 0
    features_near_limit: int = 0
    features_at_limit: int = 0
    active_warnings: int = 0
    usage_limits: list[UsageLimit] = Field(default_factory=list)
    warnings: list[UsageWarning] = Field(default_factory=list)

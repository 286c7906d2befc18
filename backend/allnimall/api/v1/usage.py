"""Usage tracking, warnings and feature access endpoints."""

from typing import Annotated

import structlog
from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field

from allnimall.api.v1.dependencies import (
    get_billing_service,
    get_feature_resolver,
    get_usage_tracking,
)
from allnimall.auth import CronAuthorized, CurrentUser
from allnimall.models.usage import (
    FeatureAccess,
    PlanFeatureMapping,
    UsageSummary,
    UsageTrackResult,
    UsageWarning,
)

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["usage"])


class TrackUsageRequest(BaseModel):
    feature_name: str
    increment_by: int = Field(default=1, ge=1)


class MarkReadResponse(BaseModel):
    success: bool


class ResetResponse(BaseModel):
    reset_count: int


class InvalidateCacheRequest(BaseModel):
    plan_id: str | None = Field(default=None, description="Omit to drop every cached plan")


class InvalidateCacheResponse(BaseModel):
    plan_id: str | None
    cleared: bool


@router.get("/usage", response_model=UsageSummary)
async def usage_summary(request: Request, user: CurrentUser) -> UsageSummary:
    return await get_usage_tracking(request).get_usage_summary(user.id)


@router.post("/usage/track", response_model=UsageTrackResult)
async def track_usage(
    body: TrackUsageRequest,
    request: Request,
    user: CurrentUser,
) -> UsageTrackResult:
    """Record consumption after a gated action. A rejected increment is a
    200 with ``success=false``, not an error."""
    return await get_usage_tracking(request).track_usage(
        user.id, body.feature_name, body.increment_by
    )


@router.get("/usage/warnings", response_model=list[UsageWarning])
async def usage_warnings(request: Request, user: CurrentUser) -> list[UsageWarning]:
    return await get_usage_tracking(request).get_usage_warnings(user.id)


@router.post("/usage/warnings/{warning_id}/read", response_model=MarkReadResponse)
async def mark_warning_read(
    warning_id: str,
    request: Request,
    user: CurrentUser,
) -> MarkReadResponse:
    updated = await get_usage_tracking(request).mark_warning_as_read(user.id, warning_id)
    if not updated:
        raise HTTPException(status_code=404, detail="Warning not found")
    return MarkReadResponse(success=True)


@router.get("/features/access", response_model=dict[str, FeatureAccess])
async def feature_access(
    request: Request,
    user: CurrentUser,
    feature: Annotated[list[str] | None, Query()] = None,
) -> dict[str, FeatureAccess]:
    """Access decisions for one or more ``?feature=`` names."""
    if not feature:
        raise HTTPException(status_code=400, detail="At least one feature is required")
    return await get_feature_resolver(request).check_multiple(user.id, feature)


@router.post("/usage/reset", response_model=ResetResponse)
async def reset_usage(request: Request, _cron: CronAuthorized) -> ResetResponse:
    """Scheduler hook: zero every counter whose reset date has passed."""
    reset_count = await get_billing_service(request).reset_usage_counters()
    return ResetResponse(reset_count=reset_count)


@router.get("/features/plans", response_model=list[PlanFeatureMapping])
async def plan_feature_mappings(request: Request, _user: CurrentUser) -> list[PlanFeatureMapping]:
    """Flags, limits and restrictions of every active plan, for comparison pages."""
    return await get_feature_resolver(request).get_all_plan_feature_mappings()


@router.get("/features/plans/{plan_id}", response_model=PlanFeatureMapping)
async def plan_feature_mapping(
    plan_id: str,
    request: Request,
    _user: CurrentUser,
) -> PlanFeatureMapping:
    mapping = await get_feature_resolver(request).get_plan_feature_mapping(plan_id)
    if mapping is None:
        raise HTTPException(status_code=404, detail="Plan not found")
    return mapping


@router.post("/features/cache/invalidate", response_model=InvalidateCacheResponse)
async def invalidate_feature_cache(
    body: InvalidateCacheRequest,
    request: Request,
    _cron: CronAuthorized,
) -> InvalidateCacheResponse:
    """Admin hook called after plan flags are edited."""
    resolver = get_feature_resolver(request)
    if body.plan_id is None:
        resolver.clear_cache()
        logger.info("feature_flag_cache_cleared")
    else:
        resolver.invalidate_plan(body.plan_id)
    return InvalidateCacheResponse(plan_id=body.plan_id, cleared=True)

"""Plan validation endpoints: action checks, restrictions and plan changes."""

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from allnimall.api.v1.dependencies import get_validation_engine
from allnimall.auth import CurrentUser
from allnimall.models.billing import PlanChangeRequest
from allnimall.models.usage import (
    PlanChangePreview,
    PlanRecommendation,
    PlanRestriction,
    UpgradeEligibility,
    ValidationResult,
)

router = APIRouter(prefix="/validation", tags=["validation"])


class ActionRequest(BaseModel):
    feature_name: str
    action_type: str = "create"
    action_count: int = Field(default=1, ge=1)


class BatchActionRequest(BaseModel):
    actions: list[ActionRequest] = Field(min_length=1)


class ApiRequestCheck(BaseModel):
    endpoint: str
    method: str = "GET"


class TargetPlanRequest(BaseModel):
    target_plan_id: str


class PlanChangeBody(BaseModel):
    target_plan_id: str
    reason: str | None = None


class PlanChangeResponse(BaseModel):
    preview: PlanChangePreview
    request: PlanChangeRequest | None = None


@router.post("/action", response_model=ValidationResult)
async def validate_action(
    body: ActionRequest,
    request: Request,
    user: CurrentUser,
) -> ValidationResult:
    engine = get_validation_engine(request)
    try:
        return await engine.validate_action(
            user.id, body.feature_name, body.action_type, body.action_count
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/actions", response_model=dict[str, ValidationResult])
async def validate_actions(
    body: BatchActionRequest,
    request: Request,
    user: CurrentUser,
) -> dict[str, ValidationResult]:
    engine = get_validation_engine(request)
    return await engine.validate_multiple_actions(
        user.id, [action.model_dump() for action in body.actions]
    )


@router.post("/api-request", response_model=ValidationResult)
async def validate_api_request(
    body: ApiRequestCheck,
    request: Request,
    user: CurrentUser,
) -> ValidationResult:
    engine = get_validation_engine(request)
    return await engine.validate_api_request(user.id, body.endpoint, body.method)


@router.get("/restrictions", response_model=list[PlanRestriction])
async def plan_restrictions(request: Request, user: CurrentUser) -> list[PlanRestriction]:
    return await get_validation_engine(request).get_plan_restrictions(user.id)


@router.post("/upgrade", response_model=UpgradeEligibility)
async def can_upgrade(
    body: TargetPlanRequest,
    request: Request,
    user: CurrentUser,
) -> UpgradeEligibility:
    return await get_validation_engine(request).can_upgrade_to_plan(user.id, body.target_plan_id)


@router.get("/recommendation", response_model=PlanRecommendation)
async def recommended_plan(request: Request, user: CurrentUser) -> PlanRecommendation:
    return await get_validation_engine(request).get_recommended_plan(user.id)


@router.post("/plan-change", response_model=PlanChangePreview)
async def preview_plan_change(
    body: TargetPlanRequest,
    request: Request,
    user: CurrentUser,
) -> PlanChangePreview:
    return await get_validation_engine(request).preview_plan_change(user.id, body.target_plan_id)


@router.post("/plan-change/request", response_model=PlanChangeResponse)
async def request_plan_change(
    body: PlanChangeBody,
    request: Request,
    user: CurrentUser,
) -> PlanChangeResponse:
    """Persist a pending change request; ineligible changes return the preview only."""
    preview, change_request = await get_validation_engine(request).request_plan_change(
        user.id, body.target_plan_id, body.reason
    )
    return PlanChangeResponse(preview=preview, request=change_request)


@router.get("/plan-change/requests", response_model=list[PlanChangeRequest])
async def plan_change_requests(request: Request, user: CurrentUser) -> list[PlanChangeRequest]:
    return await get_validation_engine(request).list_plan_change_requests(user.id)

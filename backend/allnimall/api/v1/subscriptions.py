"""Plan catalog and subscription lifecycle endpoints."""

import structlog
from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from allnimall.api.v1.dependencies import get_billing_service, get_validation_engine
from allnimall.auth import CurrentUser
from allnimall.exceptions import (
    PlanChangeNotAllowed,
    PlanNotFound,
    SubscriptionConflictError,
    SubscriptionNotFound,
)
from allnimall.models.billing import Plan, Subscription

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["subscriptions"])


class CreateSubscriptionRequest(BaseModel):
    plan_id: str = Field(description="Catalog plan to start a trial on")


class ChangePlanRequest(BaseModel):
    plan_id: str = Field(description="Plan to switch to")


class CancelSubscriptionRequest(BaseModel):
    reason: str | None = None
    purge: bool = Field(default=False, description="Also soft-delete usage records")


@router.get("/plans", response_model=list[Plan])
async def list_plans(request: Request) -> list[Plan]:
    """Active plans in display order."""
    return await get_billing_service(request).list_plans()


@router.post("/subscriptions", response_model=Subscription, status_code=201)
async def create_subscription(
    body: CreateSubscriptionRequest,
    request: Request,
    user: CurrentUser,
) -> Subscription:
    service = get_billing_service(request)
    try:
        return await service.create_subscription(user.id, body.plan_id)
    except PlanNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SubscriptionConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.get("/subscriptions/me", response_model=Subscription)
async def current_subscription(request: Request, user: CurrentUser) -> Subscription:
    subscription = await get_billing_service(request).get_current_subscription(user.id)
    if subscription is None:
        raise HTTPException(status_code=404, detail="No subscription found")
    return subscription


@router.put("/subscriptions/{subscription_id}", response_model=Subscription)
async def change_plan(
    subscription_id: str,
    body: ChangePlanRequest,
    request: Request,
    user: CurrentUser,
) -> Subscription:
    """Switch the caller's subscription to another plan if current usage fits it."""
    service = get_billing_service(request)
    subscription = await service.repository.get_subscription(subscription_id)
    if subscription is None or subscription.user_id != user.id:
        raise HTTPException(status_code=404, detail="Subscription not found")

    try:
        return await service.change_plan(
            subscription_id, body.plan_id, get_validation_engine(request)
        )
    except (PlanNotFound, SubscriptionNotFound) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PlanChangeNotAllowed as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/subscriptions/{subscription_id}/cancel", response_model=Subscription)
async def cancel_subscription(
    subscription_id: str,
    body: CancelSubscriptionRequest,
    request: Request,
    user: CurrentUser,
) -> Subscription:
    """Cancel the caller's subscription. Repeating the call is harmless."""
    service = get_billing_service(request)
    subscription = await service.repository.get_subscription(subscription_id)
    if subscription is None or subscription.user_id != user.id:
        raise HTTPException(status_code=404, detail="Subscription not found")

    try:
        return await service.cancel_subscription(
            subscription_id, body.reason, purge=body.purge
        )
    except SubscriptionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))

"""Midtrans checkout and notification endpoints."""

from typing import Any

import structlog
from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field

from allnimall.api.v1.dependencies import get_billing_service
from allnimall.auth import CurrentUser
from allnimall.exceptions import (
    PaymentGatewayError,
    PlanNotFound,
    StorageError,
    SubscriptionNotFound,
)
from allnimall.models.billing import BillingInvoice, CustomerDetails, PaymentCheckout
from allnimall.models.payments import NotificationResult, PaymentNotification
from allnimall.services.billing_service import BillingService
from allnimall.services.midtrans_service import parse_order_id

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/payments/midtrans", tags=["payments"])


class CreatePaymentRequest(BaseModel):
    subscription_id: str
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = Field(default=None, description="Falls back to the profile phone")


class CancelPaymentRequest(BaseModel):
    order_id: str


class PaymentStatusResponse(BaseModel):
    order_id: str
    transaction_status: str | None = None
    fraud_status: str | None = None
    gross_amount: str | None = None
    payment_type: str | None = None
    invoice: BillingInvoice | None = None


def _get_gateway_billing(request: Request) -> BillingService:
    service = get_billing_service(request)
    if service.gateway is None:
        raise HTTPException(status_code=503, detail="Midtrans is not configured")
    return service


async def _ensure_owner(service: BillingService, order_id: str, user_id: str) -> None:
    parsed = parse_order_id(order_id)
    subscription = await service.repository.get_subscription(parsed[0]) if parsed else None
    if subscription is None or subscription.user_id != user_id:
        raise HTTPException(status_code=404, detail="Order not found")


@router.post("/create", response_model=PaymentCheckout)
async def create_payment(
    body: CreatePaymentRequest,
    request: Request,
    user: CurrentUser,
) -> PaymentCheckout:
    """Open a Snap checkout for one of the caller's subscriptions."""
    service = _get_gateway_billing(request)
    subscription = await service.repository.get_subscription(body.subscription_id)
    if subscription is None or subscription.user_id != user.id:
        raise HTTPException(status_code=404, detail="Subscription not found")

    customer = CustomerDetails(
        first_name=body.first_name or user.name or (user.email or "Customer").split("@")[0],
        last_name=body.last_name,
        email=user.email or "",
        phone=body.phone or user.phone or "",
    )
    try:
        return await service.create_subscription_payment(subscription.id, customer)
    except (SubscriptionNotFound, PlanNotFound) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PaymentGatewayError as e:
        raise HTTPException(status_code=502, detail=str(e))


@router.get("/status", response_model=PaymentStatusResponse)
async def payment_status(
    request: Request,
    user: CurrentUser,
    order_id: str = Query(min_length=1),
) -> PaymentStatusResponse:
    service = _get_gateway_billing(request)
    await _ensure_owner(service, order_id, user.id)
    try:
        transaction, invoice = await service.get_payment_status(order_id)
    except PaymentGatewayError as e:
        raise HTTPException(status_code=502, detail=str(e))

    return PaymentStatusResponse(
        order_id=order_id,
        transaction_status=transaction.get("transaction_status"),
        fraud_status=transaction.get("fraud_status"),
        gross_amount=transaction.get("gross_amount"),
        payment_type=transaction.get("payment_type"),
        invoice=invoice,
    )


@router.post("/cancel")
async def cancel_payment(
    body: CancelPaymentRequest,
    request: Request,
    user: CurrentUser,
) -> dict[str, Any]:
    service = _get_gateway_billing(request)
    await _ensure_owner(service, body.order_id, user.id)
    try:
        response = await service.cancel_payment(body.order_id)
    except PaymentGatewayError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"success": True, "data": response}


@router.post("/webhook", response_model=NotificationResult)
async def midtrans_webhook(
    notification: PaymentNotification,
    request: Request,
) -> NotificationResult:
    """Gateway push notification. Authenticated by signature, not by user."""
    service = _get_gateway_billing(request)
    try:
        result = await service.handle_payment_notification(notification)
    except StorageError as e:
        logger.error("midtrans_webhook_storage_failed", order_id=notification.order_id, error=str(e))
        # Non-2xx makes Midtrans redeliver
        raise HTTPException(status_code=500, detail="Failed to process notification")

    if not result.success:
        raise HTTPException(status_code=400, detail=result.message)
    return result

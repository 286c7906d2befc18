"""Billing history and recurring-billing endpoints."""

from fastapi import APIRouter, Query, Request

from allnimall.api.v1.dependencies import get_billing_service
from allnimall.auth import CronAuthorized, CurrentUser
from allnimall.models.billing import BillingInvoice, BillingPayment, RecurringBillingResult

router = APIRouter(prefix="/billing", tags=["billing"])


@router.get("/invoices", response_model=list[BillingInvoice])
async def list_invoices(
    request: Request,
    user: CurrentUser,
    limit: int = Query(default=10, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> list[BillingInvoice]:
    return await get_billing_service(request).list_invoices(user.id, limit, offset)


@router.get("/payments", response_model=list[BillingPayment])
async def list_payments(
    request: Request,
    user: CurrentUser,
    limit: int = Query(default=10, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> list[BillingPayment]:
    return await get_billing_service(request).list_payments(user.id, limit, offset)


@router.post("/recurring", response_model=RecurringBillingResult)
async def run_recurring_billing(request: Request, _cron: CronAuthorized) -> RecurringBillingResult:
    """Scheduler hook: raise renewal invoices for due subscriptions."""
    return await get_billing_service(request).process_recurring_billing()

"""Service lookups from app.state shared by the v1 routers."""

from fastapi import HTTPException, Request

from allnimall.services.billing_service import BillingService
from allnimall.services.feature_access import FeatureAccessResolver
from allnimall.services.plan_validation import PlanValidationEngine
from allnimall.services.usage_tracking import UsageTrackingService


def _state_service(request: Request, name: str, detail: str):
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(status_code=503, detail=detail)
    return service


def get_billing_service(request: Request) -> BillingService:
    return _state_service(request, "billing_service", "Billing service unavailable")


def get_validation_engine(request: Request) -> PlanValidationEngine:
    return _state_service(request, "validation_engine", "Plan validation unavailable")


def get_feature_resolver(request: Request) -> FeatureAccessResolver:
    return _state_service(request, "feature_resolver", "Feature access unavailable")


def get_usage_tracking(request: Request) -> UsageTrackingService:
    return _state_service(request, "usage_tracking", "Usage tracking unavailable")

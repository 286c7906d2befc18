"""
Allnimall Billing Backend - Main FastAPI Application.

Subscription, usage-quota and Midtrans billing core for the Allnimall
pet-shop CMS.

Run with:
    uvicorn allnimall.main:app --reload
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from supabase import acreate_client
from supabase._async.client import AsyncClient as AsyncSupabaseClient

from allnimall.api.v1.billing import router as billing_router
from allnimall.api.v1.payments import router as payments_router
from allnimall.api.v1.subscriptions import router as subscriptions_router
from allnimall.api.v1.usage import router as usage_router
from allnimall.api.v1.validation import router as validation_router
from allnimall.config import Settings, get_settings
from allnimall.constants import API_TITLE, API_VERSION, SERVICE_NAME
from allnimall.logging_config import setup_logging
from allnimall.middleware import RequestContextMiddleware
from allnimall.services.billing_repository import (
    InMemoryBillingRepository,
    SupabaseBillingRepository,
)
from allnimall.services.billing_service import BillingService
from allnimall.services.feature_access import (
    FeatureAccessResolver,
    InMemoryFeatureFlagRepository,
    SupabaseFeatureFlagRepository,
)
from allnimall.services.flag_cache import PlanFlagCache
from allnimall.services.midtrans_service import MidtransService
from allnimall.services.plan_validation import PlanValidationEngine
from allnimall.services.usage_ledger import (
    InMemoryUsageRepository,
    SupabaseUsageRepository,
    UsageLedger,
)
from allnimall.services.usage_tracking import (
    InMemoryWarningRepository,
    SupabaseWarningRepository,
    UsageTrackingService,
)

# Get settings before logging setup so we know the debug flag
settings = get_settings()

# Configure logging
setup_logging(settings.debug, service=SERVICE_NAME, environment=settings.environment)

logger = structlog.get_logger(__name__)


def attach_services(
    app: FastAPI,
    settings: Settings,
    supabase_client: AsyncSupabaseClient | None,
    midtrans_service: MidtransService | None,
) -> None:
    """Build the billing core once and store it on app state."""
    config = settings.billing
    if supabase_client is not None:
        billing_repository = SupabaseBillingRepository(supabase_client, config)
        usage_repository = SupabaseUsageRepository(supabase_client, config.usage_table)
        flag_repository = SupabaseFeatureFlagRepository(supabase_client, config.feature_flags_table)
        warning_repository = SupabaseWarningRepository(supabase_client, config.notifications_table)
    else:
        billing_repository = InMemoryBillingRepository()
        usage_repository = InMemoryUsageRepository()
        flag_repository = InMemoryFeatureFlagRepository()
        warning_repository = InMemoryWarningRepository()

    ledger = UsageLedger(usage_repository)
    resolver = FeatureAccessResolver(
        flag_repository,
        billing_repository,
        ledger,
        PlanFlagCache(ttl_seconds=config.flag_cache_ttl_seconds),
    )

    app.state.usage_ledger = ledger
    app.state.feature_resolver = resolver
    app.state.validation_engine = PlanValidationEngine(billing_repository, resolver, ledger, config)
    app.state.usage_tracking = UsageTrackingService(resolver, ledger, warning_repository, config)
    app.state.billing_service = BillingService(
        billing_repository, ledger, config, gateway=midtrans_service
    )


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Lifespan event handler for startup and shutdown."""
    logger.info("api_startup", cors_origins=settings.cors_origins)

    # Initialize Supabase async client
    supabase_client: AsyncSupabaseClient | None = None
    if settings.supabase_url and settings.supabase_secret_key:
        try:
            supabase_client = await acreate_client(
                settings.supabase_url,
                settings.supabase_secret_key,
            )
            logger.info("supabase_configured")
        except Exception as e:
            logger.warning("supabase_init_failed", error=str(e))
    else:
        logger.warning(
            "supabase_not_configured",
            detail="Using in-memory repositories; auth endpoints will return 503",
        )

    _app.state.supabase = supabase_client

    midtrans_service: MidtransService | None = None
    if settings.midtrans.server_key:
        midtrans_service = MidtransService(settings.midtrans)
        logger.info("midtrans_configured", is_production=settings.midtrans.is_production)
    else:
        logger.warning("midtrans_not_configured", detail="Payment endpoints will return 503")

    if not settings.cron_secret:
        logger.warning("cron_secret_missing", detail="Scheduler endpoints will return 503")

    attach_services(_app, settings, supabase_client, midtrans_service)
    logger.info("services_initialized")

    yield

    if midtrans_service is not None:
        await midtrans_service.close()
    logger.info("api_shutdown")


# Create FastAPI app
app = FastAPI(
    title=API_TITLE,
    description=(
        "Subscription, usage quota and billing API for the Allnimall CMS. "
        "Gates features by plan, tracks per-feature usage and reconciles "
        "Midtrans payment notifications."
    ),
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Request context middleware must come before CORS so every response gets
# the X-Request-ID header (including preflight OPTIONS responses).
app.add_middleware(RequestContextMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Include routers
app.include_router(subscriptions_router, prefix="/api/v1")
app.include_router(usage_router, prefix="/api/v1")
app.include_router(validation_router, prefix="/api/v1")
app.include_router(payments_router, prefix="/api/v1")
app.include_router(billing_router, prefix="/api/v1")


@app.get("/")
async def root() -> dict:
    """Root endpoint with API info."""
    return {
        "name": API_TITLE,
        "version": API_VERSION,
        "description": "Subscription, usage and billing API",
        "docs": "/docs",
    }


@app.get("/health")
async def health() -> dict:
    """Health check endpoint."""
    return {"status": "healthy"}

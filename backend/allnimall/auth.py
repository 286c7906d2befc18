"""
Authentication dependencies for FastAPI endpoints.

User endpoints verify a Supabase JWT via auth.get_user(); scheduler
endpoints (recurring billing, usage resets) check a shared cron secret.
"""

import hmac
from typing import Annotated

import structlog
from fastapi import Depends, Header, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from allnimall.config import get_settings

logger = structlog.get_logger(__name__)

_bearer_scheme = HTTPBearer()


class AuthenticatedUser(BaseModel):
    """A user whose Supabase identity has been verified."""

    id: str
    email: str | None = None
    name: str | None = None
    phone: str | None = None


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
) -> AuthenticatedUser:
    """
    FastAPI dependency that verifies a JWT Bearer token via Supabase.

    Raises:
        HTTPException 503: Supabase client not configured.
        HTTPException 401: Token is invalid, expired, or user not found.
    """
    supabase = getattr(request.app.state, "supabase", None)
    if supabase is None:
        raise HTTPException(status_code=503, detail="Authentication service unavailable")

    token = credentials.credentials
    try:
        response = await supabase.auth.get_user(token)
    except Exception as e:
        logger.warning("auth_token_verification_failed", error=str(e))
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    user = response.user if response else None
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    metadata = getattr(user, "user_metadata", None) or {}
    return AuthenticatedUser(
        id=str(user.id),
        email=user.email,
        name=metadata.get("full_name") or metadata.get("name"),
        phone=getattr(user, "phone", None) or None,
    )


CurrentUser = Annotated[AuthenticatedUser, Depends(get_current_user)]


async def require_cron_secret(
    x_cron_secret: str | None = Header(default=None, alias="X-Cron-Secret"),
) -> None:
    """Guard for scheduler-only endpoints.

    Raises:
        HTTPException 503: CRON_SECRET is not configured.
        HTTPException 401: Header missing or wrong.
    """
    expected = get_settings().cron_secret
    if not expected:
        raise HTTPException(status_code=503, detail="Scheduler endpoints are not configured")
    if not x_cron_secret or not hmac.compare_digest(x_cron_secret, expected):
        logger.warning("cron_secret_rejected")
        raise HTTPException(status_code=401, detail="Invalid cron secret")


CronAuthorized = Annotated[None, Depends(require_cron_secret)]

"""
Shared helpers for Supabase-backed repositories.

Every repository funnels its queries through ``execute`` so that PostgREST
and transport failures surface as ``StorageError`` instead of leaking
client-specific exceptions into the billing core.
"""

from datetime import UTC, datetime
from typing import Any

import httpx
import structlog
from postgrest.exceptions import APIError

from allnimall.exceptions import DuplicateRecordError, StorageError

logger = structlog.get_logger(__name__)

# Postgres SQLSTATE for unique_violation
UNIQUE_VIOLATION = "23505"


def utcnow() -> datetime:
    return datetime.now(UTC)


def isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


async def execute(query: Any, *, operation: str) -> Any:
    """Run a PostgREST query builder and translate failures into StorageError."""
    try:
        return await query.execute()
    except APIError as e:
        if e.code == UNIQUE_VIOLATION:
            logger.info("supabase_duplicate_rejected", operation=operation)
            raise DuplicateRecordError(f"{operation} rejected duplicate: {e}") from e
        logger.error("supabase_query_failed", operation=operation, error=str(e))
        raise StorageError(f"{operation} failed: {e}") from e
    except httpx.HTTPError as e:
        logger.error("supabase_transport_failed", operation=operation, error=str(e))
        raise StorageError(f"{operation} failed: {e}") from e


async def fetch_rows(query: Any, *, operation: str) -> list[dict]:
    response = await execute(query, operation=operation)
    return response.data or []


async def fetch_one(query: Any, *, operation: str) -> dict | None:
    rows = await fetch_rows(query.limit(1), operation=operation)
    return rows[0] if rows else None

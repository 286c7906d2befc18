"""Usage ledger: durable, race-safe per-feature counters."""

import asyncio
from datetime import datetime
from typing import Protocol

import structlog

from allnimall.constants import DIMENSION_FEATURES
from allnimall.exceptions import UsageRecordNotFound
from allnimall.models.billing import Plan
from allnimall.models.usage import FeatureUsageRecord, UsagePeriod, UsageSnapshot
from allnimall.services.periods import advance_period
from allnimall.services.supabase_client import (
    execute,
    fetch_one,
    fetch_rows,
    isoformat,
    utcnow,
)

logger = structlog.get_logger(__name__)


class UsageRepository(Protocol):
    """Storage contract for usage counters."""

    async def get_record(self, user_id: str, feature_name: str) -> FeatureUsageRecord | None:
        """Fetch a live record."""

    async def list_records(self, user_id: str) -> list[FeatureUsageRecord]:
        """Fetch every live record for a user."""

    async def upsert_records(self, records: list[FeatureUsageRecord]) -> None:
        """Create or replace records keyed on (user_id, feature_name)."""

    async def increment_if_within_limit(
        self, user_id: str, feature_name: str, by: int, now: datetime
    ) -> bool | None:
        """Atomically add ``by`` unless it would push a positive limit over.

        Returns None when no live record exists.
        """

    async def update_limits(self, user_id: str, limits: dict[str, int], now: datetime) -> int:
        """Set usage_limit on existing live records, leaving usage_count alone."""

    async def reset_due(self, now: datetime) -> int:
        """Zero every counter whose reset date has passed. Returns rows reset."""

    async def soft_delete_for_user(self, user_id: str, now: datetime) -> int:
        """Stamp deleted_at on every live record of a user."""


class InMemoryUsageRepository:
    """In-memory repository used for tests and local fallback.

    A single lock serialises the conditional increment so it behaves like the
    database's one-statement conditional UPDATE.
    """

    def __init__(self) -> None:
        self.records: dict[tuple[str, str], FeatureUsageRecord] = {}
        self._lock = asyncio.Lock()

    def _live(self, user_id: str, feature_name: str) -> FeatureUsageRecord | None:
        record = self.records.get((user_id, feature_name))
        if record is None or record.deleted_at is not None:
            return None
        return record

    async def get_record(self, user_id: str, feature_name: str) -> FeatureUsageRecord | None:
        record = self._live(user_id, feature_name)
        return record.model_copy(deep=True) if record else None

    async def list_records(self, user_id: str) -> list[FeatureUsageRecord]:
        return [
            record.model_copy(deep=True)
            for (owner, _), record in self.records.items()
            if owner == user_id and record.deleted_at is None
        ]

    async def upsert_records(self, records: list[FeatureUsageRecord]) -> None:
        async with self._lock:
            for record in records:
                self.records[(record.user_id, record.feature_name)] = record.model_copy(deep=True)

    async def increment_if_within_limit(
        self, user_id: str, feature_name: str, by: int, now: datetime
    ) -> bool | None:
        async with self._lock:
            record = self._live(user_id, feature_name)
            if record is None:
                return None
            if record.usage_limit > 0 and record.usage_count + by > record.usage_limit:
                return False
            record.usage_count += by
            record.updated_at = now
            return True

    async def update_limits(self, user_id: str, limits: dict[str, int], now: datetime) -> int:
        updated = 0
        async with self._lock:
            for feature_name, limit in limits.items():
                record = self._live(user_id, feature_name)
                if record is None:
                    continue
                record.usage_limit = limit
                record.updated_at = now
                updated += 1
        return updated

    async def reset_due(self, now: datetime) -> int:
        reset = 0
        async with self._lock:
            for record in self.records.values():
                if record.deleted_at is not None or record.reset_date > now:
                    continue
                record.usage_count = 0
                record.last_reset_date = now
                record.reset_date = advance_period(record.reset_date, record.usage_period)
                record.updated_at = now
                reset += 1
        return reset

    async def soft_delete_for_user(self, user_id: str, now: datetime) -> int:
        deleted = 0
        async with self._lock:
            for (owner, _), record in self.records.items():
                if owner == user_id and record.deleted_at is None:
                    record.deleted_at = now
                    deleted += 1
        return deleted


class SupabaseUsageRepository:
    """Supabase-backed usage repository.

    Increment and reset are delegated to SQL functions (see
    ``backend/sql/billing_functions.sql``) so each runs as one statement.
    """

    def __init__(self, client, table: str):
        self.client = client
        self.table = table

    async def get_record(self, user_id: str, feature_name: str) -> FeatureUsageRecord | None:
        row = await fetch_one(
            self.client.table(self.table)
            .select("*")
            .eq("user_id", user_id)
            .eq("feature_name", feature_name)
            .is_("deleted_at", "null"),
            operation="usage_get",
        )
        return FeatureUsageRecord.model_validate(row) if row else None

    async def list_records(self, user_id: str) -> list[FeatureUsageRecord]:
        rows = await fetch_rows(
            self.client.table(self.table)
            .select("*")
            .eq("user_id", user_id)
            .is_("deleted_at", "null")
            .order("feature_name"),
            operation="usage_list",
        )
        return [FeatureUsageRecord.model_validate(row) for row in rows]

    async def upsert_records(self, records: list[FeatureUsageRecord]) -> None:
        if not records:
            return
        payload = [record.model_dump(mode="json") for record in records]
        await execute(
            self.client.table(self.table).upsert(payload, on_conflict="user_id,feature_name"),
            operation="usage_upsert",
        )

    async def increment_if_within_limit(
        self, user_id: str, feature_name: str, by: int, now: datetime
    ) -> bool | None:
        response = await execute(
            self.client.rpc(
                "increment_feature_usage",
                {
                    "user_uuid": user_id,
                    "feature_name_param": feature_name,
                    "increment_by": by,
                },
            ),
            operation="usage_increment",
        )
        return response.data

    async def update_limits(self, user_id: str, limits: dict[str, int], now: datetime) -> int:
        updated = 0
        for feature_name, limit in limits.items():
            rows = await fetch_rows(
                self.client.table(self.table)
                .update({"usage_limit": limit, "updated_at": isoformat(now)})
                .eq("user_id", user_id)
                .eq("feature_name", feature_name)
                .is_("deleted_at", "null"),
                operation="usage_update_limit",
            )
            updated += len(rows)
        return updated

    async def reset_due(self, now: datetime) -> int:
        response = await execute(
            self.client.rpc("reset_usage_counters", {"now_ts": now.isoformat()}),
            operation="usage_reset",
        )
        return int(response.data or 0)

    async def soft_delete_for_user(self, user_id: str, now: datetime) -> int:
        rows = await fetch_rows(
            self.client.table(self.table)
            .update({"deleted_at": isoformat(now)})
            .eq("user_id", user_id)
            .is_("deleted_at", "null"),
            operation="usage_soft_delete",
        )
        return len(rows)


class UsageLedger:
    """Per-user, per-feature counters with reset periods and limits."""

    def __init__(self, repository: UsageRepository, now_provider=utcnow) -> None:
        self.repository = repository
        self.now_provider = now_provider

    async def get_usage(self, user_id: str, feature_name: str) -> UsageSnapshot:
        """Current count, limit and reset date.

        Raises:
            UsageRecordNotFound: the feature is not tracked for this user.
        """
        record = await self.repository.get_record(user_id, feature_name)
        if record is None:
            raise UsageRecordNotFound(user_id, feature_name)
        return UsageSnapshot(
            count=record.usage_count,
            limit=record.usage_limit,
            reset_date=record.reset_date,
        )

    async def list_usage(self, user_id: str) -> list[FeatureUsageRecord]:
        return await self.repository.list_records(user_id)

    async def get_dimension_usage(self, user_id: str) -> dict[str, int]:
        """Consumption per plan limit dimension (stores, users, ...), read from live counters."""
        counts = {record.feature_name: record.usage_count for record in await self.list_usage(user_id)}
        return {
            dimension: counts.get(feature_name, 0)
            for dimension, feature_name in DIMENSION_FEATURES.items()
        }

    async def increment_usage(self, user_id: str, feature_name: str, by: int = 1) -> bool:
        """Consume ``by`` units. Returns False, leaving the counter untouched,
        when the result would exceed a positive limit."""
        if by < 1:
            raise ValueError("Usage increment must be a positive integer")

        applied = await self.repository.increment_if_within_limit(
            user_id, feature_name, by, self.now_provider()
        )
        if applied is None:
            raise UsageRecordNotFound(user_id, feature_name)
        if not applied:
            logger.info(
                "usage_increment_rejected",
                user_id=user_id,
                feature_name=feature_name,
                increment_by=by,
            )
        return applied

    async def reset_due_counters(self, now: datetime | None = None) -> int:
        """Zero counters whose reset date passed, advancing it by one period
        from the previous reset date."""
        moment = now or self.now_provider()
        reset = await self.repository.reset_due(moment)
        logger.info("usage_counters_reset", reset_count=reset, now=moment.isoformat())
        return reset

    async def initialize_for_subscription(
        self,
        user_id: str,
        plan: Plan,
        *,
        now: datetime | None = None,
        period: UsagePeriod = UsagePeriod.MONTHLY,
    ) -> list[FeatureUsageRecord]:
        """Create one zeroed counter per feature declared by the plan."""
        moment = now or self.now_provider()
        records = [
            FeatureUsageRecord(
                user_id=user_id,
                feature_name=feature,
                usage_count=0,
                usage_limit=plan.limits.get(feature) or 0,
                reset_date=advance_period(moment, period),
                usage_period=period,
                created_at=moment,
            )
            for feature in plan.features
        ]
        await self.repository.upsert_records(records)
        logger.info(
            "usage_ledger_initialized",
            user_id=user_id,
            plan_id=plan.id,
            features=len(records),
        )
        return records

    async def apply_plan_limits(
        self,
        user_id: str,
        plan: Plan,
        *,
        now: datetime | None = None,
        period: UsagePeriod = UsagePeriod.MONTHLY,
    ) -> None:
        """Point a user's counters at ``plan``'s limits after a plan switch.

        Consumption so far is kept; features new to the plan get zeroed
        counters. Counters of features the plan no longer declares are left
        as they are, since feature flags gate them.
        """
        moment = now or self.now_provider()
        limits = {feature: plan.limits.get(feature) or 0 for feature in plan.features}
        existing = {record.feature_name for record in await self.list_usage(user_id)}

        updated = await self.repository.update_limits(
            user_id,
            {feature: limit for feature, limit in limits.items() if feature in existing},
            moment,
        )
        created = [
            FeatureUsageRecord(
                user_id=user_id,
                feature_name=feature,
                usage_count=0,
                usage_limit=limit,
                reset_date=advance_period(moment, period),
                usage_period=period,
                created_at=moment,
            )
            for feature, limit in limits.items()
            if feature not in existing
        ]
        await self.repository.upsert_records(created)
        logger.info(
            "usage_ledger_limits_applied",
            user_id=user_id,
            plan_id=plan.id,
            updated=updated,
            created=len(created),
        )

    async def soft_delete_for_user(self, user_id: str, now: datetime | None = None) -> int:
        return await self.repository.soft_delete_for_user(user_id, now or self.now_provider())

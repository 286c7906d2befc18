"""Usage tracking, limit reporting and persisted usage warnings."""

import asyncio
import uuid
from datetime import datetime
from typing import Protocol

import structlog

from allnimall.config import BillingConfig
from allnimall.constants import USAGE_WARNING_THRESHOLDS
from allnimall.exceptions import UsageRecordNotFound
from allnimall.models.usage import (
    DenialCode,
    FeatureAccess,
    UsageLimit,
    UsageNotification,
    UsageSummary,
    UsageTrackResult,
    UsageWarning,
)
from allnimall.services.feature_access import FeatureAccessResolver
from allnimall.services.supabase_client import execute, fetch_rows, isoformat, utcnow
from allnimall.services.usage_ledger import UsageLedger

logger = structlog.get_logger(__name__)

USAGE_WARNING_NOTIFICATION_TYPE = "usage_warning"


def severity_for(percentage: float) -> str:
    if percentage >= USAGE_WARNING_THRESHOLDS["high"]:
        return "high"
    if percentage >= USAGE_WARNING_THRESHOLDS["medium"]:
        return "medium"
    return "low"


class WarningRepository(Protocol):
    """Storage contract for persisted usage warnings."""

    async def insert_warning(self, warning: UsageWarning) -> UsageWarning:
        """Persist a new warning."""

    async def list_unread(self, user_id: str) -> list[UsageWarning]:
        """Unread warnings for a user, newest first."""

    async def mark_read(self, user_id: str, warning_id: str, now: datetime) -> bool:
        """Flag a warning as read. Returns False when it does not belong to the user."""


class InMemoryWarningRepository:
    """In-memory repository used for tests and local fallback."""

    def __init__(self) -> None:
        self.warnings: dict[str, UsageWarning] = {}
        self._lock = asyncio.Lock()

    async def insert_warning(self, warning: UsageWarning) -> UsageWarning:
        async with self._lock:
            self.warnings[warning.id] = warning.model_copy()
        return warning

    async def list_unread(self, user_id: str) -> list[UsageWarning]:
        unread = [
            warning.model_copy()
            for warning in self.warnings.values()
            if warning.user_id == user_id and not warning.is_read
        ]
        return sorted(unread, key=lambda warning: warning.created_at, reverse=True)

    async def mark_read(self, user_id: str, warning_id: str, now: datetime) -> bool:
        async with self._lock:
            warning = self.warnings.get(warning_id)
            if warning is None or warning.user_id != user_id:
                return False
            warning.is_read = True
            warning.read_at = now
            return True


class SupabaseWarningRepository:
    """Warnings stored as ``usage_warning`` rows of the subscription notifications table."""

    def __init__(self, client, table: str):
        self.client = client
        self.table = table

    @staticmethod
    def _to_row(warning: UsageWarning) -> dict:
        return {
            "id": warning.id,
            "user_id": warning.user_id,
            "notification_type": USAGE_WARNING_NOTIFICATION_TYPE,
            "title": f"Usage warning: {warning.feature_name}",
            "message": warning.message,
            "is_read": warning.is_read,
            "read_at": isoformat(warning.read_at),
            "created_at": isoformat(warning.created_at),
            "metadata": {
                "feature_name": warning.feature_name,
                "warning_type": warning.warning_type,
                "severity": warning.severity,
            },
        }

    @staticmethod
    def _from_row(row: dict) -> UsageWarning:
        metadata = row.get("metadata") or {}
        return UsageWarning(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            feature_name=metadata.get("feature_name", ""),
            warning_type=metadata.get("warning_type", "threshold"),
            severity=metadata.get("severity", "medium"),
            message=row.get("message") or "",
            created_at=row["created_at"],
            is_read=bool(row.get("is_read")),
            read_at=row.get("read_at"),
        )

    async def insert_warning(self, warning: UsageWarning) -> UsageWarning:
        await execute(
            self.client.table(self.table).insert(self._to_row(warning)),
            operation="usage_warning_insert",
        )
        return warning

    async def list_unread(self, user_id: str) -> list[UsageWarning]:
        rows = await fetch_rows(
            self.client.table(self.table)
            .select("*")
            .eq("user_id", user_id)
            .eq("notification_type", USAGE_WARNING_NOTIFICATION_TYPE)
            .eq("is_read", False)
            .order("created_at", desc=True),
            operation="usage_warning_list",
        )
        return [self._from_row(row) for row in rows]

    async def mark_read(self, user_id: str, warning_id: str, now: datetime) -> bool:
        rows = await fetch_rows(
            self.client.table(self.table)
            .update({"is_read": True, "read_at": isoformat(now)})
            .eq("id", warning_id)
            .eq("user_id", user_id),
            operation="usage_warning_mark_read",
        )
        return bool(rows)


class UsageTrackingService:
    """Records consumption after gated actions and surfaces near-limit notices."""

    def __init__(
        self,
        resolver: FeatureAccessResolver,
        ledger: UsageLedger,
        warning_repository: WarningRepository,
        config: BillingConfig,
        now_provider=utcnow,
    ) -> None:
        self.resolver = resolver
        self.ledger = ledger
        self.warning_repository = warning_repository
        self.config = config
        self.now_provider = now_provider

    @staticmethod
    def _limit_from(feature_name: str, access: FeatureAccess) -> UsageLimit | None:
        if not access.usage_limit or access.usage_limit <= 0:
            return None
        current = access.usage_count or 0
        percentage = current / access.usage_limit
        return UsageLimit(
            feature_name=feature_name,
            current_usage=current,
            limit=access.usage_limit,
            remaining=max(0, access.usage_limit - current),
            reset_date=access.reset_date,
            usage_percentage=round(percentage * 100, 2),
            is_near_limit=False,
            is_at_limit=current >= access.usage_limit,
        )

    def _with_thresholds(self, usage_limit: UsageLimit | None) -> UsageLimit | None:
        if usage_limit is None:
            return None
        usage_limit.is_near_limit = (
            usage_limit.usage_percentage / 100 >= self.config.near_limit_threshold
        )
        return usage_limit

    @staticmethod
    def _limit_reached(feature_name: str) -> UsageNotification:
        return UsageNotification(
            type="limit_reached",
            feature_name=feature_name,
            message=f"You have reached the usage limit for {feature_name}",
            action_required=True,
            upgrade_required=True,
        )

    def _notification_for(self, usage_limit: UsageLimit | None) -> UsageNotification | None:
        if usage_limit is None:
            return None
        if usage_limit.is_at_limit:
            return self._limit_reached(usage_limit.feature_name)
        if usage_limit.is_near_limit:
            return UsageNotification(
                type="warning",
                feature_name=usage_limit.feature_name,
                message=(
                    f"You have used {usage_limit.usage_percentage:g}% of your "
                    f"{usage_limit.feature_name} limit"
                ),
                action_required=False,
                upgrade_required=False,
            )
        return None

    async def get_usage_limit(self, user_id: str, feature_name: str) -> UsageLimit | None:
        """Current usage against the plan limit; None for unlimited or unavailable features."""
        access = await self.resolver.check_access(user_id, feature_name)
        return self._with_thresholds(self._limit_from(feature_name, access))

    async def get_all_usage_limits(self, user_id: str) -> list[UsageLimit]:
        limits: list[UsageLimit] = []
        for record in await self.ledger.list_usage(user_id):
            usage_limit = await self.get_usage_limit(user_id, record.feature_name)
            if usage_limit is not None:
                limits.append(usage_limit)
        return limits

    async def track_usage(self, user_id: str, feature_name: str, by: int = 1) -> UsageTrackResult:
        """Consume ``by`` units of a feature after the action succeeded."""
        access = await self.resolver.check_access(user_id, feature_name)
        if not access.has_access:
            notification = None
            if access.denial == DenialCode.USAGE_LIMIT_EXCEEDED:
                notification = self._limit_reached(feature_name)
            return UsageTrackResult(
                success=False,
                usage_limit=self._with_thresholds(self._limit_from(feature_name, access)),
                notification=notification,
            )

        try:
            applied = await self.ledger.increment_usage(user_id, feature_name, by)
        except UsageRecordNotFound:
            # Enabled but untracked for this user: nothing to count against.
            logger.info("usage_untracked_feature", user_id=user_id, feature_name=feature_name)
            return UsageTrackResult(success=True)

        usage_limit = await self.get_usage_limit(user_id, feature_name)
        if not applied:
            return UsageTrackResult(
                success=False,
                usage_limit=usage_limit,
                notification=self._limit_reached(feature_name),
            )

        notification = self._notification_for(usage_limit)
        if notification is not None:
            await self._persist_notice(user_id, usage_limit, notification)
        return UsageTrackResult(success=True, usage_limit=usage_limit, notification=notification)

    async def _persist_notice(
        self, user_id: str, usage_limit: UsageLimit, notification: UsageNotification
    ) -> None:
        warning_type = "limit_reached" if notification.type == "limit_reached" else "threshold"
        for existing in await self.warning_repository.list_unread(user_id):
            if existing.feature_name == usage_limit.feature_name and existing.warning_type == warning_type:
                return
        await self.create_usage_warning(
            user_id,
            usage_limit.feature_name,
            notification.message,
            warning_type=warning_type,
            severity=severity_for(usage_limit.usage_percentage / 100),
        )

    async def create_usage_warning(
        self,
        user_id: str,
        feature_name: str,
        message: str,
        *,
        warning_type: str = "threshold",
        severity: str = "medium",
    ) -> UsageWarning:
        warning = await self.warning_repository.insert_warning(
            UsageWarning(
                id=str(uuid.uuid4()),
                user_id=user_id,
                feature_name=feature_name,
                warning_type=warning_type,
                message=message,
                severity=severity,
                created_at=self.now_provider(),
            )
        )
        logger.info(
            "usage_warning_created",
            user_id=user_id,
            feature_name=feature_name,
            warning_type=warning_type,
            severity=severity,
        )
        return warning

    async def get_usage_warnings(self, user_id: str) -> list[UsageWarning]:
        return await self.warning_repository.list_unread(user_id)

    async def mark_warning_as_read(self, user_id: str, warning_id: str) -> bool:
        return await self.warning_repository.mark_read(user_id, warning_id, self.now_provider())

    async def get_usage_summary(self, user_id: str) -> UsageSummary:
        limits = await self.get_all_usage_limits(user_id)
        warnings = await self.get_usage_warnings(user_id)
        return UsageSummary(
            total_features=len(limits),
            features_near_limit=sum(1 for limit in limits if limit.is_near_limit),
            features_at_limit=sum(1 for limit in limits if limit.is_at_limit),
            active_warnings=len(warnings),
            usage_limits=limits,
            warnings=warnings,
        )

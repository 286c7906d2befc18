"""Unit tests for the Supabase query helpers and repository wiring."""

from datetime import UTC, datetime
from types import SimpleNamespace

import httpx
import pytest
from postgrest.exceptions import APIError

from allnimall.exceptions import DuplicateRecordError, StorageError
from allnimall.services.supabase_client import execute, fetch_one
from allnimall.services.usage_ledger import SupabaseUsageRepository


class FakeQuery:
    """Minimal PostgREST builder double."""

    def __init__(self, data=None, error: Exception | None = None):
        self.data = data
        self.error = error
        self.limited_to = None

    def limit(self, size: int) -> "FakeQuery":
        self.limited_to = size
        return self

    async def execute(self):
        if self.error is not None:
            raise self.error
        return SimpleNamespace(data=self.data)


class FakeRpcClient:
    def __init__(self, data):
        self.data = data
        self.calls: list[tuple[str, dict]] = []

    def rpc(self, name: str, params: dict) -> FakeQuery:
        self.calls.append((name, params))
        return FakeQuery(self.data)


class TestExecute:
    async def test_api_error_becomes_storage_error(self):
        query = FakeQuery(error=APIError({"message": "boom", "code": "500"}))

        with pytest.raises(StorageError, match="usage_get failed"):
            await execute(query, operation="usage_get")

    async def test_unique_violation_becomes_duplicate_error(self):
        query = FakeQuery(error=APIError({"message": "duplicate key", "code": "23505"}))

        with pytest.raises(DuplicateRecordError, match="payment_insert rejected duplicate"):
            await execute(query, operation="payment_insert")

    async def test_transport_error_becomes_storage_error(self):
        query = FakeQuery(error=httpx.ConnectError("refused"))

        with pytest.raises(StorageError):
            await execute(query, operation="usage_get")

    async def test_fetch_one_limits_and_unwraps(self):
        query = FakeQuery(data=[{"id": "a"}])

        assert await fetch_one(query, operation="x") == {"id": "a"}
        assert query.limited_to == 1

    async def test_fetch_one_empty(self):
        assert await fetch_one(FakeQuery(data=[]), operation="x") is None


class TestSupabaseUsageRepository:
    async def test_increment_calls_sql_function(self):
        client = FakeRpcClient(data=True)
        repo = SupabaseUsageRepository(client, "feature_usage")

        applied = await repo.increment_if_within_limit(
            "user-a", "product_management", 2, datetime(2026, 3, 10, tzinfo=UTC)
        )

        assert applied is True
        assert client.calls == [
            (
                "increment_feature_usage",
                {"user_uuid": "user-a", "feature_name_param": "product_management", "increment_by": 2},
            )
        ]

    async def test_increment_missing_record_returns_none(self):
        repo = SupabaseUsageRepository(FakeRpcClient(data=None), "feature_usage")

        assert await repo.increment_if_within_limit("u", "f", 1, datetime.now(UTC)) is None

    async def test_reset_returns_row_count(self):
        client = FakeRpcClient(data=7)
        repo = SupabaseUsageRepository(client, "feature_usage")

        assert await repo.reset_due(datetime(2026, 3, 10, tzinfo=UTC)) == 7
        assert client.calls[0][0] == "reset_usage_counters"

"""Tests for worker/fetcher.py.

Tests for short-timeout table status lookups.
"""

import asyncio

import pytest

from tablekeeper.core.errors import OperationTimeoutError, ResourceNotFoundError
from tablekeeper.models import IndexDetails
from tablekeeper.store.base import TableDescription
from tablekeeper.worker.fetcher import ERROR_STATUS, FastResourceStatusFetcher


class SlowStore:
    """Store whose describes take a configurable time per table."""

    def __init__(self, delays):
        self.delays = delays
        self.in_flight = 0
        self.max_in_flight = 0

    async def describe_table(self, name):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delays.get(name, 0))
        finally:
            self.in_flight -= 1
        return TableDescription(name=name, status="ACTIVE", arn=f"arn:{name}")


class TestGetStatusFast:
    """Tests for FastResourceStatusFetcher.get_status_fast."""

    @pytest.mark.asyncio
    async def test_extracts_details(self, store):
        """Test status, ARN and indexes are extracted."""
        store.put_table(
            TableDescription(
                name="test_users",
                status="ACTIVE",
                arn="arn:users",
                global_indexes=[IndexDetails(name="email-index", status="ACTIVE")],
                local_indexes=[IndexDetails(name="by-date", status="ACTIVE", type="LSI")],
            )
        )
        fetcher = FastResourceStatusFetcher(store)

        quick = await fetcher.get_status_fast("test_users")

        assert quick.status == "ACTIVE"
        assert quick.arn == "arn:users"
        assert quick.index_count == 2
        assert [i.name for i in quick.indexes] == ["email-index", "by-date"]
        assert quick.status_check_latency >= 0

    @pytest.mark.asyncio
    async def test_timeout(self):
        """Test a slow describe raises OperationTimeoutError."""
        fetcher = FastResourceStatusFetcher(SlowStore({"slow": 1.0}), describe_timeout=0.05)

        with pytest.raises(OperationTimeoutError):
            await fetcher.get_status_fast("slow")

    @pytest.mark.asyncio
    async def test_not_found_propagates(self, store):
        """Test store errors propagate to the caller."""
        fetcher = FastResourceStatusFetcher(store)

        with pytest.raises(ResourceNotFoundError):
            await fetcher.get_status_fast("missing")

    @pytest.mark.asyncio
    async def test_to_resource_status(self, store):
        """Test conversion to a persisted resource entry."""
        store.put_table(TableDescription(name="test_users", status="ACTIVE", arn="arn:users"))
        quick = await FastResourceStatusFetcher(store).get_status_fast("test_users")

        resource = quick.to_resource_status()

        assert resource.name == "test_users"
        assert resource.arn == "arn:users"
        assert resource.created_at == quick.last_status_update


class TestBatchGetStatusesFast:
    """Tests for FastResourceStatusFetcher.batch_get_statuses_fast."""

    @pytest.mark.asyncio
    async def test_empty(self, store):
        """Test an empty batch returns nothing."""
        assert await FastResourceStatusFetcher(store).batch_get_statuses_fast([]) == {}

    @pytest.mark.asyncio
    async def test_failures_reported_as_error(self, store):
        """Test missing tables are reported, not omitted."""
        store.put_table(TableDescription(name="a", status="ACTIVE"))
        fetcher = FastResourceStatusFetcher(store)

        results = await fetcher.batch_get_statuses_fast(["a", "b"])

        assert results["a"].status == "ACTIVE"
        assert results["b"].status == ERROR_STATUS

    @pytest.mark.asyncio
    async def test_concurrency_cap(self):
        """Test no more than three describes run at once."""
        slow = SlowStore({name: 0.05 for name in "abcdefg"})
        fetcher = FastResourceStatusFetcher(slow)

        results = await fetcher.batch_get_statuses_fast(list("abcdefg"))

        assert slow.max_in_flight == 3
        assert all(r.status == "ACTIVE" for r in results.values())

    @pytest.mark.asyncio
    async def test_ceiling_reports_stragglers(self):
        """Test the batch ceiling stops waiting and marks stragglers ERROR."""
        slow = SlowStore({"fast": 0, "slow": 5.0})
        fetcher = FastResourceStatusFetcher(slow, item_timeout=10, describe_timeout=10, batch_timeout=0.2)

        loop = asyncio.get_running_loop()
        start = loop.time()
        results = await fetcher.batch_get_statuses_fast(["fast", "slow"])

        assert loop.time() - start < 2
        assert results["fast"].status == "ACTIVE"
        assert results["slow"].status == ERROR_STATUS

    @pytest.mark.asyncio
    async def test_caller_timeout_shorter_than_ceiling(self):
        """Test an explicit timeout below the ceiling wins."""
        slow = SlowStore({"slow": 5.0})
        fetcher = FastResourceStatusFetcher(slow, item_timeout=10, describe_timeout=10)

        results = await fetcher.batch_get_statuses_fast(["slow"], timeout=0.1)

        assert results["slow"].status == ERROR_STATUS

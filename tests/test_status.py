"""Tests for worker/status.py.

Tests for status file persistence and progress bookkeeping.
"""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from tablekeeper.core.errors import OperationTimeoutError, TableKeeperError
from tablekeeper.models import ExecutionResult, ResourceStatus, WorkerStatus
from tablekeeper.store.base import TableDescription
from tablekeeper.worker.fetcher import ERROR_STATUS, FastResourceStatusFetcher, QuickStatus
from tablekeeper.worker.status import STATUS_ERROR, StatusManager


@pytest.fixture
def status_path(tmp_path):
    return tmp_path / "state" / "status.json"


@pytest.fixture
def manager(status_path):
    return StatusManager(status_path)


class TestSaveAndLoad:
    """Tests for save_status and load_status."""

    def test_load_missing_returns_none(self, manager):
        """Test a missing file means no recorded run."""
        assert manager.load_status() is None

    def test_save_creates_directory(self, manager, status_path):
        """Test saving creates parent directories."""
        manager.save_status(ExecutionResult(environment="testing"))

        assert status_path.exists()
        assert json.loads(status_path.read_text())["environment"] == "testing"

    def test_round_trip(self, manager):
        """Test a saved result loads back unchanged."""
        result = ExecutionResult(
            status=WorkerStatus.RETRYING,
            environment="testing",
            retry_count=1,
            resources=[ResourceStatus(name="test_users", status="ACTIVE", index_count=2)],
            metadata={"retry_count": 1, "last_error": "boom"},
        )

        manager.save_status(result)

        assert manager.load_status() == result

    def test_terminal_save_stamps_end_time(self, manager):
        """Test terminal results get end time on save."""
        manager.save_status(ExecutionResult(status=WorkerStatus.COMPLETED, success=True))

        loaded = manager.load_status()
        assert loaded.end_time is not None

    def test_invalid_json_raises(self, manager, status_path):
        """Test a corrupt status file is reported."""
        status_path.parent.mkdir(parents=True)
        status_path.write_text("{broken")

        with pytest.raises(TableKeeperError, match="not valid JSON"):
            manager.load_status()

    @pytest.mark.parametrize("payload", ["[]", '{"status": "bogus"}', '{"start_time": 5}'])
    def test_wrong_shape_raises(self, manager, status_path, payload):
        """Test valid JSON that is not a result is reported as malformed."""
        status_path.parent.mkdir(parents=True)
        status_path.write_text(payload)

        with pytest.raises(TableKeeperError, match="malformed"):
            manager.load_status()

    def test_no_temp_files_left(self, manager, status_path):
        """Test atomic writes leave only the status file."""
        manager.save_status(ExecutionResult())
        manager.save_status(ExecutionResult())

        assert [p.name for p in status_path.parent.iterdir()] == ["status.json"]


class TestProgress:
    """Tests for progress and terminal helpers."""

    def test_update_progress_synthesizes_result(self, manager):
        """Test update_progress works without an existing file."""
        result = manager.update_progress(WorkerStatus.RUNNING, "Creating tables", {"phase": "creating"})

        assert result.status is WorkerStatus.RUNNING
        assert result.metadata["last_message"] == "Creating tables"
        assert result.metadata["phase"] == "creating"
        assert "last_update" in result.metadata

    def test_update_progress_merges_metadata(self, manager):
        """Test metadata patches are merged."""
        manager.update_progress(WorkerStatus.RUNNING, metadata={"a": 1})
        manager.update_progress(WorkerStatus.RUNNING, metadata={"b": 2})

        assert manager.load_status().metadata == {"a": 1, "b": 2}

    def test_failed_progress_sets_error(self, manager):
        """Test a failure message is kept as the error message."""
        manager.update_progress(WorkerStatus.DELETION_FAILED, "Deletion failed: boom")

        assert manager.load_status().error_message == "Deletion failed: boom"

    def test_mark_completed(self, manager):
        """Test mark_completed sets success and clears the error."""
        manager.mark_failed("boom")

        manager.mark_completed()

        loaded = manager.load_status()
        assert loaded.status is WorkerStatus.COMPLETED
        assert loaded.success is True
        assert loaded.error_message == ""
        assert manager.is_setup_completed() is True

    def test_mark_failed(self, manager):
        """Test mark_failed records the error and metadata."""
        manager.mark_failed("boom", {"permanently_failed": True})

        loaded = manager.load_status()
        assert loaded.status is WorkerStatus.FAILED
        assert loaded.success is False
        assert loaded.error_message == "boom"
        assert loaded.metadata["permanently_failed"] is True
        assert loaded.end_time is not None
        assert manager.is_setup_completed() is False

    def test_last_execution_time(self, manager):
        """Test last execution time is the start time."""
        assert manager.get_last_execution_time() is None
        result = manager.begin_run("testing")

        assert manager.get_last_execution_time() == result.start_time

    def test_reset_status(self, manager, status_path):
        """Test reset removes the file and tolerates absence."""
        manager.mark_completed()

        manager.reset_status()
        manager.reset_status()

        assert not status_path.exists()


class TestRetryCount:
    """Tests for retry count bookkeeping."""

    def test_increment(self, manager):
        """Test each increment adds exactly one."""
        assert manager.get_retry_count() == 0

        assert manager.increment_retry_count() == 1
        assert manager.increment_retry_count() == 2

        loaded = manager.load_status()
        assert loaded.status is WorkerStatus.RETRYING
        assert loaded.retry_count == 2
        assert loaded.metadata["retry_count"] == 2

    def test_begin_run_carries_retry_count(self, manager):
        """Test a new cycle keeps the counter while retrying."""
        manager.increment_retry_count()

        result = manager.begin_run("testing")

        assert result.status is WorkerStatus.RUNNING
        assert manager.get_retry_count() == 1

    def test_begin_run_resets_after_completion(self, manager):
        """Test a new cycle after a terminal state starts from zero."""
        manager.increment_retry_count()
        manager.mark_completed()

        manager.begin_run("testing")

        assert manager.get_retry_count() == 0

    def test_begin_run_replaces_resources(self, manager):
        """Test a new cycle starts with an empty resource list."""
        manager.add_resource_locally("test_users")

        result = manager.begin_run("testing", {"owner_id": "worker-a"})

        assert result.resources == []
        assert result.metadata == {"owner_id": "worker-a"}


class TestResourceStatus:
    """Tests for resource upserts."""

    @pytest.mark.asyncio
    async def test_add_without_fetcher(self, manager):
        """Test resources are recorded locally as CREATING."""
        entry = await manager.add_resource_status("test_users")

        assert entry.status == "CREATING"
        assert manager.load_status().find_resource("test_users") is not None

    def test_add_locally_is_idempotent(self, manager):
        """Test repeated local adds keep one entry."""
        manager.add_resource_locally("test_users")
        manager.add_resource_locally("test_users")

        assert len(manager.load_status().resources) == 1

    @pytest.mark.asyncio
    async def test_add_with_live_status(self, status_path, store):
        """Test live status replaces local inference."""
        store.put_table(TableDescription(name="test_users", status="ACTIVE", arn="arn:users"))
        manager = StatusManager(status_path, FastResourceStatusFetcher(store))
        manager.add_resource_locally("test_users")

        entry = await manager.add_resource_status("test_users")

        loaded = manager.load_status()
        assert entry.status == "ACTIVE"
        assert loaded.find_resource("test_users").arn == "arn:users"
        assert len(loaded.resources) == 1
        assert "last_refresh" in loaded.metadata
        assert "status_check_latency" in loaded.metadata

    @pytest.mark.asyncio
    async def test_fetch_failure_falls_back(self, status_path):
        """Test a failed fetch records STATUS_ERROR instead of raising."""
        fetcher = MagicMock()
        fetcher.get_status_fast = AsyncMock(side_effect=OperationTimeoutError("slow"))
        manager = StatusManager(status_path, fetcher)

        entry = await manager.add_resource_status("test_users")

        loaded = manager.load_status()
        assert entry.status == STATUS_ERROR
        assert loaded.find_resource("test_users").status == STATUS_ERROR
        assert loaded.metadata["status_error_test_users"] == "slow"

    def test_update_quickly(self, manager):
        """Test refresher upserts record quick refresh metadata."""
        manager.update_resource_status_quickly(
            QuickStatus(name="test_users", status="ACTIVE", index_count=2, status_check_latency=0.1)
        )

        loaded = manager.load_status()
        assert loaded.find_resource("test_users").index_count == 2
        assert loaded.metadata["quick_refresh_latency"] == 0.1
        assert "last_quick_refresh" in loaded.metadata

    @pytest.mark.asyncio
    async def test_refresh_all(self, status_path, store):
        """Test refresh updates live tables and marks failures ERROR."""
        store.put_table(TableDescription(name="test_users", status="ACTIVE", arn="arn:users"))
        manager = StatusManager(status_path, FastResourceStatusFetcher(store))
        manager.add_resource_locally("test_users")
        manager.add_resource_locally("test_role")

        result = await manager.refresh_all_resource_statuses()

        assert result.find_resource("test_users").status == "ACTIVE"
        assert result.find_resource("test_role").status == ERROR_STATUS
        assert result.metadata["refresh_method"] == "describe_table"

    @pytest.mark.asyncio
    async def test_refresh_all_requires_fetcher(self, manager):
        """Test refresh without a store is an error."""
        with pytest.raises(TableKeeperError):
            await manager.refresh_all_resource_statuses()

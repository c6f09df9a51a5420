"""
Persistence of run progress.

The status file is the single source of truth for what the worker has done.
Every mutation goes through StatusManager, which serializes writers with a
lock and replaces the file atomically so readers never see a partial write.
"""

from __future__ import annotations

import json
import os
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any

import structlog

from tablekeeper.core.errors import TableKeeperError
from tablekeeper.models import ExecutionResult, ResourceStatus, WorkerStatus, utc_now, utc_now_iso
from tablekeeper.worker.fetcher import ERROR_STATUS, FastResourceStatusFetcher, QuickStatus

logger = structlog.get_logger()

STATUS_ERROR = "STATUS_ERROR"
RETRY_COUNT_KEY = "retry_count"


class StatusManager:
    def __init__(
        self,
        status_file_path: str | Path,
        fetcher: FastResourceStatusFetcher | None = None,
    ) -> None:
        self.status_file_path = Path(status_file_path)
        self._fetcher = fetcher
        self._lock = threading.RLock()

    def save_status(self, result: ExecutionResult) -> None:
        with self._lock:
            self.status_file_path.parent.mkdir(parents=True, exist_ok=True)
            result.finalize_timing()

            payload = json.dumps(result.to_dict(), indent=2)
            temp_path = self.status_file_path.with_name(
                f"{self.status_file_path.name}.tmp.{time.time_ns()}"
            )
            temp_path.write_text(payload)
            try:
                os.replace(temp_path, self.status_file_path)
            except OSError:
                temp_path.unlink(missing_ok=True)
                raise

    def load_status(self) -> ExecutionResult | None:
        """Read the persisted result; None when no run has been recorded yet."""
        with self._lock:
            try:
                data = json.loads(self.status_file_path.read_text())
            except FileNotFoundError:
                return None
            except ValueError as exc:
                raise TableKeeperError(
                    f"status file {self.status_file_path} is not valid JSON: {exc}"
                ) from exc
            try:
                return ExecutionResult.from_dict(data)
            except (ValueError, KeyError, TypeError, AttributeError) as exc:
                raise TableKeeperError(
                    f"status file {self.status_file_path} is malformed: {exc}"
                ) from exc

    def _load_or_default(self) -> ExecutionResult:
        return self.load_status() or ExecutionResult()

    def is_setup_completed(self) -> bool:
        result = self.load_status()
        return result is not None and result.status == WorkerStatus.COMPLETED and result.success

    def get_last_execution_time(self) -> datetime | None:
        result = self.load_status()
        return result.start_time if result else None

    def begin_run(self, environment: str, metadata: dict[str, Any] | None = None) -> ExecutionResult:
        """Start a fresh result for a new cycle.

        The retry counter survives into the new result while the previous run
        is waiting for a retry; any other prior state starts from zero.
        """
        with self._lock:
            try:
                previous = self.load_status()
            except TableKeeperError as exc:
                logger.warning("previous_status_discarded", error=exc.message)
                previous = None
            retry_count = 0
            if previous is not None and previous.status == WorkerStatus.RETRYING:
                retry_count = _read_retry_count(previous)

            result = ExecutionResult(
                status=WorkerStatus.RUNNING,
                environment=environment,
                retry_count=retry_count,
                metadata=dict(metadata or {}),
            )
            if retry_count:
                result.metadata[RETRY_COUNT_KEY] = retry_count
            self.save_status(result)
            return result

    def update_progress(
        self,
        status: WorkerStatus,
        message: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> ExecutionResult:
        with self._lock:
            result = self._load_or_default()
            result.status = status
            if message:
                result.metadata["last_message"] = message
                result.metadata["last_update"] = utc_now_iso()
                if status in (WorkerStatus.FAILED, WorkerStatus.DELETION_FAILED):
                    result.error_message = message
            if metadata:
                result.metadata.update(metadata)
            self.save_status(result)
            return result

    async def add_resource_status(self, name: str) -> ResourceStatus:
        """Record a table, using a live status fetch when a fetcher is configured.

        A failed fetch is stored as STATUS_ERROR with the error kept in metadata;
        it never aborts the save.
        """
        if self._fetcher is None:
            return self.add_resource_locally(name)

        try:
            quick = await self._fetcher.get_status_fast(name)
        except Exception as exc:
            logger.error("resource_status_fetch_failed", table=name, error=str(exc))
            return self._add_resource_with_fallback(name, exc)

        with self._lock:
            result = self._load_or_default()
            entry = _upsert(result, quick)
            result.metadata["last_refresh"] = utc_now_iso()
            result.metadata["status_check_latency"] = quick.status_check_latency
            self.save_status(result)
            return entry

    def add_resource_locally(self, name: str) -> ResourceStatus:
        """Record a table as CREATING without asking the table store."""
        with self._lock:
            result = self._load_or_default()
            existing = result.find_resource(name)
            if existing is not None:
                return existing
            entry = ResourceStatus(name=name, status="CREATING", created_at=utc_now())
            result.resources.append(entry)
            self.save_status(result)
            return entry

    def _add_resource_with_fallback(self, name: str, error: Exception) -> ResourceStatus:
        with self._lock:
            result = self._load_or_default()
            entry = result.find_resource(name)
            if entry is None:
                entry = ResourceStatus(name=name, status=STATUS_ERROR, created_at=utc_now())
                result.resources.append(entry)
            else:
                entry.status = STATUS_ERROR
            result.metadata[f"status_error_{name}"] = str(error)
            self.save_status(result)
            return entry

    def update_resource_status_quickly(self, quick: QuickStatus) -> None:
        """Upsert one table from a refresher lookup."""
        with self._lock:
            result = self._load_or_default()
            _upsert(result, quick)
            result.metadata["last_quick_refresh"] = utc_now_iso()
            result.metadata["quick_refresh_latency"] = quick.status_check_latency
            self.save_status(result)

    async def refresh_all_resource_statuses(self) -> ExecutionResult | None:
        """Re-describe every tracked table; failures mark that entry ERROR."""
        if self._fetcher is None:
            raise TableKeeperError("no table store available for refresh")

        result = self.load_status()
        if result is None:
            return None

        fresh: dict[str, QuickStatus | None] = {}
        for resource in result.resources:
            try:
                fresh[resource.name] = await self._fetcher.get_status_fast(resource.name)
            except Exception as exc:
                logger.error("resource_refresh_failed", table=resource.name, error=str(exc))
                fresh[resource.name] = None

        with self._lock:
            result = self._load_or_default()
            for resource in result.resources:
                if resource.name not in fresh:
                    continue
                quick = fresh[resource.name]
                if quick is None:
                    resource.status = ERROR_STATUS
                else:
                    _apply_quick(resource, quick)
            result.metadata["last_refresh"] = utc_now_iso()
            result.metadata["refresh_method"] = "describe_table"
            self.save_status(result)
            return result

    def mark_completed(self) -> ExecutionResult:
        with self._lock:
            result = self._load_or_default()
            result.success = True
            result.status = WorkerStatus.COMPLETED
            result.error_message = ""
            _stamp_end(result)
            self.save_status(result)
            return result

    def mark_failed(self, error_message: str, metadata: dict[str, Any] | None = None) -> ExecutionResult:
        with self._lock:
            result = self._load_or_default()
            result.success = False
            result.status = WorkerStatus.FAILED
            result.error_message = error_message
            if metadata:
                result.metadata.update(metadata)
            _stamp_end(result)
            self.save_status(result)
            return result

    def increment_retry_count(self) -> int:
        """Bump the persisted retry counter and move the run to RETRYING."""
        with self._lock:
            result = self._load_or_default()
            count = _read_retry_count(result) + 1
            result.metadata[RETRY_COUNT_KEY] = count
            result.retry_count = count
            result.status = WorkerStatus.RETRYING
            self.save_status(result)
            return count

    def get_retry_count(self) -> int:
        result = self.load_status()
        return _read_retry_count(result) if result else 0

    def reset_status(self) -> None:
        """Delete the status file so the next cycle starts from scratch."""
        with self._lock:
            self.status_file_path.unlink(missing_ok=True)
        logger.info("status_reset", path=str(self.status_file_path))


def _read_retry_count(result: ExecutionResult) -> int:
    value = result.metadata.get(RETRY_COUNT_KEY, result.retry_count)
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _stamp_end(result: ExecutionResult) -> None:
    result.end_time = utc_now()
    result.duration = (result.end_time - result.start_time).total_seconds()


def _apply_quick(resource: ResourceStatus, quick: QuickStatus) -> None:
    resource.status = quick.status
    resource.arn = quick.arn
    resource.index_count = quick.index_count
    resource.indexes = list(quick.indexes)


def _upsert(result: ExecutionResult, quick: QuickStatus) -> ResourceStatus:
    entry = result.find_resource(quick.name)
    if entry is None:
        entry = quick.to_resource_status()
        result.resources.append(entry)
    else:
        _apply_quick(entry, quick)
    return entry

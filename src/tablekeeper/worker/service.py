"""
Service facade over the orchestrator.

This is the surface an HTTP layer or the CLI talks to. It only reads the
persisted status or calls orchestrator methods that already synchronize
themselves, so one instance can be shared by concurrent callers.
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from tablekeeper.config.settings import Settings, get_settings
from tablekeeper.config.worker import WorkerConfig, build_worker_config
from tablekeeper.core.errors import OperationTimeoutError, TableKeeperError
from tablekeeper.models import ExecutionResult, WorkerStatus, utc_now
from tablekeeper.store import TableStoreClient, create_table_store
from tablekeeper.worker.fetcher import FastResourceStatusFetcher
from tablekeeper.worker.lock import LockManager
from tablekeeper.worker.orchestrator import CycleOutcome, Orchestrator
from tablekeeper.worker.provisioner import ProvisionerTimings, ResourceProvisioner
from tablekeeper.worker.refresher import LightweightStatusRefresher
from tablekeeper.worker.status import RETRY_COUNT_KEY, StatusManager

logger = structlog.get_logger()

STALLED_RUN_SECONDS = 30 * 60

PHASE_LABELS = {
    "checking": "Checking existing tables",
    "creating": "Creating tables",
    "validating": "Validating tables",
    "self_healing": "Repairing invalid tables",
    "revalidating": "Re-validating repaired tables",
    "deleting": "Deleting tables",
    "waiting_for_deletion": "Waiting for tables to be deleted",
}


class InfrastructureService:
    """Read-mostly wrapper used by external callers."""

    def __init__(self, orchestrator: Orchestrator, *, poll_interval: float = 1.0) -> None:
        self.orchestrator = orchestrator
        self._poll_interval = poll_interval

    async def start(self) -> None:
        await self.orchestrator.start()

    async def stop(self) -> None:
        await self.orchestrator.stop()

    async def get_status(self) -> ExecutionResult | None:
        return self.orchestrator.get_status()

    async def is_setup_completed(self) -> bool:
        result = await self.get_status()
        return result is not None and result.status is WorkerStatus.COMPLETED and result.success

    async def get_health_status(self) -> dict[str, Any]:
        worker_running = self.orchestrator.is_running
        try:
            result = await self.get_status()
        except TableKeeperError as exc:
            return {
                "status": "error",
                "message": f"Failed to get status: {exc.message}",
                "healthy": False,
                "worker_running": worker_running,
            }

        if result is None:
            result = ExecutionResult(environment=self.orchestrator.config.environment)

        return {
            "status": result.status.value,
            "healthy": result.status is WorkerStatus.COMPLETED and result.success,
            "worker_running": worker_running,
            "resources": [resource.to_dict() for resource in result.resources],
            "retry_count": _retry_count(result),
            "environment": result.environment,
            "start_time": result.start_time.isoformat(),
            "duration": result.duration,
            "error_message": result.error_message,
        }

    async def force_setup(self) -> asyncio.Task[CycleOutcome]:
        logger.info("force_setup")
        return self.orchestrator.force_setup()

    async def wait_for_completion(self, timeout_seconds: float) -> None:
        """Poll until setup completes.

        Raises TableKeeperError if the worker stops first and
        OperationTimeoutError if ``timeout_seconds`` elapses.
        """
        logger.info("waiting_for_completion", timeout=timeout_seconds)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_seconds

        while True:
            if await self.is_setup_completed():
                logger.info("setup_completion_observed")
                return
            if self.orchestrator.is_stopped:
                raise TableKeeperError("worker stopped before completion")
            if loop.time() >= deadline:
                raise OperationTimeoutError(
                    "timeout waiting for infrastructure setup completion",
                    details={"timeout_seconds": timeout_seconds},
                )
            await asyncio.sleep(self._poll_interval)

    async def schedule_delete(self) -> None:
        logger.warning("scheduling_deletion")
        await self.orchestrator.schedule_delete()

    async def is_worker_healthy(self) -> tuple[bool, str]:
        try:
            result = await self.get_status()
        except TableKeeperError as exc:
            return False, f"status unavailable: {exc.message}"
        if result is None:
            return False, "no status recorded"

        status = result.status
        if status is WorkerStatus.COMPLETED:
            if result.success:
                return True, "infrastructure setup completed"
            return False, "setup completed without success"
        if status is WorkerStatus.RUNNING:
            elapsed = (utc_now() - result.start_time).total_seconds()
            if elapsed > STALLED_RUN_SECONDS:
                return False, f"setup running for {int(elapsed // 60)} minutes"
            return True, "setup in progress"
        if status in (WorkerStatus.DELETION_SCHEDULED, WorkerStatus.DELETING):
            return True, "deletion in progress"
        if status is WorkerStatus.FAILED:
            return False, f"setup failed: {result.error_message}"
        if status is WorkerStatus.RETRYING:
            return False, f"setup retrying (attempt {_retry_count(result)})"
        return False, f"unhealthy status: {status.value}"

    async def describe_progress(self) -> dict[str, Any]:
        """Summarize the current run for dashboards."""
        result = await self.get_status()
        if result is None:
            return {
                "phase": "not_started",
                "message": "No setup has run yet",
                "next_action": "wait for the first scheduled cycle",
                "percentage": 0,
            }

        required = len(self.orchestrator.config.required_tables) or 1
        recorded = len(result.resources)
        message = result.metadata.get("last_message", "")
        status = result.status

        if status is WorkerStatus.COMPLETED:
            return {
                "phase": "completed",
                "message": message or "Infrastructure ready",
                "next_action": "periodic health checks",
                "percentage": 100,
            }
        if status is WorkerStatus.RUNNING:
            phase = result.metadata.get("phase", "checking")
            return {
                "phase": phase,
                "message": message or PHASE_LABELS.get(phase, phase),
                "next_action": "wait for the current cycle to finish",
                "percentage": min(10 + int(80 * recorded / required), 90),
            }
        if status is WorkerStatus.RETRYING:
            return {
                "phase": "retrying",
                "message": message,
                "next_action": f"retry on the next scheduled tick after {result.metadata.get('next_retry_at')}",
                "percentage": min(int(80 * recorded / required), 80),
                "retry_count": _retry_count(result),
            }
        if status is WorkerStatus.FAILED:
            next_action = (
                "force setup to retry"
                if result.metadata.get("permanently_failed")
                else "retry on the next scheduled cycle"
            )
            return {
                "phase": "failed",
                "message": result.error_message or message,
                "next_action": next_action,
                "percentage": 0,
            }
        if status is WorkerStatus.DELETED:
            return {
                "phase": "deleted",
                "message": message,
                "next_action": "none",
                "percentage": 100,
            }
        return {
            "phase": status.value,
            "message": message,
            "next_action": "wait for the deletion cycle" if status is not WorkerStatus.IDLE else "start the worker",
            "percentage": 0,
        }

    async def auto_restart_if_needed(self) -> dict[str, Any]:
        healthy, reason = await self.is_worker_healthy()
        if healthy:
            return {"action": "not_needed", "reason": reason}
        logger.warning("auto_restart_triggered", reason=reason)
        await self.force_setup()
        return {"action": "restarted", "reason": reason}


def _retry_count(result: ExecutionResult) -> int:
    value = result.metadata.get(RETRY_COUNT_KEY, result.retry_count)
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def create_service(
    settings: Settings | None = None,
    *,
    store: TableStoreClient | None = None,
    config: WorkerConfig | None = None,
    timings: ProvisionerTimings | None = None,
    owner_id: str | None = None,
) -> InfrastructureService:
    """Wire the worker components for one process."""
    settings = settings or get_settings()
    config = config or build_worker_config(settings)
    store = store or create_table_store(settings)

    fetcher = FastResourceStatusFetcher(store)
    status_manager = StatusManager(config.status_file_path, fetcher)
    lock_manager = LockManager(config.lock_file_path, config.lock_timeout, config.environment)
    provisioner = ResourceProvisioner(
        store,
        settings,
        skip_validation=config.skip_validation,
        timings=timings,
    )
    refresher = LightweightStatusRefresher(status_manager, fetcher)
    orchestrator = Orchestrator(
        config,
        provisioner,
        lock_manager,
        status_manager,
        refresher=refresher,
        owner_id=owner_id,
    )
    return InfrastructureService(orchestrator)

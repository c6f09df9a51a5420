"""
Infrastructure worker state machine.

The orchestrator owns the background tasks that drive provisioning. A cycle
is one pass of setup-or-delete logic: it takes the file lock, hands the work
to the ResourceProvisioner, and releases the lock no matter how the pass
ended. Failures are retried at cycle level by persisting a retry counter and
letting the next scheduled tick run again.

Modes:
- run-once: a single cycle, then the worker stops itself
- scheduled: a cycle on every tick of the environment's cron schedule
- monitoring: once setup has completed, periodic health checks only
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Coroutine

import structlog
from croniter import croniter
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from tablekeeper.config.worker import WorkerConfig, generate_owner_id
from tablekeeper.core.errors import LockError, OperationTimeoutError, TableKeeperError
from tablekeeper.models import ExecutionResult, LockRecord, WorkerStatus, utc_now, utc_now_iso
from tablekeeper.worker.lock import LockManager
from tablekeeper.worker.provisioner import ResourceProvisioner
from tablekeeper.worker.refresher import LightweightStatusRefresher
from tablekeeper.worker.status import StatusManager

logger = structlog.get_logger()

MAX_RETRY_DELAY = 3600.0
CYCLE_TIMEOUT = 15 * 60.0
HEALTH_CHECK_TIMEOUT = 30.0
LOCK_ACQUIRE_ATTEMPTS = 3


class OrchestratorState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class WorkerMode(str, Enum):
    RUN_ONCE = "run_once"
    SCHEDULED = "scheduled"
    MONITORING = "monitoring"


class CycleOutcome(str, Enum):
    COMPLETED = "completed"
    ALREADY_COMPLETED = "already_completed"
    FAILED = "failed"
    RETRYING = "retrying"
    LOCKED = "locked"
    SKIPPED = "skipped"
    DELETED = "deleted"
    DELETION_FAILED = "deletion_failed"


class Orchestrator:
    """Drives setup and deletion cycles for one worker process."""

    def __init__(
        self,
        config: WorkerConfig,
        provisioner: ResourceProvisioner,
        lock_manager: LockManager,
        status_manager: StatusManager,
        *,
        refresher: LightweightStatusRefresher | None = None,
        owner_id: str | None = None,
        cycle_timeout: float = CYCLE_TIMEOUT,
        health_check_timeout: float = HEALTH_CHECK_TIMEOUT,
    ) -> None:
        self.config = config
        self.owner_id = owner_id or generate_owner_id()
        self.status_manager = status_manager
        self._provisioner = provisioner
        self._lock_manager = lock_manager
        self._refresher = refresher
        self._cycle_timeout = cycle_timeout
        self._health_check_timeout = health_check_timeout

        self._state = OrchestratorState.IDLE
        self._mode: WorkerMode | None = None
        self._lock = asyncio.Lock()
        self._cycle_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._tasks: set[asyncio.Task[Any]] = set()

        self.last_outcome: CycleOutcome | None = None
        self.last_error: Exception | None = None

    @property
    def state(self) -> OrchestratorState:
        return self._state

    @property
    def mode(self) -> WorkerMode | None:
        return self._mode

    @property
    def is_running(self) -> bool:
        return self._state is OrchestratorState.RUNNING

    @property
    def is_stopped(self) -> bool:
        return self._state is OrchestratorState.STOPPED

    async def wait_stopped(self) -> None:
        await self._stop_event.wait()

    async def start(self) -> None:
        """Start the worker in the mode its configuration and prior state call for."""
        async with self._lock:
            if self._state in (OrchestratorState.RUNNING, OrchestratorState.STOPPING):
                raise TableKeeperError("worker is already running")

            logger.info(
                "worker_starting",
                owner_id=self.owner_id,
                schedule=self.config.schedule,
                run_once=self.config.run_once,
            )
            self._stop_event = asyncio.Event()

            completed = False
            try:
                completed = self.status_manager.is_setup_completed()
            except TableKeeperError as exc:
                logger.error("setup_status_check_failed", error=exc.message)

            self._state = OrchestratorState.RUNNING
            if self._refresher is not None:
                self._refresher.start()

            if completed and not self.config.force_recreate:
                logger.info("setup_already_completed_monitoring")
                self._mode = WorkerMode.MONITORING
                self._spawn(self._scheduler_loop(), "worker-scheduler")
                return

            if self.config.run_once:
                logger.info("run_once_mode")
                self._mode = WorkerMode.RUN_ONCE
                self._spawn(self._run_once(), "worker-run-once")
                return

            self._mode = WorkerMode.SCHEDULED
            self._spawn(self._scheduler_loop(), "worker-scheduler")
            logger.info("worker_started", schedule=self.config.schedule)

            if self.config.environment != "development":
                logger.info("immediate_setup_attempt")
                self._spawn(self.run_cycle(), "worker-immediate-cycle")

    async def stop(self) -> None:
        """Cancel in-flight work and stop the scheduler. Safe to call more than once."""
        async with self._lock:
            if self._state is not OrchestratorState.RUNNING:
                return
            self._state = OrchestratorState.STOPPING
            logger.info("worker_stopping")

            current = asyncio.current_task()
            tasks = [task for task in self._tasks if task is not current]
            for task in tasks:
                task.cancel()

        await asyncio.gather(*tasks, return_exceptions=True)
        if self._refresher is not None:
            await self._refresher.stop()

        self._state = OrchestratorState.STOPPED
        self._stop_event.set()
        logger.info("worker_stopped")

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_once(self) -> None:
        try:
            await self.run_cycle()
        finally:
            await self.stop()

    async def _scheduler_loop(self) -> None:
        while not self._stop_event.is_set():
            expression = (
                self.config.monitoring_schedule
                if self._mode is WorkerMode.MONITORING
                else self.config.schedule
            )
            now = utc_now()
            next_run = croniter(expression, now).get_next(datetime)
            delay = (next_run - now).total_seconds()
            if await self._sleep_or_stop(delay):
                break

            if self._mode is WorkerMode.MONITORING:
                await self._monitoring_tick()
            else:
                await self.run_cycle()

    async def _sleep_or_stop(self, delay: float) -> bool:
        """Wait ``delay`` seconds; True if the worker was stopped meanwhile."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), max(delay, 0.0))
        except asyncio.TimeoutError:
            return False
        return True

    async def _monitoring_tick(self) -> None:
        if await self._deletion_pending():
            await self.run_cycle()
            return
        await self.health_check()

    async def run_cycle(self, *, forced: bool = False) -> CycleOutcome:
        """Run one cycle, turning any unexpected exception into a Failed result."""
        async with self._cycle_lock:
            try:
                outcome = await self.execute_cycle(forced=forced)
            except Exception as exc:
                logger.exception("cycle_crashed", error=str(exc))
                self.last_error = exc
                try:
                    self.status_manager.mark_failed(f"infrastructure setup crashed: {exc}")
                except Exception as save_exc:
                    logger.error("status_save_failed", error=str(save_exc))
                outcome = CycleOutcome.FAILED

        self.last_outcome = outcome
        if self._mode is WorkerMode.SCHEDULED and outcome in (
            CycleOutcome.COMPLETED,
            CycleOutcome.ALREADY_COMPLETED,
        ):
            logger.info("switching_to_monitoring_mode")
            self._mode = WorkerMode.MONITORING
        if outcome is CycleOutcome.DELETED and self._mode is not WorkerMode.RUN_ONCE:
            await self.stop()
        return outcome

    async def execute_cycle(self, *, forced: bool = False) -> CycleOutcome:
        if not forced and self._stop_event.is_set():
            logger.info("worker_stopping_skip_cycle")
            return CycleOutcome.SKIPPED

        if await self._deletion_pending():
            logger.info("deletion_cycle_triggered")
            return await self._execute_deletion()

        logger.info("setup_cycle_triggered", forced=forced)
        if not forced and not self.config.force_recreate:
            skip = self._completed_or_abandoned()
            if skip is not None:
                return skip

        try:
            record = await self._acquire_lock()
        except LockError as exc:
            logger.warning("lock_acquisition_failed", error=exc.message)
            self.last_error = exc
            return CycleOutcome.LOCKED

        try:
            logger.info("lock_acquired_starting_setup", lock_id=record.id)
            try:
                await self._execute_setup()
            except TableKeeperError as exc:
                logger.error("infrastructure_setup_failed", error=exc.message)
                self.last_error = exc
                if self.config.run_once:
                    self.status_manager.mark_failed(exc.message)
                    return CycleOutcome.FAILED
                status = self.handle_setup_failure(exc)
                if status is WorkerStatus.RETRYING:
                    return CycleOutcome.RETRYING
                return CycleOutcome.FAILED
        finally:
            self._release_lock(record)

        logger.info("infrastructure_setup_succeeded")
        if self._refresher is not None:
            self._refresher.request_refresh_all()
        return CycleOutcome.COMPLETED

    def _completed_or_abandoned(self) -> CycleOutcome | None:
        try:
            result = self.status_manager.load_status()
        except TableKeeperError as exc:
            logger.error("completion_check_failed", error=exc.message)
            return None
        if result is None:
            logger.debug("status_file_missing_proceeding")
            return None
        if result.status is WorkerStatus.COMPLETED and result.success:
            logger.info("setup_already_completed_skipping")
            return CycleOutcome.ALREADY_COMPLETED
        if result.status is WorkerStatus.FAILED and result.metadata.get("permanently_failed"):
            logger.warning("setup_permanently_failed_skipping", error=result.error_message)
            return CycleOutcome.SKIPPED
        return None

    async def _execute_setup(self) -> None:
        self.status_manager.begin_run(
            self.config.environment,
            {"owner_id": self.owner_id, "schedule": self.config.schedule},
        )

        if self.config.dry_run:
            logger.info("dry_run_cycle")
            self.status_manager.update_progress(
                WorkerStatus.RUNNING, "Dry run, no changes made", {"dry_run": True}
            )
            self.status_manager.mark_completed()
            return

        try:
            await asyncio.wait_for(
                self._provisioner.execute(self.status_manager), self._cycle_timeout
            )
        except asyncio.TimeoutError as exc:
            message = f"infrastructure setup exceeded {self._cycle_timeout}s"
            self.status_manager.mark_failed(message)
            raise OperationTimeoutError(message) from exc

    def handle_setup_failure(self, error: TableKeeperError) -> WorkerStatus:
        """Record a cycle failure as Retrying, or Failed once the budget is spent."""
        retry_count = self.status_manager.get_retry_count()
        if retry_count >= self.config.max_retries:
            logger.error(
                "max_retries_exceeded", max_retries=self.config.max_retries, error=error.message
            )
            self.status_manager.mark_failed(
                f"Max retries exceeded: {error.message}", {"permanently_failed": True}
            )
            return WorkerStatus.FAILED

        attempt = self.status_manager.increment_retry_count()
        delay = self.calculate_retry_delay(retry_count)
        logger.warning(
            "setup_retry_scheduled",
            attempt=attempt,
            max_retries=self.config.max_retries,
            delay=delay,
            error=error.message,
        )
        self.status_manager.update_progress(
            WorkerStatus.RETRYING,
            f"Retrying after failure: {error.message}",
            {
                "next_retry_at": (utc_now() + timedelta(seconds=delay)).isoformat(),
                "retry_delay_seconds": delay,
                "last_error": error.message,
            },
        )
        return WorkerStatus.RETRYING

    def calculate_retry_delay(self, retry_count: int) -> float:
        """Exponential backoff in seconds, capped at one hour."""
        try:
            delay = self.config.retry_delay * self.config.backoff_multiplier**retry_count
        except OverflowError:
            return MAX_RETRY_DELAY
        return min(delay, MAX_RETRY_DELAY)

    async def _acquire_lock(self) -> LockRecord:
        """Take the cycle lock, waiting briefly for a holder that is finishing up."""
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(LockError),
            stop=stop_after_attempt(LOCK_ACQUIRE_ATTEMPTS),
            wait=wait_fixed(self.config.lock_retry_interval),
            reraise=True,
        ):
            with attempt:
                number = attempt.retry_state.attempt_number
                if number > 1:
                    logger.info("lock_acquire_retry", attempt=number)
                return self._lock_manager.acquire_lock(self.owner_id)
        raise LockError("lock acquisition gave up")

    async def _deletion_pending(self) -> bool:
        async with self._lock:
            return self.config.deletion_scheduled and self.config.deletion_requested

    async def _execute_deletion(self) -> CycleOutcome:
        logger.warning("infrastructure_deletion_starting")
        try:
            record = await self._acquire_lock()
        except LockError as exc:
            logger.warning("lock_acquisition_failed", error=exc.message, purpose="deletion")
            self.last_error = exc
            return CycleOutcome.LOCKED

        try:
            self.status_manager.update_progress(
                WorkerStatus.DELETING,
                "Deleting infrastructure",
                {"deletion_started_at": utc_now_iso()},
            )
            error = await self._run_deletion()
        finally:
            self._release_lock(record)

        if error is not None:
            logger.error("infrastructure_deletion_failed", error=error.message)
            self.last_error = error
            self.status_manager.update_progress(
                WorkerStatus.DELETION_FAILED,
                f"Deletion failed: {error.message}",
                {"deletion_failed_at": utc_now_iso(), "error": error.message},
            )
            return CycleOutcome.DELETION_FAILED

        self.status_manager.update_progress(
            WorkerStatus.DELETED,
            "Infrastructure successfully deleted",
            {"deletion_completed_at": utc_now_iso()},
        )
        async with self._lock:
            self.config.deletion_scheduled = False
            self.config.deletion_requested = False
        logger.warning("infrastructure_deletion_finished")
        return CycleOutcome.DELETED

    async def _run_deletion(self) -> TableKeeperError | None:
        if self.config.dry_run:
            logger.info("dry_run_deletion")
            self.status_manager.update_progress(
                WorkerStatus.DELETING, "Dry run, nothing deleted", {"dry_run": True}
            )
            return None
        try:
            await asyncio.wait_for(
                self._provisioner.execute_delete(self.status_manager), self._cycle_timeout
            )
        except asyncio.TimeoutError:
            return OperationTimeoutError(f"infrastructure deletion exceeded {self._cycle_timeout}s")
        except TableKeeperError as exc:
            return exc
        return None

    def _release_lock(self, record: LockRecord) -> None:
        try:
            self._lock_manager.release_lock(record)
        except OSError as exc:
            logger.error("lock_release_failed", lock_id=record.id, error=str(exc))

    async def health_check(self) -> bool:
        """Validate live infrastructure; a failure drops back to scheduled setup."""
        if self.config.dry_run:
            logger.debug("dry_run_health_check_skipped")
            return True

        logger.debug("health_check_started")
        descriptors = self._provisioner.build_descriptors()
        error: TableKeeperError | None = None
        try:
            await asyncio.wait_for(
                self._provisioner.validate_infrastructure(descriptors), self._health_check_timeout
            )
        except asyncio.TimeoutError:
            error = OperationTimeoutError(
                f"health check exceeded {self._health_check_timeout}s"
            )
        except TableKeeperError as exc:
            error = exc

        if error is None:
            logger.debug("health_check_passed")
            return True

        logger.error("health_check_failed", error=error.message)
        self.status_manager.update_progress(
            WorkerStatus.FAILED,
            f"Health check failed: {error.message}",
            {"health_check_failed_at": utc_now_iso()},
        )
        if self._mode is WorkerMode.MONITORING:
            logger.info("resuming_scheduled_setup")
            self._mode = WorkerMode.SCHEDULED
        return False

    async def schedule_delete(self) -> None:
        async with self._lock:
            if self.config.deletion_scheduled:
                raise TableKeeperError("deletion already scheduled")
            self.config.deletion_requested = True
            self.config.deletion_scheduled = True
            self.status_manager.update_progress(
                WorkerStatus.DELETION_SCHEDULED,
                "Infrastructure deletion scheduled",
                {"scheduled_at": utc_now_iso(), "deletion_requested": True},
            )
        logger.warning("infrastructure_deletion_scheduled")

    def force_setup(self) -> asyncio.Task[CycleOutcome]:
        """Discard the recorded status and run a cycle in the background."""
        logger.info("force_setup_requested")
        self.status_manager.reset_status()
        return self._spawn(self.run_cycle(forced=True), "worker-forced-cycle")

    def get_status(self) -> ExecutionResult | None:
        return self.status_manager.load_status()

from __future__ import annotations

import asyncio
import time

import structlog

from tablekeeper.worker.fetcher import ERROR_STATUS, FastResourceStatusFetcher
from tablekeeper.worker.status import StatusManager

logger = structlog.get_logger()

REFRESH_ALL = "__ALL_TABLES__"


class LightweightStatusRefresher:
    """Best-effort background reconciliation of tracked table statuses.

    A periodic scheduler enqueues "refresh all" requests and a single worker
    drains the queue. Requests never block the caller: when the queue is full
    the request is dropped.
    """

    def __init__(
        self,
        status_manager: StatusManager,
        fetcher: FastResourceStatusFetcher,
        *,
        refresh_interval: float = 300.0,
        max_refresh_time: float = 10.0,
        per_table_timeout: float = 3.0,
        queue_size: int = 100,
        stop_timeout: float = 5.0,
    ) -> None:
        self._status_manager = status_manager
        self._fetcher = fetcher
        self._refresh_interval = refresh_interval
        self._max_refresh_time = max_refresh_time
        self._per_table_timeout = per_table_timeout
        self._stop_timeout = stop_timeout
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=queue_size)
        self._stop_event = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            logger.warning("status_refresher_already_running")
            return
        self._running = True
        self._stop_event = asyncio.Event()
        self._tasks = [
            asyncio.create_task(self._refresh_worker(), name="status-refresh-worker"),
            asyncio.create_task(self._periodic_scheduler(), name="status-refresh-scheduler"),
        ]
        logger.info("status_refresher_started", interval=self._refresh_interval)

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self._stop_event.set()

        _, pending = await asyncio.wait(self._tasks, timeout=self._stop_timeout)
        if pending:
            logger.warning("status_refresher_forced_shutdown", pending=len(pending))
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        else:
            logger.info("status_refresher_stopped")
        self._tasks = []

    def request_refresh(self, table_name: str) -> bool:
        """Queue a refresh without waiting. Returns False if the request was dropped."""
        try:
            self._queue.put_nowait(table_name)
        except asyncio.QueueFull:
            logger.debug("refresh_queue_full", table=table_name)
            return False
        return True

    def request_refresh_all(self) -> bool:
        return self.request_refresh(REFRESH_ALL)

    def pending_requests(self) -> int:
        return self._queue.qsize()

    async def _periodic_scheduler(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), self._refresh_interval)
            except asyncio.TimeoutError:
                logger.debug("periodic_refresh_triggered")
                self.request_refresh_all()

    async def _refresh_worker(self) -> None:
        stop_waiter = asyncio.create_task(self._stop_event.wait())
        try:
            while not self._stop_event.is_set():
                getter = asyncio.create_task(self._queue.get())
                done, _ = await asyncio.wait(
                    {getter, stop_waiter}, return_when=asyncio.FIRST_COMPLETED
                )
                if getter not in done:
                    getter.cancel()
                    await asyncio.gather(getter, return_exceptions=True)
                    break
                await self.process_request(getter.result())
        finally:
            stop_waiter.cancel()

    async def process_request(self, table_name: str) -> None:
        """Handle one queued request within the refresh ceiling."""
        start = time.monotonic()
        try:
            if table_name == REFRESH_ALL:
                await asyncio.wait_for(self._refresh_all(), self._max_refresh_time)
            else:
                await asyncio.wait_for(self._refresh_one(table_name), self._max_refresh_time)
        except asyncio.TimeoutError:
            logger.warning("status_refresh_timeout", table=table_name, limit=self._max_refresh_time)

        duration = time.monotonic() - start
        if duration > self._max_refresh_time / 2:
            logger.warning(
                "status_refresh_slow",
                table=table_name,
                duration=duration,
                limit=self._max_refresh_time,
            )
        else:
            logger.debug("status_refresh_completed", table=table_name, duration=duration)

    async def _refresh_one(self, table_name: str) -> None:
        try:
            quick = await self._fetcher.get_status_fast(table_name, timeout=self._per_table_timeout)
        except Exception as exc:
            logger.debug("status_refresh_failed", table=table_name, error=str(exc))
            return
        try:
            self._status_manager.update_resource_status_quickly(quick)
        except Exception as exc:
            logger.debug("status_update_failed", table=table_name, error=str(exc))

    async def _refresh_all(self) -> None:
        try:
            result = self._status_manager.load_status()
        except Exception as exc:
            logger.debug("status_load_failed", error=str(exc))
            return
        if result is None or not result.resources:
            return

        statuses = await self._fetcher.batch_get_statuses_fast([r.name for r in result.resources])
        for name, quick in statuses.items():
            if quick.status == ERROR_STATUS:
                logger.debug("status_refresh_failed", table=name)
                continue
            try:
                self._status_manager.update_resource_status_quickly(quick)
            except Exception as exc:
                logger.debug("status_update_failed", table=name, error=str(exc))

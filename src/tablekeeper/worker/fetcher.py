from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime

import structlog

from tablekeeper.core.errors import OperationTimeoutError
from tablekeeper.models import IndexDetails, ResourceStatus, utc_now
from tablekeeper.store.base import TableStoreClient

logger = structlog.get_logger()

ERROR_STATUS = "ERROR"


@dataclass(slots=True)
class QuickStatus:
    name: str
    status: str
    arn: str = ""
    index_count: int = 0
    indexes: list[IndexDetails] = field(default_factory=list)
    last_status_update: datetime = field(default_factory=utc_now)
    status_check_latency: float = 0.0

    def to_resource_status(self, created_at: datetime | None = None) -> ResourceStatus:
        return ResourceStatus(
            name=self.name,
            status=self.status,
            arn=self.arn,
            index_count=self.index_count,
            indexes=list(self.indexes),
            created_at=created_at or self.last_status_update,
        )


class FastResourceStatusFetcher:
    """Short-timeout status lookups that never hold up the caller for long."""

    def __init__(
        self,
        store: TableStoreClient,
        *,
        describe_timeout: float = 2.0,
        item_timeout: float = 1.5,
        batch_timeout: float = 5.0,
        max_concurrency: int = 3,
    ) -> None:
        self._store = store
        self._describe_timeout = describe_timeout
        self._item_timeout = item_timeout
        self._batch_timeout = batch_timeout
        self._max_concurrency = max_concurrency

    async def get_status_fast(self, name: str, timeout: float | None = None) -> QuickStatus:
        """Describe one table within the describe budget."""
        budget = self._describe_timeout if timeout is None else min(timeout, self._describe_timeout)
        start = time.monotonic()
        try:
            description = await asyncio.wait_for(self._store.describe_table(name), budget)
        except asyncio.TimeoutError as exc:
            raise OperationTimeoutError(
                f"status check for {name} exceeded {budget}s", details={"table": name}
            ) from exc
        latency = time.monotonic() - start

        quick = QuickStatus(
            name=name,
            status=description.status,
            arn=description.arn,
            index_count=len(description.indexes),
            indexes=description.indexes,
            status_check_latency=latency,
        )
        logger.debug("fast_status_checked", table=name, status=quick.status, latency=latency)
        return quick

    async def batch_get_statuses_fast(
        self, names: list[str], timeout: float | None = None
    ) -> dict[str, QuickStatus]:
        """Fetch many statuses concurrently; stragglers are reported as ERROR.

        The whole call returns after ``batch_timeout`` seconds (or ``timeout``
        if that is sooner) even if some describes are still outstanding.
        """
        if not names:
            return {}

        semaphore = asyncio.Semaphore(self._max_concurrency)
        results: dict[str, QuickStatus] = {}

        async def fetch(name: str) -> None:
            async with semaphore:
                try:
                    results[name] = await self.get_status_fast(name, timeout=self._item_timeout)
                except Exception as exc:
                    logger.debug("fast_status_failed", table=name, error=str(exc))
                    results[name] = QuickStatus(name=name, status=ERROR_STATUS)

        ceiling = self._batch_timeout if timeout is None else min(timeout, self._batch_timeout)
        tasks = [asyncio.create_task(fetch(name)) for name in names]
        _, pending = await asyncio.wait(tasks, timeout=ceiling)
        if pending:
            logger.warning("batch_status_timeout", pending=len(pending), tables=len(names))
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        else:
            logger.debug("batch_status_completed", tables=len(names))

        for name in names:
            if name not in results:
                results[name] = QuickStatus(name=name, status=ERROR_STATUS)
        return results

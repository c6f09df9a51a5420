"""
Idempotent creation and deletion of the managed tables.

Tables are handled strictly one at a time so the table store never sees a
burst of control-plane calls. Each create or delete has its own small retry
budget; that budget is independent of the orchestrator's cycle-level retry
counter.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_incrementing

from tablekeeper.config.settings import Settings
from tablekeeper.core.errors import (
    OperationTimeoutError,
    ProvisioningError,
    ResourceNotFoundError,
    TableKeeperError,
    ValidationError,
)
from tablekeeper.models import ResourceDescriptor, WorkerStatus, utc_now_iso
from tablekeeper.store.base import (
    ACTIVE,
    TableDescription,
    TableSpec,
    TableStoreClient,
    build_table_spec,
    get_table_schema,
    is_not_found_error,
)
from tablekeeper.worker.status import StatusManager

logger = structlog.get_logger()

PROVISIONED_ENVIRONMENTS = frozenset({"prod", "production"})


@dataclass
class ProvisionerTimings:
    """Retry and polling budgets; tests shrink these."""

    attempts: int = 3
    retry_delay: float = 5.0
    active_poll_interval: float = 15.0
    active_timeout: float = 600.0
    heal_active_timeout: float = 300.0
    heal_poll_interval: float = 10.0
    delete_poll_interval: float = 10.0
    delete_timeout: float = 600.0


class ResourceProvisioner:
    def __init__(
        self,
        store: TableStoreClient,
        settings: Settings,
        *,
        skip_validation: bool = False,
        timings: ProvisionerTimings | None = None,
    ) -> None:
        self._store = store
        self._settings = settings
        self._skip_validation = skip_validation
        self._timings = timings or ProvisionerTimings()

    def build_descriptors(self) -> list[ResourceDescriptor]:
        settings = self._settings
        billing_mode = (
            "PROVISIONED" if settings.environment in PROVISIONED_ENVIRONMENTS else "PAY_PER_REQUEST"
        )
        descriptors = []
        for base_name in settings.required_tables:
            schema = get_table_schema(base_name)
            descriptors.append(
                ResourceDescriptor(
                    name=f"{settings.table_prefix}_{base_name}",
                    base_name=base_name,
                    environment=settings.environment,
                    billing_mode=billing_mode,
                    tags={
                        "Environment": settings.environment,
                        "Application": settings.app_name,
                        "TableType": base_name,
                        "CreatedBy": "tablekeeper",
                        "Version": settings.app_version,
                        "Service": settings.app_name,
                    },
                    index_names=tuple(
                        index["name"] for index in schema.get("global_secondary_indexes") or []
                    ),
                )
            )
        return descriptors

    async def execute(self, status_manager: StatusManager) -> None:
        """Bring every required table into existence and validate it."""
        logger.info("infrastructure_setup_started")
        status_manager.update_progress(
            WorkerStatus.RUNNING, "Starting infrastructure setup", {"phase": "checking"}
        )

        descriptors = self.build_descriptors()
        specs = [build_table_spec(descriptor) for descriptor in descriptors]

        all_exist = True
        for descriptor in descriptors:
            try:
                exists = await self.table_exists(descriptor.name)
            except Exception as exc:
                logger.error("table_existence_check_failed", table=descriptor.name, error=str(exc))
                all_exist = False
                break
            if not exists:
                all_exist = False
                continue
            await status_manager.add_resource_status(descriptor.name)

        if all_exist:
            logger.info("all_tables_exist", tables=[d.name for d in descriptors])
            await self._validate_existing(descriptors, specs, status_manager)
            status_manager.mark_completed()
            return

        status_manager.update_progress(
            WorkerStatus.RUNNING, "Creating tables", {"phase": "creating"}
        )
        for spec in specs:
            try:
                await self.create_with_retry(spec)
            except ProvisioningError as exc:
                logger.error("table_create_failed", table=spec.name, error=exc.message)
                status_manager.mark_failed(f"Failed to create table {spec.name}: {exc.message}")
                raise
            await status_manager.add_resource_status(spec.name)
            logger.info("table_created", table=spec.name)

        if not self._skip_validation:
            status_manager.update_progress(
                WorkerStatus.RUNNING, "Validating tables", {"phase": "validating"}
            )
            try:
                await self.validate_infrastructure(descriptors)
            except TableKeeperError as exc:
                status_manager.mark_failed(f"Infrastructure validation failed: {exc.message}")
                raise

        logger.info("infrastructure_setup_completed")
        status_manager.mark_completed()

    async def _validate_existing(
        self,
        descriptors: list[ResourceDescriptor],
        specs: list[TableSpec],
        status_manager: StatusManager,
    ) -> None:
        if self._skip_validation:
            return
        try:
            await self.validate_infrastructure(descriptors)
            logger.info("existing_infrastructure_valid")
            return
        except TableKeeperError as exc:
            logger.warning("existing_infrastructure_invalid", error=exc.message)
            validation_error = exc

        try:
            await self.self_heal(descriptors, specs, status_manager, validation_error)
        except TableKeeperError as exc:
            status_manager.mark_failed(
                f"Infrastructure validation failed and could not be fixed: {exc.message}"
            )
            raise

        status_manager.update_progress(
            WorkerStatus.RUNNING, "Re-validating tables", {"phase": "revalidating"}
        )
        try:
            await self.validate_infrastructure(descriptors)
        except TableKeeperError as exc:
            status_manager.mark_failed(
                f"Infrastructure validation failed after fix attempt: {exc.message}"
            )
            raise
        logger.info("self_heal_succeeded")

    async def self_heal(
        self,
        descriptors: list[ResourceDescriptor],
        specs: list[TableSpec],
        status_manager: StatusManager,
        validation_error: TableKeeperError,
    ) -> None:
        """Delete and recreate every table that fails validation. Runs once per cycle."""
        status_manager.update_progress(
            WorkerStatus.RUNNING,
            "Fixing infrastructure validation issues",
            {
                "phase": "self_healing",
                "validation_error": validation_error.message,
                "fix_started_at": utc_now_iso(),
            },
        )
        for descriptor, spec in zip(descriptors, specs):
            try:
                await self.validate_table(descriptor)
                continue
            except TableKeeperError as exc:
                logger.warning("recreating_invalid_table", table=descriptor.name, error=exc.message)

            await self.delete_with_retry(descriptor.name)
            await self.wait_for_absent([descriptor.name])
            await self.create_with_retry(spec)
            await status_manager.add_resource_status(descriptor.name)
            logger.info("table_recreated", table=descriptor.name)

    async def table_exists(self, name: str) -> bool:
        try:
            await self._store.describe_table(name)
        except ResourceNotFoundError:
            return False
        except Exception as exc:
            if is_not_found_error(exc):
                return False
            raise
        return True

    async def _describe(self, name: str) -> TableDescription:
        try:
            return await self._store.describe_table(name)
        except TableKeeperError:
            raise
        except Exception as exc:
            if is_not_found_error(exc):
                raise ResourceNotFoundError(f"table {name} not found", details={"table": name}) from exc
            raise ProvisioningError(f"failed to describe table {name}: {exc}") from exc

    def _retrying(self) -> AsyncRetrying:
        delay = self._timings.retry_delay
        return AsyncRetrying(
            retry=retry_if_exception_type(ProvisioningError),
            stop=stop_after_attempt(self._timings.attempts),
            wait=wait_incrementing(start=delay, increment=delay),
            reraise=True,
        )

    async def create_with_retry(self, spec: TableSpec) -> None:
        try:
            async for attempt in self._retrying():
                with attempt:
                    number = attempt.retry_state.attempt_number
                    if number > 1:
                        logger.info("table_create_retry", table=spec.name, attempt=number)
                    await self._create_once(spec)
        except ProvisioningError as exc:
            raise ProvisioningError(
                f"failed to create table {spec.name} after {self._timings.attempts} attempts: {exc.message}",
                details={"table": spec.name},
            ) from exc

    async def _create_once(self, spec: TableSpec) -> None:
        try:
            exists = await self.table_exists(spec.name)
        except Exception as exc:
            raise ProvisioningError(f"failed to check table {spec.name}: {exc}") from exc
        if exists:
            logger.info("table_exists_skipping_create", table=spec.name)
            return
        try:
            await self._store.create_table(spec)
        except ProvisioningError:
            raise
        except Exception as exc:
            raise ProvisioningError(f"failed to create table {spec.name}: {exc}") from exc

    async def delete_with_retry(self, name: str) -> None:
        try:
            async for attempt in self._retrying():
                with attempt:
                    number = attempt.retry_state.attempt_number
                    if number > 1:
                        logger.info("table_delete_retry", table=name, attempt=number)
                    await self._delete_once(name)
        except ProvisioningError as exc:
            raise ProvisioningError(
                f"failed to delete table {name} after {self._timings.attempts} attempts: {exc.message}",
                details={"table": name},
            ) from exc

    async def _delete_once(self, name: str) -> None:
        try:
            exists = await self.table_exists(name)
        except Exception as exc:
            raise ProvisioningError(f"failed to check table {name}: {exc}") from exc
        if not exists:
            logger.info("table_absent_skipping_delete", table=name)
            return
        try:
            await self._store.delete_table(name)
        except ResourceNotFoundError:
            return
        except ProvisioningError:
            raise
        except Exception as exc:
            if is_not_found_error(exc):
                return
            raise ProvisioningError(f"failed to delete table {name}: {exc}") from exc

    async def validate_infrastructure(self, descriptors: list[ResourceDescriptor]) -> None:
        """Wait for every table to be ACTIVE, then check index counts."""
        await self.wait_for_active(descriptors)
        await self.validate_configuration(descriptors)

    async def wait_for_active(
        self,
        descriptors: list[ResourceDescriptor],
        timeout: float | None = None,
        interval: float | None = None,
    ) -> None:
        timeout = self._timings.active_timeout if timeout is None else timeout
        interval = self._timings.active_poll_interval if interval is None else interval
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            pending = []
            for descriptor in descriptors:
                description = await self._describe(descriptor.name)
                if description.status != ACTIVE:
                    pending.append(f"{descriptor.name}({description.status})")
            if not pending:
                logger.info("tables_active", tables=len(descriptors))
                return

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise OperationTimeoutError(
                    f"timeout waiting for tables to become active after {timeout}s: {pending}",
                    details={"pending": pending},
                )
            logger.info("waiting_for_tables_active", pending=pending)
            await asyncio.sleep(min(interval, remaining))

    async def validate_configuration(self, descriptors: list[ResourceDescriptor]) -> None:
        for descriptor in descriptors:
            description = await self._describe(descriptor.name)
            _check_description(descriptor, description)
            logger.debug("table_validation_passed", table=descriptor.name)

    async def validate_table(self, descriptor: ResourceDescriptor) -> None:
        """Validate a single table, giving it a shorter window to become ACTIVE."""
        description = await self._describe(descriptor.name)
        if description.status != ACTIVE:
            logger.warning("table_not_active", table=descriptor.name, status=description.status)
            await self.wait_for_active(
                [descriptor],
                timeout=self._timings.heal_active_timeout,
                interval=self._timings.heal_poll_interval,
            )
            description = await self._describe(descriptor.name)
        _check_description(descriptor, description)

    async def wait_for_absent(
        self,
        names: list[str],
        timeout: float | None = None,
        interval: float | None = None,
    ) -> None:
        timeout = self._timings.delete_timeout if timeout is None else timeout
        interval = self._timings.delete_poll_interval if interval is None else interval
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            remaining_tables = []
            for name in names:
                try:
                    if await self.table_exists(name):
                        remaining_tables.append(name)
                except Exception as exc:
                    logger.error("table_existence_check_failed", table=name, error=str(exc))
                    remaining_tables.append(name)
            if not remaining_tables:
                logger.info("tables_absent", tables=names)
                return

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise OperationTimeoutError(
                    f"timeout waiting for tables to be deleted: {remaining_tables}",
                    details={"pending": remaining_tables},
                )
            logger.debug("waiting_for_tables_deleted", pending=remaining_tables)
            await asyncio.sleep(min(interval, remaining))

    async def execute_delete(self, status_manager: StatusManager) -> None:
        """Delete every managed table and wait until none remain."""
        logger.warning("infrastructure_deletion_started")
        status_manager.update_progress(
            WorkerStatus.DELETING, "Starting infrastructure deletion", {"phase": "deleting"}
        )

        descriptors = self.build_descriptors()
        names = [descriptor.name for descriptor in descriptors]
        for name in names:
            try:
                await self.delete_with_retry(name)
            except ProvisioningError as exc:
                logger.error("table_delete_failed", table=name, error=exc.message)
                status_manager.update_progress(
                    WorkerStatus.DELETION_FAILED, f"Failed to delete table {name}: {exc.message}"
                )
                raise
            logger.warning("table_deleted", table=name)

        status_manager.update_progress(
            WorkerStatus.DELETING, "Waiting for tables to be deleted", {"phase": "waiting_for_deletion"}
        )
        try:
            await self.wait_for_absent(names)
        except TableKeeperError as exc:
            status_manager.update_progress(
                WorkerStatus.DELETION_FAILED, f"Tables failed to be deleted: {exc.message}"
            )
            raise

        status_manager.update_progress(
            WorkerStatus.DELETED,
            "Infrastructure deletion completed",
            {"deleted_tables": len(names), "completed_at": utc_now_iso()},
        )
        logger.warning("infrastructure_deletion_completed", tables=names)


def _check_description(descriptor: ResourceDescriptor, description: TableDescription) -> None:
    if description.status != ACTIVE:
        raise ValidationError(
            f"table {descriptor.name} is not active: {description.status}",
            details={"table": descriptor.name},
        )
    if description.index_count != descriptor.index_count:
        raise ValidationError(
            f"table {descriptor.name} has {description.index_count} indexes, "
            f"expected {descriptor.index_count}",
            details={"table": descriptor.name},
        )

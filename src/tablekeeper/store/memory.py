from __future__ import annotations

import asyncio

from tablekeeper.core.errors import ResourceNotFoundError
from tablekeeper.models import IndexDetails
from tablekeeper.store.base import ACTIVE, TableDescription, TableSpec


class InMemoryTableStore:
    """Dictionary-backed table store for local development.

    Tables report ``CREATING`` for ``activation_delay`` describes after
    creation and ``DELETING`` for ``deletion_delay`` describes after a delete,
    which is enough to exercise the worker's polling paths.
    """

    def __init__(self, activation_delay: int = 0, deletion_delay: int = 0) -> None:
        self._tables: dict[str, TableDescription] = {}
        self._pending: dict[str, int] = {}
        self._activation_delay = activation_delay
        self._deletion_delay = deletion_delay
        self._lock = asyncio.Lock()
        self.calls: list[tuple[str, str]] = []

    async def create_table(self, spec: TableSpec) -> None:
        async with self._lock:
            self.calls.append(("create", spec.name))
            if spec.name in self._tables:
                return
            request = spec.to_create_input()
            indexes = [
                IndexDetails(
                    name=gsi["IndexName"],
                    status=ACTIVE,
                    arn=f"arn:aws:dynamodb:local:000000000000:table/{spec.name}/index/{gsi['IndexName']}",
                )
                for gsi in request.get("GlobalSecondaryIndexes", [])
            ]
            self._tables[spec.name] = TableDescription(
                name=spec.name,
                status="CREATING" if self._activation_delay else ACTIVE,
                arn=f"arn:aws:dynamodb:local:000000000000:table/{spec.name}",
                global_indexes=indexes,
            )
            self._pending[spec.name] = self._activation_delay

    async def describe_table(self, name: str) -> TableDescription:
        async with self._lock:
            self.calls.append(("describe", name))
            table = self._tables.get(name)
            if table is None:
                raise ResourceNotFoundError(f"Requested resource not found: Table: {name} not found")
            remaining = self._pending.get(name, 0)
            if remaining > 0:
                self._pending[name] = remaining - 1
            elif table.status == "CREATING":
                table.status = ACTIVE
            elif table.status == "DELETING":
                del self._tables[name]
                raise ResourceNotFoundError(f"Requested resource not found: Table: {name} not found")
            return TableDescription(
                name=table.name,
                status=table.status,
                arn=table.arn,
                global_indexes=list(table.global_indexes),
                local_indexes=list(table.local_indexes),
            )

    async def delete_table(self, name: str) -> None:
        async with self._lock:
            self.calls.append(("delete", name))
            table = self._tables.get(name)
            if table is None:
                raise ResourceNotFoundError(f"Requested resource not found: Table: {name} not found")
            if self._deletion_delay:
                table.status = "DELETING"
                self._pending[name] = self._deletion_delay
            else:
                del self._tables[name]

    def put_table(self, description: TableDescription) -> None:
        """Seed a table directly, bypassing the create path."""
        self._tables[description.name] = description
        self._pending.pop(description.name, None)

    def has_table(self, name: str) -> bool:
        return name in self._tables

    def count(self, operation: str) -> int:
        return sum(1 for op, _ in self.calls if op == operation)

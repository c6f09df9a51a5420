"""Table store contract and the schema definitions it provisions from."""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from importlib import resources
from typing import Any, Protocol

import yaml

from tablekeeper.core.errors import ConfigurationError
from tablekeeper.models import IndexDetails, ResourceDescriptor

ACTIVE = "ACTIVE"

_NOT_FOUND_MARKERS = (
    "ResourceNotFoundException",
    "Table not found",
    "Requested resource not found",
)


@dataclass(slots=True)
class TableDescription:
    name: str
    status: str
    arn: str = ""
    global_indexes: list[IndexDetails] = field(default_factory=list)
    local_indexes: list[IndexDetails] = field(default_factory=list)

    @property
    def index_count(self) -> int:
        """Global secondary indexes only; validation compares against these."""
        return len(self.global_indexes)

    @property
    def indexes(self) -> list[IndexDetails]:
        return [*self.global_indexes, *self.local_indexes]


@dataclass
class TableSpec:
    """Create-table request for one descriptor."""

    descriptor: ResourceDescriptor
    schema: dict[str, Any]

    @property
    def name(self) -> str:
        return self.descriptor.name

    def to_create_input(self) -> dict[str, Any]:
        provisioned = self.descriptor.billing_mode == "PROVISIONED"
        request: dict[str, Any] = {
            "TableName": self.descriptor.name,
            "AttributeDefinitions": [
                {"AttributeName": attr["name"], "AttributeType": attr["type"]}
                for attr in self.schema.get("attribute_definitions", [])
            ],
            "KeySchema": _key_schema(self.schema.get("key_schema", [])),
            "BillingMode": self.descriptor.billing_mode,
            "Tags": [{"Key": k, "Value": v} for k, v in self.descriptor.tags.items()],
        }
        if provisioned:
            request["ProvisionedThroughput"] = _throughput(self.schema)

        indexes = []
        for index in self.schema.get("global_secondary_indexes") or []:
            gsi: dict[str, Any] = {
                "IndexName": index["name"],
                "KeySchema": _key_schema(index["key_schema"]),
                "Projection": {"ProjectionType": index.get("projection", "ALL")},
            }
            if provisioned:
                gsi["ProvisionedThroughput"] = _throughput(index)
            indexes.append(gsi)
        if indexes:
            request["GlobalSecondaryIndexes"] = indexes
        return request


def _key_schema(elements: list[dict[str, str]]) -> list[dict[str, str]]:
    return [{"AttributeName": e["name"], "KeyType": e["key_type"]} for e in elements]


def _throughput(section: dict[str, Any]) -> dict[str, int]:
    throughput = section.get("provisioned_throughput") or {}
    return {
        "ReadCapacityUnits": int(throughput.get("read", 5)),
        "WriteCapacityUnits": int(throughput.get("write", 5)),
    }


class TableStoreClient(Protocol):
    async def create_table(self, spec: TableSpec) -> None: ...

    async def describe_table(self, name: str) -> TableDescription: ...

    async def delete_table(self, name: str) -> None: ...


def is_not_found_error(exc: BaseException) -> bool:
    """Recognize the provider's various "table does not exist" signals."""
    response = getattr(exc, "response", None)
    if isinstance(response, dict):
        code = response.get("Error", {}).get("Code")
        if code == "ResourceNotFoundException":
            return True
    message = str(exc)
    return any(marker in message for marker in _NOT_FOUND_MARKERS)


def base_table_name(table_name: str) -> str:
    """``dev_users`` -> ``users``; unprefixed names are returned unchanged."""
    return table_name.split("_")[-1]


@lru_cache
def load_table_schemas() -> dict[str, dict[str, Any]]:
    text = resources.files("tablekeeper").joinpath("schemas/tables.yaml").read_text()
    return yaml.safe_load(text) or {}


def get_table_schema(base_name: str) -> dict[str, Any]:
    schemas = load_table_schemas()
    if base_name not in schemas:
        raise ConfigurationError(
            f"table schema not found for key: {base_name}",
            details={"known_tables": sorted(schemas)},
        )
    return schemas[base_name]


def build_table_spec(descriptor: ResourceDescriptor) -> TableSpec:
    return TableSpec(descriptor=descriptor, schema=get_table_schema(descriptor.base_name))

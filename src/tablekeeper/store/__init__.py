from __future__ import annotations

from tablekeeper.config.settings import Settings
from tablekeeper.store.base import (
    ACTIVE,
    TableDescription,
    TableSpec,
    TableStoreClient,
    base_table_name,
    build_table_spec,
    get_table_schema,
    is_not_found_error,
    load_table_schemas,
)
from tablekeeper.store.dynamodb import DynamoDBTableStore
from tablekeeper.store.memory import InMemoryTableStore


def create_table_store(settings: Settings) -> TableStoreClient:
    """Select the table store backend named in settings."""
    if settings.table_store_backend == "memory":
        return InMemoryTableStore()
    return DynamoDBTableStore(region=settings.aws_region, endpoint_url=settings.dynamodb_endpoint)


__all__ = [
    "ACTIVE",
    "DynamoDBTableStore",
    "InMemoryTableStore",
    "TableDescription",
    "TableSpec",
    "TableStoreClient",
    "base_table_name",
    "build_table_spec",
    "create_table_store",
    "get_table_schema",
    "is_not_found_error",
    "load_table_schemas",
]

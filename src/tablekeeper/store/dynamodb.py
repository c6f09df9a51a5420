from __future__ import annotations

from typing import Any

import aioboto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from tablekeeper.core.errors import ProvisioningError, ResourceNotFoundError
from tablekeeper.models import IndexDetails, utc_now
from tablekeeper.store.base import ACTIVE, TableDescription, TableSpec, is_not_found_error

logger = structlog.get_logger()


class DynamoDBTableStore:
    """Create, describe and delete DynamoDB tables through aioboto3."""

    def __init__(self, region: str = "us-east-1", endpoint_url: str | None = None) -> None:
        self._region = region
        self._endpoint_url = endpoint_url

    def _client(self) -> Any:
        session = aioboto3.Session(region_name=self._region)
        return session.client("dynamodb", endpoint_url=self._endpoint_url)

    async def create_table(self, spec: TableSpec) -> None:
        request = spec.to_create_input()
        try:
            async with self._client() as client:
                await client.create_table(**request)
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            if code == "ResourceInUseException":
                logger.info("table_already_exists", table=spec.name)
                return
            raise ProvisioningError(
                f"failed to create table {spec.name}: {exc}", details={"table": spec.name}
            ) from exc
        except BotoCoreError as exc:
            raise ProvisioningError(
                f"failed to create table {spec.name}: {exc}", details={"table": spec.name}
            ) from exc
        logger.info("table_create_requested", table=spec.name, billing_mode=request["BillingMode"])

    async def describe_table(self, name: str) -> TableDescription:
        try:
            async with self._client() as client:
                response = await client.describe_table(TableName=name)
        except (ClientError, BotoCoreError) as exc:
            if is_not_found_error(exc):
                raise ResourceNotFoundError(f"table {name} not found", details={"table": name}) from exc
            raise ProvisioningError(
                f"failed to describe table {name}: {exc}", details={"table": name}
            ) from exc
        return parse_table_description(response.get("Table", {}), name)

    async def delete_table(self, name: str) -> None:
        logger.warning("table_delete_requested", table=name)
        try:
            async with self._client() as client:
                await client.delete_table(TableName=name)
        except (ClientError, BotoCoreError) as exc:
            if is_not_found_error(exc):
                raise ResourceNotFoundError(f"table {name} not found", details={"table": name}) from exc
            raise ProvisioningError(
                f"failed to delete table {name}: {exc}", details={"table": name}
            ) from exc


def parse_table_description(table: dict[str, Any], fallback_name: str = "") -> TableDescription:
    """Map a DescribeTable ``Table`` payload onto TableDescription."""
    now = utc_now()
    global_indexes = [
        IndexDetails(
            name=gsi.get("IndexName", ""),
            status=gsi.get("IndexStatus", ""),
            arn=gsi.get("IndexArn", ""),
            type="GSI",
            created_at=now,
        )
        for gsi in table.get("GlobalSecondaryIndexes") or []
    ]
    # LSIs have no status of their own; they are usable whenever the table is
    local_indexes = [
        IndexDetails(
            name=lsi.get("IndexName", ""),
            status=ACTIVE,
            arn=lsi.get("IndexArn", ""),
            type="LSI",
            created_at=now,
        )
        for lsi in table.get("LocalSecondaryIndexes") or []
    ]
    return TableDescription(
        name=table.get("TableName", fallback_name),
        status=table.get("TableStatus", ""),
        arn=table.get("TableArn", ""),
        global_indexes=global_indexes,
        local_indexes=local_indexes,
    )

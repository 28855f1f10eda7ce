from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

from outbox_relay.models import DedupeRecord

LOGGER = logging.getLogger(__name__)

PARTITION_KEY_ATTRIBUTE = "pk"
SORT_KEY_ATTRIBUTE = "sk"
DEDUPE_KEY_ATTRIBUTE = "eventId"


class DynamoTable(Protocol):
    def put_item(self, *, Item: dict[str, Any]) -> dict[str, Any]:
        ...

    def get_item(self, *, Key: dict[str, Any], ConsistentRead: bool = ...) -> dict[str, Any]:
        ...

    def delete_item(self, *, Key: dict[str, Any]) -> dict[str, Any]:
        ...

    def query(self, **kwargs: Any) -> dict[str, Any]:
        ...


def create_dynamodb_table(*, region_name: str, table_name: str) -> DynamoTable:
    import boto3

    return boto3.resource("dynamodb", region_name=region_name).Table(table_name)


class DynamoProjectionStore:
    def __init__(self, *, table: DynamoTable) -> None:
        self._table = table

    async def put(self, partition_key: str, sort_key: str, attributes: dict[str, Any]) -> None:
        item = {
            **attributes,
            PARTITION_KEY_ATTRIBUTE: partition_key,
            SORT_KEY_ATTRIBUTE: sort_key,
        }
        await asyncio.to_thread(self._table.put_item, Item=item)

    async def delete(self, partition_key: str, sort_key: str) -> None:
        await asyncio.to_thread(
            self._table.delete_item,
            Key={PARTITION_KEY_ATTRIBUTE: partition_key, SORT_KEY_ATTRIBUTE: sort_key},
        )

    async def query_by_partition_prefix(
        self,
        partition_key: str,
        sort_key_prefix: str | None = None,
    ) -> list[dict[str, Any]]:
        from boto3.dynamodb.conditions import Key

        condition = Key(PARTITION_KEY_ATTRIBUTE).eq(partition_key)
        if sort_key_prefix:
            condition = condition & Key(SORT_KEY_ATTRIBUTE).begins_with(sort_key_prefix)

        request: dict[str, Any] = {"KeyConditionExpression": condition}
        items: list[dict[str, Any]] = []
        pages = 0
        while True:
            response = await asyncio.to_thread(self._table.query, **request)
            pages += 1
            items.extend(response.get("Items", []))
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                break
            request["ExclusiveStartKey"] = last_key

        LOGGER.debug(
            "projection_query",
            extra={"partition_key": partition_key, "pages": pages, "items": len(items)},
        )
        return items


class DynamoDedupeLedger:
    def __init__(self, *, table: DynamoTable) -> None:
        self._table = table

    async def get(self, event_id: str) -> DedupeRecord | None:
        response = await asyncio.to_thread(
            self._table.get_item,
            Key={DEDUPE_KEY_ATTRIBUTE: event_id},
            ConsistentRead=True,
        )
        item = response.get("Item")
        if not item:
            return None
        return DedupeRecord.from_item(item)

    async def put(self, record: DedupeRecord) -> None:
        await asyncio.to_thread(self._table.put_item, Item=record.to_item())

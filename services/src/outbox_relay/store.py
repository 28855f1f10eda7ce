from __future__ import annotations

from typing import Any, Protocol

from outbox_relay.models import DedupeRecord


class ProjectionStore(Protocol):
    """Key/value store with a (partition key, sort key) compound key."""

    async def put(self, partition_key: str, sort_key: str, attributes: dict[str, Any]) -> None:
        ...

    async def delete(self, partition_key: str, sort_key: str) -> None:
        ...

    async def query_by_partition_prefix(
        self,
        partition_key: str,
        sort_key_prefix: str | None = None,
    ) -> list[dict[str, Any]]:
        ...


class DedupeLedger(Protocol):
    async def get(self, event_id: str) -> DedupeRecord | None:
        ...

    async def put(self, record: DedupeRecord) -> None:
        ...

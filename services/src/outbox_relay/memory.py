"""In-memory ledger, bus, subscription and stores for local runs and tests."""

from __future__ import annotations

from collections import deque
from collections.abc import Mapping
from typing import Any
from uuid import uuid4

from pydantic import BaseModel

from outbox_relay.models import ChangeRecord, DedupeRecord
from outbox_relay.subscription import Delivery
from outbox_relay.timestamps import utc_now


class PublishedMessage(BaseModel):
    topic: str
    message: str
    attributes: dict[str, str]
    message_id: str


class InMemoryChangeLedger:
    def __init__(self, records: list[ChangeRecord] | None = None) -> None:
        self._records: dict[str, ChangeRecord] = {}
        for record in records or []:
            self.add(record)

    def add(self, record: ChangeRecord) -> None:
        self._records[record.id] = record

    def get(self, record_id: str) -> ChangeRecord:
        return self._records[record_id]

    async def select_unpublished(self, limit: int) -> list[ChangeRecord]:
        pending = [record for record in self._records.values() if record.published_at is None]
        pending.sort(key=lambda record: record.occurred_at)
        return pending[:limit]

    async def mark_published(self, record_id: str) -> None:
        record = self._records[record_id]
        if record.published_at is not None:
            return
        self._records[record_id] = record.model_copy(update={"published_at": utc_now()})


class _QueuedMessage:
    def __init__(self, *, message_id: str, body: str) -> None:
        self.message_id = message_id
        self.body = body
        self.receive_count = 0


class InMemorySubscription:
    """Queue subscribed to a topic.

    Messages received but not acknowledged become visible again on the next
    ``receive`` call, standing in for a visibility timeout.
    """

    def __init__(self, *, event_types: frozenset[str] | None = None) -> None:
        self._event_types = event_types
        self._visible: deque[_QueuedMessage] = deque()
        self._inflight: dict[str, _QueuedMessage] = {}
        self.dead_letters: list[Delivery] = []

    def accepts(self, attributes: Mapping[str, str]) -> bool:
        if self._event_types is None:
            return True
        return any(value in self._event_types for value in attributes.values())

    def enqueue(self, body: str, *, message_id: str | None = None) -> None:
        self._visible.append(_QueuedMessage(message_id=message_id or str(uuid4()), body=body))

    @property
    def depth(self) -> int:
        return len(self._visible) + len(self._inflight)

    async def receive(self, *, max_messages: int, wait_time_s: int = 0) -> list[Delivery]:
        self._visible.extend(self._inflight.values())
        self._inflight.clear()

        deliveries: list[Delivery] = []
        while self._visible and len(deliveries) < max_messages:
            queued = self._visible.popleft()
            queued.receive_count += 1
            receipt_handle = str(uuid4())
            self._inflight[receipt_handle] = queued
            deliveries.append(
                Delivery(
                    message_id=queued.message_id,
                    receipt_handle=receipt_handle,
                    body=queued.body,
                    receive_count=queued.receive_count,
                )
            )
        return deliveries

    async def ack(self, delivery: Delivery) -> None:
        self._inflight.pop(delivery.receipt_handle, None)

    async def dead_letter(self, delivery: Delivery) -> bool:
        self.dead_letters.append(delivery)
        await self.ack(delivery)
        return True


class InMemoryMessageBus:
    def __init__(self) -> None:
        self.published: list[PublishedMessage] = []
        self._subscriptions: dict[str, list[InMemorySubscription]] = {}

    def subscribe(self, topic: str, *, event_types: frozenset[str] | None = None) -> InMemorySubscription:
        subscription = InMemorySubscription(event_types=event_types)
        self._subscriptions.setdefault(topic, []).append(subscription)
        return subscription

    async def publish(self, topic: str, message: str, attributes: Mapping[str, str]) -> str | None:
        message_id = str(uuid4())
        self.published.append(
            PublishedMessage(
                topic=topic,
                message=message,
                attributes=dict(attributes),
                message_id=message_id,
            )
        )
        for subscription in self._subscriptions.get(topic, []):
            if subscription.accepts(attributes):
                subscription.enqueue(message, message_id=message_id)
        return message_id


class InMemoryDedupeLedger:
    def __init__(self) -> None:
        self.records: dict[str, DedupeRecord] = {}
        self.put_count = 0

    async def get(self, event_id: str) -> DedupeRecord | None:
        return self.records.get(event_id)

    async def put(self, record: DedupeRecord) -> None:
        self.put_count += 1
        self.records[record.event_id] = record


class InMemoryProjectionStore:
    def __init__(self) -> None:
        self.items: dict[tuple[str, str], dict[str, Any]] = {}
        self.put_count = 0
        self.delete_count = 0

    async def put(self, partition_key: str, sort_key: str, attributes: dict[str, Any]) -> None:
        self.put_count += 1
        self.items[(partition_key, sort_key)] = {**attributes, "pk": partition_key, "sk": sort_key}

    async def delete(self, partition_key: str, sort_key: str) -> None:
        self.delete_count += 1
        self.items.pop((partition_key, sort_key), None)

    async def query_by_partition_prefix(
        self,
        partition_key: str,
        sort_key_prefix: str | None = None,
    ) -> list[dict[str, Any]]:
        matches = [
            dict(item)
            for (pk, sk), item in self.items.items()
            if pk == partition_key and (sort_key_prefix is None or sk.startswith(sort_key_prefix))
        ]
        matches.sort(key=lambda item: item["sk"])
        return matches

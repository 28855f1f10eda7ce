from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest

from outbox_relay.consumer import QueueConsumer
from outbox_relay.materializer import IdempotentMaterializer
from outbox_relay.memory import (
    InMemoryDedupeLedger,
    InMemoryProjectionStore,
    InMemorySubscription,
)
from outbox_relay.subscription import Delivery


def _envelope_json(event_id: str = "e1", **data: Any) -> str:
    payload: dict[str, Any] = {
        "id": "w1",
        "org_id": "o1",
        "status": "OPEN",
        "title": "Fix leaking sink",
        "created_at": "2024-05-01T10:00:00",
    }
    payload.update(data)
    return json.dumps(
        {
            "id": event_id,
            "type": "WorkOrderCreated",
            "version": 1,
            "occurredAt": "2024-05-01T10:00:00.000Z",
            "aggregateId": "w1",
            "aggregateType": "WorkOrder",
            "data": payload,
            "traceId": event_id,
        }
    )


def _sns_notification(message: str) -> str:
    return json.dumps({"Type": "Notification", "MessageId": "n-1", "Message": message})


def _consumer(
    subscription: Any,
    *,
    store: InMemoryProjectionStore | None = None,
    max_delivery_count: int = 3,
) -> tuple[QueueConsumer, InMemoryProjectionStore, InMemoryDedupeLedger]:
    store = store or InMemoryProjectionStore()
    dedupe = InMemoryDedupeLedger()
    consumer = QueueConsumer(
        subscription=subscription,
        materializer=IdempotentMaterializer(dedupe=dedupe, store=store),
        max_delivery_count=max_delivery_count,
        wait_time_s=0,
        delivery_timeout_s=5.0,
    )
    return consumer, store, dedupe


class _BrokenProjectionStore(InMemoryProjectionStore):
    async def put(self, partition_key: str, sort_key: str, attributes: dict[str, Any]) -> None:
        raise TimeoutError("store timeout")


class _DeferringSubscription(InMemorySubscription):
    """Subscription whose queue redrive policy owns dead-lettering."""

    async def dead_letter(self, delivery: Delivery) -> bool:
        return False


class _AckFailingOnceSubscription(InMemorySubscription):
    def __init__(self) -> None:
        super().__init__()
        self.ack_failures = 0

    async def ack(self, delivery: Delivery) -> None:
        if self.ack_failures == 0:
            self.ack_failures += 1
            raise ConnectionError("queue endpoint unavailable")
        await super().ack(delivery)


def test_applied_delivery_is_acknowledged() -> None:
    async def scenario() -> None:
        subscription = InMemorySubscription()
        subscription.enqueue(_sns_notification(_envelope_json()))
        consumer, store, _ = _consumer(subscription)

        result = await consumer.poll_once()

        assert (result.received, result.applied, result.failed) == (1, 1, 0)
        assert subscription.depth == 0
        assert len(store.items) == 1

    asyncio.run(scenario())


def test_duplicate_delivery_is_acknowledged_without_reapplying() -> None:
    async def scenario() -> None:
        subscription = InMemorySubscription()
        subscription.enqueue(_envelope_json())
        subscription.enqueue(_envelope_json())
        consumer, store, dedupe = _consumer(subscription)

        result = await consumer.poll_once()

        assert (result.applied, result.duplicates) == (1, 1)
        assert subscription.depth == 0
        assert store.put_count == 1
        assert dedupe.put_count == 1

    asyncio.run(scenario())


def test_poison_message_is_dead_lettered_after_max_deliveries() -> None:
    async def scenario() -> None:
        subscription = InMemorySubscription()
        subscription.enqueue("not an envelope", message_id="poison")
        subscription.enqueue(_envelope_json(), message_id="good")
        consumer, store, _ = _consumer(subscription)

        first = await consumer.poll_once()
        second = await consumer.poll_once()
        third = await consumer.poll_once()

        assert (first.applied, first.failed, first.dead_lettered) == (1, 1, 0)
        assert (second.failed, second.dead_lettered) == (1, 0)
        assert (third.failed, third.dead_lettered) == (1, 1)
        assert [d.message_id for d in subscription.dead_letters] == ["poison"]
        assert subscription.dead_letters[0].receive_count == 3
        assert subscription.depth == 0
        assert len(store.items) == 1

    asyncio.run(scenario())


def test_ack_failure_after_apply_is_redelivered_not_dead_lettered() -> None:
    async def scenario() -> None:
        subscription = _AckFailingOnceSubscription()
        subscription.enqueue(_envelope_json())
        consumer, store, dedupe = _consumer(subscription, max_delivery_count=1)

        first = await consumer.poll_once()

        assert (first.applied, first.failed, first.dead_lettered) == (1, 0, 0)
        assert subscription.dead_letters == []
        assert subscription.depth == 1

        second = await consumer.poll_once()

        assert (second.duplicates, second.failed, second.dead_lettered) == (1, 0, 0)
        assert subscription.dead_letters == []
        assert subscription.depth == 0
        assert store.put_count == 1
        assert dedupe.put_count == 1

    asyncio.run(scenario())


def test_transient_failure_is_redelivered_and_then_applied() -> None:
    async def scenario() -> None:
        subscription = InMemorySubscription()
        subscription.enqueue(_envelope_json())
        broken, _, broken_dedupe = _consumer(subscription, store=_BrokenProjectionStore())
        healthy, store, _ = _consumer(subscription)

        failed = await broken.poll_once()
        recovered = await healthy.poll_once()

        assert failed.failed == 1
        assert broken_dedupe.records == {}
        assert recovered.applied == 1
        assert subscription.depth == 0
        assert len(store.items) == 1

    asyncio.run(scenario())


def test_malformed_payload_does_not_stop_the_batch() -> None:
    async def scenario() -> None:
        subscription = InMemorySubscription()
        subscription.enqueue(_envelope_json("bad", org_id=None))
        subscription.enqueue(_envelope_json("e2", id="w2"))
        consumer, store, _ = _consumer(subscription)

        result = await consumer.poll_once()

        assert (result.applied, result.failed) == (1, 1)
        assert [item["workOrderId"] for item in store.items.values()] == ["w2"]

    asyncio.run(scenario())


def test_exhausted_delivery_left_to_redrive_policy_when_not_moved() -> None:
    async def scenario() -> None:
        subscription = _DeferringSubscription()
        subscription.enqueue("not an envelope")
        consumer, _, _ = _consumer(subscription, max_delivery_count=1)

        result = await consumer.poll_once()

        assert (result.failed, result.dead_lettered) == (1, 0)
        assert subscription.depth == 1

    asyncio.run(scenario())


def test_run_keeps_polling_after_receive_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    async def scenario() -> None:
        stop_event = asyncio.Event()
        calls = 0

        class _FlakySubscription(InMemorySubscription):
            async def receive(self, *, max_messages: int, wait_time_s: int = 0) -> list[Delivery]:
                nonlocal calls
                calls += 1
                if calls == 1:
                    raise ConnectionError("sqs unreachable")
                stop_event.set()
                return []

        async def fake_sleep(_: float) -> None:
            return None

        monkeypatch.setattr("outbox_relay.consumer.asyncio.sleep", fake_sleep)
        consumer, _, _ = _consumer(_FlakySubscription())

        await consumer.run(stop_event=stop_event)

        assert calls == 2

    asyncio.run(scenario())


def test_max_delivery_count_must_be_positive() -> None:
    with pytest.raises(ValueError):
        _consumer(InMemorySubscription(), max_delivery_count=0)

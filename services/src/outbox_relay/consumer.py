from __future__ import annotations

import asyncio
import logging

from pydantic import BaseModel

from outbox_relay.materializer import IdempotentMaterializer
from outbox_relay.models import Envelope
from outbox_relay.subscription import Delivery, QueueSubscription, unwrap_notification

LOGGER = logging.getLogger(__name__)


class PollResult(BaseModel):
    received: int = 0
    applied: int = 0
    duplicates: int = 0
    failed: int = 0
    dead_lettered: int = 0


class QueueConsumer:
    """Feeds queue deliveries to the materializer.

    A delivery is acknowledged only after its envelope is fully applied. A
    failing delivery is left on the queue for redelivery until it has been
    received ``max_delivery_count`` times, then it is dead-lettered. One bad
    message never stops the loop.
    """

    def __init__(
        self,
        *,
        subscription: QueueSubscription,
        materializer: IdempotentMaterializer,
        max_delivery_count: int = 3,
        batch_size: int = 10,
        wait_time_s: int = 20,
        delivery_timeout_s: float = 25.0,
    ) -> None:
        if max_delivery_count <= 0:
            raise ValueError("max_delivery_count must be > 0")

        self._subscription = subscription
        self._materializer = materializer
        self._max_delivery_count = max_delivery_count
        self._batch_size = batch_size
        self._wait_time_s = wait_time_s
        self._delivery_timeout_s = delivery_timeout_s

    async def run(self, *, stop_event: asyncio.Event | None = None) -> None:
        while stop_event is None or not stop_event.is_set():
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                # Receive failures are transient; the next poll retries them.
                LOGGER.exception("queue_poll_failed")
                await asyncio.sleep(1.0)

    async def poll_once(self) -> PollResult:
        deliveries = await self._subscription.receive(
            max_messages=self._batch_size,
            wait_time_s=self._wait_time_s,
        )
        result = PollResult(received=len(deliveries))
        for delivery in deliveries:
            outcome = await self._handle(delivery)
            if outcome == "applied":
                result.applied += 1
            elif outcome == "duplicate":
                result.duplicates += 1
            elif outcome == "dead_lettered":
                result.failed += 1
                result.dead_lettered += 1
            else:
                result.failed += 1

        if deliveries:
            LOGGER.info("queue_poll_complete", extra=result.model_dump())
        return result

    async def _handle(self, delivery: Delivery) -> str:
        context = {"message_id": delivery.message_id, "receive_count": delivery.receive_count}
        try:
            envelope = Envelope.from_json(unwrap_notification(delivery.body))
            context.update(envelope.log_context())
            applied = await asyncio.wait_for(
                self._materializer.apply(envelope),
                timeout=self._delivery_timeout_s,
            )
        except Exception:
            LOGGER.exception("delivery_failed", extra=context)
            return await self._dead_letter_if_exhausted(delivery, context)

        outcome = "applied" if applied else "duplicate"
        try:
            await self._subscription.ack(delivery)
        except Exception:
            # Already applied; the redelivery is absorbed by the dedupe ledger.
            LOGGER.exception("delivery_ack_failed", extra=context)
        return outcome

    async def _dead_letter_if_exhausted(self, delivery: Delivery, context: dict[str, object]) -> str:
        if delivery.receive_count < self._max_delivery_count:
            return "failed"

        try:
            moved = await self._subscription.dead_letter(delivery)
        except Exception:
            LOGGER.exception("dead_letter_failed", extra=context)
            return "failed"

        if not moved:
            # The queue's redrive policy dead-letters it on the next receive.
            return "failed"

        LOGGER.error("delivery_dead_lettered", extra=context)
        return "dead_lettered"

from __future__ import annotations

import logging

from pydantic import BaseModel, Field

from outbox_relay.bus import MessageBus
from outbox_relay.errors import LedgerUnavailableError
from outbox_relay.ledger import ChangeLedger
from outbox_relay.models import CHANGE_TYPE_ATTRIBUTE, ChangeRecord, Envelope

LOGGER = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 10


class RelayResult(BaseModel):
    published_count: int = 0
    failed_ids: list[str] = Field(default_factory=list)

    @property
    def selected_count(self) -> int:
        return self.published_count + len(self.failed_ids)


class RelayPublisher:
    """Relays unpublished change records from the ledger to the bus.

    Each record is sent and marked independently: a failure is logged and the
    record is left unpublished for the next invocation. A successful send whose
    mark fails is re-sent later; consumers absorb the duplicate.
    """

    def __init__(
        self,
        *,
        ledger: ChangeLedger,
        bus: MessageBus,
        topic: str,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")

        self._ledger = ledger
        self._bus = bus
        self._topic = topic
        self._batch_size = batch_size

    async def relay_batch(self) -> RelayResult:
        try:
            records = await self._ledger.select_unpublished(self._batch_size)
        except LedgerUnavailableError:
            raise
        except Exception as exc:
            raise LedgerUnavailableError("Failed to select unpublished change records") from exc

        result = RelayResult()
        if not records:
            LOGGER.debug("relay_batch_empty")
            return result

        LOGGER.info("relay_batch_selected", extra={"selected_count": len(records)})
        for record in records:
            if await self._relay_record(record):
                result.published_count += 1
            else:
                result.failed_ids.append(record.id)

        LOGGER.info(
            "relay_batch_complete",
            extra={
                "published_count": result.published_count,
                "failed_count": len(result.failed_ids),
            },
        )
        return result

    async def _relay_record(self, record: ChangeRecord) -> bool:
        context = {
            "event_id": record.id,
            "event_type": record.change_type,
            "aggregate_id": record.aggregate_id,
            "trace_id": record.trace_id or record.id,
        }

        try:
            envelope = Envelope.from_change_record(record)
            await self._bus.publish(
                self._topic,
                envelope.to_json(),
                {CHANGE_TYPE_ATTRIBUTE: envelope.type},
            )
        except Exception:
            LOGGER.exception("relay_publish_failed", extra=context)
            return False

        try:
            await self._ledger.mark_published(record.id)
        except Exception:
            LOGGER.exception("relay_mark_published_failed", extra=context)
            return False

        LOGGER.info("relay_published", extra=context)
        return True

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta

from outbox_relay.models import DEFAULT_DEDUPE_TTL, DedupeRecord, Envelope
from outbox_relay.projection import WORK_ORDER_RULES, ProjectionRule
from outbox_relay.store import DedupeLedger, ProjectionStore
from outbox_relay.timestamps import utc_now

LOGGER = logging.getLogger(__name__)


class IdempotentMaterializer:
    """Applies delivered envelopes to the projection store exactly-once-in-effect.

    The dedupe lookup and the dedupe write are not atomic, so two consumers can
    both apply the same envelope. Projection writes are full overwrites at a key
    derived only from the envelope, which makes that double apply harmless;
    the dedupe ledger only saves the repeated work.
    """

    def __init__(
        self,
        *,
        dedupe: DedupeLedger,
        store: ProjectionStore,
        rules: Mapping[str, ProjectionRule] | None = None,
        dedupe_ttl: timedelta = DEFAULT_DEDUPE_TTL,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if dedupe_ttl <= timedelta(0):
            raise ValueError("dedupe_ttl must be positive")

        self._dedupe = dedupe
        self._store = store
        self._rules = WORK_ORDER_RULES if rules is None else rules
        self._dedupe_ttl = dedupe_ttl
        self._clock = clock

    async def apply(self, envelope: Envelope) -> bool:
        """Apply one envelope; returns False when it was already processed."""
        context = envelope.log_context()

        if await self._dedupe.get(envelope.id) is not None:
            LOGGER.info("event_already_processed", extra=context)
            return False

        processed_at = self._clock()
        rule = self._rules.get(envelope.type)
        if rule is None:
            LOGGER.warning("event_type_unhandled", extra=context)
        else:
            write = rule(envelope, processed_at)
            key = write.row.key
            await self._store.put(key.partition_key, key.sort_key, write.row.attributes)
            if write.stale_key is not None:
                await self._store.delete(write.stale_key.partition_key, write.stale_key.sort_key)
                LOGGER.info(
                    "projection_key_migrated",
                    extra={**context, "stale_sort_key": write.stale_key.sort_key},
                )

        await self._dedupe.put(
            DedupeRecord.for_envelope(envelope, processed_at=processed_at, ttl=self._dedupe_ttl)
        )
        LOGGER.info("event_processed", extra=context)
        return True

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from outbox_relay.errors import EnvelopeDecodeError
from outbox_relay.timestamps import epoch_seconds, format_timestamp, parse_timestamp

CHANGE_TYPE_ATTRIBUTE = "eventType"
DEFAULT_DEDUPE_TTL = timedelta(days=7)


class ChangeRecord(BaseModel):
    """Single outbox row awaiting (or past) relay to the bus."""

    model_config = ConfigDict(frozen=True)

    id: str
    change_type: str
    aggregate_id: str
    aggregate_type: str
    payload: dict[str, Any]
    occurred_at: datetime
    published_at: datetime | None = None
    version: int = 1
    trace_id: str | None = None

    @property
    def is_published(self) -> bool:
        return self.published_at is not None


class Envelope(BaseModel):
    """Wire format on the bus; a lossless projection of a ChangeRecord."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    type: str
    version: int = 1
    occurred_at: str = Field(alias="occurredAt")
    aggregate_id: str = Field(alias="aggregateId")
    aggregate_type: str = Field(alias="aggregateType")
    data: dict[str, Any] = Field(default_factory=dict)
    trace_id: str | None = Field(default=None, alias="traceId")

    @classmethod
    def from_change_record(cls, record: ChangeRecord) -> Envelope:
        return cls(
            id=record.id,
            type=record.change_type,
            version=record.version,
            occurred_at=format_timestamp(record.occurred_at),
            aggregate_id=record.aggregate_id,
            aggregate_type=record.aggregate_type,
            data=record.payload,
            # Falling back to the record id keeps redeliveries on one trace.
            trace_id=record.trace_id or record.id,
        )

    @classmethod
    def from_json(cls, raw: str | bytes) -> Envelope:
        try:
            return cls.model_validate_json(raw)
        except ValidationError as exc:
            raise EnvelopeDecodeError(f"Invalid envelope: {exc.error_count()} error(s)") from exc

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    def log_context(self) -> dict[str, Any]:
        return {
            "event_id": self.id,
            "event_type": self.type,
            "aggregate_id": self.aggregate_id,
            "trace_id": self.trace_id,
        }


class DedupeRecord(BaseModel):
    """Marker that an event's effect has been fully applied to the projection store."""

    model_config = ConfigDict(frozen=True)

    event_id: str
    event_type: str
    processed_at: datetime
    expires_at: datetime

    @classmethod
    def for_envelope(
        cls,
        envelope: Envelope,
        *,
        processed_at: datetime,
        ttl: timedelta = DEFAULT_DEDUPE_TTL,
    ) -> DedupeRecord:
        return cls(
            event_id=envelope.id,
            event_type=envelope.type,
            processed_at=processed_at,
            expires_at=processed_at + ttl,
        )

    def to_item(self) -> dict[str, Any]:
        # "ttl" is the store's expiry attribute and must be epoch seconds.
        return {
            "eventId": self.event_id,
            "eventType": self.event_type,
            "processedAt": format_timestamp(self.processed_at),
            "ttl": epoch_seconds(self.expires_at),
        }

    @classmethod
    def from_item(cls, item: dict[str, Any]) -> DedupeRecord:
        return cls(
            event_id=str(item["eventId"]),
            event_type=str(item.get("eventType", "")),
            processed_at=parse_timestamp(item["processedAt"]),
            expires_at=datetime.fromtimestamp(int(item["ttl"]), tz=timezone.utc),
        )

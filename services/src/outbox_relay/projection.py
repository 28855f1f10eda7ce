"""Projection key scheme and per-event-type projection rules.

Work order projections live in a single table keyed by::

    pk = "ORG#<org_id>"
    sk = "STATUS#<status>#TS#<created_at>#WO#<work_order_id>"

so that "all work orders for an org" is a partition scan and "all work orders
for an org in a status, oldest first" is a partition scan with a sort key
prefix. Status is part of the sort key; moving a work order between statuses
writes the new key and removes the old one.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict

from outbox_relay.errors import ProjectionError
from outbox_relay.models import Envelope
from outbox_relay.store import ProjectionStore
from outbox_relay.timestamps import format_timestamp

KEY_SEPARATOR = "#"
ORG_NAMESPACE = "ORG"
STATUS_NAMESPACE = "STATUS"
TIMESTAMP_NAMESPACE = "TS"
WORK_ORDER_NAMESPACE = "WO"

WORK_ORDER_CREATED = "WorkOrderCreated"
WORK_ORDER_UPDATED = "WorkOrderUpdated"
WORK_ORDER_STATUS_CHANGED = "WorkOrderStatusChanged"

# snake_case payload field -> camelCase projection attribute
_WORK_ORDER_FIELDS = {
    "id": "workOrderId",
    "org_id": "orgId",
    "customer_id": "customerId",
    "status": "status",
    "title": "title",
    "description": "description",
    "address": "address",
    "scheduled_at": "scheduledAt",
    "created_at": "createdAt",
    "updated_at": "updatedAt",
}
_WORK_ORDER_TIMESTAMP_FIELDS = frozenset({"scheduled_at", "created_at", "updated_at"})
_WORK_ORDER_REQUIRED_FIELDS = ("id", "org_id", "status", "created_at")


class ProjectionKey(BaseModel):
    model_config = ConfigDict(frozen=True)

    partition_key: str
    sort_key: str


class ProjectionRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: ProjectionKey
    attributes: dict[str, Any]


class ProjectionWrite(BaseModel):
    """Full-overwrite put, optionally paired with removal of a superseded key."""

    model_config = ConfigDict(frozen=True)

    row: ProjectionRow
    stale_key: ProjectionKey | None = None


ProjectionRule = Callable[[Envelope, datetime], ProjectionWrite]


def build_partition_key(namespace: str, owner_id: str) -> str:
    return f"{namespace}{KEY_SEPARATOR}{owner_id}"


def build_sort_key(*, status: str, timestamp: datetime | str, namespace: str, entity_id: str) -> str:
    return KEY_SEPARATOR.join(
        (
            STATUS_NAMESPACE,
            status,
            TIMESTAMP_NAMESPACE,
            format_timestamp(timestamp),
            namespace,
            entity_id,
        )
    )


def status_prefix(status: str) -> str:
    return f"{STATUS_NAMESPACE}{KEY_SEPARATOR}{status}{KEY_SEPARATOR}"


def work_order_key(*, org_id: str, status: str, created_at: datetime | str, work_order_id: str) -> ProjectionKey:
    return ProjectionKey(
        partition_key=build_partition_key(ORG_NAMESPACE, org_id),
        sort_key=build_sort_key(
            status=status,
            timestamp=created_at,
            namespace=WORK_ORDER_NAMESPACE,
            entity_id=work_order_id,
        ),
    )


def project_work_order(envelope: Envelope, projected_at: datetime) -> ProjectionWrite:
    """Project a created or updated work order at the key for its current status."""
    return ProjectionWrite(row=_work_order_row(envelope, projected_at))


def project_work_order_status_change(envelope: Envelope, projected_at: datetime) -> ProjectionWrite:
    data = envelope.data
    previous_status = data.get("previous_status")
    if not isinstance(previous_status, str) or not previous_status:
        raise ProjectionError(
            f"{envelope.type} event {envelope.id} is missing 'previous_status'"
        )

    row = _work_order_row(envelope, projected_at)
    stale_key = work_order_key(
        org_id=str(data["org_id"]),
        status=previous_status,
        created_at=_timestamp_field(envelope, "created_at"),
        work_order_id=str(data["id"]),
    )
    if stale_key == row.key:
        return ProjectionWrite(row=row)
    return ProjectionWrite(row=row, stale_key=stale_key)


WORK_ORDER_RULES: Mapping[str, ProjectionRule] = {
    WORK_ORDER_CREATED: project_work_order,
    WORK_ORDER_UPDATED: project_work_order,
    WORK_ORDER_STATUS_CHANGED: project_work_order_status_change,
}


async def list_work_orders(
    store: ProjectionStore,
    org_id: str,
    status: str | None = None,
) -> list[dict[str, Any]]:
    """Work orders for an org, optionally narrowed to one status, ordered by key."""
    prefix = status_prefix(status) if status is not None else None
    return await store.query_by_partition_prefix(
        build_partition_key(ORG_NAMESPACE, org_id),
        prefix,
    )


def _work_order_row(envelope: Envelope, projected_at: datetime) -> ProjectionRow:
    data = envelope.data
    missing = [name for name in _WORK_ORDER_REQUIRED_FIELDS if data.get(name) in (None, "")]
    if missing:
        raise ProjectionError(
            f"{envelope.type} event {envelope.id} is missing required fields: {', '.join(missing)}"
        )

    key = work_order_key(
        org_id=str(data["org_id"]),
        status=str(data["status"]),
        created_at=_timestamp_field(envelope, "created_at"),
        work_order_id=str(data["id"]),
    )

    attributes: dict[str, Any] = {"entityType": envelope.aggregate_type}
    for source, target in _WORK_ORDER_FIELDS.items():
        value = data.get(source)
        if value is not None and source in _WORK_ORDER_TIMESTAMP_FIELDS:
            value = format_timestamp(_timestamp_field(envelope, source))
        attributes[target] = value
    attributes["projectedAt"] = format_timestamp(projected_at)
    attributes["sourceEventId"] = envelope.id
    attributes["sourceEventType"] = envelope.type

    return ProjectionRow(key=key, attributes=attributes)


def _timestamp_field(envelope: Envelope, name: str) -> str:
    value = envelope.data.get(name)
    try:
        return format_timestamp(value)
    except ValueError as exc:
        raise ProjectionError(
            f"{envelope.type} event {envelope.id} has an invalid '{name}' timestamp"
        ) from exc

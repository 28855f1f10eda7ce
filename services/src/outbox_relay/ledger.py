from __future__ import annotations

import logging
from typing import Any, Protocol

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from pydantic import ValidationError

from outbox_relay.errors import LedgerUnavailableError
from outbox_relay.models import ChangeRecord

LOGGER = logging.getLogger(__name__)

# trace_id is read through to_jsonb so ledgers without that column still work.
_SELECT_UNPUBLISHED_SQL = """
SELECT
    o.id::text AS id,
    o.event_type,
    o.aggregate_id::text AS aggregate_id,
    o.aggregate_type,
    o.payload,
    o.occurred_at,
    o.published_at,
    o.version,
    to_jsonb(o) ->> 'trace_id' AS trace_id
FROM {table} AS o
WHERE o.published_at IS NULL
ORDER BY o.occurred_at ASC
LIMIT %s
"""

# The IS NULL guard keeps published_at from ever moving once set, even when
# overlapping relay invocations publish the same row.
_MARK_PUBLISHED_SQL = """
UPDATE {table}
SET published_at = NOW()
WHERE id = %s AND published_at IS NULL
"""

_INSERT_SQL = """
INSERT INTO {table} (event_type, aggregate_id, aggregate_type, payload, trace_id)
VALUES (%s, %s, %s, %s, %s)
RETURNING id::text
"""


class ChangeLedger(Protocol):
    async def select_unpublished(self, limit: int) -> list[ChangeRecord]:
        ...

    async def mark_published(self, record_id: str) -> None:
        ...


class PostgresChangeLedger:
    """Outbox table access for one relay invocation over a single connection."""

    def __init__(self, *, connection: psycopg.AsyncConnection[Any], table: str = "outbox") -> None:
        self._connection = connection
        self._table = sql.Identifier(table)

    @classmethod
    async def connect(cls, *, conninfo: str, table: str = "outbox") -> PostgresChangeLedger:
        try:
            connection = await psycopg.AsyncConnection.connect(conninfo=conninfo, autocommit=True)
        except psycopg.OperationalError as exc:
            raise LedgerUnavailableError("Cannot connect to the change ledger") from exc
        return cls(connection=connection, table=table)

    async def close(self) -> None:
        await self._connection.close()

    async def select_unpublished(self, limit: int) -> list[ChangeRecord]:
        query = sql.SQL(_SELECT_UNPUBLISHED_SQL).format(table=self._table)
        async with self._connection.cursor(row_factory=dict_row) as cursor:
            await cursor.execute(query, (limit,))
            rows = await cursor.fetchall()
        records: list[ChangeRecord] = []
        for row in rows:
            try:
                records.append(_row_to_record(row))
            except ValidationError:
                # Left unpublished; later rows in the batch still relay.
                LOGGER.exception("change_record_invalid", extra={"event_id": row.get("id")})
        return records

    async def mark_published(self, record_id: str) -> None:
        query = sql.SQL(_MARK_PUBLISHED_SQL).format(table=self._table)
        async with self._connection.cursor() as cursor:
            await cursor.execute(query, (record_id,))
            updated = cursor.rowcount

        if updated == 0:
            LOGGER.info("change_record_already_published", extra={"event_id": record_id})


async def insert_change_record(
    cursor: psycopg.AsyncCursor[Any],
    *,
    change_type: str,
    aggregate_id: str,
    aggregate_type: str,
    payload: dict[str, Any],
    trace_id: str | None = None,
    table: str = "outbox",
) -> str:
    """Append a change record inside the caller's open transaction.

    Expects a cursor with the default tuple row factory. Returns the generated
    record id.
    """

    query = sql.SQL(_INSERT_SQL).format(table=sql.Identifier(table))
    await cursor.execute(
        query,
        (change_type, aggregate_id, aggregate_type, Jsonb(payload), trace_id),
    )
    row = await cursor.fetchone()
    if row is None:
        raise RuntimeError("INSERT ... RETURNING produced no row")
    return str(row[0])


def _row_to_record(row: dict[str, Any]) -> ChangeRecord:
    return ChangeRecord(
        id=row["id"],
        change_type=row["event_type"],
        aggregate_id=row["aggregate_id"],
        aggregate_type=row["aggregate_type"],
        payload=row["payload"],
        occurred_at=row["occurred_at"],
        published_at=row["published_at"],
        version=row.get("version") or 1,
        trace_id=row.get("trace_id"),
    )

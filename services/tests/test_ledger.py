from __future__ import annotations

import asyncio
import json
from datetime import datetime
from typing import Any

import pytest

from outbox_relay.ledger import PostgresChangeLedger, insert_change_record
from outbox_relay.memory import InMemoryMessageBus
from outbox_relay.publisher import RelayPublisher


class _StubCursor:
    def __init__(
        self,
        *,
        rows: list[Any] | None = None,
        rowcount: int = 1,
        execute_error: Exception | None = None,
    ) -> None:
        self._rows = rows or []
        self._execute_error = execute_error
        self.rowcount = rowcount
        self.execute_calls: list[tuple[Any, tuple[Any, ...] | None]] = []

    async def __aenter__(self) -> _StubCursor:
        return self

    async def __aexit__(self, exc_type: object, exc: object, tb: object) -> None:
        return None

    async def execute(self, query: Any, params: tuple[Any, ...] | None = None) -> None:
        self.execute_calls.append((query, params))
        if self._execute_error is not None:
            raise self._execute_error

    async def fetchall(self) -> list[Any]:
        return list(self._rows)

    async def fetchone(self) -> Any:
        if not self._rows:
            return None
        return self._rows.pop(0)


class _StubConnection:
    def __init__(self, cursor: _StubCursor) -> None:
        self._cursor = cursor
        self.cursor_kwargs: list[dict[str, Any]] = []
        self.closed = False

    def cursor(self, **kwargs: Any) -> _StubCursor:
        self.cursor_kwargs.append(kwargs)
        return self._cursor

    async def close(self) -> None:
        self.closed = True


def _row(**overrides: Any) -> dict[str, Any]:
    row: dict[str, Any] = {
        "id": "3f1c6a52-9d59-4a8e-9d6c-2b1b0f1e0c11",
        "event_type": "WorkOrderCreated",
        "aggregate_id": "9b2e7c1a-1111-4c3b-8f00-5d6e7f809a1b",
        "aggregate_type": "WorkOrder",
        "payload": {"id": "w1", "org_id": "o1", "status": "OPEN"},
        "occurred_at": datetime(2024, 5, 1, 10, 0, 0),
        "published_at": None,
        "version": 1,
        "trace_id": None,
    }
    row.update(overrides)
    return row


def test_select_unpublished_maps_rows_and_bounds_limit() -> None:
    async def scenario() -> None:
        cursor = _StubCursor(rows=[_row(), _row(id="second", version=None)])
        connection = _StubConnection(cursor)
        ledger = PostgresChangeLedger(connection=connection, table="outbox")  # type: ignore[arg-type]

        records = await ledger.select_unpublished(10)

        assert [record.id for record in records] == [
            "3f1c6a52-9d59-4a8e-9d6c-2b1b0f1e0c11",
            "second",
        ]
        assert records[0].change_type == "WorkOrderCreated"
        assert records[0].payload["org_id"] == "o1"
        assert records[1].version == 1
        query, params = cursor.execute_calls[0]
        assert params == (10,)
        assert "published_at IS NULL" in repr(query)
        assert "ORDER BY o.occurred_at ASC" in repr(query)
        assert "Identifier('outbox')" in repr(query)
        assert "row_factory" in connection.cursor_kwargs[0]

    asyncio.run(scenario())


def test_invalid_row_does_not_block_later_rows_in_the_batch() -> None:
    async def scenario() -> None:
        cursor = _StubCursor(
            rows=[
                _row(id="bad", payload=["not", "an", "object"]),
                _row(id="no-timestamp", occurred_at=None),
                _row(id="good"),
            ]
        )
        ledger = PostgresChangeLedger(connection=_StubConnection(cursor))  # type: ignore[arg-type]
        bus = InMemoryMessageBus()

        result = await RelayPublisher(ledger=ledger, bus=bus, topic="orders").relay_batch()

        assert result.published_count == 1
        assert result.failed_ids == []
        assert [json.loads(message.message)["id"] for message in bus.published] == ["good"]
        updates = [params for query, params in cursor.execute_calls if "UPDATE" in repr(query)]
        assert updates == [("good",)]

    asyncio.run(scenario())


def test_trace_id_column_is_optional() -> None:
    async def scenario() -> None:
        row = _row()
        del row["trace_id"]
        cursor = _StubCursor(rows=[row, _row(id="traced", trace_id="trace-9")])
        ledger = PostgresChangeLedger(connection=_StubConnection(cursor))  # type: ignore[arg-type]

        records = await ledger.select_unpublished(10)

        assert [record.trace_id for record in records] == [None, "trace-9"]
        query, _ = cursor.execute_calls[0]
        assert "to_jsonb(o) ->> 'trace_id'" in repr(query)

    asyncio.run(scenario())


def test_mark_published_only_updates_unpublished_rows() -> None:
    async def scenario() -> None:
        cursor = _StubCursor(rowcount=1)
        ledger = PostgresChangeLedger(connection=_StubConnection(cursor))  # type: ignore[arg-type]

        await ledger.mark_published("e1")

        query, params = cursor.execute_calls[0]
        assert params == ("e1",)
        assert "SET published_at = NOW()" in repr(query)
        assert "published_at IS NULL" in repr(query)

    asyncio.run(scenario())


def test_mark_published_tolerates_already_published_row() -> None:
    async def scenario() -> None:
        cursor = _StubCursor(rowcount=0)
        ledger = PostgresChangeLedger(connection=_StubConnection(cursor))  # type: ignore[arg-type]

        await ledger.mark_published("e1")

        assert len(cursor.execute_calls) == 1

    asyncio.run(scenario())


def test_select_errors_propagate() -> None:
    async def scenario() -> None:
        cursor = _StubCursor(execute_error=ConnectionError("server closed the connection"))
        ledger = PostgresChangeLedger(connection=_StubConnection(cursor))  # type: ignore[arg-type]

        with pytest.raises(ConnectionError):
            await ledger.select_unpublished(10)

    asyncio.run(scenario())


def test_close_closes_connection() -> None:
    async def scenario() -> None:
        connection = _StubConnection(_StubCursor())
        ledger = PostgresChangeLedger(connection=connection)  # type: ignore[arg-type]

        await ledger.close()

        assert connection.closed

    asyncio.run(scenario())


def test_insert_change_record_returns_generated_id() -> None:
    async def scenario() -> None:
        cursor = _StubCursor(rows=[("new-id",)])

        record_id = await insert_change_record(
            cursor,  # type: ignore[arg-type]
            change_type="WorkOrderCreated",
            aggregate_id="w1",
            aggregate_type="WorkOrder",
            payload={"id": "w1"},
            trace_id="trace-1",
        )

        assert record_id == "new-id"
        query, params = cursor.execute_calls[0]
        assert "RETURNING id::text" in repr(query)
        assert params is not None
        assert params[0:3] == ("WorkOrderCreated", "w1", "WorkOrder")
        assert params[3].obj == {"id": "w1"}
        assert params[4] == "trace-1"

    asyncio.run(scenario())

from __future__ import annotations

from datetime import datetime, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: datetime | str) -> datetime:
    """Parse an ISO-8601 string or datetime into an aware UTC datetime.

    Naive values (PostgreSQL ``TIMESTAMP`` columns) are interpreted as UTC.
    """

    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(value)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Invalid ISO-8601 timestamp: {value!r}") from exc

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime | str) -> str:
    """Render a timestamp as fixed-width UTC ISO-8601 with millisecond precision.

    Fixed width keeps lexical order equal to chronological order, which the
    projection sort keys rely on.
    """

    parsed = parse_timestamp(value)
    return parsed.strftime("%Y-%m-%dT%H:%M:%S.") + f"{parsed.microsecond // 1000:03d}Z"


def epoch_seconds(value: datetime) -> int:
    return int(parse_timestamp(value).timestamp())

"""UTC timestamp helpers shared by recorder, audit trail and replay."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

EPOCH = datetime.fromtimestamp(0, UTC)


def utc_now() -> datetime:
    return datetime.now(UTC)


def iso_now() -> str:
    """Get current ISO timestamp."""
    return utc_now().isoformat()


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO string, epoch seconds or datetime into an aware datetime.

    Returns None when the value can't be interpreted.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(float(value), UTC)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return None


def elapsed_ms(start: datetime, end: datetime) -> float:
    """Milliseconds between two datetimes."""
    return (end - start).total_seconds() * 1000


def file_stamp(value: Any = None) -> int:
    """Epoch milliseconds used in record file names; now when value can't be parsed."""
    moment = parse_timestamp(value) or utc_now()
    return int(moment.timestamp() * 1000)

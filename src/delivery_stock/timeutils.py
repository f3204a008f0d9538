"""UTC timestamp helpers shared by the stock and archive services."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def serialize_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def compact_stamp(value: datetime) -> str:
    """``YYYYMMDD_HHMMSS`` in the timestamp's own timezone."""

    return value.strftime("%Y%m%d_%H%M%S")


__all__ = ["utcnow", "serialize_timestamp", "compact_stamp"]

"""Timestamp helpers shared by the detector and the storage monitor."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

# Values above this are taken to be epoch milliseconds (year 2286 in seconds).
_MILLISECONDS_THRESHOLD = 10_000_000_000


def parse_timestamp(value: Any) -> Optional[float]:
    """Return epoch seconds for an epoch number or ISO-8601 string, else None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
        return number / 1000.0 if number > _MILLISECONDS_THRESHOLD else number
    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return parse_timestamp(float(text))
        except ValueError:
            pass
        try:
            moment = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.timestamp()


def isoformat(epoch: float) -> str:
    if not epoch:
        return "never"
    return datetime.fromtimestamp(epoch, tz=timezone.utc).isoformat(timespec="seconds")


__all__ = ["isoformat", "parse_timestamp"]

"""Timestamp helpers shared by the client and the backend."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Union

TimestampLike = Union[str, int, float, datetime, None]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_iso(value: datetime) -> str:
    """Return ``value`` as an ISO-8601 UTC string with millisecond precision."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    else:
        value = value.astimezone(timezone.utc)
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def now_iso() -> str:
    return format_iso(utc_now())


def epoch_ms(value: Optional[datetime] = None) -> int:
    moment = value or utc_now()
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp() * 1000)


def parse_timestamp(value: TimestampLike) -> Optional[datetime]:
    """Parse ISO strings, epoch milliseconds or datetimes into aware UTC values.

    Numbers (or numeric strings) are treated as epoch milliseconds, matching the
    ``since`` query parameter sent by browser clients. Unparsable input yields
    ``None``.
    """

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, bool):
        return None
    elif isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    else:
        text = str(value).strip()
        if not text:
            return None
        if text.lstrip("-").isdigit():
            return datetime.fromtimestamp(int(text) / 1000.0, tz=timezone.utc)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def later_of(current: Optional[str], candidate: str) -> str:
    """Return whichever ISO timestamp is later so stamps never move backwards."""

    previous = parse_timestamp(current)
    proposed = parse_timestamp(candidate)
    if previous is None or proposed is None:
        return candidate
    return candidate if proposed >= previous else str(current)


__all__ = [
    "TimestampLike",
    "epoch_ms",
    "format_iso",
    "later_of",
    "now_iso",
    "parse_timestamp",
    "utc_now",
]

# Overview: Timestamp and money-format helpers shared by models, services and the gateway client.

"""
All timestamps are stored UTC-naive and serialized with a trailing 'Z'.
Money is integer cents everywhere except the gateway wire format.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _as_utc_naive(dt: datetime) -> datetime:
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an estimated-delivery style ISO-8601 string.

    Blank -> None. Offsets (including 'Z') are converted to UTC; a naive
    value is taken to already be UTC. Raises ValueError on garbage.
    """
    text = (value or "").strip()
    if not text:
        return None
    if text[-1] in ("Z", "z"):
        text = f"{text[:-1]}+00:00"
    return _as_utc_naive(datetime.fromisoformat(text))


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """API timestamp: whole seconds, UTC, 'Z' suffix."""
    if dt is None:
        return None
    stamp = _as_utc_naive(dt).replace(microsecond=0)
    return f"{stamp.isoformat()}Z"


def due_date_from(start: Optional[datetime], days: int) -> datetime:
    """Invoice due date: `days` after `start` (or after now when start is unknown)."""
    return (start or utcnow()) + timedelta(days=days)


def cents_to_amount(cents: int) -> str:
    """Gateway amount string: 1234 -> "12.34"."""
    whole, frac = divmod(abs(int(cents)), 100)
    return f"{'-' if cents < 0 else ''}{whole}.{frac:02d}"

"""Naive-UTC time helpers shared by the decoders, store and rollups."""

from datetime import datetime, timedelta, timezone

_EPOCH = datetime(1970, 1, 1)


def utcnow() -> datetime:
    """Current time as a naive UTC datetime (the form stored in the database)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_millis(ms: int) -> datetime:
    return _EPOCH + timedelta(milliseconds=ms)


def to_millis(dt: datetime) -> int:
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return (dt - _EPOCH) // timedelta(milliseconds=1)

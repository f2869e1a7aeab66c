"""Relational persistence for counters, sessions and identities."""

from datetime import datetime, timezone


def to_db_time(epoch_seconds: float) -> datetime:
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc).replace(tzinfo=None)


def from_db_time(value: datetime) -> float:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


__all__ = ["from_db_time", "to_db_time"]

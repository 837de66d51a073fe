"""Clock abstraction and timestamp helpers.

Every scheduling decision takes "now" from an injected Clock so that
cooldowns, slot alignment and daily resets can be exercised in tests.
Timestamps are persisted as fixed-width UTC ISO strings, which keeps
lexical ordering in SQLite equal to chronological ordering.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone


class Clock:
    def now(self) -> datetime:
        raise NotImplementedError


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock(Clock):
    """Clock that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self._now = _aware(start)

    def now(self) -> datetime:
        return self._now

    def set(self, value: datetime) -> None:
        self._now = _aware(value)

    def advance(self, **kwargs) -> datetime:
        self._now = self._now + timedelta(**kwargs)
        return self._now


def _aware(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def to_db(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return _aware(dt).astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db(value: str | None) -> datetime | None:
    if not value:
        return None
    return _aware(datetime.fromisoformat(value.replace("Z", "+00:00")))


def floor_minute(dt: datetime) -> datetime:
    return dt.replace(second=0, microsecond=0)

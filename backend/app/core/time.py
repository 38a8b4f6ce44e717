"""Time helpers and the injectable clock used for all deadline math."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Protocol


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime.

    Timestamps are stored in ``DateTime`` columns without timezone info, so every
    value produced by the application is naive UTC to keep comparisons valid.
    """
    return datetime.now(UTC).replace(tzinfo=None)


class Clock(Protocol):
    """Source of the current time for consent deadline evaluation."""

    def now(self) -> datetime: ...


class SystemClock:
    """Wall-clock implementation backed by :func:`utcnow`."""

    def now(self) -> datetime:
        return utcnow()


system_clock = SystemClock()

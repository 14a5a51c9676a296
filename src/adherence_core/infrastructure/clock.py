"""Clock adapters: wall-clock time and a settable clock for tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone


class SystemClock:

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock:
    """A settable clock for tests and simulations."""

    def __init__(self, instant: datetime) -> None:
        self.set(instant)

    def now(self) -> datetime:
        return self._instant

    def set(self, instant: datetime) -> None:
        if instant.tzinfo is None:
            raise ValueError("FixedClock requires a timezone-aware instant")
        self._instant = instant

    def advance(self, delta: timedelta) -> None:
        self._instant = self._instant + delta

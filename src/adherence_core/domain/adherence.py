"""Adherence metrics derived from the set of days with at least one dose.

All metrics are anchored to `now` (converted to the subject's local day).
The 30-day window is fixed before counting starts: it is the inclusive range
[today - (window_days - 1), today] and never moves with an iteration cursor.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Iterable

from adherence_core.domain.medication import DoseRecord, local_day

logger = logging.getLogger(__name__)

DaySet = frozenset[date]


@dataclass(frozen=True)
class ActivityEntry:
    day: date
    taken: bool
    time: datetime | None


@dataclass(frozen=True)
class AdherenceSummary:
    streak: int
    monthly_pct: int
    missed_days: int
    recent_activity: tuple[ActivityEntry, ...]
    taken_today: bool


class AdherenceCalculator:

    def __init__(
        self,
        tz: tzinfo = timezone.utc,
        window_days: int = 30,
        streak_cap: int = 366,
        activity_days: int = 7,
    ) -> None:
        if window_days <= 0:
            raise ValueError("window_days must be positive")
        self._tz = tz
        self._window_days = window_days
        self._streak_cap = streak_cap
        self._activity_days = activity_days

    def day_set(self, doses: Iterable[DoseRecord]) -> DaySet:
        return frozenset(local_day(d.taken_at, self._tz) for d in doses)

    def today(self, now: datetime) -> date:
        return local_day(now, self._tz)

    def window(self, now: datetime) -> tuple[date, date]:
        """Inclusive (first, last) days of the trailing adherence window."""
        last = self.today(now)
        return last - timedelta(days=self._window_days - 1), last

    def streak(self, days: DaySet, now: datetime) -> int:
        cursor = self.today(now)
        streak = 0
        for _ in range(self._streak_cap):
            if cursor not in days:
                return streak
            streak += 1
            cursor -= timedelta(days=1)
        logger.warning(
            "Streak walk reached its cap of %d days", self._streak_cap,
            extra={"adherence_streak_cap": self._streak_cap},
        )
        return streak

    def days_in_window(self, days: DaySet, now: datetime) -> int:
        first, last = self.window(now)
        return sum(1 for d in days if first <= d <= last)

    def monthly_adherence(self, days: DaySet, now: datetime) -> int:
        if not days:
            return 0
        return round(100 * self.days_in_window(days, now) / self._window_days)

    def missed_days(self, days: DaySet, now: datetime) -> int:
        return self._window_days - self.days_in_window(days, now)

    def recent_activity(
        self,
        doses: Iterable[DoseRecord],
        now: datetime,
    ) -> tuple[ActivityEntry, ...]:
        """Most-recent-first activity feed. `time` is the day's earliest dose."""
        first_dose: dict[date, datetime] = {}
        for dose in doses:
            day = local_day(dose.taken_at, self._tz)
            if day not in first_dose or dose.taken_at < first_dose[day]:
                first_dose[day] = dose.taken_at

        today = self.today(now)
        entries = []
        for offset in range(self._activity_days):
            day = today - timedelta(days=offset)
            taken_at = first_dose.get(day)
            entries.append(ActivityEntry(day=day, taken=taken_at is not None, time=taken_at))
        return tuple(entries)

    def summarize(self, doses: Iterable[DoseRecord], now: datetime) -> AdherenceSummary:
        doses = list(doses)
        days = self.day_set(doses)
        return AdherenceSummary(
            streak=self.streak(days, now),
            monthly_pct=self.monthly_adherence(days, now),
            missed_days=self.missed_days(days, now),
            recent_activity=self.recent_activity(doses, now),
            taken_today=self.today(now) in days,
        )

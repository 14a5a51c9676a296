"""Schedule matching: scheduled time slots vs. recorded doses.

For one medication and one calendar day, the matcher produces one
SlotStatus per scheduled time-of-day (or a single synthetic slot when the
medication has no schedule).

A dose satisfies a slot when its taken_at lies within the symmetric
tolerance window around the slot's scheduled instant AND on the same local
calendar day. Pairing is deterministic:

  - every (slot, dose) pair inside a window is a candidate;
  - candidates are ordered by |taken_at - scheduled|, then earliest taken_at,
    then slot order, then dose id;
  - candidates are taken greedily, so each slot gets at most one dose and
    each dose satisfies at most one slot.

The result never depends on the order in which the store returned doses.

State assignment (first match wins):
  1. day after today            -> FUTURE
  2. slot has a matched dose    -> TAKEN
  3. today, scheduled < now     -> MISSED
  4. today, scheduled >= now    -> DUE_SOON
  5. day before today           -> NOT_APPLICABLE_PAST
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone, tzinfo
from enum import Enum
from typing import Iterable

from adherence_core.domain.medication import (
    DoseRecord,
    Medication,
    local_day,
    parse_slot_time,
    start_of_day,
)

DEFAULT_TOLERANCE = timedelta(minutes=15)


class SlotState(Enum):
    FUTURE = "future"
    DUE_SOON = "due_soon"
    MISSED = "missed"
    TAKEN = "taken"
    NOT_APPLICABLE_PAST = "not_applicable_past"


_ACTIONABLE = {SlotState.MISSED, SlotState.DUE_SOON}


@dataclass(frozen=True)
class SlotStatus:
    time: str | None  # None for the synthetic unscheduled slot
    scheduled_instant: datetime
    taken: bool
    matched_dose: DoseRecord | None
    state: SlotState

    @property
    def actionable(self) -> bool:
        """Whether "mark taken" is offered for this slot."""
        return self.state in _ACTIONABLE

    @property
    def can_undo(self) -> bool:
        # An optimistic dose has no server id yet.
        return (
            self.matched_dose is not None
            and not self.matched_dose.is_optimistic
            and self.state is SlotState.TAKEN
        )


class ScheduleMatcher:
    """Pure matcher. Never reads or mutates any cache."""

    def __init__(
        self,
        tolerance: timedelta = DEFAULT_TOLERANCE,
        tz: tzinfo = timezone.utc,
    ) -> None:
        self._tolerance = tolerance
        self._tz = tz

    @property
    def tz(self) -> tzinfo:
        return self._tz

    def slot_statuses(
        self,
        medication: Medication,
        day: date,
        doses: Iterable[DoseRecord],
        now: datetime,
    ) -> list[SlotStatus]:
        day_doses = [
            d for d in doses
            if d.medication_id == medication.id and local_day(d.taken_at, self._tz) == day
        ]
        today = local_day(now, self._tz)

        if medication.is_unscheduled:
            return [self._unscheduled_slot(day, day_doses, today)]

        slots = [
            (t, datetime.combine(day, parse_slot_time(t), tzinfo=self._tz))
            for t in medication.time_of_day
        ]
        matches = self.pair([instant for _, instant in slots], day_doses)

        statuses: list[SlotStatus] = []
        for index, (slot_time, instant) in enumerate(slots):
            matched = matches.get(index)
            statuses.append(SlotStatus(
                time=slot_time,
                scheduled_instant=instant,
                taken=matched is not None,
                matched_dose=matched,
                state=_state(day, today, instant, matched, now),
            ))
        return statuses

    def pair(
        self,
        instants: list[datetime],
        doses: list[DoseRecord],
    ) -> dict[int, DoseRecord]:
        """Assign doses to slot indexes, at most one each way."""
        candidates = []
        for slot_index, instant in enumerate(instants):
            low, high = instant - self._tolerance, instant + self._tolerance
            for dose in doses:
                if low <= dose.taken_at <= high:
                    distance = abs(dose.taken_at - instant)
                    candidates.append((distance, dose.taken_at, slot_index, dose.id, dose))
        candidates.sort(key=lambda c: c[:4])

        assigned: dict[int, DoseRecord] = {}
        used_doses: set[str] = set()
        for _, _, slot_index, dose_id, dose in candidates:
            if slot_index in assigned or dose_id in used_doses:
                continue
            assigned[slot_index] = dose
            used_doses.add(dose_id)
        return assigned

    def _unscheduled_slot(
        self,
        day: date,
        day_doses: list[DoseRecord],
        today: date,
    ) -> SlotStatus:
        # The most recent dose of the day is the one shown.
        latest = max(day_doses, key=lambda d: (d.taken_at, d.id), default=None)
        if day > today:
            state = SlotState.FUTURE
        elif latest is not None:
            state = SlotState.TAKEN
        elif day == today:
            state = SlotState.MISSED
        else:
            state = SlotState.NOT_APPLICABLE_PAST
        return SlotStatus(
            time=None,
            scheduled_instant=start_of_day(day, self._tz),
            taken=latest is not None,
            matched_dose=latest,
            state=state,
        )


def _state(
    day: date,
    today: date,
    instant: datetime,
    matched: DoseRecord | None,
    now: datetime,
) -> SlotState:
    if day > today:
        return SlotState.FUTURE
    if matched is not None:
        return SlotState.TAKEN
    if day == today:
        return SlotState.MISSED if instant < now else SlotState.DUE_SOON
    return SlotState.NOT_APPLICABLE_PAST

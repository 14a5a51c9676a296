"""Medication, dose and attachment value objects.

Rows coming back from the remote store are plain dicts. The from_row()
constructors are the only place where store field names are interpreted.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any
from uuid import uuid4

OPTIMISTIC_ID_PREFIX = "optimistic-"

_SLOT_TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def parse_slot_time(value: str) -> time:
    """Parse a scheduled time-of-day string (HH:MM)."""
    match = _SLOT_TIME_RE.match(value.strip()) if isinstance(value, str) else None
    if match is None:
        raise ValueError(f"Invalid scheduled time {value!r}, expected HH:MM")
    return time(int(match.group(1)), int(match.group(2)))


def normalize_schedule(times: Any) -> tuple[str, ...]:
    """Validate scheduled times and drop duplicates, preserving order."""
    seen: list[str] = []
    for raw in times or ():
        slot = parse_slot_time(raw)
        text = slot.strftime("%H:%M")
        if text not in seen:
            seen.append(text)
    return tuple(seen)


def parse_instant(value: Any) -> datetime:
    """Parse an ISO timestamp. Naive values are taken to be UTC."""
    if isinstance(value, datetime):
        instant = value
    else:
        instant = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant


def local_day(instant: datetime, tz: tzinfo) -> date:
    """Calendar day of an instant in the subject's time zone."""
    return instant.astimezone(tz).date()


def start_of_day(day: date, tz: tzinfo) -> datetime:
    return datetime.combine(day, time.min, tzinfo=tz)


def day_bounds(day: date, tz: tzinfo) -> tuple[datetime, datetime]:
    """Half-open [start, end) instants of a local calendar day."""
    start = start_of_day(day, tz)
    return start, start_of_day(day + timedelta(days=1), tz)


@dataclass(frozen=True)
class Medication:
    id: str
    subject_id: str
    name: str
    dosage: str = ""
    frequency: str = ""
    time_of_day: tuple[str, ...] = ()
    created_at: datetime | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "time_of_day", normalize_schedule(self.time_of_day))

    @property
    def is_unscheduled(self) -> bool:
        return not self.time_of_day

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Medication:
        created = row.get("created_at")
        return cls(
            id=str(row["id"]),
            subject_id=str(row["user_id"]),
            name=row.get("name", ""),
            dosage=row.get("dosage", ""),
            frequency=row.get("frequency", ""),
            time_of_day=tuple(row.get("time_of_day") or ()),
            created_at=parse_instant(created) if created else None,
        )


@dataclass(frozen=True)
class DoseRecord:
    """An immutable record that a medication was taken at `taken_at`."""

    id: str
    medication_id: str
    taken_at: datetime

    @property
    def is_optimistic(self) -> bool:
        return self.id.startswith(OPTIMISTIC_ID_PREFIX)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> DoseRecord:
        return cls(
            id=str(row["id"]),
            medication_id=str(row["medication_id"]),
            taken_at=parse_instant(row["taken_at"]),
        )

    @classmethod
    def optimistic(cls, medication_id: str, taken_at: datetime) -> DoseRecord:
        """A temporary record used only as an optimistic cache patch."""
        return cls(
            id=f"{OPTIMISTIC_ID_PREFIX}{uuid4()}",
            medication_id=medication_id,
            taken_at=taken_at,
        )


@dataclass(frozen=True)
class MedicalReport:
    id: str
    subject_id: str
    medication_id: str | None
    report_name: str
    file_url: str
    uploaded_at: datetime

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> MedicalReport:
        medication_id = row.get("medication_id")
        return cls(
            id=str(row["id"]),
            subject_id=str(row["user_id"]),
            medication_id=str(medication_id) if medication_id else None,
            report_name=row.get("report_name", ""),
            file_url=row["file_url"],
            uploaded_at=parse_instant(row["uploaded_at"]),
        )


@dataclass(frozen=True)
class Attachment:
    """A staged proof photo, not yet uploaded."""

    filename: str
    content: bytes = field(repr=False)

    @property
    def extension(self) -> str:
        _, dot, ext = self.filename.rpartition(".")
        return ext if dot else "bin"

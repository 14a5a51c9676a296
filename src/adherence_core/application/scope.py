"""Cache scopes: keys identifying one cached view of remote data.

A scope is (kind, owner_id, day) plus the subject the view derives from.
Several scopes can be overlapping views of the same underlying dose log
(a medication's day view, the subject's full dose list, the caretaker's
summary), which is why invalidation works on the subject as a whole.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from enum import Enum


class ResourceKind(Enum):
    MEDICATION_DAY_DOSES = "medication_day_doses"
    SUBJECT_DOSES = "subject_doses"
    PATIENT_DOSES = "patient_doses"
    MEDICATIONS = "medications"
    MEDICAL_REPORTS = "medical_reports"


DOSE_LIST_KINDS = frozenset({
    ResourceKind.MEDICATION_DAY_DOSES,
    ResourceKind.SUBJECT_DOSES,
    ResourceKind.PATIENT_DOSES,
})


@dataclass(frozen=True)
class CacheScope:
    kind: ResourceKind
    owner_id: str
    day: date | None
    subject_id: str

    def covers(self, other: CacheScope) -> bool:
        """True if invalidating self must also invalidate `other`.

        A scope without a day covers every day of the same kind and owner.
        """
        if self.kind is not other.kind or self.owner_id != other.owner_id:
            return False
        return self.day is None or self.day == other.day

    def __str__(self) -> str:
        suffix = f"/{self.day.isoformat()}" if self.day else ""
        return f"{self.kind.value}:{self.owner_id}{suffix}"


def medication_day_doses(subject_id: str, medication_id: str, day: date) -> CacheScope:
    return CacheScope(ResourceKind.MEDICATION_DAY_DOSES, medication_id, day, subject_id)


def subject_doses(subject_id: str) -> CacheScope:
    return CacheScope(ResourceKind.SUBJECT_DOSES, subject_id, None, subject_id)


def patient_doses(subject_id: str) -> CacheScope:
    return CacheScope(ResourceKind.PATIENT_DOSES, subject_id, None, subject_id)


def medications(subject_id: str) -> CacheScope:
    return CacheScope(ResourceKind.MEDICATIONS, subject_id, None, subject_id)


def medical_reports(subject_id: str, medication_id: str) -> CacheScope:
    return CacheScope(ResourceKind.MEDICAL_REPORTS, medication_id, None, subject_id)

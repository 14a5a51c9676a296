"""Scope fetchers: one remote query recipe per ResourceKind.

Fetched data is stored in the cache as tuples of value objects so snapshots
can be kept by reference and compared by value.
"""

from __future__ import annotations

from datetime import datetime, timezone, tzinfo
from typing import Any

from adherence_core.application.scope import CacheScope, ResourceKind
from adherence_core.domain.events import MEDICAL_REPORTS, MEDICATION_DOSES, MEDICATIONS
from adherence_core.domain.medication import DoseRecord, MedicalReport, Medication, day_bounds
from adherence_core.domain.ports import RemoteStore

_NEWEST_FIRST = ("taken_at", True)


def to_wire(instant: datetime) -> str:
    """Timestamps are written to the store as UTC ISO-8601 strings."""
    return instant.astimezone(timezone.utc).isoformat()


class StoreFetcher:
    """Callable fetcher handed to DoseCache."""

    def __init__(self, store: RemoteStore, tz: tzinfo = timezone.utc) -> None:
        self._store = store
        self._tz = tz
        self._recipes = {
            ResourceKind.MEDICATION_DAY_DOSES: self._medication_day_doses,
            ResourceKind.SUBJECT_DOSES: self._subject_doses,
            ResourceKind.PATIENT_DOSES: self._subject_doses,
            ResourceKind.MEDICATIONS: self._medications,
            ResourceKind.MEDICAL_REPORTS: self._medical_reports,
        }

    async def __call__(self, scope: CacheScope) -> Any:
        return await self._recipes[scope.kind](scope)

    async def _medication_day_doses(self, scope: CacheScope) -> tuple[DoseRecord, ...]:
        start, end = day_bounds(scope.day, self._tz)
        rows = await self._store.query(
            MEDICATION_DOSES,
            [
                ("medication_id", "eq", scope.owner_id),
                ("taken_at", "gte", to_wire(start)),
                ("taken_at", "lt", to_wire(end)),
            ],
            _NEWEST_FIRST,
        )
        return tuple(DoseRecord.from_row(r) for r in rows)

    async def _subject_doses(self, scope: CacheScope) -> tuple[DoseRecord, ...]:
        meds = await self._store.query(MEDICATIONS, [("user_id", "eq", scope.subject_id)])
        medication_ids = [str(m["id"]) for m in meds]
        if not medication_ids:
            return ()
        rows = await self._store.query(
            MEDICATION_DOSES,
            [("medication_id", "in", medication_ids)],
            _NEWEST_FIRST,
        )
        return tuple(DoseRecord.from_row(r) for r in rows)

    async def _medications(self, scope: CacheScope) -> tuple[Medication, ...]:
        rows = await self._store.query(
            MEDICATIONS,
            [("user_id", "eq", scope.subject_id)],
            ("created_at", True),
        )
        return tuple(Medication.from_row(r) for r in rows)

    async def _medical_reports(self, scope: CacheScope) -> tuple[MedicalReport, ...]:
        rows = await self._store.query(
            MEDICAL_REPORTS,
            [("user_id", "eq", scope.subject_id), ("medication_id", "eq", scope.owner_id)],
            ("uploaded_at", True),
        )
        return tuple(MedicalReport.from_row(r) for r in rows)

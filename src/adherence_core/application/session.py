"""SubjectSession — the per-subject derived state and its lifecycle.

A session owns the DoseCache, the mutation coordinator and the realtime
reconciler for exactly one subject. It is opened when a subject context is
established and closed when the context changes. Nothing here is a
module-level singleton.

Reads go through the cache and hand a consistent value to the pure
ScheduleMatcher / AdherenceCalculator. Writes are expressed as
PendingMutation values and handed to the coordinator.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any
from uuid import uuid4

from adherence_core.application import scope as scopes
from adherence_core.application.dose_cache import DoseCache
from adherence_core.application.fetchers import StoreFetcher, to_wire
from adherence_core.application.mutation import (
    MutationHandle,
    MutationKind,
    OptimisticMutationCoordinator,
    PendingMutation,
)
from adherence_core.application.realtime import RealtimeReconciler
from adherence_core.application.scope import DOSE_LIST_KINDS, CacheScope
from adherence_core.domain.adherence import AdherenceCalculator, AdherenceSummary
from adherence_core.domain.errors import (
    AttachmentFailed,
    InvalidMutation,
    RemoteWriteFailed,
    StoreError,
)
from adherence_core.domain.events import MEDICAL_REPORTS, MEDICATION_DOSES, MEDICATIONS
from adherence_core.domain.medication import (
    OPTIMISTIC_ID_PREFIX,
    Attachment,
    DoseRecord,
    MedicalReport,
    Medication,
    local_day,
    parse_slot_time,
)
from adherence_core.domain.ports import AttachmentStore, ChangeFeed, Clock, RemoteStore
from adherence_core.domain.schedule import ScheduleMatcher, SlotStatus

logger = logging.getLogger(__name__)


class SubjectSession:

    def __init__(
        self,
        subject_id: str,
        store: RemoteStore,
        attachment_store: AttachmentStore,
        feed: ChangeFeed,
        clock: Clock,
        matcher: ScheduleMatcher,
        calculator: AdherenceCalculator,
    ) -> None:
        self.subject_id = subject_id
        self._store = store
        self._attachments = attachment_store
        self._clock = clock
        self._matcher = matcher
        self._calculator = calculator
        self._tz = matcher.tz
        self._fetcher = StoreFetcher(store, self._tz)
        self.cache = DoseCache(self._fetcher, clock)
        self.coordinator = OptimisticMutationCoordinator(self.cache)
        self.reconciler = RealtimeReconciler(feed, self.cache)

    def open(self) -> None:
        self.reconciler.activate(self.subject_id)

    async def close(self) -> None:
        self.reconciler.deactivate()
        await self.coordinator.close()
        await self.cache.close()

    async def wait_idle(self) -> None:
        """Wait for in-flight mutations and background refetches to finish."""
        await self.coordinator.wait_idle()
        await self.cache.wait_idle()

    # -- queries ------------------------------------------------------------

    async def slot_statuses(self, medication: Medication, day: date) -> list[SlotStatus]:
        self._check_owner(medication)
        doses = await self.cache.read(self._day_scope(medication.id, day))
        return self._matcher.slot_statuses(medication, day, doses, self._clock.now())

    async def adherence_summary(
        self,
        now: datetime | None = None,
        caretaker_view: bool = False,
    ) -> AdherenceSummary:
        scope = (
            scopes.patient_doses(self.subject_id)
            if caretaker_view
            else scopes.subject_doses(self.subject_id)
        )
        doses = await self.cache.read(scope)
        return self._calculator.summarize(doses, now or self._clock.now())

    async def medications(self) -> tuple[Medication, ...]:
        return await self.cache.read(scopes.medications(self.subject_id))

    async def medical_reports(self, medication: Medication) -> tuple[MedicalReport, ...]:
        self._check_owner(medication)
        return await self.cache.read(scopes.medical_reports(self.subject_id, medication.id))

    # -- mutations ----------------------------------------------------------

    def mark_taken(
        self,
        medication: Medication,
        slot_time: str | None = None,
        attachment: Attachment | None = None,
        day: date | None = None,
    ) -> MutationHandle:
        """Record a dose for a slot of today's schedule.

        Scheduled slots are timestamped at the slot time; unscheduled
        medications are timestamped at now. Only a MISSED or DUE_SOON slot
        can be marked: the cached day view is checked here, and the server's
        doses are checked again before anything is written.
        """
        self._check_owner(medication)
        now = self._clock.now()
        today = local_day(now, self._tz)
        day = day or today
        if day != today:
            raise InvalidMutation(f"Only today's slots can be marked taken, not {day}")

        if medication.is_unscheduled:
            taken_at = now
            slot_label = "unscheduled"
        else:
            if slot_time is None:
                raise InvalidMutation(f"{medication.name} is scheduled; a slot time is required")
            slot_label = parse_slot_time(slot_time).strftime("%H:%M")
            if slot_label not in medication.time_of_day:
                raise InvalidMutation(f"{slot_label} is not a scheduled time of {medication.name}")
            taken_at = datetime.combine(day, parse_slot_time(slot_label), tzinfo=self._tz)

        day_scope = self._day_scope(medication.id, day)
        cached = self.cache.peek(day_scope)
        if cached is not None:
            self._require_actionable(medication, slot_label, day, cached)

        targets = [
            day_scope,
            scopes.subject_doses(self.subject_id),
            scopes.patient_doses(self.subject_id),
        ]
        if attachment is not None:
            targets.append(scopes.medical_reports(self.subject_id, medication.id))

        async def write() -> DoseRecord:
            try:
                current = await self._fetcher(day_scope)
            except StoreError as exc:
                raise RemoteWriteFailed(
                    f"Failed to check {slot_label} before marking it taken: {exc}", original=exc,
                ) from exc
            self._require_actionable(medication, slot_label, day, current)
            report = None
            if attachment is not None:
                report = await self._store_attachment(medication, slot_label, attachment, now)
            return await self._insert_dose(medication, taken_at, report)

        return self._submit(
            MutationKind.MARK_TAKEN,
            targets,
            self._prepend(medication.id, taken_at, targets),
            write,
            attachment=attachment,
            request={
                "medication": medication,
                "slot_time": slot_time,
                "day": day,
            },
        )

    def log_dose_by_caretaker(self, medication: Medication) -> MutationHandle:
        """A caretaker records that the patient took a dose just now."""
        self._check_owner(medication)
        now = self._clock.now()
        targets = [
            scopes.patient_doses(self.subject_id),
            scopes.subject_doses(self.subject_id),
            self._day_scope(medication.id, local_day(now, self._tz)),
        ]

        async def write() -> DoseRecord:
            return await self._insert_dose(medication, now, None)

        return self._submit(
            MutationKind.LOG_BY_CARETAKER,
            targets,
            self._prepend(medication.id, now, targets),
            write,
            request={"medication": medication},
        )

    def undo_dose(self, dose_id: str) -> MutationHandle:
        if dose_id.startswith(OPTIMISTIC_ID_PREFIX):
            raise InvalidMutation("Cannot undo a dose that has not been confirmed yet")
        targets = self.cache.scopes(subject_id=self.subject_id, kinds=DOSE_LIST_KINDS)

        def remove(old: Any) -> tuple[DoseRecord, ...]:
            return tuple(d for d in old or () if d.id != dose_id)

        async def write() -> None:
            try:
                await self._check_dose_owner(dose_id)
                await self._store.delete(MEDICATION_DOSES, dose_id)
            except StoreError as exc:
                raise RemoteWriteFailed(f"Failed to undo dose: {exc}", original=exc) from exc

        return self._submit(
            MutationKind.UNDO,
            targets,
            {scope: remove for scope in targets},
            write,
            request={"dose_id": dose_id},
        )

    # -- internals ----------------------------------------------------------

    def _submit(
        self,
        kind: MutationKind,
        targets: list[CacheScope],
        delta: dict[CacheScope, Any],
        write: Any,
        attachment: Attachment | None = None,
        request: dict[str, Any] | None = None,
    ) -> MutationHandle:
        mutation = PendingMutation(
            kind=kind,
            target_scopes=tuple(targets),
            optimistic_delta=delta,
            write=write,
            attachment=attachment,
        )
        handle = MutationHandle(kind, attachment=attachment, request=request)
        return self.coordinator.submit(mutation, handle)

    def _day_scope(self, medication_id: str, day: date) -> CacheScope:
        return scopes.medication_day_doses(self.subject_id, medication_id, day)

    def _check_owner(self, medication: Medication) -> None:
        if medication.subject_id != self.subject_id:
            raise InvalidMutation(
                f"Medication {medication.id} does not belong to subject {self.subject_id}"
            )

    def _require_actionable(
        self,
        medication: Medication,
        slot_label: str,
        day: date,
        doses: Any,
    ) -> None:
        statuses = self._matcher.slot_statuses(medication, day, doses, self._clock.now())
        status = next(
            s for s in statuses if medication.is_unscheduled or s.time == slot_label
        )
        if not status.actionable:
            raise InvalidMutation(
                f"{medication.name} {slot_label} is {status.state.value}, not markable"
            )

    async def _check_dose_owner(self, dose_id: str) -> None:
        """A missing dose is left for the delete to report."""
        rows = await self._store.query(MEDICATION_DOSES, [("id", "eq", dose_id)])
        if not rows:
            return
        owned = await self._store.query(MEDICATIONS, [
            ("id", "eq", rows[0]["medication_id"]),
            ("user_id", "eq", self.subject_id),
        ])
        if not owned:
            raise InvalidMutation(
                f"Dose {dose_id} does not belong to subject {self.subject_id}"
            )

    @staticmethod
    def _prepend(
        medication_id: str,
        taken_at: datetime,
        targets: list[CacheScope],
    ) -> dict[CacheScope, Any]:
        record = DoseRecord.optimistic(medication_id, taken_at)

        def prepend(old: Any) -> tuple[DoseRecord, ...]:
            return (record,) + tuple(old or ())

        return {scope: prepend for scope in targets if scope.kind in DOSE_LIST_KINDS}

    async def _insert_dose(
        self,
        medication: Medication,
        taken_at: datetime,
        report: tuple[str, MedicalReport] | None,
    ) -> DoseRecord:
        try:
            row = await self._store.insert(
                MEDICATION_DOSES,
                {"medication_id": medication.id, "taken_at": to_wire(taken_at)},
            )
        except StoreError as exc:
            if report is not None:
                await self._discard_attachment(*report)
            raise RemoteWriteFailed(
                f"Failed to mark medication as taken: {exc}", original=exc,
            ) from exc
        return DoseRecord.from_row(row)

    async def _store_attachment(
        self,
        medication: Medication,
        slot_label: str,
        attachment: Attachment,
        now: datetime,
    ) -> tuple[str, MedicalReport]:
        """Upload the proof photo and record its metadata, or neither."""
        owner_scope = f"{self.subject_id}/{medication.id}"
        try:
            url = await self._attachments.store(
                owner_scope, f"{uuid4()}.{attachment.extension}", attachment.content,
            )
        except StoreError as exc:
            raise AttachmentFailed(f"Failed to upload proof photo: {exc}", original=exc) from exc

        try:
            row = await self._store.insert(MEDICAL_REPORTS, {
                "user_id": self.subject_id,
                "medication_id": medication.id,
                "report_name": (
                    f"Proof for {medication.name} - {slot_label} "
                    f"({now.astimezone(self._tz):%b %d, %H:%M})"
                ),
                "file_url": url,
                "uploaded_at": to_wire(now),
            })
        except StoreError as exc:
            await self._discard_attachment(url, None)
            raise AttachmentFailed(
                f"Failed to record proof photo in database: {exc}", original=exc,
            ) from exc
        return url, MedicalReport.from_row(row)

    async def _discard_attachment(self, url: str, report: MedicalReport | None) -> None:
        """Compensate a partially written attachment."""
        if report is not None:
            try:
                await self._store.delete(MEDICAL_REPORTS, report.id)
            except StoreError:
                logger.exception(
                    "Could not delete orphaned report %s", report.id,
                    extra={"adherence_subject_id": self.subject_id},
                )
        try:
            await self._attachments.remove(url)
        except StoreError:
            logger.exception(
                "Could not remove orphaned attachment %s", url,
                extra={"adherence_subject_id": self.subject_id},
            )

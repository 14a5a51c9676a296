"""Adherence Gateway — single entry point for presentation layers.

The gateway owns the subject context. Activating a subject opens a
SubjectSession (cache + coordinator + realtime subscription); activating a
different subject, deactivating, or closing the gateway tears the previous
session down first.

Rules enforced:
- Queries never raise. Every outcome is a QueryResult.
- Mutations never raise. Every outcome is a MutationHandle; precondition
  failures (no subject, non-actionable slot) come back already settled.
- No core operation runs without an active subject (NotAuthenticated).
- Retry is always user-initiated: retry(handle) re-issues a failed mutation,
  including its preserved attachment. Nothing is retried automatically.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Awaitable, Callable

from adherence_core.application import scope as scopes
from adherence_core.application.mutation import MutationHandle, MutationKind
from adherence_core.application.scope import CacheScope
from adherence_core.application.session import SubjectSession
from adherence_core.config import Config
from adherence_core.domain.adherence import AdherenceCalculator
from adherence_core.domain.errors import CoreError, InvalidMutation, NotAuthenticated
from adherence_core.domain.medication import Attachment, Medication
from adherence_core.domain.ports import AttachmentStore, ChangeFeed, Clock, RemoteStore
from adherence_core.domain.schedule import ScheduleMatcher

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueryResult:
    """Result of a gateway query.

    Always returned — the gateway never throws exceptions. `stale` is set
    when the latest fetch failed and `data` is the last good value, or when
    the scope was invalidated while a mutation holds it.
    """
    success: bool
    data: Any = None
    error: str = ""
    error_kind: str = ""
    stale: bool = False


class AdherenceGateway:
    """Usage:
        gateway = AdherenceGateway(store, attachments, feed, clock)
        await gateway.activate(patient_id)
        result = await gateway.get_adherence_summary(patient_id)
        handle = gateway.mark_taken(medication, "08:00")
        await handle.wait()
    """

    def __init__(
        self,
        store: RemoteStore,
        attachment_store: AttachmentStore,
        feed: ChangeFeed,
        clock: Clock,
        config: Config | None = None,
    ) -> None:
        config = config or Config()
        self.config = config
        tz = config.zone()
        self._store = store
        self._attachments = attachment_store
        self._feed = feed
        self._clock = clock
        self._matcher = ScheduleMatcher(tolerance=config.tolerance, tz=tz)
        self._calculator = AdherenceCalculator(
            tz=tz,
            window_days=config.window_days,
            streak_cap=config.streak_cap,
            activity_days=config.activity_days,
        )
        self._session: SubjectSession | None = None

    # -- subject context ----------------------------------------------------

    @property
    def active_subject(self) -> str | None:
        return self._session.subject_id if self._session else None

    @property
    def session(self) -> SubjectSession | None:
        return self._session

    async def activate(self, subject_id: str) -> SubjectSession:
        if not subject_id:
            raise NotAuthenticated("A subject id is required")
        if self._session is not None and self._session.subject_id == subject_id:
            return self._session
        await self.deactivate()
        session = SubjectSession(
            subject_id,
            self._store,
            self._attachments,
            self._feed,
            self._clock,
            self._matcher,
            self._calculator,
        )
        session.open()
        self._session = session
        logger.info(
            "Subject context established", extra={"adherence_subject_id": subject_id},
        )
        return session

    async def deactivate(self) -> None:
        session, self._session = self._session, None
        if session is None:
            return
        await session.close()
        logger.info(
            "Subject context torn down", extra={"adherence_subject_id": session.subject_id},
        )

    async def close(self) -> None:
        await self.deactivate()

    async def __aenter__(self) -> AdherenceGateway:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        await self.close()
        return False

    async def wait_idle(self) -> None:
        if self._session is not None:
            await self._session.wait_idle()

    # -- queries ------------------------------------------------------------

    async def get_slot_statuses(self, medication: Medication, day: date) -> QueryResult:
        return await self._query(
            lambda s: s.slot_statuses(medication, day),
            lambda s: scopes.medication_day_doses(s.subject_id, medication.id, day),
        )

    async def get_adherence_summary(
        self,
        subject_id: str,
        now: datetime | None = None,
        caretaker_view: bool = False,
    ) -> QueryResult:
        if self.active_subject is None or subject_id != self.active_subject:
            return _failure(NotAuthenticated(f"Subject {subject_id} is not the active subject"))
        scope_of = scopes.patient_doses if caretaker_view else scopes.subject_doses
        return await self._query(
            lambda s: s.adherence_summary(now, caretaker_view=caretaker_view),
            lambda s: scope_of(s.subject_id),
        )

    async def get_medications(self) -> QueryResult:
        return await self._query(
            lambda s: s.medications(),
            lambda s: scopes.medications(s.subject_id),
        )

    async def get_medical_reports(self, medication: Medication) -> QueryResult:
        return await self._query(
            lambda s: s.medical_reports(medication),
            lambda s: scopes.medical_reports(s.subject_id, medication.id),
        )

    # -- mutations ----------------------------------------------------------

    def mark_taken(
        self,
        medication: Medication,
        slot_time: str | None = None,
        attachment: Attachment | None = None,
        day: date | None = None,
    ) -> MutationHandle:
        return self._mutate(
            MutationKind.MARK_TAKEN,
            lambda s: s.mark_taken(medication, slot_time, attachment=attachment, day=day),
            attachment=attachment,
            request={"medication": medication, "slot_time": slot_time, "day": day},
        )

    def undo_dose(self, dose_id: str) -> MutationHandle:
        return self._mutate(
            MutationKind.UNDO,
            lambda s: s.undo_dose(dose_id),
            request={"dose_id": dose_id},
        )

    def log_dose_by_caretaker(self, medication: Medication) -> MutationHandle:
        return self._mutate(
            MutationKind.LOG_BY_CARETAKER,
            lambda s: s.log_dose_by_caretaker(medication),
            request={"medication": medication},
        )

    def retry(self, handle: MutationHandle) -> MutationHandle:
        """Re-issue a failed mutation with the same inputs."""
        if not handle.done or handle.error is None:
            return MutationHandle.rejected(
                handle.kind,
                InvalidMutation("Only a settled, failed mutation can be retried"),
                request=handle.request,
            )
        if not handle.error.retryable:
            return MutationHandle.rejected(
                handle.kind, handle.error, attachment=handle.attachment, request=handle.request,
            )

        request = handle.request
        if handle.kind is MutationKind.MARK_TAKEN:
            return self.mark_taken(
                request["medication"],
                request.get("slot_time"),
                attachment=handle.attachment,
                day=request.get("day"),
            )
        if handle.kind is MutationKind.UNDO:
            return self.undo_dose(request["dose_id"])
        return self.log_dose_by_caretaker(request["medication"])

    # -- internals ----------------------------------------------------------

    async def _query(
        self,
        run: Callable[[SubjectSession], Awaitable[Any]],
        scope_of: Callable[[SubjectSession], CacheScope],
    ) -> QueryResult:
        session = self._session
        if session is None:
            return _failure(NotAuthenticated("No active subject"))
        try:
            data = await run(session)
        except CoreError as exc:
            return _failure(exc)
        except ValueError as exc:
            return _failure(InvalidMutation(str(exc), original=exc))

        entry = session.cache.entry(scope_of(session))
        if entry is None:
            return QueryResult(success=True, data=data)
        if entry.error is not None:
            return QueryResult(
                success=True,
                data=data,
                error=str(entry.error),
                error_kind=type(entry.error).__name__,
                stale=True,
            )
        return QueryResult(success=True, data=data, stale=entry.stale)

    def _mutate(
        self,
        kind: MutationKind,
        run: Callable[[SubjectSession], MutationHandle],
        attachment: Attachment | None = None,
        request: dict[str, Any] | None = None,
    ) -> MutationHandle:
        session = self._session
        if session is None:
            return MutationHandle.rejected(
                kind, NotAuthenticated("No active subject"), attachment=attachment, request=request,
            )
        try:
            return run(session)
        except CoreError as exc:
            return MutationHandle.rejected(kind, exc, attachment=attachment, request=request)
        except ValueError as exc:
            return MutationHandle.rejected(
                kind, InvalidMutation(str(exc), original=exc), attachment=attachment, request=request,
            )


def _failure(error: CoreError) -> QueryResult:
    return QueryResult(success=False, error=str(error), error_kind=type(error).__name__)

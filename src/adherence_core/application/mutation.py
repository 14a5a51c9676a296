"""Optimistic mutations — an explicit state machine per write.

    STAGED -> IN_FLIGHT -> COMMITTED   -> SETTLED
                        -> ROLLED_BACK -> SETTLED

Staging cancels in-flight reads for every target scope, snapshots them,
holds them and applies the optimistic patch. The remote write then either
commits or rolls every snapshotted scope back to its exact pre-mutation
value. Settle always runs: it releases the scopes and invalidates them so
the next read re-fetches ground truth. Optimistic patches are a latency
hint, never the system of record.

No automatic retry. A failed mutation's handle keeps its staged attachment
so the caller can re-issue it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable
from uuid import UUID, uuid4

from adherence_core.application.dose_cache import DoseCache
from adherence_core.application.scope import CacheScope
from adherence_core.domain.errors import CoreError, MutationStateError, RemoteWriteFailed
from adherence_core.domain.medication import Attachment

logger = logging.getLogger(__name__)


class MutationKind(Enum):
    MARK_TAKEN = "mark_taken"
    UNDO = "undo"
    LOG_BY_CARETAKER = "log_by_caretaker"


class MutationState(Enum):
    STAGED = "staged"
    IN_FLIGHT = "in_flight"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    SETTLED = "settled"


_TRANSITIONS: dict[MutationState, frozenset[MutationState]] = {
    MutationState.STAGED: frozenset({MutationState.IN_FLIGHT, MutationState.ROLLED_BACK}),
    MutationState.IN_FLIGHT: frozenset({MutationState.COMMITTED, MutationState.ROLLED_BACK}),
    MutationState.COMMITTED: frozenset({MutationState.SETTLED}),
    MutationState.ROLLED_BACK: frozenset({MutationState.SETTLED}),
    MutationState.SETTLED: frozenset(),
}

Patch = Callable[[Any], Any]
Write = Callable[[], Awaitable[Any]]


@dataclass
class PendingMutation:
    """A write in progress. Exists only until it settles; never persisted."""

    kind: MutationKind
    target_scopes: tuple[CacheScope, ...]
    optimistic_delta: dict[CacheScope, Patch]
    write: Write
    attachment: Attachment | None = None
    snapshot: dict[CacheScope, Any] = field(default_factory=dict)
    state: MutationState = MutationState.STAGED
    mutation_id: UUID = field(default_factory=uuid4)

    def transition(self, target: MutationState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise MutationStateError(
                f"Illegal mutation transition {self.state.value} -> {target.value}"
            )
        self.state = target


StatusListener = Callable[["MutationHandle"], None]


class MutationHandle:
    """Reports status transitions of one mutation for UI binding."""

    def __init__(
        self,
        kind: MutationKind,
        attachment: Attachment | None = None,
        request: dict[str, Any] | None = None,
    ) -> None:
        self.kind = kind
        self.status = MutationState.STAGED
        self.history: list[MutationState] = [MutationState.STAGED]
        self.error: CoreError | None = None
        self.result: Any = None
        self.attachment = attachment
        self.request: dict[str, Any] = dict(request or {})
        self._listeners: list[StatusListener] = []
        self._settled = asyncio.Event()

    @classmethod
    def rejected(
        cls,
        kind: MutationKind,
        error: CoreError,
        attachment: Attachment | None = None,
        request: dict[str, Any] | None = None,
    ) -> MutationHandle:
        """A handle for a mutation refused before staging (precondition failure)."""
        handle = cls(kind, attachment=attachment, request=request)
        handle.error = error
        handle.history = []
        handle._set_status(MutationState.SETTLED)
        return handle

    @property
    def done(self) -> bool:
        return self.status is MutationState.SETTLED

    @property
    def succeeded(self) -> bool:
        return self.done and self.error is None

    def on_change(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    async def wait(self) -> MutationHandle:
        await self._settled.wait()
        return self

    def _set_status(self, status: MutationState) -> None:
        self.status = status
        self.history.append(status)
        if status is MutationState.SETTLED:
            self._settled.set()
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception("Mutation status listener %r failed", listener)


class OptimisticMutationCoordinator:

    def __init__(self, cache: DoseCache) -> None:
        self._cache = cache
        self._tasks: set[asyncio.Task] = set()

    def submit(self, mutation: PendingMutation, handle: MutationHandle) -> MutationHandle:
        """Run a mutation in the background and return its handle immediately."""
        task = asyncio.create_task(self.run(mutation, handle))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return handle

    async def run(self, mutation: PendingMutation, handle: MutationHandle) -> MutationHandle:
        cache = self._cache
        targets = mutation.target_scopes
        log_extra = {
            "adherence_mutation_id": str(mutation.mutation_id),
            "adherence_mutation_kind": mutation.kind.value,
        }

        for scope in targets:
            cache.cancel_in_flight(scope)
        mutation.snapshot = cache.snapshot(targets)
        cached = {scope for scope in targets if scope in cache}
        cache.hold(targets)
        try:
            try:
                for scope, patch in mutation.optimistic_delta.items():
                    if scope in cached:
                        cache.apply_patch(scope, patch)
                self._advance(mutation, handle, MutationState.IN_FLIGHT)
                result = await mutation.write()
            except CoreError as exc:
                self._rollback(mutation, handle, exc)
            except asyncio.CancelledError:
                self._rollback(mutation, handle, RemoteWriteFailed("Mutation cancelled"))
                raise
            except Exception as exc:
                logger.exception("Mutation write failed unexpectedly", extra=log_extra)
                self._rollback(mutation, handle, RemoteWriteFailed(str(exc), original=exc))
            else:
                handle.result = result
                handle.attachment = None
                self._advance(mutation, handle, MutationState.COMMITTED)
                logger.info("Mutation committed", extra=log_extra)
        finally:
            cache.release(targets)
            cache.invalidate(targets)
            self._advance(mutation, handle, MutationState.SETTLED)
        return handle

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _rollback(self, mutation: PendingMutation, handle: MutationHandle, error: CoreError) -> None:
        for scope, value in mutation.snapshot.items():
            self._cache.restore(scope, value)
        handle.error = error
        self._advance(mutation, handle, MutationState.ROLLED_BACK)
        logger.warning(
            "Mutation rolled back: %s", error,
            extra={
                "adherence_mutation_id": str(mutation.mutation_id),
                "adherence_mutation_kind": mutation.kind.value,
            },
        )

    @staticmethod
    def _advance(mutation: PendingMutation, handle: MutationHandle, state: MutationState) -> None:
        mutation.transition(state)
        handle._set_status(state)

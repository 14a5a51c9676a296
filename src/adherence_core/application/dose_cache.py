"""DoseCache — process-local store of query results keyed by CacheScope.

The cache is the single owner of mutable derived state. Everything else
(matcher, calculator, gateway) reads a consistent value at call time.

Rules enforced:
- A fetch records its completion time from the injected Clock.
- Cancellation is cooperative: an abandoned fetch still completes, but its
  result is discarded on arrival (generation counter mismatch).
- Optimistic patches and restores abandon any in-flight fetch for the
  scope first, so a stale read can never overwrite them.
- A failed fetch keeps stale data and records RemoteReadFailed on the entry.
- A reader whose fetch is overtaken by an invalidation joins the refetch
  instead of returning the superseded data.
- Invalidation covers every entry matched by the invalidated scopes, and
  duplicate invalidations pending on the same scope collapse into one
  background refetch.
- A held scope (a mutation is in flight on it) is marked stale by
  invalidation but not refetched until it is released and invalidated again.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable

from adherence_core.application.scope import CacheScope, ResourceKind
from adherence_core.domain.errors import CoreError, RemoteReadFailed, StoreError
from adherence_core.domain.ports import Clock

logger = logging.getLogger(__name__)

Fetcher = Callable[[CacheScope], Awaitable[Any]]


@dataclass
class CacheEntry:
    scope: CacheScope
    data: Any = None
    fetched_at: datetime | None = None
    in_flight: bool = False
    stale: bool = True
    error: CoreError | None = None
    generation: int = 0
    invalidations: int = 0
    holds: int = 0

    @property
    def has_data(self) -> bool:
        return self.data is not None


class DoseCache:

    def __init__(self, fetcher: Fetcher, clock: Clock) -> None:
        self._fetcher = fetcher
        self._clock = clock
        self._entries: dict[CacheScope, CacheEntry] = {}
        self._fetches: dict[CacheScope, asyncio.Task] = {}
        self._refetch_pending: set[CacheScope] = set()
        self._background: set[asyncio.Task] = set()

    # -- inspection ---------------------------------------------------------

    def entry(self, scope: CacheScope) -> CacheEntry | None:
        return self._entries.get(scope)

    def peek(self, scope: CacheScope) -> Any:
        """Current data for a scope without fetching (None if absent)."""
        entry = self._entries.get(scope)
        return entry.data if entry else None

    def __contains__(self, scope: CacheScope) -> bool:
        return scope in self._entries

    def scopes(
        self,
        subject_id: str | None = None,
        kinds: Iterable[ResourceKind] | None = None,
    ) -> list[CacheScope]:
        wanted = set(kinds) if kinds is not None else None
        return [
            s for s in self._entries
            if (subject_id is None or s.subject_id == subject_id)
            and (wanted is None or s.kind in wanted)
        ]

    # -- reads ----------------------------------------------------------------

    async def read(self, scope: CacheScope) -> Any:
        """Return cached data, fetching it if absent or stale.

        Raises RemoteReadFailed only when the fetch failed and there is no
        stale data to fall back on.
        """
        entry = self._entry(scope)
        if entry.has_data and (not entry.stale or entry.holds):
            return entry.data

        invalidations = entry.invalidations
        await self._fetch(scope)

        if (
            entry.invalidations != invalidations
            and not entry.holds
            and self._entries.get(scope) is entry
        ):
            # Invalidated while waiting; join the fetch that replaced ours.
            return await self.read(scope)
        if entry.has_data:
            return entry.data
        if entry.error is not None:
            raise entry.error
        # The fetch was abandoned before any data arrived; join the next one.
        return await self.read(scope)

    def cancel_in_flight(self, scope: CacheScope) -> None:
        """Abandon an in-flight fetch. Its result will be discarded."""
        task = self._fetches.pop(scope, None)
        if task is None or task.done():
            return
        entry = self._entries[scope]
        entry.generation += 1
        entry.in_flight = False
        logger.debug(
            "Abandoned in-flight fetch for %s", scope,
            extra={"adherence_scope": str(scope)},
        )

    # -- optimistic updates ---------------------------------------------------

    def snapshot(self, scopes: Iterable[CacheScope]) -> dict[CacheScope, Any]:
        return {scope: self.peek(scope) for scope in scopes}

    def apply_patch(self, scope: CacheScope, transform: Callable[[Any], Any]) -> None:
        """Replace cached data with transform(current) without a remote call."""
        self.cancel_in_flight(scope)
        entry = self._entry(scope)
        entry.data = transform(entry.data)
        entry.generation += 1

    def restore(self, scope: CacheScope, value: Any) -> None:
        """Hard-reset a scope to a previously captured snapshot value."""
        entry = self._entries.get(scope)
        if entry is None:
            return
        self.cancel_in_flight(scope)
        entry.data = value
        entry.generation += 1
        if value is None:
            entry.stale = True
            entry.fetched_at = None

    def hold(self, scopes: Iterable[CacheScope]) -> None:
        for scope in scopes:
            self._entry(scope).holds += 1

    def release(self, scopes: Iterable[CacheScope]) -> None:
        for scope in scopes:
            entry = self._entries.get(scope)
            if entry is not None and entry.holds > 0:
                entry.holds -= 1

    # -- invalidation -------------------------------------------------------

    def invalidate(self, scopes: Iterable[CacheScope]) -> list[CacheScope]:
        """Mark every entry covered by `scopes` stale and schedule refetches.

        Returns the cached scopes that were matched.
        """
        targets = list(scopes)
        matched = [
            cached for cached in list(self._entries)
            if any(target.covers(cached) for target in targets)
        ]
        for scope in matched:
            self._invalidate_one(scope)
        return matched

    def invalidate_subject(self, subject_id: str) -> list[CacheScope]:
        """Invalidate every cached view derived from a subject's data."""
        return self.invalidate(self.scopes(subject_id=subject_id))

    async def wait_idle(self) -> None:
        """Wait until no fetch or background refetch is running."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def close(self) -> None:
        """Drop all entries and stop background work."""
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._entries.clear()
        self._fetches.clear()
        self._refetch_pending.clear()

    # -- internals ----------------------------------------------------------

    def _entry(self, scope: CacheScope) -> CacheEntry:
        entry = self._entries.get(scope)
        if entry is None:
            entry = CacheEntry(scope=scope)
            self._entries[scope] = entry
        return entry

    def _track(self, task: asyncio.Task) -> asyncio.Task:
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _fetch(self, scope: CacheScope) -> asyncio.Task:
        task = self._fetches.get(scope)
        if task is not None and not task.done():
            return task
        entry = self._entry(scope)
        entry.in_flight = True
        task = self._track(asyncio.create_task(self._run_fetch(scope, entry.generation)))
        self._fetches[scope] = task
        return task

    async def _run_fetch(self, scope: CacheScope, generation: int) -> None:
        entry = self._entries[scope]
        data: Any = None
        error: CoreError | None = None
        try:
            data = await self._fetcher(scope)
        except CoreError as exc:
            error = exc
        except StoreError as exc:
            error = RemoteReadFailed(f"Failed to fetch {scope}: {exc}", original=exc)
        except Exception as exc:
            logger.exception(
                "Fetcher failed unexpectedly for %s", scope,
                extra={"adherence_scope": str(scope)},
            )
            error = RemoteReadFailed(f"Failed to fetch {scope}: {exc}", original=exc)
        finally:
            if self._fetches.get(scope) is asyncio.current_task():
                del self._fetches[scope]

        if self._entries.get(scope) is not entry or entry.generation != generation:
            logger.debug(
                "Discarded result of abandoned fetch for %s", scope,
                extra={"adherence_scope": str(scope)},
            )
            return

        entry.in_flight = False
        if error is not None:
            entry.error = error
            logger.warning(
                "Read failed for %s, keeping stale data: %s", scope, error,
                extra={"adherence_scope": str(scope)},
            )
            return

        entry.data = data
        entry.fetched_at = self._clock.now()
        entry.stale = False
        entry.error = None

    def _invalidate_one(self, scope: CacheScope) -> None:
        entry = self._entries[scope]
        entry.stale = True
        entry.invalidations += 1
        if entry.holds:
            logger.debug(
                "Deferred refetch of held scope %s", scope,
                extra={"adherence_scope": str(scope)},
            )
            return
        # A fetch that started before this invalidation may carry stale data.
        self.cancel_in_flight(scope)
        if scope in self._refetch_pending:
            return
        self._refetch_pending.add(scope)
        self._track(asyncio.create_task(self._refetch(scope)))

    async def _refetch(self, scope: CacheScope) -> None:
        # Yield once so duplicate invalidations in the same turn collapse.
        await asyncio.sleep(0)
        self._refetch_pending.discard(scope)
        entry = self._entries.get(scope)
        if entry is None or entry.holds or not entry.stale:
            return
        await self._fetch(scope)

"""Realtime Reconciler — change feed -> cache invalidation.

Connects the change feed to the DoseCache for exactly one subject at a time.

Rules enforced:
- A subscription exists only while a subject is active. Switching subjects
  unsubscribes from the previous one before subscribing to the next.
- Every delivered change invalidates every cached view derived from the
  subject, not only the resource the event names.
- Events for any other subject are ignored (a late delivery from a torn
  down subscription never reaches the new subject's views).
- Replayed events are safe: invalidation is idempotent. Duplicates are
  counted for observability.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from contextlib import contextmanager
from typing import Hashable, Iterator
from uuid import UUID

from adherence_core.application.dose_cache import DoseCache
from adherence_core.domain.errors import NotAuthenticated
from adherence_core.domain.events import ChangeEvent
from adherence_core.domain.ports import ChangeFeed

logger = logging.getLogger(__name__)

_SEEN_EVENT_LIMIT = 1024


class RealtimeReconciler:

    def __init__(self, feed: ChangeFeed, cache: DoseCache) -> None:
        self._feed = feed
        self._cache = cache
        self._subject_id: str | None = None
        self._handle: Hashable | None = None
        self._seen: OrderedDict[UUID, None] = OrderedDict()
        self.processed_count = 0
        self.duplicate_count = 0

    @property
    def subject_id(self) -> str | None:
        return self._subject_id

    @property
    def active(self) -> bool:
        return self._handle is not None

    def activate(self, subject_id: str) -> None:
        if not subject_id:
            raise NotAuthenticated("Cannot subscribe to changes without a subject")
        if self.active and self._subject_id == subject_id:
            return
        self.deactivate()
        self._handle = self._feed.subscribe(subject_id, self._on_change)
        self._subject_id = subject_id
        self._seen.clear()
        logger.info(
            "Subscribed to changes for subject %s", subject_id,
            extra={"adherence_subject_id": subject_id},
        )

    def deactivate(self) -> None:
        if self._handle is None:
            return
        handle, subject_id = self._handle, self._subject_id
        self._handle = None
        self._subject_id = None
        self._feed.unsubscribe(handle)
        logger.info(
            "Unsubscribed from changes for subject %s", subject_id,
            extra={"adherence_subject_id": subject_id},
        )

    @contextmanager
    def subscribed(self, subject_id: str) -> Iterator[RealtimeReconciler]:
        """Scoped subscription, torn down on every exit path."""
        self.activate(subject_id)
        try:
            yield self
        finally:
            self.deactivate()

    def _on_change(self, event: ChangeEvent) -> None:
        if not self.active or event.subject_id != self._subject_id:
            logger.debug(
                "Ignored change for inactive subject %s", event.subject_id,
                extra={"adherence_subject_id": event.subject_id},
            )
            return

        if event.event_id in self._seen:
            self.duplicate_count += 1
        else:
            self._seen[event.event_id] = None
            if len(self._seen) > _SEEN_EVENT_LIMIT:
                self._seen.popitem(last=False)

        invalidated = self._cache.invalidate_subject(event.subject_id)
        self.processed_count += 1
        logger.debug(
            "Change %s on %s invalidated %d scope(s)",
            event.kind.value, event.resource, len(invalidated),
            extra={"adherence_subject_id": event.subject_id},
        )

"""In-memory change feed adapter.

Implements the ChangeFeed protocol defined in domain/ports.py.

Rules enforced:
- Subscriptions are scoped to one subject; an event is delivered only to
  subscribers of the event's subject.
- The feed has no knowledge of what handlers do internally.
- Handler failures are logged and isolated — one failing handler does not
  block delivery to the others.
- Unsubscribing an unknown or already removed handle is a no-op.
"""

from __future__ import annotations

import itertools
import logging
from typing import Iterable

from adherence_core.domain.events import ChangeEvent
from adherence_core.domain.ports import ChangeHandler

logger = logging.getLogger(__name__)


class InMemoryChangeFeed:

    def __init__(self) -> None:
        self._subscriptions: dict[int, tuple[str, ChangeHandler]] = {}
        self._handles = itertools.count(1)
        self.delivered: list[ChangeEvent] = []

    def subscribe(self, subject_id: str, handler: ChangeHandler) -> int:
        handle = next(self._handles)
        self._subscriptions[handle] = (subject_id, handler)
        return handle

    def unsubscribe(self, handle: int) -> None:
        self._subscriptions.pop(handle, None)

    def subscriber_count(self, subject_id: str | None = None) -> int:
        return sum(
            1 for subject, _ in self._subscriptions.values()
            if subject_id is None or subject == subject_id
        )

    def publish(self, event: ChangeEvent) -> None:
        """Deliver one event to every subscriber of its subject."""
        self.delivered.append(event)
        for subject_id, handler in list(self._subscriptions.values()):
            if subject_id != event.subject_id:
                continue
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Handler %r failed processing change %s (resource=%s)",
                    handler,
                    event.event_id,
                    event.resource,
                    extra={"adherence_subject_id": event.subject_id},
                )

    def publish_batch(self, events: Iterable[ChangeEvent]) -> None:
        """Deliver events in order. Used to replay a backlog after reconnect."""
        for event in events:
            self.publish(event)

"""Collaborator ports (interfaces).

These are domain-layer ports. They define WHAT the core needs from the
outside world, not HOW it is provided. Infrastructure adapters implement
these protocols; the core only ever talks to them through these signatures.

All remote I/O is asynchronous. Awaiting one of these calls is the only
point at which the core suspends.

Adapters signal every failure by raising StoreError. The core converts it
to a CoreError kind at the read or mutation boundary.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Hashable, Protocol, Sequence

from adherence_core.domain.events import ChangeEvent

Row = dict[str, Any]

# (field, op, value) where op is one of: "eq", "in", "gte", "lt".
Filter = tuple[str, str, Any]

# (field, descending)
Order = tuple[str, bool]

ChangeHandler = Callable[[ChangeEvent], None]


class Clock(Protocol):
    """Supplies "now" as a timezone-aware instant."""

    def now(self) -> datetime:
        ...


class RemoteStore(Protocol):
    """Port for the opaque remote record store."""

    async def insert(self, resource: str, fields: Row) -> Row:
        """Insert a record and return it as stored (with server-assigned id)."""
        ...

    async def update(self, resource: str, record_id: str, fields: Row) -> Row:
        """Update fields of an existing record and return the stored record."""
        ...

    async def delete(self, resource: str, record_id: str) -> None:
        """Delete a record by id.

        Raises StoreError if the record does not exist.
        """
        ...

    async def query(
        self,
        resource: str,
        filters: Sequence[Filter] = (),
        order: Order | None = None,
    ) -> list[Row]:
        """Return all records matching every filter, optionally ordered."""
        ...


class AttachmentStore(Protocol):
    """Port for durable object storage of attachments."""

    async def store(self, owner_scope: str, filename: str, content: bytes) -> str:
        """Durably store bytes under an owner prefix and return a public URL."""
        ...

    async def remove(self, url: str) -> None:
        """Remove a previously stored object. Used for compensation."""
        ...


class ChangeFeed(Protocol):
    """Port for the realtime change-notification feed."""

    def subscribe(self, subject_id: str, handler: ChangeHandler) -> Hashable:
        """Deliver every change for `subject_id` to `handler`. Returns a handle."""
        ...

    def unsubscribe(self, handle: Hashable) -> None:
        """Stop delivery for a handle. Unknown handles are ignored."""
        ...

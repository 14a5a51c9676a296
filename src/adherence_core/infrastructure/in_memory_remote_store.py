"""In-memory Remote Store adapter.

Implements the RemoteStore protocol defined in domain/ports.py.

This is an infrastructure adapter — it provides a concrete, in-memory
implementation for development and testing. A hosted database adapter would
implement the same protocol.

Rules enforced:
- Records are plain dicts; the server assigns an id when none is given.
- Returned rows are copies; callers can never mutate stored state.
- Every successful write publishes a ChangeEvent for the owning subject to
  the attached feed, after the write is applied.
- Timestamps stored as ISO-8601 strings compare as instants in filters and
  ordering.
- Failures are injectable per (resource, operation) and surface as StoreError.
- No business logic, no interpretation of rows beyond resolving the subject.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Iterable, Sequence
from uuid import uuid4

from adherence_core.domain.errors import StoreError
from adherence_core.domain.events import MEDICATION_DOSES, MEDICATIONS, ChangeEvent, ChangeKind
from adherence_core.domain.ports import ChangeFeed, Filter, Order, Row


class InMemoryRemoteStore:
    """Tables are dicts of id → row, kept in insertion order."""

    def __init__(self, feed: ChangeFeed | None = None) -> None:
        self._tables: dict[str, dict[str, Row]] = defaultdict(dict)
        self._feed = feed
        self._failures: dict[tuple[str, str], list[StoreError]] = defaultdict(list)
        self._writes_open = asyncio.Event()
        self._writes_open.set()
        self._reads_open = asyncio.Event()
        self._reads_open.set()
        self.query_count = 0

    # -- test controls ------------------------------------------------------

    def seed(self, resource: str, rows: Iterable[Row]) -> list[Row]:
        """Load rows directly, without publishing change events."""
        seeded = []
        for fields in rows:
            row = dict(fields)
            row["id"] = str(row.get("id") or uuid4())
            self._tables[resource][row["id"]] = row
            seeded.append(dict(row))
        return seeded

    def rows(self, resource: str) -> list[Row]:
        return [dict(r) for r in self._tables[resource].values()]

    def fail_next(self, resource: str, op: str, error: StoreError | None = None) -> None:
        """Make the next `op` ("insert", "update", "delete", "query") on `resource` fail."""
        self._failures[(resource, op)].append(
            error or StoreError(f"Injected {op} failure on {resource}")
        )

    def pause_writes(self) -> None:
        self._writes_open.clear()

    def resume_writes(self) -> None:
        self._writes_open.set()

    def pause_reads(self) -> None:
        self._reads_open.clear()

    def resume_reads(self) -> None:
        self._reads_open.set()

    # -- RemoteStore protocol -----------------------------------------------

    async def insert(self, resource: str, fields: Row) -> Row:
        await self._gate(self._writes_open)
        self._maybe_fail(resource, "insert")
        row = dict(fields)
        row["id"] = str(row.get("id") or uuid4())
        table = self._tables[resource]
        if row["id"] in table:
            raise StoreError(f"Duplicate key {row['id']} in {resource}")
        table[row["id"]] = row
        self._publish(resource, ChangeKind.INSERT, row)
        return dict(row)

    async def update(self, resource: str, record_id: str, fields: Row) -> Row:
        await self._gate(self._writes_open)
        self._maybe_fail(resource, "update")
        row = self._tables[resource].get(str(record_id))
        if row is None:
            raise StoreError(f"No {resource} record with id {record_id}")
        row.update({k: v for k, v in fields.items() if k != "id"})
        self._publish(resource, ChangeKind.UPDATE, row)
        return dict(row)

    async def delete(self, resource: str, record_id: str) -> None:
        await self._gate(self._writes_open)
        self._maybe_fail(resource, "delete")
        row = self._tables[resource].pop(str(record_id), None)
        if row is None:
            raise StoreError(f"No {resource} record with id {record_id}")
        self._publish(resource, ChangeKind.DELETE, row)

    async def query(
        self,
        resource: str,
        filters: Sequence[Filter] = (),
        order: Order | None = None,
    ) -> list[Row]:
        await self._gate(self._reads_open)
        self._maybe_fail(resource, "query")
        self.query_count += 1
        rows = [
            dict(r) for r in self._tables[resource].values()
            if all(_matches(r, f) for f in filters)
        ]
        if order is not None:
            field, descending = order
            rows.sort(key=lambda r: _comparable(r.get(field)), reverse=descending)
        return rows

    # -- internals ----------------------------------------------------------

    @staticmethod
    async def _gate(event: asyncio.Event) -> None:
        # Every remote call suspends at least once.
        await asyncio.sleep(0)
        await event.wait()

    def _maybe_fail(self, resource: str, op: str) -> None:
        pending = self._failures.get((resource, op))
        if pending:
            raise pending.pop(0)

    def _subject_of(self, resource: str, row: Row) -> str | None:
        if resource == MEDICATION_DOSES:
            medication = self._tables[MEDICATIONS].get(str(row.get("medication_id")))
            return str(medication["user_id"]) if medication else None
        subject = row.get("user_id")
        return str(subject) if subject is not None else None

    def _publish(self, resource: str, kind: ChangeKind, row: Row) -> None:
        if self._feed is None:
            return
        subject_id = self._subject_of(resource, row)
        if subject_id is None:
            return
        self._feed.publish(ChangeEvent(resource=resource, kind=kind, subject_id=subject_id))


def _comparable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str) and len(value) >= 19 and value[4:5] == "-" and "T" in value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return value
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return value


def _matches(row: Row, condition: Filter) -> bool:
    field, op, expected = condition
    actual = _comparable(row.get(field))
    if op == "eq":
        return actual == _comparable(expected)
    if op == "in":
        return actual in [_comparable(v) for v in expected]
    if op == "gte":
        return actual is not None and actual >= _comparable(expected)
    if op == "lt":
        return actual is not None and actual < _comparable(expected)
    raise StoreError(f"Unsupported filter operator {op!r}")

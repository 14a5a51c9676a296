"""Tests for the in-memory infrastructure adapters.

Requirements verified:
- The remote store assigns ids, returns copies, filters with eq / in /
  gte / lt, orders timestamps as instants, and raises StoreError for
  missing records and injected failures.
- Every successful write publishes a ChangeEvent for the owning subject
  (doses resolve their subject through the medication); seeding does not.
- The change feed delivers only to subscribers of the event's subject and
  isolates failing handlers.
- The attachment store keeps bytes by URL and supports injected failures.
- FixedClock only accepts aware instants.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from adherence_core.domain.errors import StoreError
from adherence_core.domain.events import (
    MEDICAL_REPORTS,
    MEDICATION_DOSES,
    MEDICATIONS,
    ChangeEvent,
    ChangeKind,
)
from adherence_core.infrastructure.clock import FixedClock, SystemClock
from adherence_core.infrastructure.in_memory_attachment_store import InMemoryAttachmentStore
from adherence_core.infrastructure.in_memory_change_feed import InMemoryChangeFeed
from adherence_core.infrastructure.in_memory_remote_store import InMemoryRemoteStore


# ---------------------------------------------------------------------------
# Test helpers
# ---------------------------------------------------------------------------

class SpyHandler:
    """A test double that records received events."""

    def __init__(self) -> None:
        self.received: list[ChangeEvent] = []

    def __call__(self, event: ChangeEvent) -> None:
        self.received.append(event)


def _store_with_medication() -> tuple[InMemoryRemoteStore, InMemoryChangeFeed]:
    feed = InMemoryChangeFeed()
    store = InMemoryRemoteStore(feed)
    store.seed(MEDICATIONS, [
        {"id": "med-1", "user_id": "patient-1", "name": "Aspirin", "time_of_day": ["08:00"]},
        {"id": "med-2", "user_id": "patient-2", "name": "Metformin", "time_of_day": []},
    ])
    return store, feed


# ---------------------------------------------------------------------------
# Tests: Remote store writes
# ---------------------------------------------------------------------------

class TestRemoteStoreWrites:

    @pytest.mark.asyncio
    async def test_insert_assigns_id_and_returns_copy(self) -> None:
        store, _ = _store_with_medication()

        row = await store.insert(MEDICATION_DOSES, {
            "medication_id": "med-1", "taken_at": "2026-10-18T08:00:00+00:00",
        })
        row["taken_at"] = "tampered"

        stored = store.rows(MEDICATION_DOSES)
        assert len(stored) == 1
        assert stored[0]["id"] == row["id"]
        assert stored[0]["taken_at"] == "2026-10-18T08:00:00+00:00"

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self) -> None:
        store, _ = _store_with_medication()
        with pytest.raises(StoreError):
            await store.insert(MEDICATIONS, {"id": "med-1", "user_id": "patient-1"})

    @pytest.mark.asyncio
    async def test_update_and_delete_missing_record_raise(self) -> None:
        store, _ = _store_with_medication()
        with pytest.raises(StoreError):
            await store.update(MEDICATIONS, "missing", {"name": "x"})
        with pytest.raises(StoreError):
            await store.delete(MEDICATION_DOSES, "missing")

    @pytest.mark.asyncio
    async def test_update_keeps_id(self) -> None:
        store, _ = _store_with_medication()
        row = await store.update(MEDICATIONS, "med-1", {"id": "other", "dosage": "100mg"})
        assert row["id"] == "med-1"
        assert row["dosage"] == "100mg"

    @pytest.mark.asyncio
    async def test_injected_failure_applies_once(self) -> None:
        store, _ = _store_with_medication()
        store.fail_next(MEDICATION_DOSES, "insert")

        with pytest.raises(StoreError):
            await store.insert(MEDICATION_DOSES, {"medication_id": "med-1", "taken_at": "2026-10-18T08:00:00Z"})
        await store.insert(MEDICATION_DOSES, {"medication_id": "med-1", "taken_at": "2026-10-18T08:00:00Z"})

        assert len(store.rows(MEDICATION_DOSES)) == 1

    @pytest.mark.asyncio
    async def test_paused_writes_wait_for_resume(self) -> None:
        store, _ = _store_with_medication()
        store.pause_writes()

        pending = asyncio.create_task(
            store.insert(MEDICATION_DOSES, {"medication_id": "med-1", "taken_at": "2026-10-18T08:00:00Z"})
        )
        for _ in range(5):
            await asyncio.sleep(0)
        assert store.rows(MEDICATION_DOSES) == []

        store.resume_writes()
        await pending
        assert len(store.rows(MEDICATION_DOSES)) == 1


# ---------------------------------------------------------------------------
# Tests: Remote store change events
# ---------------------------------------------------------------------------

class TestRemoteStoreChangeEvents:

    @pytest.mark.asyncio
    async def test_dose_write_notifies_medication_owner(self) -> None:
        store, feed = _store_with_medication()
        patient_1, patient_2 = SpyHandler(), SpyHandler()
        feed.subscribe("patient-1", patient_1)
        feed.subscribe("patient-2", patient_2)

        row = await store.insert(MEDICATION_DOSES, {"medication_id": "med-1", "taken_at": "2026-10-18T08:00:00Z"})
        await store.delete(MEDICATION_DOSES, row["id"])

        assert [e.kind for e in patient_1.received] == [ChangeKind.INSERT, ChangeKind.DELETE]
        assert all(e.resource == MEDICATION_DOSES for e in patient_1.received)
        assert patient_2.received == []

    @pytest.mark.asyncio
    async def test_report_write_notifies_user(self) -> None:
        store, feed = _store_with_medication()
        handler = SpyHandler()
        feed.subscribe("patient-1", handler)

        await store.insert(MEDICAL_REPORTS, {"user_id": "patient-1", "file_url": "memory://x"})

        assert handler.received[0].resource == MEDICAL_REPORTS

    def test_seed_publishes_nothing(self) -> None:
        store, feed = _store_with_medication()
        assert feed.delivered == []


# ---------------------------------------------------------------------------
# Tests: Remote store queries
# ---------------------------------------------------------------------------

class TestRemoteStoreQueries:

    @pytest.mark.asyncio
    async def test_filters_and_ordering(self) -> None:
        store, _ = _store_with_medication()
        store.seed(MEDICATION_DOSES, [
            {"id": "a", "medication_id": "med-1", "taken_at": "2026-10-17T23:59:00Z"},
            {"id": "b", "medication_id": "med-1", "taken_at": "2026-10-18T08:00:00+00:00"},
            {"id": "c", "medication_id": "med-1", "taken_at": "2026-10-18T20:00:00+00:00"},
            {"id": "d", "medication_id": "med-2", "taken_at": "2026-10-18T09:00:00+00:00"},
            {"id": "e", "medication_id": "med-1", "taken_at": "2026-10-19T00:00:00+00:00"},
        ])

        rows = await store.query(
            MEDICATION_DOSES,
            [
                ("medication_id", "eq", "med-1"),
                ("taken_at", "gte", "2026-10-18T00:00:00+00:00"),
                ("taken_at", "lt", "2026-10-19T00:00:00+00:00"),
            ],
            ("taken_at", True),
        )

        assert [r["id"] for r in rows] == ["c", "b"]

    @pytest.mark.asyncio
    async def test_timestamps_compare_across_offsets(self) -> None:
        store, _ = _store_with_medication()
        store.seed(MEDICATION_DOSES, [
            {"id": "a", "medication_id": "med-1", "taken_at": "2026-10-18T03:00:00-05:00"},
        ])
        rows = await store.query(MEDICATION_DOSES, [("taken_at", "gte", "2026-10-18T07:30:00Z")])
        assert [r["id"] for r in rows] == ["a"]

    @pytest.mark.asyncio
    async def test_in_filter(self) -> None:
        store, _ = _store_with_medication()
        rows = await store.query(MEDICATIONS, [("id", "in", ["med-2", "med-9"])])
        assert [r["id"] for r in rows] == ["med-2"]

    @pytest.mark.asyncio
    async def test_unknown_operator_raises(self) -> None:
        store, _ = _store_with_medication()
        with pytest.raises(StoreError):
            await store.query(MEDICATIONS, [("id", "like", "med%")])

    @pytest.mark.asyncio
    async def test_query_count_and_injected_read_failure(self) -> None:
        store, _ = _store_with_medication()
        store.fail_next(MEDICATIONS, "query")

        with pytest.raises(StoreError):
            await store.query(MEDICATIONS)
        await store.query(MEDICATIONS)

        assert store.query_count == 1


# ---------------------------------------------------------------------------
# Tests: Change feed
# ---------------------------------------------------------------------------

class TestChangeFeed:

    def test_delivers_only_to_event_subject(self) -> None:
        feed = InMemoryChangeFeed()
        mine, theirs = SpyHandler(), SpyHandler()
        feed.subscribe("patient-1", mine)
        feed.subscribe("patient-2", theirs)

        feed.publish(ChangeEvent(MEDICATION_DOSES, ChangeKind.INSERT, "patient-1"))

        assert len(mine.received) == 1
        assert theirs.received == []

    def test_failing_handler_does_not_block_others(self) -> None:
        feed = InMemoryChangeFeed()
        spy = SpyHandler()

        def broken(event: ChangeEvent) -> None:
            raise RuntimeError("handler bug")

        feed.subscribe("patient-1", broken)
        feed.subscribe("patient-1", spy)
        feed.publish(ChangeEvent(MEDICATION_DOSES, ChangeKind.INSERT, "patient-1"))

        assert len(spy.received) == 1

    def test_unsubscribe_stops_delivery_and_unknown_handle_is_noop(self) -> None:
        feed = InMemoryChangeFeed()
        spy = SpyHandler()
        handle = feed.subscribe("patient-1", spy)

        feed.unsubscribe(handle)
        feed.unsubscribe(handle)
        feed.unsubscribe(12345)
        feed.publish(ChangeEvent(MEDICATION_DOSES, ChangeKind.INSERT, "patient-1"))

        assert spy.received == []
        assert feed.subscriber_count() == 0

    def test_publish_batch_preserves_order(self) -> None:
        feed = InMemoryChangeFeed()
        spy = SpyHandler()
        feed.subscribe("patient-1", spy)
        events = [
            ChangeEvent(MEDICATION_DOSES, kind, "patient-1")
            for kind in (ChangeKind.INSERT, ChangeKind.UPDATE, ChangeKind.DELETE)
        ]

        feed.publish_batch(events)

        assert spy.received == events


# ---------------------------------------------------------------------------
# Tests: Attachment store
# ---------------------------------------------------------------------------

class TestAttachmentStore:

    @pytest.mark.asyncio
    async def test_store_and_remove(self) -> None:
        attachments = InMemoryAttachmentStore()

        url = await attachments.store("patient-1/med-1", "proof.jpg", b"\xff\xd8")
        assert url == "memory://medicare-files/patient-1/med-1/proof.jpg"
        assert attachments.objects[url] == b"\xff\xd8"

        await attachments.remove(url)
        assert attachments.objects == {}

    @pytest.mark.asyncio
    async def test_injected_failure_and_missing_object(self) -> None:
        attachments = InMemoryAttachmentStore()
        attachments.fail_next()

        with pytest.raises(StoreError):
            await attachments.store("patient-1/med-1", "proof.jpg", b"x")
        with pytest.raises(StoreError):
            await attachments.remove("memory://medicare-files/nothing")


# ---------------------------------------------------------------------------
# Tests: Clocks
# ---------------------------------------------------------------------------

class TestClocks:

    def test_fixed_clock_rejects_naive_instant(self) -> None:
        with pytest.raises(ValueError):
            FixedClock(datetime(2026, 10, 18, 12, 0))

    def test_fixed_clock_advances(self) -> None:
        start = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)
        clock = FixedClock(start)
        clock.advance(timedelta(hours=1))
        assert clock.now() == start + timedelta(hours=1)

    def test_system_clock_is_aware(self) -> None:
        assert SystemClock().now().tzinfo is not None

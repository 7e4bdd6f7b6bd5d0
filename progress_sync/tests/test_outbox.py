"""Tests for the durable progress outbox."""

from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import update

from progress_sync.database import create_engine_for, get_transaction
from progress_sync.outbox import OutboxStore
from progress_sync.tables import progress_confirmations
from progress_sync.types import OutboxEvent, utcnow


def _event(lesson_id="L1", progress=0.5, time_spent_delta=10, **kwargs):
    return OutboxEvent(
        module_id=kwargs.pop("module_id", "M"),
        lesson_id=lesson_id,
        progress=progress,
        time_spent_delta=time_spent_delta,
        **kwargs,
    )


class TestEnqueue:
    """Test inserting and coalescing events."""

    @pytest.mark.asyncio
    async def test_enqueue_inserts_new_event(self, outbox):
        """Should store an event for a lesson with nothing queued."""
        event = _event()
        await outbox.enqueue(event)

        pending = await outbox.pending_events()
        assert len(pending) == 1
        assert pending[0].client_event_id == event.client_event_id
        assert pending[0].progress == 0.5
        assert pending[0].time_spent_delta == 10

    @pytest.mark.asyncio
    async def test_coalesces_same_lesson_keeping_max_progress_and_summed_time(self, outbox):
        """Newer event for the same lesson should fold into the queued one."""
        first = _event(progress=0.7, time_spent_delta=30)
        second = _event(progress=0.4, time_spent_delta=15)

        await outbox.enqueue(first)
        await outbox.enqueue(second)

        pending = await outbox.pending_events()
        assert len(pending) == 1
        assert pending[0].progress == 0.7
        assert pending[0].time_spent_delta == 45
        assert pending[0].client_event_id == second.client_event_id
        assert first.client_event_id in pending[0].coalesced_ids

    @pytest.mark.asyncio
    async def test_requeue_of_same_event_does_not_double_count_time(self, outbox):
        """Queueing the same client_event_id again replaces rather than sums."""
        event = _event(time_spent_delta=20)
        await outbox.enqueue(event)
        await outbox.enqueue(event)

        pending = await outbox.pending_events()
        assert len(pending) == 1
        assert pending[0].time_spent_delta == 20

    @pytest.mark.asyncio
    async def test_event_carrying_queued_id_replaces_row(self, outbox):
        """An event that already absorbed the queued one should replace it."""
        queued = _event(progress=0.3, time_spent_delta=10)
        await outbox.enqueue(queued)

        folded = _event(
            progress=0.6,
            time_spent_delta=25,
            coalesced_ids=[queued.client_event_id],
        )
        await outbox.enqueue(folded)

        pending = await outbox.pending_events()
        assert len(pending) == 1
        assert pending[0].client_event_id == folded.client_event_id
        assert pending[0].time_spent_delta == 25

    @pytest.mark.asyncio
    async def test_different_lessons_are_kept_in_enqueue_order(self, outbox):
        """Events for distinct lessons stay separate, oldest first."""
        await outbox.enqueue(_event("L1"))
        await outbox.enqueue(_event("L2"))
        await outbox.enqueue(_event("L3"))
        await outbox.enqueue(_event("L1", progress=0.9))

        pending = await outbox.pending_events()
        assert [e.lesson_id for e in pending] == ["L1", "L2", "L3"]
        assert pending[0].progress == 0.9

    @pytest.mark.asyncio
    async def test_enqueue_never_raises(self, outbox):
        """A storage failure is logged and reported, not raised."""
        with patch(
            "progress_sync.outbox.get_transaction", side_effect=RuntimeError("disk full")
        ), patch("progress_sync.outbox.sentry_sdk") as mock_sentry:
            await outbox.enqueue(_event())

        mock_sentry.capture_exception.assert_called_once()


class TestDequeueAndFailures:
    """Test removal and failure bookkeeping."""

    @pytest.mark.asyncio
    async def test_dequeue_confirmed_removes_event(self, outbox):
        event = _event()
        await outbox.enqueue(event)

        assert await outbox.dequeue_confirmed(event.client_event_id) is True
        assert await outbox.count_pending() == 0

    @pytest.mark.asyncio
    async def test_dequeue_unknown_id_is_noop(self, outbox):
        """Removing a nonexistent id should not raise."""
        assert await outbox.dequeue_confirmed("evt_missing") is False

    @pytest.mark.asyncio
    async def test_record_failure_increments_attempts(self, outbox):
        event = _event()
        await outbox.enqueue(event)

        assert await outbox.record_failure(event.client_event_id, "timeout") == 1
        assert await outbox.record_failure(event.client_event_id, "timeout") == 2

        stored = await outbox.get_event(event.client_event_id)
        assert stored.attempts == 2
        assert stored.last_error == "timeout"

    @pytest.mark.asyncio
    async def test_clear_drops_everything(self, outbox):
        await outbox.enqueue(_event("L1"))
        await outbox.enqueue(_event("L2"))

        assert await outbox.clear() == 2
        assert await outbox.pending_events() == []


class TestListPending:
    """Test the lazy pending-event pass."""

    @pytest.mark.asyncio
    async def test_pages_through_all_events(self, db_engine):
        """Should yield every event even when they span several pages."""
        outbox = OutboxStore(db_engine, page_size=2)
        for i in range(5):
            await outbox.enqueue(_event(f"L{i}"))

        seen = [event.lesson_id async for event in outbox.list_pending()]
        assert seen == ["L0", "L1", "L2", "L3", "L4"]

    @pytest.mark.asyncio
    async def test_each_call_starts_a_fresh_pass(self, outbox):
        await outbox.enqueue(_event("L1"))

        first = [e.lesson_id async for e in outbox.list_pending()]
        second = [e.lesson_id async for e in outbox.list_pending()]
        assert first == second == ["L1"]

    @pytest.mark.asyncio
    async def test_pending_events_respects_limit(self, outbox):
        for lesson_id in ("L1", "L2", "L3"):
            await outbox.enqueue(_event(lesson_id))

        assert len(await outbox.pending_events(limit=2)) == 2


class TestConfirmations:
    """Test confirmation records."""

    @pytest.mark.asyncio
    async def test_mark_confirmed_is_idempotent(self, outbox):
        await outbox.mark_confirmed("evt_1", {"merged": True}, module_id="M", lesson_id="L1")
        await outbox.mark_confirmed("evt_1", {"merged": False}, module_id="M", lesson_id="L1")

        assert await outbox.is_confirmed("evt_1") is True
        stats = await outbox.stats()
        assert stats["confirmed_events"] == 1

    @pytest.mark.asyncio
    async def test_cleanup_removes_only_old_confirmations(self, outbox, db_engine):
        await outbox.mark_confirmed("evt_old", module_id="M", lesson_id="L1")
        await outbox.mark_confirmed("evt_new", module_id="M", lesson_id="L2")

        async with get_transaction(db_engine) as conn:
            await conn.execute(
                update(progress_confirmations)
                .where(progress_confirmations.c.client_event_id == "evt_old")
                .values(confirmed_at=utcnow() - timedelta(days=30))
            )

        removed = await outbox.cleanup_old_confirmations(timedelta(days=7))

        assert removed == 1
        assert await outbox.is_confirmed("evt_old") is False
        assert await outbox.is_confirmed("evt_new") is True


class TestDurability:
    """Test the outbox survives a process restart."""

    @pytest.mark.asyncio
    async def test_events_survive_engine_restart(self, outbox_db_url):
        """Events written by one engine are read back by a fresh one."""
        engine = create_engine_for(outbox_db_url)
        event = _event("L2", progress=0.5, metadata={"page": 3})
        await OutboxStore(engine).enqueue(event)
        await engine.dispose()

        restarted = create_engine_for(outbox_db_url)
        try:
            pending = await OutboxStore(restarted).pending_events()
        finally:
            await restarted.dispose()

        assert len(pending) == 1
        assert pending[0].client_event_id == event.client_event_id
        assert pending[0].metadata == {"page": 3}
        assert pending[0].ts.tzinfo is not None

    @pytest.mark.asyncio
    async def test_stats_reports_pending_range(self, outbox):
        await outbox.enqueue(_event("L1"))
        await outbox.enqueue(_event("L2"))

        stats = await outbox.stats()
        assert stats["pending_events"] == 2
        assert stats["oldest_event"] <= stats["newest_event"]

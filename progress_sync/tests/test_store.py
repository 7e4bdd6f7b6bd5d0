"""Tests for the in-memory progress store."""

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

from progress_sync.store import ProgressStore
from progress_sync.types import LessonProgress, ModuleLearningProgress, ProgressDelta


def _delta(lesson_id="L1", progress=0.5, **kwargs):
    return ProgressDelta(lesson_id=lesson_id, progress=progress, **kwargs)


class TestApplyOptimistic:
    """Test optimistic updates."""

    def test_notifies_subscribers_synchronously(self):
        store = ProgressStore()
        callback = MagicMock()
        store.subscribe(callback)

        store.apply_optimistic("M", "L1", _delta())

        callback.assert_called_once_with("M", "L1")

    def test_unsubscribe_stops_notifications(self):
        store = ProgressStore()
        callback = MagicMock()
        unsubscribe = store.subscribe(callback)
        unsubscribe()

        store.apply_optimistic("M", "L1", _delta())

        callback.assert_not_called()

    def test_failing_subscriber_does_not_break_update(self):
        store = ProgressStore()
        store.subscribe(MagicMock(side_effect=RuntimeError("render failed")))

        with patch("progress_sync.store.sentry_sdk") as mock_sentry:
            result = store.apply_optimistic("M", "L1", _delta(progress=0.4))

        assert result.progress == 0.4
        mock_sentry.capture_exception.assert_called_once()

    def test_completed_derives_from_progress_only(self):
        store = ProgressStore()

        store.apply_optimistic("M", "L1", _delta(progress=0.9, completed=True))

        assert store.get_lesson_progress("M", "L1").completed is False


class TestApplyConfirmed:
    """Test merging server truth."""

    def test_replaces_optimistic_entry(self):
        store = ProgressStore()
        store.apply_optimistic("M", "L1", _delta(progress=0.6))

        store.apply_confirmed(
            "M", "L1", LessonProgress("M", "L1", progress=0.5, time_spent_s=42)
        )

        lesson = store.get_lesson_progress("M", "L1")
        assert lesson.progress == 0.5
        assert lesson.time_spent_s == 42

    def test_updates_module_learning_progress(self):
        store = ProgressStore()
        completed_at = datetime(2025, 1, 1, tzinfo=timezone.utc)

        store.apply_confirmed(
            "M",
            "L1",
            LessonProgress("M", "L1", progress=1.0),
            ModuleLearningProgress(time_spent=120, score=0.9, completed_at=completed_at),
        )

        snapshot = store.get_module_snapshot("M")
        assert snapshot.learning_progress.time_spent == 120
        assert snapshot.learning_progress.score == 0.9


class TestRevert:
    """Test reverting untrusted optimistic entries."""

    def test_revert_without_confirmed_state_removes_entry(self):
        store = ProgressStore()
        store.apply_optimistic("M", "L2", _delta("L2", 0.5))

        store.revert("M", "L2")

        assert store.get_lesson_progress("M", "L2") is None

    def test_revert_restores_last_confirmed_record(self):
        store = ProgressStore()
        store.apply_confirmed("M", "L2", LessonProgress("M", "L2", progress=0.3))
        store.apply_optimistic("M", "L2", _delta("L2", 0.8))

        store.revert("M", "L2")

        assert store.get_lesson_progress("M", "L2").progress == 0.3

    def test_revert_unknown_module_is_noop(self):
        ProgressStore().revert("nope", "L1")


class TestReads:
    """Test read accessors return copies."""

    def test_lesson_progress_is_a_copy(self):
        store = ProgressStore()
        store.apply_optimistic("M", "L1", _delta(progress=0.5))

        copy = store.get_lesson_progress("M", "L1")
        copy.progress = 1.0
        copy.metadata["hacked"] = True

        original = store.get_lesson_progress("M", "L1")
        assert original.progress == 0.5
        assert "hacked" not in original.metadata

    def test_module_snapshot_is_a_copy(self):
        store = ProgressStore()
        store.apply_optimistic("M", "L1", _delta())

        snapshot = store.get_module_snapshot("M")
        snapshot.lessons_by_id.clear()

        assert store.get_lesson_progress("M", "L1") is not None

    def test_find_module_for_lesson_requires_unique_match(self):
        store = ProgressStore()
        store.apply_optimistic("M", "L1", _delta("L1"))
        store.apply_optimistic("M", "shared", _delta("shared"))
        store.apply_optimistic("N", "shared", _delta("shared"))

        assert store.find_module_for_lesson("L1") == "M"
        assert store.find_module_for_lesson("shared") is None
        assert store.find_module_for_lesson("unknown") is None


class TestModuleCompletion:
    """Test completed_at follows completable lessons."""

    def test_completed_at_set_when_all_completable_lessons_done(self, curriculum):
        store = ProgressStore(curriculum)
        for lesson_id in ("L1", "L2", "L3"):
            store.apply_optimistic("M", lesson_id, _delta(lesson_id, 1.0))

        assert store.get_module_snapshot("M").learning_progress.completed_at is not None

    def test_completed_at_not_set_while_a_lesson_is_unfinished(self, curriculum):
        store = ProgressStore(curriculum)
        store.apply_optimistic("M", "L1", _delta("L1", 1.0))
        store.apply_optimistic("M", "L2", _delta("L2", 1.0))
        store.apply_optimistic("M", "L3", _delta("L3", 0.9))

        learning = store.get_module_snapshot("M").learning_progress
        assert learning is None or learning.completed_at is None

    def test_completed_at_cleared_on_revert(self, curriculum):
        store = ProgressStore(curriculum)
        store.apply_optimistic("M", "L1", _delta("L1", 1.0))
        store.apply_optimistic("M", "L2", _delta("L2", 1.0))
        store.apply_optimistic("M", "L3", _delta("L3", 1.0))

        store.revert("M", "L3")

        assert store.get_module_snapshot("M").learning_progress.completed_at is None

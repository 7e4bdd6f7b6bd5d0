"""In-memory projection of the learner's progress.

ProgressStore is the single source of truth the Availability Resolver and
the UI read from. It is only mutated through apply_optimistic,
apply_confirmed and revert; every read accessor returns a copy so callers
cannot bypass those operations.
"""

import copy
import logging
from dataclasses import replace
from typing import Callable

import sentry_sdk

from .reconciler import apply_delta, merge_confirmed, merge_replayed
from .types import (
    LessonProgress,
    ModuleLearningProgress,
    ModuleProgressSnapshot,
    ProgressDelta,
    utcnow,
)

logger = logging.getLogger(__name__)

Subscriber = Callable[[str, str], None]


class ProgressStore:
    """Normalized per-module, per-lesson progress for one learner session."""

    def __init__(self, curriculum=None):
        """
        Args:
            curriculum: Optional CurriculumGraph; when given, a module's
                completed_at is only kept while all its completable lessons
                are at progress 1.0
        """
        self._curriculum = curriculum
        self._modules: dict[str, ModuleProgressSnapshot] = {}
        # Last server-confirmed record per lesson, restored by revert()
        self._confirmed: dict[tuple[str, str], LessonProgress] = {}
        self._subscribers: list[Subscriber] = []

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def apply_optimistic(
        self, module_id: str, lesson_id: str, delta: ProgressDelta
    ) -> LessonProgress:
        """Apply a UI progress event immediately, before any network call."""
        module = self._module(module_id)
        updated = apply_delta(module.lessons_by_id.get(lesson_id), module_id, lesson_id, delta)
        module.lessons_by_id[lesson_id] = updated
        self._refresh_module_completion(module)
        self._notify(module_id, lesson_id)
        return replace(updated, metadata=dict(updated.metadata))

    def apply_confirmed(
        self,
        module_id: str,
        lesson_id: str,
        server_record: LessonProgress,
        module_progress: ModuleLearningProgress | None = None,
        *,
        replayed: bool = False,
    ) -> LessonProgress:
        """Replace the optimistic entry with server truth.

        Args:
            replayed: The record answers an outbox replay or a progress load,
                so a newer local write must not be overwritten (LWW)
        """
        module = self._module(module_id)
        server_record = replace(server_record, module_id=module_id, lesson_id=lesson_id)
        current = module.lessons_by_id.get(lesson_id)
        if replayed:
            merged = merge_replayed(current, server_record)
        else:
            merged = merge_confirmed(current, server_record)

        module.lessons_by_id[lesson_id] = merged
        self._confirmed[(module_id, lesson_id)] = replace(
            server_record, metadata=dict(server_record.metadata)
        )

        if module_progress is not None:
            learning = module.learning_progress or ModuleLearningProgress()
            module.learning_progress = replace(
                learning,
                time_spent=module_progress.time_spent,
                score=module_progress.score,
                completed_at=module_progress.completed_at,
                updated_at=utcnow(),
            )

        self._refresh_module_completion(module)
        self._notify(module_id, lesson_id)
        return replace(merged, metadata=dict(merged.metadata))

    def revert(self, module_id: str, lesson_id: str) -> None:
        """Drop an untrusted optimistic entry, falling back to the last server state."""
        module = self._modules.get(module_id)
        if module is None:
            return

        confirmed = self._confirmed.get((module_id, lesson_id))
        if confirmed is not None:
            module.lessons_by_id[lesson_id] = replace(
                confirmed, metadata=dict(confirmed.metadata)
            )
        else:
            module.lessons_by_id.pop(lesson_id, None)

        self._refresh_module_completion(module)
        self._notify(module_id, lesson_id)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_module_snapshot(self, module_id: str) -> ModuleProgressSnapshot | None:
        module = self._modules.get(module_id)
        return copy.deepcopy(module) if module is not None else None

    def get_lesson_progress(self, module_id: str, lesson_id: str) -> LessonProgress | None:
        module = self._modules.get(module_id)
        if module is None:
            return None
        lesson = module.lessons_by_id.get(lesson_id)
        return replace(lesson, metadata=dict(lesson.metadata)) if lesson else None

    def snapshot(self) -> dict[str, ModuleProgressSnapshot]:
        """Copy of every module snapshot, keyed by module id."""
        return copy.deepcopy(self._modules)

    def find_module_for_lesson(self, lesson_id: str) -> str | None:
        """Infer a lesson's module from the progress already held.

        Returns None when no module, or more than one, holds the lesson.
        """
        matches = [
            module_id
            for module_id, module in self._modules.items()
            if lesson_id in module.lessons_by_id
        ]
        return matches[0] if len(matches) == 1 else None

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register callback(module_id, lesson_id), called after every mutation.

        Returns:
            A function that removes the subscription
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self, module_id: str, lesson_id: str) -> None:
        for callback in list(self._subscribers):
            try:
                callback(module_id, lesson_id)
            except Exception as e:
                logger.error(f"Progress subscriber failed for {module_id}/{lesson_id}: {e}")
                sentry_sdk.capture_exception(e)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _module(self, module_id: str) -> ModuleProgressSnapshot:
        module = self._modules.get(module_id)
        if module is None:
            module = ModuleProgressSnapshot(module_id=module_id)
            self._modules[module_id] = module
        return module

    def _refresh_module_completion(self, module: ModuleProgressSnapshot) -> None:
        """Keep completed_at consistent with completable lesson progress."""
        if self._curriculum is None:
            return

        completable = self._curriculum.completable_lessons_of(module.module_id)
        if not completable:
            return

        all_done = all(
            lesson.lesson_id in module.lessons_by_id
            and module.lessons_by_id[lesson.lesson_id].completed
            for lesson in completable
        )
        learning = module.learning_progress

        if all_done:
            if learning is None:
                module.learning_progress = ModuleLearningProgress(
                    completed_at=utcnow(), updated_at=utcnow()
                )
            elif learning.completed_at is None:
                learning.completed_at = utcnow()
        elif learning is not None and learning.completed_at is not None:
            learning.completed_at = None

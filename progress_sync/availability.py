"""Lesson and level availability derived from progress and the curriculum.

Everything here is a pure function of (CurriculumGraph, progress snapshot):
nothing is cached or stored, so the answer can never drift from the
progress it was computed from. Lessons or modules missing from the
curriculum (stale progress data) are reported as unavailable, never raised.

Unlock rules (module_sequential, the default):
- The first level is always unlocked; any other level is unlocked once the
  level immediately before it is complete.
- In an unlocked level, the first lesson of every module is available.
- Any other lesson is available once the previous completable lesson in the
  same module has progress 1.0. Other modules never gate it.

level_sequential instead requires every completable lesson before it in the
level (module order, then lesson order) to be complete.
"""

import logging
from typing import Callable, Iterable, Mapping

from .curriculum.graph import CurriculumGraph, Lesson
from .enums import LessonState, UnlockPolicy
from .types import ModuleProgressSnapshot

logger = logging.getLogger(__name__)

Snapshot = Mapping[str, ModuleProgressSnapshot]
LessonRef = Lesson | tuple[str, str]


def _lesson_key(lesson: LessonRef) -> tuple[str, str]:
    if isinstance(lesson, Lesson):
        return (lesson.module_id, lesson.lesson_id)
    module_id, lesson_id = lesson
    return (module_id, lesson_id)


def lesson_progress_value(snapshot: Snapshot, module_id: str, lesson_id: str) -> float:
    """Numeric progress of a lesson, 0.0 when there is no record."""
    module = snapshot.get(module_id)
    if module is None:
        return 0.0
    lesson = module.lessons_by_id.get(lesson_id)
    return lesson.progress if lesson is not None else 0.0


def is_lesson_completed(snapshot: Snapshot, module_id: str, lesson_id: str) -> bool:
    return lesson_progress_value(snapshot, module_id, lesson_id) == 1.0


# =============================================================================
# Modules and levels
# =============================================================================


def is_module_completed(graph: CurriculumGraph, snapshot: Snapshot, module_id: str) -> bool:
    """
    Check every completable lesson of a module has progress 1.0.

    A module without completable lessons is vacuously complete. A module
    unknown to the curriculum is never complete.
    """
    if graph.get_module(module_id) is None:
        return False
    return all(
        is_lesson_completed(snapshot, module_id, lesson.lesson_id)
        for lesson in graph.completable_lessons_of(module_id)
    )


def module_completion_percent(
    graph: CurriculumGraph, snapshot: Snapshot, module_id: str
) -> int:
    """
    Module progress as a rounded 0-100 percentage.

    Lessons are weighted by their section count; placeholders and lessons
    without sections are left out of both sides of the ratio.
    """
    total_sections = 0
    weighted = 0.0
    for lesson in graph.completable_lessons_of(module_id):
        total_sections += lesson.section_count
        weighted += (
            lesson_progress_value(snapshot, module_id, lesson.lesson_id)
            * lesson.section_count
        )

    if total_sections == 0:
        return 0
    return round(weighted / total_sections * 100)


def is_level_completed(graph: CurriculumGraph, snapshot: Snapshot, level_id: str) -> bool:
    """
    Check a level is complete.

    Every module of the level with at least one completable lesson must have
    all completable lessons at progress 1.0. Modules with no completable
    lessons never block the level.
    """
    if graph.get_level(level_id) is None:
        return False
    return all(
        is_module_completed(graph, snapshot, module.module_id)
        for module in graph.modules_of(level_id)
    )


def is_level_unlocked(graph: CurriculumGraph, snapshot: Snapshot, level_id: str) -> bool:
    if graph.get_level(level_id) is None:
        return False
    previous = graph.previous_level(level_id)
    if previous is None:
        return True
    return is_level_completed(graph, snapshot, previous)


# =============================================================================
# Lessons
# =============================================================================


def _previous_completable(lessons: tuple[Lesson, ...], index: int) -> Lesson | None:
    for candidate in reversed(lessons[:index]):
        if candidate.completable:
            return candidate
    return None


def is_lesson_available(
    graph: CurriculumGraph,
    snapshot: Snapshot,
    lesson: LessonRef,
    level_lessons: Iterable[Lesson] | None = None,
    policy: UnlockPolicy = UnlockPolicy.module_sequential,
) -> bool:
    """
    Check whether a learner may open a lesson.

    Args:
        graph: Curriculum structure
        snapshot: Progress snapshots keyed by module id
        lesson: Lesson, or (module_id, lesson_id)
        level_lessons: Ordered lessons of the lesson's level, only used by
            level_sequential (default: graph.lessons_in_level)
        policy: Unlock policy
    """
    module_id, lesson_id = _lesson_key(lesson)
    module = graph.get_module(module_id)
    if module is None or graph.get_lesson(module_id, lesson_id) is None:
        logger.debug(f"Lesson {module_id}/{lesson_id} not in curriculum, treating as locked")
        return False

    if not is_level_unlocked(graph, snapshot, module.level_id):
        return False

    if policy == UnlockPolicy.level_sequential:
        ordered = tuple(
            level_lessons
            if level_lessons is not None
            else graph.lessons_in_level(module.level_id)
        )
    else:
        ordered = graph.lessons_of(module_id)

    index = next(
        (
            i
            for i, candidate in enumerate(ordered)
            if (candidate.module_id, candidate.lesson_id) == (module_id, lesson_id)
        ),
        None,
    )
    if index is None:
        return False

    if policy == UnlockPolicy.level_sequential:
        return all(
            is_lesson_completed(snapshot, prior.module_id, prior.lesson_id)
            for prior in ordered[:index]
            if prior.completable
        )

    previous = _previous_completable(ordered, index)
    if previous is None:
        return True
    return is_lesson_completed(snapshot, module_id, previous.lesson_id)


def lesson_state(
    graph: CurriculumGraph,
    snapshot: Snapshot,
    lesson: LessonRef,
    level_lessons: Iterable[Lesson] | None = None,
    policy: UnlockPolicy = UnlockPolicy.module_sequential,
) -> LessonState:
    """Place a lesson in the locked -> available -> in_progress -> completed chain."""
    module_id, lesson_id = _lesson_key(lesson)
    if graph.get_lesson(module_id, lesson_id) is None:
        return LessonState.locked

    progress = lesson_progress_value(snapshot, module_id, lesson_id)
    if progress == 1.0:
        return LessonState.completed
    if not is_lesson_available(graph, snapshot, lesson, level_lessons, policy):
        return LessonState.locked
    if progress > 0:
        return LessonState.in_progress
    return LessonState.available


class AvailabilityResolver:
    """Binds the availability functions to a live progress source."""

    def __init__(
        self,
        graph: CurriculumGraph,
        snapshot_provider: Callable[[], Snapshot],
        policy: UnlockPolicy = UnlockPolicy.module_sequential,
    ):
        """
        Args:
            graph: Curriculum structure
            snapshot_provider: Returns the current progress snapshot
                (e.g. ProgressStore.snapshot)
            policy: Unlock policy for subsequent lessons
        """
        self.graph = graph
        self._snapshot_provider = snapshot_provider
        self.policy = policy

    def is_lesson_available(
        self, lesson: LessonRef, level_lessons: Iterable[Lesson] | None = None
    ) -> bool:
        return is_lesson_available(
            self.graph, self._snapshot_provider(), lesson, level_lessons, self.policy
        )

    def is_level_completed(self, level_id: str) -> bool:
        return is_level_completed(self.graph, self._snapshot_provider(), level_id)

    def is_level_unlocked(self, level_id: str) -> bool:
        return is_level_unlocked(self.graph, self._snapshot_provider(), level_id)

    def is_module_completed(self, module_id: str) -> bool:
        return is_module_completed(self.graph, self._snapshot_provider(), module_id)

    def module_completion_percent(self, module_id: str) -> int:
        return module_completion_percent(self.graph, self._snapshot_provider(), module_id)

    def lesson_state(
        self, lesson: LessonRef, level_lessons: Iterable[Lesson] | None = None
    ) -> LessonState:
        return lesson_state(
            self.graph, self._snapshot_provider(), lesson, level_lessons, self.policy
        )

    def unlocked_lessons(self, module_id: str) -> list[Lesson]:
        """Available lessons of a module, in order (one snapshot for all)."""
        snapshot = self._snapshot_provider()
        return [
            lesson
            for lesson in self.graph.lessons_of(module_id)
            if is_lesson_available(self.graph, snapshot, lesson, None, self.policy)
        ]

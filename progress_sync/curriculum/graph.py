# progress_sync/curriculum/graph.py
"""Static curriculum structure: levels -> modules -> lessons.

Lesson order is only defined within a module; modules are ordered within
their level and levels are ordered globally. The graph is read-only once
built, and a malformed definition raises CurriculumConfigError at build
time instead of surfacing later during unlock computation.
"""

from dataclasses import dataclass

from ..errors import CurriculumConfigError


@dataclass(frozen=True)
class Level:
    """A curriculum level (beginner, intermediate, advanced...)."""

    level_id: str
    order: int
    title: str = ""


@dataclass(frozen=True)
class Module:
    """A module owned by a level."""

    module_id: str
    level_id: str
    order: int
    title: str = ""


@dataclass(frozen=True)
class Lesson:
    """A lesson owned by a module."""

    lesson_id: str
    module_id: str
    order: int
    title: str = ""
    section_count: int = 0
    allow_empty: bool = False  # Placeholder lesson, shown but never counted

    @property
    def completable(self) -> bool:
        """Has content and is not a placeholder; counts toward completion."""
        return self.section_count > 0 and not self.allow_empty


def _check_unique_orders(items, owner_kind: str, owner_id: str, item_kind: str) -> None:
    seen: dict[int, str] = {}
    for item in items:
        item_id = getattr(item, f"{item_kind}_id")
        if item.order in seen:
            raise CurriculumConfigError(
                f"{item_kind.capitalize()}s {seen[item.order]!r} and {item_id!r} "
                f"share order {item.order} in {owner_kind} {owner_id!r}"
            )
        seen[item.order] = item_id


class CurriculumGraph:
    """Read-only lookup structure over a validated curriculum."""

    def __init__(
        self,
        levels: list[Level],
        modules: list[Module],
        lessons: list[Lesson],
    ):
        self._levels: dict[str, Level] = {}
        for level in levels:
            if level.level_id in self._levels:
                raise CurriculumConfigError(f"Duplicate level id: {level.level_id!r}")
            self._levels[level.level_id] = level

        self._modules: dict[str, Module] = {}
        for module in modules:
            if module.module_id in self._modules:
                raise CurriculumConfigError(f"Duplicate module id: {module.module_id!r}")
            if module.level_id not in self._levels:
                raise CurriculumConfigError(
                    f"Module {module.module_id!r} references unknown level "
                    f"{module.level_id!r}"
                )
            self._modules[module.module_id] = module

        self._lessons: dict[tuple[str, str], Lesson] = {}
        for lesson in lessons:
            key = (lesson.module_id, lesson.lesson_id)
            if lesson.module_id not in self._modules:
                raise CurriculumConfigError(
                    f"Lesson {lesson.lesson_id!r} references unknown module "
                    f"{lesson.module_id!r}"
                )
            if key in self._lessons:
                raise CurriculumConfigError(
                    f"Duplicate lesson id {lesson.lesson_id!r} in module "
                    f"{lesson.module_id!r}"
                )
            self._lessons[key] = lesson

        _check_unique_orders(self._levels.values(), "curriculum", "", "level")

        self._level_modules: dict[str, tuple[Module, ...]] = {}
        for level_id in self._levels:
            level_modules = [m for m in self._modules.values() if m.level_id == level_id]
            _check_unique_orders(level_modules, "level", level_id, "module")
            self._level_modules[level_id] = tuple(
                sorted(level_modules, key=lambda m: m.order)
            )

        self._module_lessons: dict[str, tuple[Lesson, ...]] = {}
        for module_id in self._modules:
            module_lessons = [
                lesson for lesson in self._lessons.values() if lesson.module_id == module_id
            ]
            _check_unique_orders(module_lessons, "module", module_id, "lesson")
            self._module_lessons[module_id] = tuple(
                sorted(module_lessons, key=lambda lesson: lesson.order)
            )

        self._ordered_levels = tuple(sorted(self._levels.values(), key=lambda lv: lv.order))

        # lesson_id -> module ids holding it, for resolving a missing module_id
        self._lesson_index: dict[str, list[str]] = {}
        for module_id, lesson_id in self._lessons:
            self._lesson_index.setdefault(lesson_id, []).append(module_id)

    # -------------------------------------------------------------------------
    # Levels
    # -------------------------------------------------------------------------

    def levels(self) -> tuple[Level, ...]:
        return self._ordered_levels

    def get_level(self, level_id: str) -> Level | None:
        return self._levels.get(level_id)

    def previous_level(self, level_id: str) -> str | None:
        """Get the level immediately before level_id, or None for the first level."""
        ids = [level.level_id for level in self._ordered_levels]
        if level_id not in ids:
            return None
        index = ids.index(level_id)
        return ids[index - 1] if index > 0 else None

    def is_first_level(self, level_id: str) -> bool:
        return bool(self._ordered_levels) and self._ordered_levels[0].level_id == level_id

    # -------------------------------------------------------------------------
    # Modules
    # -------------------------------------------------------------------------

    def modules_of(self, level_id: str) -> tuple[Module, ...]:
        """Modules of a level, ordered by their declared order."""
        return self._level_modules.get(level_id, ())

    def get_module(self, module_id: str) -> Module | None:
        return self._modules.get(module_id)

    def level_of(self, module_id: str) -> str | None:
        module = self._modules.get(module_id)
        return module.level_id if module else None

    # -------------------------------------------------------------------------
    # Lessons
    # -------------------------------------------------------------------------

    def lessons_of(self, module_id: str) -> tuple[Lesson, ...]:
        """Lessons of a module, ordered by their declared order."""
        return self._module_lessons.get(module_id, ())

    def completable_lessons_of(self, module_id: str) -> tuple[Lesson, ...]:
        return tuple(lesson for lesson in self.lessons_of(module_id) if lesson.completable)

    def get_lesson(self, module_id: str, lesson_id: str) -> Lesson | None:
        return self._lessons.get((module_id, lesson_id))

    def module_of_lesson(self, lesson_id: str) -> str | None:
        """Get the module holding lesson_id, or None if unknown or ambiguous."""
        modules = self._lesson_index.get(lesson_id, [])
        return modules[0] if len(modules) == 1 else None

    def lessons_in_level(self, level_id: str) -> tuple[Lesson, ...]:
        """All lessons of a level: module order first, then lesson order."""
        return tuple(
            lesson
            for module in self.modules_of(level_id)
            for lesson in self.lessons_of(module.module_id)
        )

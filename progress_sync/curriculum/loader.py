# progress_sync/curriculum/loader.py
"""Load curriculum definitions from YAML files (or already-parsed dicts).

Expected shape:

    levels:                      # optional, defaults to beginner/intermediate/advanced
      - id: beginner
        title: Beginner
    modules:
      - id: module-01
        level: beginner
        order: 1
        title: Fundamentals
        lessons:
          - id: lesson-01
            order: 1
            sections: 4          # count, or the list of sections itself
          - id: lesson-02
            order: 2
            sections: []
            allowEmpty: true     # placeholder, never counted
"""

from pathlib import Path
from typing import Any

import yaml

from ..enums import LEVEL_ORDER
from ..errors import CurriculumConfigError
from .graph import CurriculumGraph, Lesson, Level, Module


def _require_id(data: Any, kind: str, where: str) -> str:
    if not isinstance(data, dict):
        raise CurriculumConfigError(f"{kind.capitalize()} entry in {where} must be a mapping")
    value = data.get("id")
    if not isinstance(value, str) or not value.strip():
        raise CurriculumConfigError(f"{kind.capitalize()} in {where} is missing an id")
    return value


def _parse_order(data: dict, default: int, what: str) -> int:
    value = data.get("order", default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise CurriculumConfigError(f"{what} has a non-integer order: {value!r}")
    return value


def _parse_section_count(data: dict, what: str) -> int:
    sections = data.get("sections", 0)
    if sections is None:
        return 0
    if isinstance(sections, list):
        return len(sections)
    if isinstance(sections, bool) or not isinstance(sections, int) or sections < 0:
        raise CurriculumConfigError(f"{what} has an invalid sections value: {sections!r}")
    return sections


def _parse_allow_empty(data: dict) -> bool:
    # Older content declares the flag under metadata
    metadata = data.get("metadata") or {}
    return bool(data.get("allowEmpty", metadata.get("allowEmpty", False)))


def curriculum_from_dict(data: dict) -> CurriculumGraph:
    """
    Build a validated CurriculumGraph from a parsed definition.

    Raises:
        CurriculumConfigError: If the definition is malformed
    """
    if not isinstance(data, dict):
        raise CurriculumConfigError("Curriculum definition must be a mapping")

    raw_levels = data.get("levels")
    if raw_levels is None:
        raw_levels = [{"id": level_id} for level_id in LEVEL_ORDER]
    if not isinstance(raw_levels, list):
        raise CurriculumConfigError("'levels' must be a list")

    levels = []
    for index, raw in enumerate(raw_levels):
        level_id = _require_id(raw, "level", "levels")
        levels.append(
            Level(
                level_id=level_id,
                order=_parse_order(raw, index + 1, f"Level {level_id!r}"),
                title=raw.get("title", level_id),
            )
        )

    raw_modules = data.get("modules") or []
    if not isinstance(raw_modules, list):
        raise CurriculumConfigError("'modules' must be a list")

    modules = []
    lessons = []
    for index, raw in enumerate(raw_modules):
        module_id = _require_id(raw, "module", "modules")
        level_id = raw.get("level")
        if not isinstance(level_id, str):
            raise CurriculumConfigError(f"Module {module_id!r} is missing its level")
        modules.append(
            Module(
                module_id=module_id,
                level_id=level_id,
                order=_parse_order(raw, index + 1, f"Module {module_id!r}"),
                title=raw.get("title", ""),
            )
        )

        raw_lessons = raw.get("lessons") or []
        if not isinstance(raw_lessons, list):
            raise CurriculumConfigError(f"Lessons of module {module_id!r} must be a list")

        for lesson_index, raw_lesson in enumerate(raw_lessons):
            lesson_id = _require_id(raw_lesson, "lesson", f"module {module_id!r}")
            what = f"Lesson {lesson_id!r} of module {module_id!r}"
            lessons.append(
                Lesson(
                    lesson_id=lesson_id,
                    module_id=module_id,
                    order=_parse_order(raw_lesson, lesson_index + 1, what),
                    title=raw_lesson.get("title", ""),
                    section_count=_parse_section_count(raw_lesson, what),
                    allow_empty=_parse_allow_empty(raw_lesson),
                )
            )

    return CurriculumGraph(levels=levels, modules=modules, lessons=lessons)


def load_curriculum(path: str | Path) -> CurriculumGraph:
    """
    Load a curriculum definition from a YAML file.

    Raises:
        CurriculumConfigError: If the file is missing, unreadable or malformed
    """
    path = Path(path)
    if not path.exists():
        raise CurriculumConfigError(f"Curriculum file not found: {path}")

    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise CurriculumConfigError(f"Invalid YAML in {path}: {e}") from e

    return curriculum_from_dict(data or {})

"""Enum definitions shared across the progress sync engine."""

import enum


class SyncStatus(str, enum.Enum):
    idle = "idle"
    saving = "saving"
    saved = "saved"
    offline_queued = "offline-queued"
    error = "error"


class LessonState(str, enum.Enum):
    locked = "locked"
    available = "available"
    in_progress = "in_progress"
    completed = "completed"


class UnlockPolicy(str, enum.Enum):
    """How lessons after the first one in a module are unlocked."""

    # Previous lesson in the same module must be complete
    module_sequential = "module_sequential"
    # Every preceding lesson in the level must be complete
    level_sequential = "level_sequential"


class Level(str, enum.Enum):
    beginner = "beginner"
    intermediate = "intermediate"
    advanced = "advanced"


# Curriculum levels in unlock order
LEVEL_ORDER = (Level.beginner.value, Level.intermediate.value, Level.advanced.value)

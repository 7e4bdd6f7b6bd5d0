"""
Learning-progress synchronization and curriculum unlock engine.

Moves lesson progress from the learner's session to the server of record
through optimistic updates, a durable outbox and keyed retries, and derives
which lessons and levels are unlocked from the accumulated progress.
"""

# Data types
from .types import (
    LessonProgress,
    ModuleLearningProgress,
    ModuleProgressSnapshot,
    OutboxEvent,
    ProgressDelta,
    ReconcileResult,
    SyncResult,
    clamp_progress,
)

# Enums
from .enums import LessonState, SyncStatus, UnlockPolicy

# Error taxonomy
from .errors import (
    ClientError,
    CurriculumConfigError,
    NetworkError,
    NotFoundError,
    ProgressSyncError,
    RateLimitedError,
    RecoverableServerError,
    ValidationError,
)

# Components
from .outbox import OutboxStore
from .store import ProgressStore
from .client import AuthContext, SyncClient
from .scheduler import RetryScheduler
from .curriculum import CurriculumGraph, load_curriculum, curriculum_from_dict
from .availability import (
    AvailabilityResolver,
    is_lesson_available,
    is_level_completed,
    is_module_completed,
    lesson_state,
    module_completion_percent,
)

# Composition root
from .engine import ProgressSyncEngine, build_sync_engine

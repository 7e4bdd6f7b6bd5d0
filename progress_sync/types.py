"""Progress data types.

A lesson's numeric ``progress`` fraction (0.0-1.0) is the single source of
truth for completion: ``completed`` is always derived from it and never
stored or accepted as an independent input.
"""

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on round trip)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def clamp_progress(value: Any) -> float:
    """Clamp a progress value into [0.0, 1.0]; missing or NaN becomes 0.0."""
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        value = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(value):
        return 0.0
    return max(0.0, min(1.0, value))


def generate_client_event_id() -> str:
    """Generate the idempotency key of an outbox event."""
    return f"evt_{uuid.uuid4().hex}"


@dataclass
class LessonProgress:
    """One learner's state on one lesson."""

    module_id: str
    lesson_id: str
    progress: float = 0.0
    time_spent_s: int = 0
    client_updated_at: datetime | None = None
    server_updated_at: datetime | None = None
    score: float | None = None
    position_seconds: float | None = None
    attempts: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.progress = clamp_progress(self.progress)

    @property
    def completed(self) -> bool:
        return self.progress == 1.0


@dataclass
class ModuleLearningProgress:
    """Module-level metadata reported by the server of record."""

    time_spent: int = 0
    score: float | None = None
    completed_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class ModuleProgressSnapshot:
    """Aggregation of LessonProgress records for a module."""

    module_id: str
    learning_progress: ModuleLearningProgress | None = None
    lessons_by_id: dict[str, LessonProgress] = field(default_factory=dict)

    @property
    def completed_lesson_ids(self) -> set[str]:
        return {
            lesson_id
            for lesson_id, lesson in self.lessons_by_id.items()
            if lesson.completed
        }


@dataclass
class ProgressDelta:
    """A progress-reporting event produced by the UI.

    ``completed`` is accepted for compatibility with legacy callers but is
    never used as a progress source.
    """

    lesson_id: str
    module_id: str | None = None
    progress: float | None = None
    completed: bool | None = None
    time_spent_delta: int = 0
    score: float | None = None
    position_seconds: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    client_updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ProgressDelta":
        """Build a delta from a camelCase (UI) or snake_case mapping."""

        def pick(*keys, default=None):
            for key in keys:
                if key in data and data[key] is not None:
                    return data[key]
            return default

        client_updated_at = pick("clientUpdatedAt", "client_updated_at", "lastAccessed")
        if isinstance(client_updated_at, str):
            client_updated_at = datetime.fromisoformat(
                client_updated_at.replace("Z", "+00:00")
            )

        return cls(
            lesson_id=pick("lessonId", "lesson_id"),
            module_id=pick("moduleId", "module_id"),
            progress=pick("progress"),
            completed=pick("completed", "isCompleted"),
            time_spent_delta=int(pick("timeSpentDelta", "time_spent_delta", default=0)),
            score=pick("score"),
            position_seconds=pick("positionSeconds", "position_seconds"),
            metadata=dict(pick("metadata", default={})),
            client_updated_at=as_utc(client_updated_at) or utcnow(),
        )


@dataclass
class OutboxEvent:
    """A durable, at-least-once-delivered intent to update progress."""

    module_id: str
    lesson_id: str
    progress: float
    client_event_id: str = field(default_factory=generate_client_event_id)
    time_spent_delta: int = 0
    client_updated_at: datetime = field(default_factory=utcnow)
    ts: datetime = field(default_factory=utcnow)  # Enqueue time
    score: float | None = None
    position_seconds: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    attempts: int = 0
    last_error: str | None = None
    # Ids of earlier events for the same lesson folded into this one
    coalesced_ids: list[str] = field(default_factory=list)

    def __post_init__(self):
        self.progress = clamp_progress(self.progress)

    @property
    def completed(self) -> bool:
        return self.progress == 1.0

    @property
    def key(self) -> tuple[str, str]:
        return (self.module_id, self.lesson_id)

    @property
    def all_ids(self) -> list[str]:
        return [self.client_event_id, *self.coalesced_ids]


@dataclass
class SyncResult:
    """Server-confirmed outcome of a single progress write."""

    lesson_progress: LessonProgress
    module_progress: ModuleLearningProgress | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class BulkItemResult:
    """Per-item outcome of a bulk sync request."""

    client_event_id: str
    module_id: str
    lesson_id: str
    merged: bool
    record: LessonProgress | None = None


@dataclass
class ReconcileResult:
    """Summary of one outbox drain."""

    confirmed: int = 0
    dropped: int = 0
    remaining: int = 0
    stopped_early: bool = False
    # Messages of rejections that dropped events
    errors: list[str] = field(default_factory=list)
    # Modules with at least one confirmed event, refreshed after the drain
    synced_module_ids: set[str] = field(default_factory=set)

"""Wire models for the server-of-record progress API.

Endpoints:
- GET /progress?moduleId&lessonId - list of lesson progress records
- PUT /progress - upsert one lesson, returns the merged record
- POST /progress/sync - upsert a batch, returns {merged: [...], records: [...]}

Servers answer with slightly different shapes (bare record vs
{lessonProgress, moduleProgress}, progress vs completionPercentage, nested vs
flat error envelopes). They are normalized here, once, so nothing past the
SyncClient sees anything but the dataclasses in progress_sync.types.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .types import (
    LessonProgress,
    ModuleLearningProgress,
    OutboxEvent,
    as_utc,
    clamp_progress,
)


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ProgressPayload(_WireModel):
    """Per-lesson body of PUT /progress and items of POST /progress/sync."""

    module_id: str = Field(alias="moduleId")
    lesson_id: str = Field(alias="lessonId")
    progress: float
    is_completed: bool = Field(alias="isCompleted")
    client_updated_at: datetime = Field(alias="clientUpdatedAt")
    client_event_id: str | None = Field(default=None, alias="clientEventId")
    time_spent_delta: int | None = Field(default=None, alias="timeSpentDelta")
    position_seconds: float | None = Field(default=None, alias="positionSeconds")
    attempts: int | None = None
    score: float | None = None
    metadata: dict[str, Any] | None = None

    @classmethod
    def from_event(cls, event: OutboxEvent) -> "ProgressPayload":
        return cls(
            module_id=event.module_id,
            lesson_id=event.lesson_id,
            progress=event.progress,
            # Derived from progress only
            is_completed=event.completed,
            client_updated_at=event.client_updated_at,
            client_event_id=event.client_event_id,
            time_spent_delta=event.time_spent_delta or None,
            position_seconds=event.position_seconds,
            score=event.score,
            metadata=event.metadata or None,
        )

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class LessonProgressRecord(_WireModel):
    """A lesson progress record as returned by the server."""

    module_id: str | None = Field(default=None, alias="moduleId")
    lesson_id: str = Field(alias="lessonId")
    progress: float = 0.0
    time_spent: int = Field(default=0, alias="timeSpent")
    client_updated_at: datetime | None = Field(default=None, alias="clientUpdatedAt")
    server_updated_at: datetime | None = Field(default=None, alias="serverUpdatedAt")
    score: float | None = None
    position_seconds: float | None = Field(default=None, alias="positionSeconds")
    attempts: int | None = None
    metadata: dict[str, Any] | None = None

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        # Older servers report completionPercentage (0-100) instead of progress
        if data.get("progress") is None and data.get("completionPercentage") is not None:
            data["progress"] = data["completionPercentage"] / 100
        data["progress"] = clamp_progress(data.get("progress"))
        if data.get("serverUpdatedAt") is None and data.get("updatedAt") is not None:
            data["serverUpdatedAt"] = data["updatedAt"]
        if data.get("clientUpdatedAt") is None and data.get("lastAccessed") is not None:
            data["clientUpdatedAt"] = data["lastAccessed"]
        if data.get("timeSpent") is None:
            data["timeSpent"] = 0
        return data

    def to_lesson_progress(self, module_id: str | None = None) -> LessonProgress:
        return LessonProgress(
            module_id=self.module_id or module_id or "",
            lesson_id=self.lesson_id,
            progress=self.progress,
            time_spent_s=self.time_spent,
            client_updated_at=as_utc(self.client_updated_at),
            server_updated_at=as_utc(self.server_updated_at),
            score=self.score,
            position_seconds=self.position_seconds,
            attempts=self.attempts,
            metadata=dict(self.metadata or {}),
        )


class ModuleProgressRecord(_WireModel):
    time_spent: int = Field(default=0, alias="timeSpent")
    score: float | None = None
    completed_at: datetime | None = Field(default=None, alias="completedAt")

    def to_module_progress(self) -> ModuleLearningProgress:
        return ModuleLearningProgress(
            time_spent=self.time_spent,
            score=self.score,
            completed_at=as_utc(self.completed_at),
        )


class UpsertResponse(_WireModel):
    """Response of PUT /progress: a bare record or {lessonProgress, moduleProgress}."""

    lesson_progress: LessonProgressRecord = Field(alias="lessonProgress")
    module_progress: ModuleProgressRecord | None = Field(
        default=None, alias="moduleProgress"
    )

    @model_validator(mode="before")
    @classmethod
    def _wrap_bare_record(cls, data: Any) -> Any:
        if isinstance(data, dict) and "lessonProgress" not in data and "lessonId" in data:
            return {"lessonProgress": data}
        return data


class MergedItem(_WireModel):
    lesson_id: str = Field(alias="lessonId")
    module_id: str | None = Field(default=None, alias="moduleId")
    merged: bool = False


class BulkSyncResponse(_WireModel):
    merged: list[MergedItem] = Field(default_factory=list)
    records: list[LessonProgressRecord] = Field(default_factory=list)


def extract_error(payload: Any) -> tuple[str | None, str | None, float | None]:
    """Pull (message, code, retry_after) out of any known error envelope.

    Handles {error: {message, code}}, {error: "text"}, {message, code} and
    plain text bodies.
    """
    if isinstance(payload, str):
        return (payload.strip() or None, None, None)
    if not isinstance(payload, dict):
        return (None, None, None)

    error = payload.get("error")
    retry_after = payload.get("retryAfter")
    if isinstance(error, dict):
        retry_after = error.get("retryAfter", retry_after)
        return (error.get("message"), error.get("code"), retry_after)
    if isinstance(error, str) and not payload.get("message"):
        return (error, payload.get("code"), retry_after)
    return (payload.get("message"), payload.get("code"), retry_after)

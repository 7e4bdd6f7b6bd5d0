"""Merge rules between optimistic local writes and server-confirmed state.

Three situations are handled here:

1. A direct write was accepted by the server: the server record replaces
   the optimistic entry unconditionally (the server already did LWW against
   clientUpdatedAt when it accepted the write).
2. A queued outbox event meets a newer event for the same lesson: keep the
   greater progress and sum the time deltas, so progress never regresses
   and accumulated time is never lost.
3. A replayed or freshly loaded server record meets a local entry that was
   written later (last-writer-wins by client_updated_at): the local entry
   wins, but still never below the server's progress.
"""

from dataclasses import replace

from .types import LessonProgress, OutboxEvent, ProgressDelta, clamp_progress


def _later(a, b):
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


def apply_delta(
    current: LessonProgress | None,
    module_id: str,
    lesson_id: str,
    delta: ProgressDelta,
) -> LessonProgress:
    """Compute the optimistic lesson state after a UI progress event.

    Progress only moves forward; ``delta.completed`` is deliberately ignored.
    """
    base = current or LessonProgress(module_id=module_id, lesson_id=lesson_id)
    progress = base.progress
    if delta.progress is not None:
        progress = max(progress, clamp_progress(delta.progress))

    return LessonProgress(
        module_id=module_id,
        lesson_id=lesson_id,
        progress=progress,
        time_spent_s=base.time_spent_s + max(0, delta.time_spent_delta or 0),
        client_updated_at=_later(base.client_updated_at, delta.client_updated_at),
        server_updated_at=base.server_updated_at,
        score=delta.score if delta.score is not None else base.score,
        position_seconds=(
            delta.position_seconds
            if delta.position_seconds is not None
            else base.position_seconds
        ),
        attempts=base.attempts,
        metadata={**base.metadata, **delta.metadata},
    )


def coalesce_events(queued: OutboxEvent, incoming: OutboxEvent) -> OutboxEvent:
    """Fold a newer event into an older queued one for the same lesson.

    The result carries the incoming event's id, keeps the queued event's
    enqueue time (so replay order is preserved) and remembers every absorbed
    id so a later re-enqueue of the result replaces rather than re-sums.
    """
    if queued.key != incoming.key:
        raise ValueError(
            f"Cannot coalesce events for different lessons: {queued.key} != {incoming.key}"
        )

    absorbed = [i for i in queued.all_ids if i not in incoming.all_ids]

    return OutboxEvent(
        module_id=incoming.module_id,
        lesson_id=incoming.lesson_id,
        progress=max(queued.progress, incoming.progress),
        client_event_id=incoming.client_event_id,
        time_spent_delta=queued.time_spent_delta + incoming.time_spent_delta,
        client_updated_at=max(queued.client_updated_at, incoming.client_updated_at),
        ts=min(queued.ts, incoming.ts),
        score=incoming.score if incoming.score is not None else queued.score,
        position_seconds=(
            incoming.position_seconds
            if incoming.position_seconds is not None
            else queued.position_seconds
        ),
        metadata={**queued.metadata, **incoming.metadata},
        attempts=incoming.attempts,
        last_error=incoming.last_error,
        coalesced_ids=[*incoming.coalesced_ids, *absorbed],
    )


def merge_confirmed(
    current: LessonProgress | None, server_record: LessonProgress
) -> LessonProgress:
    """Server truth for a write it just accepted: replaces the local entry."""
    return replace(server_record, metadata=dict(server_record.metadata))


def merge_replayed(
    local: LessonProgress | None, server_record: LessonProgress
) -> LessonProgress:
    """Merge a server record that may be older than the local entry.

    Used for outbox replays and progress loads, where the user may have kept
    working locally after the event was queued.
    """
    if local is None:
        return merge_confirmed(None, server_record)

    local_ts = local.client_updated_at
    server_ts = server_record.client_updated_at
    local_is_newer = local_ts is not None and (server_ts is None or local_ts > server_ts)

    if not local_is_newer:
        return merge_confirmed(local, server_record)

    return replace(
        local,
        progress=max(local.progress, server_record.progress),
        time_spent_s=max(local.time_spent_s, server_record.time_spent_s),
        server_updated_at=_later(local.server_updated_at, server_record.server_updated_at),
        metadata=dict(local.metadata),
    )


def event_from_progress(
    lesson: LessonProgress, delta: ProgressDelta
) -> OutboxEvent:
    """Build the outbox event describing an optimistic update."""
    return OutboxEvent(
        module_id=lesson.module_id,
        lesson_id=lesson.lesson_id,
        progress=lesson.progress,
        time_spent_delta=max(0, delta.time_spent_delta or 0),
        client_updated_at=delta.client_updated_at,
        score=lesson.score,
        position_seconds=lesson.position_seconds,
        metadata=dict(delta.metadata),
    )

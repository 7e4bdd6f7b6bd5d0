"""
Progress sync engine: the composition root of the progress pipeline.

Flow for one UI progress event:

1. Validate it and resolve its module.
2. Cancel any retry timer for the lesson (a stale retry must not race the
   newer write).
3. Apply it optimistically to the ProgressStore; subscribers see it before
   anything is awaited.
4. Fold any queued outbox event for the lesson into the new event.
5. Offline: queue it. Online: PUT it, then merge server truth back in, or
   queue it and schedule a retry, or revert it, depending on the failure.

Queued events are drained in bulk on startup and on reconnect.

Main entry points:
- update_lesson_progress(delta) - UI progress event
- reconcile_outbox() - drain the outbox against the server
- set_online(online) - connectivity changes
- load_module_progress(module_id) - hydrate the store from the server
"""

import asyncio
import logging
from collections import Counter
from contextlib import AsyncExitStack
from dataclasses import replace
from datetime import timedelta
from typing import Any, Callable, Mapping

import sentry_sdk

from .availability import AvailabilityResolver
from .client import AuthProvider, SyncClient
from .config import (
    get_confirmation_max_age_days,
    get_curriculum_path,
    get_max_outbox_attempts,
    get_sentry_dsn,
    get_sync_batch_size,
    get_unlock_policy,
)
from .curriculum import CurriculumGraph, Lesson, load_curriculum
from .enums import LessonState, SyncStatus, UnlockPolicy
from .errors import (
    ClientError,
    NotFoundError,
    ProgressSyncError,
    RateLimitedError,
    RecoverableServerError,
    ValidationError,
)
from .outbox import OutboxStore
from .reconciler import coalesce_events, event_from_progress
from .scheduler import RetryScheduler
from .store import ProgressStore
from .types import (
    LessonProgress,
    ModuleProgressSnapshot,
    OutboxEvent,
    ProgressDelta,
    ReconcileResult,
    SyncResult,
)

logger = logging.getLogger(__name__)

StatusSubscriber = Callable[[SyncStatus, str | None], None]


class ProgressSyncEngine:
    """Owns the store, the outbox, the client and the retry timers for one learner."""

    def __init__(
        self,
        store: ProgressStore,
        outbox: OutboxStore,
        client: SyncClient,
        curriculum: CurriculumGraph | None = None,
        scheduler: RetryScheduler | None = None,
        *,
        online: bool = True,
        unlock_policy: UnlockPolicy | None = None,
        current_module_id: str | None = None,
        batch_size: int | None = None,
        max_outbox_attempts: int | None = None,
        confirmation_max_age: timedelta | None = None,
    ):
        """
        Args:
            store: In-memory progress projection
            outbox: Durable queue of unconfirmed events
            client: Network boundary to the server of record
            curriculum: Curriculum graph, needed for availability queries
            scheduler: Retry timers (default: a new RetryScheduler)
            online: Initial connectivity
            unlock_policy: Lesson unlock policy (default: PROGRESS_UNLOCK_POLICY)
            current_module_id: Module of the lesson being viewed, the last
                resort when an event has no module id
            batch_size: Events per bulk request (default: PROGRESS_SYNC_BATCH_SIZE)
            max_outbox_attempts: Replays before a not-found event is dropped
                (default: PROGRESS_MAX_OUTBOX_ATTEMPTS)
            confirmation_max_age: Retention of confirmation records
                (default: PROGRESS_CONFIRMATION_MAX_AGE_DAYS)
        """
        self.store = store
        self.outbox = outbox
        self.client = client
        self.curriculum = curriculum
        self.scheduler = scheduler or RetryScheduler()
        self.current_module_id = current_module_id

        self._online = online
        self._batch_size = batch_size or get_sync_batch_size()
        self._max_outbox_attempts = max_outbox_attempts or get_max_outbox_attempts()
        self._confirmation_max_age = confirmation_max_age or timedelta(
            days=get_confirmation_max_age_days()
        )

        self._status = SyncStatus.idle
        self._last_error: str | None = None
        # Latest 5xx message, reported once in-flight deliveries settle
        self._server_error: str | None = None
        self._status_subscribers: list[StatusSubscriber] = []

        # Deliveries (direct sends, retries, drains) not yet settled
        self._in_flight = 0
        # Optimistic writes per lesson, to spot a confirmation that is already stale
        self._generations: Counter = Counter()
        self._key_locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._drain_lock = asyncio.Lock()

        self.resolver: AvailabilityResolver | None = None
        if curriculum is not None:
            self.resolver = AvailabilityResolver(
                curriculum,
                store.snapshot,
                unlock_policy or get_unlock_policy(),
            )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> ReconcileResult | None:
        """Open the outbox, start retry timers and replay anything left queued."""
        await self.outbox.initialize()
        self.scheduler.start()

        pending = await self.outbox.count_pending()
        if pending:
            logger.info(f"Found {pending} queued progress events from a previous session")
            if not self._online:
                self._set_status(SyncStatus.offline_queued)
                return None
            return await self.reconcile_outbox()
        return None

    async def close(self) -> None:
        self.scheduler.shutdown()
        await self.client.aclose()

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    @property
    def sync_status(self) -> SyncStatus:
        return self._status

    @property
    def last_sync_error(self) -> str | None:
        return self._last_error

    @property
    def online(self) -> bool:
        return self._online

    def subscribe_status(self, callback: StatusSubscriber) -> Callable[[], None]:
        """Register callback(status, last_error). Returns an unsubscribe function."""
        self._status_subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._status_subscribers:
                self._status_subscribers.remove(callback)

        return unsubscribe

    def _set_status(self, status: SyncStatus, error: str | None = None) -> None:
        if status == SyncStatus.error:
            self._last_error = error
        elif status == SyncStatus.saved:
            self._last_error = None

        if status == self._status and status != SyncStatus.error:
            return
        self._status = status

        for callback in list(self._status_subscribers):
            try:
                callback(status, self._last_error)
            except Exception as e:
                logger.error(f"Sync status subscriber failed: {e}")
                sentry_sdk.capture_exception(e)

    async def _settle_status(self) -> None:
        """Report saved only once nothing is queued or in flight."""
        if self._in_flight:
            return
        pending = await self.outbox.count_pending()
        if pending == 0:
            self._server_error = None
            self._set_status(SyncStatus.saved)
        elif self._server_error is not None:
            self._set_status(SyncStatus.error, self._server_error)
        elif self._status != SyncStatus.error:
            self._set_status(SyncStatus.offline_queued)

    # -------------------------------------------------------------------------
    # UI entry point
    # -------------------------------------------------------------------------

    def _resolve_module_id(self, lesson_id: str, module_id: str | None) -> str:
        if module_id:
            return module_id
        resolved = self.store.find_module_for_lesson(lesson_id)
        if resolved is None and self.curriculum is not None:
            resolved = self.curriculum.module_of_lesson(lesson_id)
        if resolved is None:
            resolved = self.current_module_id
        if not resolved:
            raise ValidationError(f"Cannot resolve module for lesson {lesson_id!r}")
        return resolved

    def _validate(self, delta: ProgressDelta | Mapping[str, Any]) -> ProgressDelta:
        if isinstance(delta, Mapping):
            try:
                delta = ProgressDelta.from_dict(delta)
            except (TypeError, ValueError) as e:
                raise ValidationError(f"Invalid progress event: {e}") from e

        if not isinstance(delta.lesson_id, str) or not delta.lesson_id.strip():
            raise ValidationError("lesson_id is required")

        progress = delta.progress
        if progress is not None:
            if isinstance(progress, bool) or not isinstance(progress, (int, float)):
                raise ValidationError(
                    f"progress must be a number for lesson {delta.lesson_id!r}"
                )
            if progress != progress:  # NaN
                raise ValidationError(f"progress is NaN for lesson {delta.lesson_id!r}")

        module_id = self._resolve_module_id(delta.lesson_id, delta.module_id)
        return replace(delta, module_id=module_id)

    def _key_lock(self, key: tuple[str, str]) -> asyncio.Lock:
        lock = self._key_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._key_locks[key] = lock
        return lock

    async def update_lesson_progress(
        self, delta: ProgressDelta | Mapping[str, Any]
    ) -> LessonProgress:
        """
        Record a progress event from the UI.

        Args:
            delta: ProgressDelta, or a mapping like
                {lessonId, moduleId?, progress, completed, timeSpentDelta}.
                completed is ignored; only progress counts.

        Returns:
            The confirmed lesson record, or the optimistic one when the
            event was queued

        Raises:
            ValidationError: Identifiers missing or progress not a number;
                nothing was applied
            ClientError: The server rejected the write; the optimistic
                update was reverted
        """
        delta = self._validate(delta)
        module_id, lesson_id = delta.module_id, delta.lesson_id
        key = (module_id, lesson_id)

        self.scheduler.cancel_retry(module_id, lesson_id)
        lesson = self.store.apply_optimistic(module_id, lesson_id, delta)
        self._generations[key] += 1
        generation = self._generations[key]

        event = event_from_progress(lesson, delta)

        # Writes to one lesson go out one at a time, in the order issued
        async with self._key_lock(key):
            queued = await self.outbox.get_pending(module_id, lesson_id)
            if queued is not None:
                event = coalesce_events(queued, event)

            if not self._online:
                await self.outbox.enqueue(event)
                logger.info(f"Offline, queued progress for {module_id}/{lesson_id}")
                self._set_status(SyncStatus.offline_queued)
                return lesson

            try:
                result = await self._send_single(event)
            except ProgressSyncError as e:
                if not e.recoverable:
                    self._reject_direct(event, e)
                    raise
                await self._queue_failed(event, e, attempt=0)
                return self.store.get_lesson_progress(module_id, lesson_id) or lesson

            confirmed = await self._confirm(
                event, result, stale=self._generations[key] != generation
            )

        await self._settle_status()
        return confirmed

    # -------------------------------------------------------------------------
    # Delivery outcomes
    # -------------------------------------------------------------------------

    async def _send_single(self, event: OutboxEvent) -> SyncResult:
        self._in_flight += 1
        self._set_status(SyncStatus.saving)
        try:
            return await self.client.send_single(event)
        finally:
            self._in_flight -= 1

    async def _confirm(
        self, event: OutboxEvent, result: SyncResult, *, stale: bool
    ) -> LessonProgress:
        """Merge a confirmed write back in and clear it from the outbox."""
        for client_event_id in event.all_ids:
            await self.outbox.dequeue_confirmed(client_event_id)
        await self.outbox.mark_confirmed(
            event.client_event_id,
            result.raw or None,
            module_id=event.module_id,
            lesson_id=event.lesson_id,
        )
        return self.store.apply_confirmed(
            event.module_id,
            event.lesson_id,
            result.lesson_progress,
            result.module_progress,
            replayed=stale,
        )

    async def _queue_failed(
        self, event: OutboxEvent, error: ProgressSyncError, attempt: int
    ) -> None:
        """Keep a recoverable failure in the outbox; optimistic state stays."""
        module_id, lesson_id = event.key
        await self.outbox.enqueue(
            replace(event, attempts=event.attempts + 1, last_error=error.message)
        )

        if isinstance(error, NotFoundError):
            # Content may not be provisioned yet; the next drain tries again
            logger.warning(
                f"Lesson {module_id}/{lesson_id} not found on server, keeping it queued"
            )
        elif self._online:
            self.scheduler.schedule_retry(
                module_id,
                lesson_id,
                attempt + 1,
                self._retry_event,
                {
                    "module_id": module_id,
                    "lesson_id": lesson_id,
                    "client_event_id": event.client_event_id,
                    "attempt": attempt + 1,
                },
            )

        self._report_recoverable(error)

    def _report_recoverable(self, error: ProgressSyncError) -> None:
        if isinstance(error, RecoverableServerError) and not isinstance(
            error, RateLimitedError
        ):
            logger.warning(f"Server error while syncing progress: {error.message}")
            self._server_error = error.message
        else:
            self._server_error = None

        if self._in_flight:
            return
        if self._server_error is not None:
            self._set_status(SyncStatus.error, self._server_error)
        else:
            self._set_status(SyncStatus.offline_queued)

    def _reject_direct(self, event: OutboxEvent, error: ProgressSyncError) -> None:
        """A non-recoverable rejection of a direct write: revert and surface it."""
        logger.error(
            f"Progress for {event.module_id}/{event.lesson_id} rejected: {error.message}"
        )
        sentry_sdk.capture_exception(error)
        self.store.revert(event.module_id, event.lesson_id)
        self._set_status(SyncStatus.error, error.message)

    async def _drop_event(self, event: OutboxEvent, reason: str) -> None:
        """Drop a queued event after a non-recoverable decision and revert its lesson."""
        for client_event_id in event.all_ids:
            await self.outbox.dequeue_confirmed(client_event_id)
        self.store.revert(event.module_id, event.lesson_id)
        logger.warning(
            f"Dropped progress event {event.client_event_id} for "
            f"{event.module_id}/{event.lesson_id}: {reason}"
        )

    async def _retry_event(
        self, module_id: str, lesson_id: str, client_event_id: str, attempt: int
    ) -> None:
        """
        Retry one queued event. Called by APScheduler.

        Does nothing if the event was confirmed or superseded meanwhile, or
        if the engine went offline (the reconnect drain picks it up).
        """
        if not self._online:
            logger.info(f"Offline, skipping retry for {module_id}/{lesson_id}")
            return

        async with self._key_lock((module_id, lesson_id)):
            event = await self.outbox.get_event(client_event_id)
            if event is None:
                logger.info(
                    f"Progress for {module_id}/{lesson_id} already settled, skipping retry"
                )
                return

            try:
                result = await self._send_single(event)
            except ProgressSyncError as e:
                if e.recoverable:
                    await self._queue_failed(event, e, attempt=attempt)
                    return
                sentry_sdk.capture_exception(e)
                await self._drop_event(event, e.message)
                self._set_status(SyncStatus.error, e.message)
                return
            except Exception as e:
                logger.error(f"Progress retry for {module_id}/{lesson_id} failed: {e}")
                sentry_sdk.capture_exception(e)
                return

            await self._confirm(event, result, stale=True)

        logger.info(f"Progress for {module_id}/{lesson_id} synced on retry {attempt}")
        await self._settle_status()

    # -------------------------------------------------------------------------
    # Outbox drain
    # -------------------------------------------------------------------------

    async def reconcile_outbox(self) -> ReconcileResult:
        """
        Deliver queued events in bulk, in enqueue order.

        Stops at the first transport, server or rate-limit failure; events
        not delivered stay queued. Concurrent calls are serialized. Modules
        with confirmed events are reloaded from the server afterwards so
        writes from other devices show up too.
        """
        result = ReconcileResult()
        if not self._online:
            result.remaining = await self.outbox.count_pending()
            return result

        async with self._drain_lock:
            if not await self.outbox.count_pending():
                return result

            self._in_flight += 1
            self._set_status(SyncStatus.saving)
            failure: ProgressSyncError | None = None
            try:
                batch: list[OutboxEvent] = []
                async for event in self.outbox.list_pending():
                    batch.append(event)
                    if len(batch) >= self._batch_size:
                        failure = await self._drain_batch(batch, result)
                        batch = []
                        if failure is not None:
                            break
                if batch and failure is None:
                    failure = await self._drain_batch(batch, result)
            finally:
                self._in_flight -= 1

            if failure is not None:
                result.stopped_early = True

            removed = await self.outbox.cleanup_old_confirmations(
                self._confirmation_max_age
            )
            if removed:
                logger.info(f"Cleaned up {removed} old progress confirmations")

            result.remaining = await self.outbox.count_pending()

        for module_id in sorted(result.synced_module_ids):
            try:
                await self.load_module_progress(module_id)
            except ProgressSyncError as e:
                logger.warning(f"Could not refresh module {module_id} after drain: {e.message}")

        logger.info(
            f"Outbox drain: {result.confirmed} confirmed, {result.dropped} dropped, "
            f"{result.remaining} remaining"
        )
        if failure is not None:
            self._report_recoverable(failure)
        elif result.errors:
            self._set_status(SyncStatus.error, result.errors[-1])
        else:
            self._server_error = None
            await self._settle_status()
        return result

    async def _drain_batch(
        self, batch: list[OutboxEvent], result: ReconcileResult
    ) -> ProgressSyncError | None:
        """
        Send one batch while holding the lock of every lesson in it.

        Direct writes and retries for those lessons wait until the batch is
        settled, so none of them can fold in an event that is already on the
        wire. Returns the failure that should stop the drain, if any.
        """
        async with AsyncExitStack() as stack:
            for key in dict.fromkeys(event.key for event in batch):
                await stack.enter_async_context(self._key_lock(key))

            # A direct write may have confirmed or absorbed an event since it was listed
            ready = []
            for event in batch:
                current = await self.outbox.get_event(event.client_event_id)
                if current is None:
                    continue
                if await self.outbox.is_confirmed(current.client_event_id):
                    logger.info(
                        f"Progress event {current.client_event_id} already confirmed, "
                        "removing it from the outbox"
                    )
                    for client_event_id in current.all_ids:
                        await self.outbox.dequeue_confirmed(client_event_id)
                    continue
                ready.append(current)

            if not ready:
                return None
            return await self._send_batch(ready, result)

    async def _send_batch(
        self, batch: list[OutboxEvent], result: ReconcileResult
    ) -> ProgressSyncError | None:
        try:
            items = await self.client.send_bulk(batch)
        except (ClientError, NotFoundError, ValidationError) as e:
            logger.warning(f"Bulk sync rejected ({e.message}), replaying events one by one")
            for event in batch:
                failure = await self._replay_single(event, result)
                if failure is not None:
                    return failure
            return None
        except ProgressSyncError as e:
            for event in batch:
                await self.outbox.record_failure(event.client_event_id, e.message)
            return e

        answered = {item.client_event_id: item for item in items}
        for event in batch:
            item = answered.get(event.client_event_id)
            if item is None:
                # Treated like a not-found: the server has nowhere to put it yet
                await self._count_unaccepted(event, "not acknowledged by bulk sync", result)
                continue
            if item.record is not None:
                await self._confirm(
                    event,
                    SyncResult(lesson_progress=item.record, raw={"merged": item.merged}),
                    stale=True,
                )
            else:
                for client_event_id in event.all_ids:
                    await self.outbox.dequeue_confirmed(client_event_id)
                await self.outbox.mark_confirmed(
                    event.client_event_id,
                    {"merged": item.merged},
                    module_id=event.module_id,
                    lesson_id=event.lesson_id,
                )
            result.confirmed += 1
            result.synced_module_ids.add(event.module_id)
        return None

    async def _replay_single(
        self, event: OutboxEvent, result: ReconcileResult
    ) -> ProgressSyncError | None:
        try:
            sync_result = await self.client.send_single(event)
        except NotFoundError as e:
            await self._count_unaccepted(event, e.message, result)
            return None
        except ProgressSyncError as e:
            if e.recoverable:
                await self.outbox.record_failure(event.client_event_id, e.message)
                return e
            sentry_sdk.capture_exception(e)
            await self._drop_event(event, e.message)
            result.dropped += 1
            result.errors.append(e.message)
            return None

        await self._confirm(event, sync_result, stale=True)
        result.confirmed += 1
        result.synced_module_ids.add(event.module_id)
        return None

    async def _count_unaccepted(
        self, event: OutboxEvent, reason: str, result: ReconcileResult
    ) -> None:
        """Count a replay the server could not place; drop it after too many."""
        attempts = await self.outbox.record_failure(event.client_event_id, reason)
        if attempts < self._max_outbox_attempts:
            return

        await self._drop_event(event, f"{reason} after {attempts} attempts")
        sentry_sdk.capture_message(
            f"Progress event dropped after {attempts} unaccepted replays: "
            f"{event.module_id}/{event.lesson_id}"
        )
        result.dropped += 1

    # -------------------------------------------------------------------------
    # Connectivity and hydration
    # -------------------------------------------------------------------------

    async def set_online(self, online: bool) -> ReconcileResult | None:
        """
        Record a connectivity change.

        Coming back online drains the outbox; going offline cancels retry
        timers (the reconnect drain replaces them).
        """
        was_online = self._online
        self._online = online

        if not online:
            cancelled = self.scheduler.cancel_all()
            if cancelled:
                logger.info(f"Offline, cancelled {cancelled} progress retries")
            if await self.outbox.count_pending():
                self._set_status(SyncStatus.offline_queued)
            return None

        if not was_online and await self.outbox.count_pending():
            logger.info("Back online, draining progress outbox")
            return await self.reconcile_outbox()
        return None

    async def load_module_progress(self, module_id: str) -> ModuleProgressSnapshot | None:
        """
        Hydrate the store with the server's records for a module.

        Lessons with a queued or in-flight local write keep it when it is
        newer than the server's record.
        """
        records = await self.client.fetch_progress(module_id=module_id)
        for record in records:
            record_module = record.module_id or module_id
            queued = await self.outbox.get_pending(record_module, record.lesson_id)
            key = (record_module, record.lesson_id)
            self.store.apply_confirmed(
                record_module,
                record.lesson_id,
                record,
                replayed=queued is not None or key in self._generations,
            )
        logger.info(f"Loaded {len(records)} progress records for module {module_id}")
        return self.store.get_module_snapshot(module_id)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_lesson_progress(self, module_id: str, lesson_id: str) -> LessonProgress | None:
        return self.store.get_lesson_progress(module_id, lesson_id)

    def get_module_snapshot(self, module_id: str) -> ModuleProgressSnapshot | None:
        return self.store.get_module_snapshot(module_id)

    def _require_resolver(self) -> AvailabilityResolver:
        if self.resolver is None:
            raise RuntimeError("Availability queries need a curriculum")
        return self.resolver

    def is_lesson_available(
        self, lesson: Lesson | tuple[str, str], level_lessons: list[Lesson] | None = None
    ) -> bool:
        return self._require_resolver().is_lesson_available(lesson, level_lessons)

    def is_level_completed(self, level_id: str) -> bool:
        return self._require_resolver().is_level_completed(level_id)

    def lesson_state(self, module_id: str, lesson_id: str) -> LessonState:
        return self._require_resolver().lesson_state((module_id, lesson_id))


def build_sync_engine(
    *,
    auth_provider: AuthProvider | None = None,
    online: bool = True,
    current_module_id: str | None = None,
) -> ProgressSyncEngine:
    """
    Build an engine from environment configuration.

    Loads the curriculum from PROGRESS_CURRICULUM_PATH when set; a malformed
    curriculum raises CurriculumConfigError here rather than later.
    """
    dsn = get_sentry_dsn()
    if dsn:
        sentry_sdk.init(dsn=dsn)

    curriculum_path = get_curriculum_path()
    curriculum = load_curriculum(curriculum_path) if curriculum_path else None
    if curriculum is None:
        logger.warning("PROGRESS_CURRICULUM_PATH not set, availability queries disabled")

    return ProgressSyncEngine(
        store=ProgressStore(curriculum),
        outbox=OutboxStore(),
        client=SyncClient(auth_provider=auth_provider),
        curriculum=curriculum,
        scheduler=RetryScheduler(),
        online=online,
        unlock_policy=get_unlock_policy(),
        current_module_id=current_module_id,
    )

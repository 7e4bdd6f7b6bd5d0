"""Durable outbox of progress events not yet confirmed by the server.

Events survive process restarts (SQLite via SQLAlchemy async). There is at
most one pending row per (module_id, lesson_id): newer events coalesce into
it, keeping the maximum progress and the summed time delta.

Writes never raise into the caller: queueing runs on the optimistic UI
path, so a storage failure is logged and reported instead.
"""

import asyncio
import logging
from dataclasses import replace
from datetime import timedelta
from typing import Any, AsyncIterator

import sentry_sdk
from sqlalchemy import and_, delete, func, insert, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncEngine

from .database import get_connection, get_engine, get_transaction, init_schema
from .reconciler import coalesce_events
from .tables import progress_confirmations, progress_outbox
from .types import OutboxEvent, as_utc, utcnow

logger = logging.getLogger(__name__)


def _event_values(event: OutboxEvent) -> dict[str, Any]:
    return {
        "client_event_id": event.client_event_id,
        "module_id": event.module_id,
        "lesson_id": event.lesson_id,
        "progress": event.progress,
        "time_spent_delta": event.time_spent_delta,
        "score": event.score,
        "position_seconds": event.position_seconds,
        "metadata": event.metadata or {},
        "client_updated_at": event.client_updated_at,
        "enqueued_at": event.ts,
        "attempts": event.attempts,
        "last_error": event.last_error,
        "coalesced_ids": list(event.coalesced_ids),
    }


def _row_to_event(row) -> OutboxEvent:
    return OutboxEvent(
        module_id=row["module_id"],
        lesson_id=row["lesson_id"],
        progress=row["progress"],
        client_event_id=row["client_event_id"],
        time_spent_delta=row["time_spent_delta"] or 0,
        client_updated_at=as_utc(row["client_updated_at"]),
        ts=as_utc(row["enqueued_at"]),
        score=row["score"],
        position_seconds=row["position_seconds"],
        metadata=dict(row["metadata"] or {}),
        attempts=row["attempts"] or 0,
        last_error=row["last_error"],
        coalesced_ids=list(row["coalesced_ids"] or []),
    )


class OutboxStore:
    """Ordered, durable queue of OutboxEvent records."""

    def __init__(self, engine: AsyncEngine | None = None, page_size: int = 100):
        """
        Args:
            engine: Async engine to persist to (default: configured outbox DB)
            page_size: Rows fetched per page by list_pending()
        """
        self._engine = engine
        self._page_size = page_size
        self._lock = asyncio.Lock()
        self._schema_ready = False

    @property
    def engine(self) -> AsyncEngine:
        return self._engine or get_engine()

    async def initialize(self) -> None:
        """Create tables if they don't exist."""
        await init_schema(self.engine)
        self._schema_ready = True

    async def _ensure_schema(self) -> None:
        if not self._schema_ready:
            await self.initialize()

    # -------------------------------------------------------------------------
    # Queue mutations
    # -------------------------------------------------------------------------

    async def enqueue(self, event: OutboxEvent) -> None:
        """Insert an event, or coalesce it into the pending one for its lesson."""
        try:
            async with self._lock:
                await self._ensure_schema()
                async with get_transaction(self.engine) as conn:
                    result = await conn.execute(
                        select(progress_outbox).where(
                            and_(
                                progress_outbox.c.module_id == event.module_id,
                                progress_outbox.c.lesson_id == event.lesson_id,
                            )
                        )
                    )
                    row = result.mappings().first()

                    if row is None:
                        await conn.execute(
                            insert(progress_outbox).values(**_event_values(event))
                        )
                        logger.info(
                            f"Queued progress event {event.client_event_id} "
                            f"for {event.module_id}/{event.lesson_id}"
                        )
                        return

                    queued = _row_to_event(row)
                    if (
                        queued.client_event_id == event.client_event_id
                        or queued.client_event_id in event.coalesced_ids
                    ):
                        # Same intent queued again (failed retry): replace, don't re-sum
                        stored = replace(
                            event,
                            ts=queued.ts,
                            attempts=max(queued.attempts, event.attempts),
                        )
                    else:
                        stored = coalesce_events(queued, event)
                        logger.info(
                            f"Coalesced progress event {queued.client_event_id} into "
                            f"{event.client_event_id} for {event.module_id}/{event.lesson_id}"
                        )

                    await conn.execute(
                        update(progress_outbox)
                        .where(progress_outbox.c.seq == row["seq"])
                        .values(**_event_values(stored))
                    )
        except Exception as e:
            logger.error(f"Failed to queue progress event {event.client_event_id}: {e}")
            sentry_sdk.capture_exception(e)

    async def dequeue_confirmed(self, client_event_id: str) -> bool:
        """Remove a confirmed event. Removing an unknown id is a no-op.

        Returns:
            True if a pending row was removed
        """
        try:
            async with self._lock:
                await self._ensure_schema()
                async with get_transaction(self.engine) as conn:
                    result = await conn.execute(
                        delete(progress_outbox).where(
                            progress_outbox.c.client_event_id == client_event_id
                        )
                    )
                    return result.rowcount > 0
        except Exception as e:
            logger.error(f"Failed to dequeue progress event {client_event_id}: {e}")
            sentry_sdk.capture_exception(e)
            return False

    async def record_failure(self, client_event_id: str, error: str) -> int:
        """Count a failed delivery attempt.

        Returns:
            The event's attempt count after the update (0 if not pending)
        """
        async with self._lock:
            await self._ensure_schema()
            async with get_transaction(self.engine) as conn:
                await conn.execute(
                    update(progress_outbox)
                    .where(progress_outbox.c.client_event_id == client_event_id)
                    .values(
                        attempts=progress_outbox.c.attempts + 1,
                        last_error=error,
                    )
                )
                result = await conn.execute(
                    select(progress_outbox.c.attempts).where(
                        progress_outbox.c.client_event_id == client_event_id
                    )
                )
                attempts = result.scalar()
        return attempts or 0

    async def clear(self) -> int:
        """Drop every pending event. Returns the number removed."""
        async with self._lock:
            await self._ensure_schema()
            async with get_transaction(self.engine) as conn:
                result = await conn.execute(delete(progress_outbox))
        return result.rowcount

    # -------------------------------------------------------------------------
    # Confirmations
    # -------------------------------------------------------------------------

    async def mark_confirmed(
        self,
        client_event_id: str,
        server_result: dict | None = None,
        *,
        module_id: str | None = None,
        lesson_id: str | None = None,
    ) -> None:
        """Record that the server acknowledged an event."""
        try:
            await self._ensure_schema()
            stmt = sqlite_insert(progress_confirmations).values(
                client_event_id=client_event_id,
                module_id=module_id,
                lesson_id=lesson_id,
                confirmed_at=utcnow(),
                server_result=server_result,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["client_event_id"],
                set_={
                    "confirmed_at": stmt.excluded.confirmed_at,
                    "server_result": stmt.excluded.server_result,
                },
            )
            async with get_transaction(self.engine) as conn:
                await conn.execute(stmt)
        except Exception as e:
            logger.error(f"Failed to record confirmation for {client_event_id}: {e}")
            sentry_sdk.capture_exception(e)

    async def is_confirmed(self, client_event_id: str) -> bool:
        await self._ensure_schema()
        async with get_connection(self.engine) as conn:
            result = await conn.execute(
                select(progress_confirmations.c.client_event_id).where(
                    progress_confirmations.c.client_event_id == client_event_id
                )
            )
            return result.first() is not None

    async def cleanup_old_confirmations(
        self, max_age: timedelta = timedelta(days=7)
    ) -> int:
        """Delete confirmation records older than max_age. Returns count removed."""
        await self._ensure_schema()
        cutoff = utcnow() - max_age
        async with get_transaction(self.engine) as conn:
            result = await conn.execute(
                delete(progress_confirmations).where(
                    progress_confirmations.c.confirmed_at < cutoff
                )
            )
        return result.rowcount

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def list_pending(self) -> AsyncIterator[OutboxEvent]:
        """Yield pending events in enqueue order.

        Each call starts a new pass; rows are fetched a page at a time.
        """
        await self._ensure_schema()
        last_seq = 0
        while True:
            async with get_connection(self.engine) as conn:
                result = await conn.execute(
                    select(progress_outbox)
                    .where(progress_outbox.c.seq > last_seq)
                    .order_by(progress_outbox.c.seq)
                    .limit(self._page_size)
                )
                rows = result.mappings().all()

            for row in rows:
                last_seq = row["seq"]
                yield _row_to_event(row)

            if len(rows) < self._page_size:
                return

    async def pending_events(self, limit: int | None = None) -> list[OutboxEvent]:
        """Get pending events in enqueue order as a list."""
        events = []
        async for event in self.list_pending():
            events.append(event)
            if limit is not None and len(events) >= limit:
                break
        return events

    async def get_pending(self, module_id: str, lesson_id: str) -> OutboxEvent | None:
        """Get the pending event for a lesson, if any."""
        await self._ensure_schema()
        async with get_connection(self.engine) as conn:
            result = await conn.execute(
                select(progress_outbox).where(
                    and_(
                        progress_outbox.c.module_id == module_id,
                        progress_outbox.c.lesson_id == lesson_id,
                    )
                )
            )
            row = result.mappings().first()
        return _row_to_event(row) if row else None

    async def get_event(self, client_event_id: str) -> OutboxEvent | None:
        """Get a pending event by id."""
        await self._ensure_schema()
        async with get_connection(self.engine) as conn:
            result = await conn.execute(
                select(progress_outbox).where(
                    progress_outbox.c.client_event_id == client_event_id
                )
            )
            row = result.mappings().first()
        return _row_to_event(row) if row else None

    async def count_pending(self) -> int:
        await self._ensure_schema()
        async with get_connection(self.engine) as conn:
            result = await conn.execute(
                select(func.count()).select_from(progress_outbox)
            )
            return result.scalar() or 0

    async def stats(self) -> dict:
        """Get outbox statistics.

        Returns dict with: pending_events, confirmed_events, oldest_event, newest_event
        """
        await self._ensure_schema()
        async with get_connection(self.engine) as conn:
            pending = await conn.execute(
                select(
                    func.count(),
                    func.min(progress_outbox.c.enqueued_at),
                    func.max(progress_outbox.c.enqueued_at),
                ).select_from(progress_outbox)
            )
            count, oldest, newest = pending.one()
            confirmed = await conn.execute(
                select(func.count()).select_from(progress_confirmations)
            )
            confirmed_count = confirmed.scalar() or 0

        return {
            "pending_events": count or 0,
            "confirmed_events": confirmed_count,
            "oldest_event": as_utc(oldest),
            "newest_event": as_utc(newest),
        }

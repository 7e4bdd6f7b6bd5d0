"""
APScheduler-based retry timers for failed progress writes.

There is at most one retry job per (module_id, lesson_id): scheduling a new
retry replaces the old one, and a newer update for the lesson cancels it so
a stale retry can never overwrite newer progress.

Jobs are in-memory only. Durability comes from the outbox, which is drained
on startup and on reconnect; the timers only speed up recovery while the
process is alive.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler

logger = logging.getLogger(__name__)


MAX_RETRY_ATTEMPTS = 3  # Retries after the initial send (1s, 2s, 3s)
RETRY_STEP_SECONDS = 1.0


def get_retry_delay(attempt: int) -> float:
    """
    Calculate retry delay using linear backoff.

    Args:
        attempt: One-based retry number (1 = first retry)

    Returns:
        Delay in seconds (1, 2, 3, ...)
    """
    return max(1, attempt) * RETRY_STEP_SECONDS


def retry_job_id(module_id: str, lesson_id: str) -> str:
    return f"progress_retry_{module_id}_{lesson_id}"


class RetryScheduler:
    """Keyed, cancelable retry timers on top of AsyncIOScheduler."""

    def __init__(self, scheduler: AsyncIOScheduler | None = None):
        self._scheduler = scheduler

    @property
    def running(self) -> bool:
        return self._scheduler is not None

    def start(self) -> None:
        """
        Start the underlying scheduler. Must be called from a running event loop.
        """
        if self._scheduler is None:
            self._scheduler = AsyncIOScheduler(
                job_defaults={
                    "coalesce": True,
                    "max_instances": 1,
                    "misfire_grace_time": 60,
                },
            )
        if not getattr(self._scheduler, "running", False):
            self._scheduler.start()
            logger.info("Progress retry scheduler started")

    def shutdown(self) -> None:
        """Stop the scheduler, dropping any pending retries."""
        if self._scheduler is not None:
            if getattr(self._scheduler, "running", False):
                self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Progress retry scheduler stopped")

    def schedule_retry(
        self,
        module_id: str,
        lesson_id: str,
        attempt: int,
        func: Callable[..., Awaitable[Any]],
        kwargs: dict | None = None,
    ) -> bool:
        """
        Schedule a retry for a failed progress write.

        Args:
            module_id: Module of the lesson to retry
            lesson_id: Lesson to retry
            attempt: One-based retry number (drives the delay)
            func: Async job function
            kwargs: Keyword arguments passed to func

        Returns:
            True if a job was scheduled, False if attempts are exhausted or
            the scheduler is not running
        """
        if attempt > MAX_RETRY_ATTEMPTS:
            logger.info(
                f"Retry attempts exhausted for {module_id}/{lesson_id}, "
                "leaving it in the outbox"
            )
            return False

        if not self._scheduler:
            logger.warning(
                f"Scheduler not available, cannot retry {module_id}/{lesson_id}"
            )
            return False

        delay = get_retry_delay(attempt)
        run_at = datetime.now(timezone.utc) + timedelta(seconds=delay)

        self._scheduler.add_job(
            func,
            trigger="date",
            run_date=run_at,
            id=retry_job_id(module_id, lesson_id),
            replace_existing=True,  # Don't stack retries
            kwargs=kwargs or {},
        )
        logger.info(
            f"Scheduled progress retry for {module_id}/{lesson_id} "
            f"in {delay:.1f}s (attempt {attempt})"
        )
        return True

    def cancel_retry(self, module_id: str, lesson_id: str) -> bool:
        """
        Cancel the pending retry for a lesson.

        Returns:
            True if a job was removed
        """
        if not self._scheduler:
            return False
        try:
            self._scheduler.remove_job(retry_job_id(module_id, lesson_id))
        except JobLookupError:
            return False  # Already ran or never scheduled
        logger.debug(f"Cancelled progress retry for {module_id}/{lesson_id}")
        return True

    def has_pending_retry(self, module_id: str, lesson_id: str) -> bool:
        if not self._scheduler:
            return False
        return self._scheduler.get_job(retry_job_id(module_id, lesson_id)) is not None

    def cancel_all(self) -> int:
        """Cancel every progress retry. Returns the number cancelled."""
        if not self._scheduler:
            return 0
        cancelled = 0
        for job in self._scheduler.get_jobs():
            if job.id.startswith("progress_retry_"):
                job.remove()
                cancelled += 1
        return cancelled

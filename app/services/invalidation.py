"""Cache invalidation on aggregate updates.

Registered as an aggregator listener.  Every time a LessonProgress or
CourseProgress actually changes, the cached read models that include it
are deleted:

  CourseProgress → course-summary:{user_id}:{course_id}
                   dashboard:{user_id}
  LessonProgress → lesson-summary:{user_id}:{lesson_id}

Invalidate, never update in place: the next reader recomputes.

WHEN THE DELETE FAILS
---------------------
The sync write path must not fail or stall because Redis hiccuped:

  1. the failed delete is handed to the cache_invalidation task queue,
     delayed by the first backoff step; the worker retries it
  2. if the enqueue fails too (usually the same Redis), this process
     retries the delete itself in a background asyncio task, with the
     same backoff and attempt limit as the worker

Only after the attempt limit is an invalidation abandoned, and the
entry's TTL bounds how long it stays stale.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from redis.exceptions import RedisError

from app.core.config import SETTINGS
from app.core.metrics import CACHE_INVALIDATIONS
from app.models.progress import CourseProgress, LessonProgress
from app.services.cache import (
    CacheService,
    course_summary_key,
    dashboard_key,
    lesson_summary_key,
)
from app.services.task_queue import INVALIDATION_QUEUE, TaskQueue

Sleep = Callable[[float], Awaitable[None]]

logger = logging.getLogger(__name__)

INVALIDATION_BACKOFF_BASE_SECONDS = 0.5
INVALIDATION_BACKOFF_MAX_SECONDS = 30.0


def invalidation_backoff(attempt: int) -> float:
    """Delay before retry number `attempt` (1-based), doubling each time."""
    delay = INVALIDATION_BACKOFF_BASE_SECONDS * 2 ** (attempt - 1)
    return min(INVALIDATION_BACKOFF_MAX_SECONDS, delay)


def invalidation_keys(aggregate: CourseProgress | LessonProgress) -> list[str]:
    if isinstance(aggregate, CourseProgress):
        return [
            course_summary_key(aggregate.user_id, aggregate.course_id),
            dashboard_key(aggregate.user_id),
        ]
    return [lesson_summary_key(aggregate.user_id, aggregate.lesson_id)]


class CacheInvalidationManager:
    def __init__(
        self,
        cache: CacheService,
        queue: TaskQueue,
        *,
        max_attempts: int = SETTINGS.invalidation_max_attempts,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._cache = cache
        self._queue = queue
        self._max_attempts = max_attempts
        self._sleep = sleep
        # Strong references; the loop only keeps weak ones to running tasks
        self._local_retries: set[asyncio.Task] = set()

    async def on_aggregate_updated(
        self, aggregate: CourseProgress | LessonProgress
    ) -> None:
        for key in invalidation_keys(aggregate):
            try:
                await self._cache.delete(key)
            except (RedisError, OSError):
                logger.warning("Cache delete failed, deferring key=%s", key)
                await self._defer(key)
                continue
            CACHE_INVALIDATIONS.labels(result="ok").inc()

    @property
    def pending_local_retries(self) -> int:
        return len(self._local_retries)

    async def wait_for_local_retries(self) -> None:
        """Block until every in-process retry has finished."""
        while self._local_retries:
            await asyncio.gather(*self._local_retries, return_exceptions=True)

    async def _defer(self, key: str) -> None:
        try:
            await self._queue.enqueue(
                INVALIDATION_QUEUE,
                {"key": key, "attempt": 1},
                delay_seconds=invalidation_backoff(1),
            )
        except (RedisError, OSError):
            logger.warning(
                "Could not queue invalidation, retrying in-process key=%s", key
            )
            self._retry_locally(key)
            return
        CACHE_INVALIDATIONS.labels(result="deferred").inc()

    def _retry_locally(self, key: str) -> None:
        task = asyncio.get_running_loop().create_task(self._retry_delete(key))
        self._local_retries.add(task)
        task.add_done_callback(self._local_retries.discard)
        CACHE_INVALIDATIONS.labels(result="deferred").inc()

    async def _retry_delete(self, key: str) -> None:
        for attempt in range(1, self._max_attempts + 1):
            await self._sleep(invalidation_backoff(attempt))
            try:
                await self._cache.delete(key)
            except (RedisError, OSError):
                logger.warning(
                    "In-process invalidation retry %d failed key=%s", attempt, key
                )
                CACHE_INVALIDATIONS.labels(result="retried").inc()
                continue
            logger.info(
                "In-process cache invalidation applied key=%s attempt=%d", key, attempt
            )
            CACHE_INVALIDATIONS.labels(result="ok").inc()
            return

        logger.error(
            "Giving up on cache invalidation after %d attempts key=%s",
            self._max_attempts,
            key,
        )
        CACHE_INVALIDATIONS.labels(result="abandoned").inc()

"""Progress engine: the one object the HTTP layer and the worker talk to.

Wires the event store, aggregator, reconciler, cache invalidation and
live broadcasts together, and serves the read side:

  submit_events            → SyncReconciler.ingest
  get_course_progress      → cache (course-summary) or recompute
  get_lesson_progress      → cache (lesson-summary) or recompute
  get_dashboard            → cache (dashboard) or projections
  subscribe_progress_changed → broadcaster
  progress_subscription    → broadcaster, registered before first read
  rebuild_course           → drop projections, replay from events

Backends are chosen at import time like every other singleton here:
PostgreSQL when DATABASE_URL is set, Redis when REDIS_URL is set,
in-memory otherwise.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager

from redis.exceptions import RedisError

from app.core.clock import Clock, utc_now
from app.core.config import SETTINGS
from app.core.errors import UnknownReference
from app.core.metrics import CACHE_OPERATIONS
from app.db.engine import async_session_factory
from app.models.progress import (
    CourseProgress,
    DeadLetter,
    LessonProgress,
    SyncBatch,
    SyncResult,
)
from app.repos.content_repo import (
    ContentHierarchy,
    InMemoryContentHierarchy,
    seed_sample_course,
)
from app.repos.dead_letter_repo import DeadLetterRepo, InMemoryDeadLetterRepo
from app.repos.event_store import EventStore, InMemoryEventStore
from app.repos.pg_content_repo import PgContentHierarchy
from app.repos.pg_dead_letter_repo import PgDeadLetterRepo
from app.repos.pg_event_store import PgEventStore
from app.repos.pg_projection_repo import PgProjectionRepo
from app.repos.projection_repo import InMemoryProjectionRepo, ProjectionRepo
from app.services.aggregator import ProgressAggregator
from app.services.batch_ledger import SyncBatchLedger, batch_ledger
from app.services.broadcaster import ProgressBroadcaster, broadcaster
from app.services.cache import (
    CacheService,
    cache_service,
    course_summary_key,
    dashboard_key,
    lesson_summary_key,
)
from app.services.invalidation import CacheInvalidationManager
from app.services.reconciler import SyncReconciler
from app.services.task_queue import REBUILD_QUEUE, Task, TaskQueue, task_queue

logger = logging.getLogger(__name__)


class ProgressEngine:
    def __init__(
        self,
        *,
        store: EventStore,
        projections: ProjectionRepo,
        content: ContentHierarchy,
        dead_letters: DeadLetterRepo,
        ledger: SyncBatchLedger,
        cache: CacheService,
        queue: TaskQueue,
        broadcaster: ProgressBroadcaster,
        clock: Clock = utc_now,
        cache_ttl_seconds: int = SETTINGS.progress_cache_ttl_seconds,
    ) -> None:
        self.store = store
        self.projections = projections
        self.content = content
        self.dead_letters = dead_letters
        self.ledger = ledger
        self.cache = cache
        self.queue = queue
        self.broadcaster = broadcaster
        self._cache_ttl = cache_ttl_seconds

        self.aggregator = ProgressAggregator(store, projections, content)
        self.invalidation = CacheInvalidationManager(cache, queue)
        self.aggregator.add_listener(self.invalidation.on_aggregate_updated)
        self.aggregator.add_listener(self._broadcast)
        self.reconciler = SyncReconciler(
            store, self.aggregator, content, dead_letters, ledger, clock=clock
        )

    # --- Write side ---

    async def submit_events(self, user_id: str, batch: SyncBatch) -> SyncResult:
        return await self.reconciler.ingest(user_id, batch)

    # --- Read side ---

    async def get_course_progress(self, user_id: str, course_id: str) -> CourseProgress:
        if not await self.content.course_exists(course_id):
            raise UnknownReference(f"unknown course {course_id}")

        key = course_summary_key(user_id, course_id)
        cached = await self._cache_get(key)
        if cached is not None:
            return CourseProgress.from_dict(json.loads(cached))

        generation = await self._cache_generation(key)
        progress = await self.aggregator.recompute_course(user_id, course_id)
        await self._cache_fill(key, json.dumps(progress.to_dict()), generation)
        return progress

    async def get_lesson_progress(self, user_id: str, lesson_id: str) -> LessonProgress:
        if not await self.content.lesson_exists(lesson_id):
            raise UnknownReference(f"unknown lesson {lesson_id}")

        key = lesson_summary_key(user_id, lesson_id)
        cached = await self._cache_get(key)
        if cached is not None:
            return LessonProgress.from_dict(json.loads(cached))

        generation = await self._cache_generation(key)
        progress = await self.aggregator.recompute_lesson(user_id, lesson_id)
        await self._cache_fill(key, json.dumps(progress.to_dict()), generation)
        return progress

    async def get_dashboard(self, user_id: str) -> list[CourseProgress]:
        """Every course the user has progress in, ordered by course_id."""
        key = dashboard_key(user_id)
        cached = await self._cache_get(key)
        if cached is not None:
            return [CourseProgress.from_dict(item) for item in json.loads(cached)]

        generation = await self._cache_generation(key)
        courses = await self.projections.list_courses(user_id)
        await self._cache_fill(
            key, json.dumps([c.to_dict() for c in courses]), generation
        )
        return courses

    def subscribe_progress_changed(
        self, user_id: str, course_id: str
    ) -> AsyncIterator[CourseProgress]:
        return self.broadcaster.subscribe(user_id, course_id)

    def progress_subscription(
        self, user_id: str, course_id: str
    ) -> AbstractAsyncContextManager[AsyncIterator[CourseProgress]]:
        """Subscription that is already registered once entered."""
        return self.broadcaster.subscription(user_id, course_id)

    # --- Operations ---

    async def rebuild_course(self, user_id: str, course_id: str) -> CourseProgress:
        if not await self.content.course_exists(course_id):
            raise UnknownReference(f"unknown course {course_id}")
        return await self.aggregator.rebuild(user_id, course_id)

    async def request_rebuild(self, user_id: str, course_id: str) -> Task:
        """Queue a rebuild for the worker; validates the course first."""
        if not await self.content.course_exists(course_id):
            raise UnknownReference(f"unknown course {course_id}")
        task = await self.queue.enqueue(
            REBUILD_QUEUE, {"user_id": user_id, "course_id": course_id}
        )
        logger.info(
            "Rebuild queued task_id=%s user_id=%s course_id=%s",
            task.id,
            user_id,
            course_id,
        )
        return task

    async def list_dead_letters(
        self, user_id: str | None = None, limit: int = 100
    ) -> list[DeadLetter]:
        return await self.dead_letters.list(user_id=user_id, limit=limit)

    async def discard_dead_letter(self, event_id: str) -> bool:
        discarded = await self.dead_letters.discard(event_id)
        if discarded:
            logger.info("Dead letter discarded event_id=%s", event_id)
        return discarded

    # --- Internals ---

    async def _broadcast(self, aggregate: LessonProgress | CourseProgress) -> None:
        if isinstance(aggregate, CourseProgress):
            await self.broadcaster.publish(aggregate)

    async def _cache_get(self, key: str) -> str | None:
        try:
            cached = await self.cache.get(key)
        except (RedisError, OSError):
            logger.warning("Cache read failed, recomputing key=%s", key)
            cached = None
        CACHE_OPERATIONS.labels(operation="hit" if cached is not None else "miss").inc()
        return cached

    async def _cache_generation(self, key: str) -> int | None:
        try:
            return await self.cache.generation(key)
        except (RedisError, OSError):
            logger.warning("Cache generation read failed, not filling key=%s", key)
            return None

    async def _cache_fill(self, key: str, value: str, generation: int | None) -> None:
        """Write back a recomputed value unless `key` was invalidated meanwhile."""
        if generation is None:
            return
        try:
            filled = await self.cache.set_if_unchanged(
                key, value, self._cache_ttl, generation
            )
        except (RedisError, OSError):
            logger.warning("Cache write failed key=%s", key)
            return
        if not filled:
            logger.debug("Cache fill skipped, invalidated during recompute key=%s", key)


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------


def build_engine() -> ProgressEngine:
    if async_session_factory is not None:
        store: EventStore = PgEventStore(async_session_factory)
        projections: ProjectionRepo = PgProjectionRepo(async_session_factory)
        content: ContentHierarchy = PgContentHierarchy(async_session_factory)
        dead_letters: DeadLetterRepo = PgDeadLetterRepo(async_session_factory)
    else:
        memory_content = InMemoryContentHierarchy()
        if SETTINGS.is_dev:
            seed_sample_course(memory_content)
        store = InMemoryEventStore()
        projections = InMemoryProjectionRepo()
        content = memory_content
        dead_letters = InMemoryDeadLetterRepo()

    return ProgressEngine(
        store=store,
        projections=projections,
        content=content,
        dead_letters=dead_letters,
        ledger=batch_ledger,
        cache=cache_service,
        queue=task_queue,
        broadcaster=broadcaster,
    )


progress_engine = build_engine()

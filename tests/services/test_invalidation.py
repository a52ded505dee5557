"""Cache invalidation: keys per aggregate level, deferral on Redis errors."""

from __future__ import annotations

import asyncio

from prometheus_client import REGISTRY
from redis.exceptions import ConnectionError as RedisConnectionError

from app.models.progress import CourseProgress, LessonProgress
from app.services.cache import InMemoryCacheService
from app.services.invalidation import (
    INVALIDATION_BACKOFF_MAX_SECONDS,
    CacheInvalidationManager,
    invalidation_backoff,
    invalidation_keys,
)
from app.services.task_queue import INVALIDATION_QUEUE, InMemoryTaskQueue

COURSE = CourseProgress(user_id="u1", course_id="C", total_lesson_count=2)
LESSON = LessonProgress(user_id="u1", lesson_id="L1", total_section_count=2)


def _get_sample(name: str, labels: dict | None = None) -> float:
    value = REGISTRY.get_sample_value(name, labels=labels or {})
    return value if value is not None else 0.0


class _DownCache(InMemoryCacheService):
    async def delete(self, key: str) -> None:
        raise RedisConnectionError("redis unreachable")


class _DownQueue(InMemoryTaskQueue):
    async def enqueue(
        self, queue: str, payload: dict, *, delay_seconds: float = 0.0
    ):
        raise RedisConnectionError("redis unreachable")


class _FlakyCache(InMemoryCacheService):
    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures

    async def delete(self, key: str) -> None:
        if self.failures > 0:
            self.failures -= 1
            raise RedisConnectionError("redis unreachable")
        await super().delete(key)


class _Clock:
    def __init__(self, now: float) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


async def _no_sleep(_delay: float) -> None:
    return None


def test_course_update_invalidates_summary_and_dashboard() -> None:
    assert invalidation_keys(COURSE) == ["course-summary:u1:C", "dashboard:u1"]


def test_lesson_update_invalidates_lesson_summary() -> None:
    assert invalidation_keys(LESSON) == ["lesson-summary:u1:L1"]


def test_on_aggregate_updated_deletes_cached_entries() -> None:
    cache = InMemoryCacheService()
    manager = CacheInvalidationManager(cache, InMemoryTaskQueue())

    async def run() -> tuple[str | None, str | None, str | None]:
        await cache.set("course-summary:u1:C", "{}", 60)
        await cache.set("dashboard:u1", "[]", 60)
        await cache.set("course-summary:u2:C", "{}", 60)
        await manager.on_aggregate_updated(COURSE)
        return (
            await cache.get("course-summary:u1:C"),
            await cache.get("dashboard:u1"),
            await cache.get("course-summary:u2:C"),
        )

    assert asyncio.run(run()) == (None, None, "{}")


def test_backoff_doubles_and_is_capped() -> None:
    assert invalidation_backoff(1) == 0.5
    assert invalidation_backoff(2) == 1.0
    assert invalidation_backoff(4) == 4.0
    assert invalidation_backoff(20) == INVALIDATION_BACKOFF_MAX_SECONDS


def test_failed_delete_is_deferred_to_task_queue() -> None:
    clock = _Clock(1_700_000_000.0)
    queue = InMemoryTaskQueue(clock=clock)
    manager = CacheInvalidationManager(_DownCache(), queue)
    before = _get_sample("progress_cache_invalidations_total", {"result": "deferred"})

    async def run():
        await manager.on_aggregate_updated(LESSON)
        not_yet = await queue.dequeue(INVALIDATION_QUEUE)
        clock.now += invalidation_backoff(1)
        return not_yet, await queue.dequeue(INVALIDATION_QUEUE)

    not_yet, task = asyncio.run(run())
    assert not_yet is None
    assert task is not None
    assert task.payload == {"key": "lesson-summary:u1:L1", "attempt": 1}
    assert manager.pending_local_retries == 0
    after = _get_sample("progress_cache_invalidations_total", {"result": "deferred"})
    assert after - before == 1


def test_delete_retried_in_process_when_queue_is_also_down() -> None:
    cache = _FlakyCache(failures=3)
    sleeps: list[float] = []

    async def record_sleep(delay: float) -> None:
        sleeps.append(delay)

    manager = CacheInvalidationManager(cache, _DownQueue(), sleep=record_sleep)

    async def run() -> str | None:
        await cache.set("lesson-summary:u1:L1", "{}", 60)
        await manager.on_aggregate_updated(LESSON)
        await manager.wait_for_local_retries()
        return await cache.get("lesson-summary:u1:L1")

    assert asyncio.run(run()) is None
    # One failure on the write path, two more in the background
    assert sleeps == [0.5, 1.0, 2.0]
    assert manager.pending_local_retries == 0


def test_invalidation_never_raises_when_redis_is_down() -> None:
    manager = CacheInvalidationManager(
        _DownCache(), _DownQueue(), max_attempts=2, sleep=_no_sleep
    )
    before = _get_sample("progress_cache_invalidations_total", {"result": "abandoned"})

    async def run() -> None:
        await manager.on_aggregate_updated(COURSE)
        await manager.wait_for_local_retries()

    asyncio.run(run())

    after = _get_sample("progress_cache_invalidations_total", {"result": "abandoned"})
    assert after - before == 2

"""Read-through cache for progress summaries.

READ PATH
---------
  Client → Cache → hit  → return (no recompute)
  Client → Cache → miss → aggregator → populate cache → return

Cached values are JSON-serialized CourseProgress / dashboard payloads,
keyed by the names the invalidation manager deletes:

  course-summary:{user_id}:{course_id}
  lesson-summary:{user_id}:{lesson_id}
  dashboard:{user_id}

INVALIDATION
------------
Two complementary strategies:

  1. TTL (PROGRESS_CACHE_TTL_SECONDS): every entry expires on its own.
     This is the safety net for an invalidation that was lost.

  2. Explicit invalidation: when an aggregate changes, the
     CacheInvalidationManager deletes the affected keys.  We delete, we
     never write the new value in place; the next read repopulates from
     the aggregator so a reader can never observe a half-applied update.

FILLING AFTER A MISS
--------------------
A reader that missed recomputes and then writes the result back.  If an
invalidation for the same key lands between the recompute and the
write, a plain SET would put the pre-invalidation value back for a full
TTL.  Every delete therefore bumps a per-key generation, and the reader
fills with set_if_unchanged(), passing the generation it read before
recomputing.  A bumped generation means the fill is dropped.

  reader: g = generation(k) → recompute → set_if_unchanged(k, v, g)
  writer:                  delete(k)  (g → g + 1)

The cache is never a source of truth.  Losing every key costs one
recompute per reader and nothing else.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from redis.exceptions import WatchError

from app.db.redis import redis_pool


@runtime_checkable
class CacheService(Protocol):
    async def get(self, key: str) -> str | None:
        """Fetch a cached value.  Returns None on cache miss."""
        ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        """Store a value with a TTL (time to live)."""
        ...

    async def delete(self, key: str) -> None:
        """Explicitly invalidate a cached entry and bump its generation."""
        ...

    async def generation(self, key: str) -> int:
        """How many times `key` has been invalidated (0 if never)."""
        ...

    async def set_if_unchanged(
        self, key: str, value: str, ttl_seconds: int, generation: int
    ) -> bool:
        """Store only if `key` was not invalidated since `generation`."""
        ...


class InMemoryCacheService:
    """In-memory cache for testing — no TTL enforcement.

    The autouse fixture in conftest.py clears the store between tests.
    """

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self._generations: dict[str, int] = {}

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._store[key] = value

    async def delete(self, key: str) -> None:
        self._store.pop(key, None)
        self._generations[key] = self._generations.get(key, 0) + 1

    async def generation(self, key: str) -> int:
        return self._generations.get(key, 0)

    async def set_if_unchanged(
        self, key: str, value: str, ttl_seconds: int, generation: int
    ) -> bool:
        if self._generations.get(key, 0) != generation:
            return False
        self._store[key] = value
        return True

    def clear(self) -> None:
        self._store.clear()
        self._generations.clear()


class RedisCacheService:
    """Redis-backed cache — shared across all API instances."""

    # Key prefix keeps cache entries apart from the batch ledger and queues
    _PREFIX = "cache:"
    _GENERATION_PREFIX = "cache-gen:"
    # Outlives any in-flight recompute by a wide margin
    _GENERATION_TTL_SECONDS = 24 * 3600

    def __init__(self, redis_client) -> None:
        self._redis = redis_client

    async def get(self, key: str) -> str | None:
        return await self._redis.get(f"{self._PREFIX}{key}")

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._redis.setex(f"{self._PREFIX}{key}", ttl_seconds, value)

    async def delete(self, key: str) -> None:
        generation_key = f"{self._GENERATION_PREFIX}{key}"
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.incr(generation_key)
            pipe.expire(generation_key, self._GENERATION_TTL_SECONDS)
            pipe.delete(f"{self._PREFIX}{key}")
            await pipe.execute()

    async def generation(self, key: str) -> int:
        value = await self._redis.get(f"{self._GENERATION_PREFIX}{key}")
        return int(value or 0)

    async def set_if_unchanged(
        self, key: str, value: str, ttl_seconds: int, generation: int
    ) -> bool:
        generation_key = f"{self._GENERATION_PREFIX}{key}"
        async with self._redis.pipeline(transaction=True) as pipe:
            try:
                # WATCH aborts the EXEC if a delete bumps the generation
                await pipe.watch(generation_key)
                if int(await pipe.get(generation_key) or 0) != generation:
                    return False
                pipe.multi()
                pipe.setex(f"{self._PREFIX}{key}", ttl_seconds, value)
                await pipe.execute()
            except WatchError:
                return False
        return True


def course_summary_key(user_id: str, course_id: str) -> str:
    return f"course-summary:{user_id}:{course_id}"


def lesson_summary_key(user_id: str, lesson_id: str) -> str:
    return f"lesson-summary:{user_id}:{lesson_id}"


def dashboard_key(user_id: str) -> str:
    return f"dashboard:{user_id}"


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

if redis_pool is not None:
    cache_service: CacheService = RedisCacheService(redis_pool)
else:
    cache_service = InMemoryCacheService()

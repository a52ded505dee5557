"""Live course-progress updates for streaming subscribers.

The aggregator publishes every CourseProgress that changed; subscribers
(the SSE endpoint) receive the ones for their (user, course).

  In-memory: one asyncio.Queue per subscriber, single process.
  Redis:     PUBLISH on progress:{user_id}:{course_id} so a subscriber
             connected to any API instance sees updates ingested by
             another one.

Open a subscription() before reading the current state: it is
registered as soon as the context is entered, so nothing published
between the read and the first update is missed.

Delivery is best effort.  A subscriber that was disconnected catches up
by reading the course summary; nothing here is needed for correctness.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Protocol, runtime_checkable

from redis.exceptions import RedisError

from app.db.redis import redis_pool
from app.models.progress import CourseProgress

logger = logging.getLogger(__name__)


def _channel(user_id: str, course_id: str) -> str:
    return f"progress:{user_id}:{course_id}"


@runtime_checkable
class ProgressBroadcaster(Protocol):
    async def publish(self, progress: CourseProgress) -> None: ...

    def subscription(
        self, user_id: str, course_id: str
    ) -> AbstractAsyncContextManager[AsyncIterator[CourseProgress]]:
        """Registered on enter; updates published afterwards are delivered."""
        ...

    def subscribe(self, user_id: str, course_id: str) -> AsyncIterator[CourseProgress]:
        ...


class InMemoryProgressBroadcaster:
    def __init__(self) -> None:
        self._subscribers: dict[tuple[str, str], set[asyncio.Queue]] = {}

    async def publish(self, progress: CourseProgress) -> None:
        for queue in self._subscribers.get((progress.user_id, progress.course_id), ()):
            queue.put_nowait(progress)

    @asynccontextmanager
    async def subscription(
        self, user_id: str, course_id: str
    ) -> AsyncIterator[AsyncIterator[CourseProgress]]:
        key = (user_id, course_id)
        queue: asyncio.Queue[CourseProgress] = asyncio.Queue()
        self._subscribers.setdefault(key, set()).add(queue)
        try:
            yield _drain(queue)
        finally:
            subscribers = self._subscribers.get(key)
            if subscribers is not None:
                subscribers.discard(queue)
                if not subscribers:
                    del self._subscribers[key]

    async def subscribe(
        self, user_id: str, course_id: str
    ) -> AsyncIterator[CourseProgress]:
        async with self.subscription(user_id, course_id) as updates:
            async for progress in updates:
                yield progress

    def subscriber_count(self, user_id: str, course_id: str) -> int:
        return len(self._subscribers.get((user_id, course_id), ()))

    def clear(self) -> None:
        self._subscribers.clear()


async def _drain(queue: asyncio.Queue) -> AsyncIterator[CourseProgress]:
    while True:
        yield await queue.get()


class RedisProgressBroadcaster:
    def __init__(self, redis_client) -> None:
        self._redis = redis_client

    async def publish(self, progress: CourseProgress) -> None:
        try:
            await self._redis.publish(
                _channel(progress.user_id, progress.course_id),
                json.dumps(progress.to_dict()),
            )
        except RedisError:
            # Subscribers resync from the course summary
            logger.warning(
                "Progress publish failed user_id=%s course_id=%s",
                progress.user_id,
                progress.course_id,
            )

    @asynccontextmanager
    async def subscription(
        self, user_id: str, course_id: str
    ) -> AsyncIterator[AsyncIterator[CourseProgress]]:
        channel = _channel(user_id, course_id)
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel)
        logger.debug("Subscribed channel=%s", channel)
        try:
            yield _messages(pubsub)
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()
            logger.debug("Unsubscribed channel=%s", channel)

    async def subscribe(
        self, user_id: str, course_id: str
    ) -> AsyncIterator[CourseProgress]:
        async with self.subscription(user_id, course_id) as updates:
            async for progress in updates:
                yield progress


async def _messages(pubsub) -> AsyncIterator[CourseProgress]:
    while True:
        message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
        if message is None or message["type"] != "message":
            continue
        yield CourseProgress.from_dict(json.loads(message["data"]))


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

if redis_pool is not None:
    broadcaster: ProgressBroadcaster = RedisProgressBroadcaster(redis_pool)
else:
    broadcaster = InMemoryProgressBroadcaster()

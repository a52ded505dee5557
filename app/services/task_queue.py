"""Background task queue using Redis lists.

Two kinds of work leave the request path:

  cache_invalidation
      A cache delete that failed while an aggregate was being updated.
      The write path never blocks on Redis; the failed delete is parked
      here and the worker retries it with exponential backoff.

  aggregate_rebuild
      An operator asked for a course's projections to be dropped and
      replayed from the event store.  Can touch hundreds of sections, so
      the admin endpoint answers 202 and the worker does the replay.

PRODUCER / CONSUMER
-------------------
  Producer (API):    LPUSH task onto tasks:{queue} → returns immediately
  Consumer (Worker): BRPOP from the list → runs the handler → loops

  HEAD-in, TAIL-out = FIFO.

DELAYED TASKS
-------------
A retry that must wait is not slept on by the worker.  It is enqueued
with delay_seconds and parked in the sorted set tasks:{queue}:delayed,
scored by the time it becomes due.  Each dequeue first moves due
entries onto the list, so the worker keeps draining other tasks while
a retry waits out its backoff.

DELIVERY
--------
BRPOP is at-most-once: a worker that dies mid-task loses that task.  Both
task kinds tolerate that.  A lost invalidation is bounded by the cache
TTL, and a lost rebuild can be requested again.  Retries are explicit:
the handler re-enqueues the task with attempt + 1 and a delay.
"""

from __future__ import annotations

import json
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from app.db.redis import redis_pool

INVALIDATION_QUEUE = "cache_invalidation"
REBUILD_QUEUE = "aggregate_rebuild"


@dataclass(frozen=True, slots=True)
class Task:
    """A unit of background work.

    id:      Unique identifier for tracking and logging.
    queue:   Which queue this task belongs to.
    payload: JSON-serializable data for the handler.
    """

    id: str
    queue: str
    payload: dict


@runtime_checkable
class TaskQueue(Protocol):
    async def enqueue(
        self, queue: str, payload: dict, *, delay_seconds: float = 0.0
    ) -> Task: ...
    async def dequeue(self, queue: str, timeout: int = 0) -> Task | None: ...
    async def queue_length(self, queue: str) -> int: ...


class InMemoryTaskQueue:
    """In-memory task queue for tests — no Redis needed."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._queues: dict[str, list[Task]] = {}
        self._delayed: dict[str, list[tuple[float, Task]]] = {}
        self._clock = clock

    async def enqueue(
        self, queue: str, payload: dict, *, delay_seconds: float = 0.0
    ) -> Task:
        task = Task(id=str(uuid.uuid4()), queue=queue, payload=payload)
        if delay_seconds > 0:
            due = self._clock() + delay_seconds
            self._delayed.setdefault(queue, []).append((due, task))
        else:
            self._queues.setdefault(queue, []).append(task)
        return task

    async def dequeue(self, queue: str, timeout: int = 0) -> Task | None:
        self._promote_due(queue)
        tasks = self._queues.get(queue, [])
        if tasks:
            return tasks.pop(0)
        return None

    async def queue_length(self, queue: str) -> int:
        return len(self._queues.get(queue, [])) + len(self._delayed.get(queue, []))

    def _promote_due(self, queue: str) -> None:
        delayed = self._delayed.get(queue)
        if not delayed:
            return
        now = self._clock()
        due = sorted(
            (entry for entry in delayed if entry[0] <= now), key=lambda e: e[0]
        )
        self._delayed[queue] = [entry for entry in delayed if entry[0] > now]
        self._queues.setdefault(queue, []).extend(task for _, task in due)

    def clear(self) -> None:
        self._queues.clear()
        self._delayed.clear()


class RedisTaskQueue:
    """Redis-backed task queue using LPUSH/BRPOP, ZADD for delayed tasks."""

    _PREFIX = "tasks:"

    def __init__(self, redis_client) -> None:
        self._redis = redis_client

    async def enqueue(
        self, queue: str, payload: dict, *, delay_seconds: float = 0.0
    ) -> Task:
        task = Task(id=str(uuid.uuid4()), queue=queue, payload=payload)
        task_json = json.dumps(
            {
                "id": task.id,
                "queue": task.queue,
                "payload": task.payload,
            }
        )
        if delay_seconds > 0:
            await self._redis.zadd(
                self._delayed_key(queue), {task_json: time.time() + delay_seconds}
            )
        else:
            await self._redis.lpush(f"{self._PREFIX}{queue}", task_json)
        return task

    async def dequeue(self, queue: str, timeout: int = 5) -> Task | None:
        await self._promote_due(queue)
        # Blocks up to `timeout` seconds; None means nothing arrived
        result = await self._redis.brpop(f"{self._PREFIX}{queue}", timeout=timeout)
        if result is None:
            return None
        _, task_json = result
        return Task(**json.loads(task_json))

    async def queue_length(self, queue: str) -> int:
        ready = await self._redis.llen(f"{self._PREFIX}{queue}")
        return ready + await self._redis.zcard(self._delayed_key(queue))

    async def _promote_due(self, queue: str) -> None:
        key = self._delayed_key(queue)
        for task_json in await self._redis.zrangebyscore(key, 0, time.time()):
            # Only the worker whose ZREM succeeds moves the task
            if await self._redis.zrem(key, task_json):
                await self._redis.lpush(f"{self._PREFIX}{queue}", task_json)

    def _delayed_key(self, queue: str) -> str:
        return f"{self._PREFIX}{queue}:delayed"


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

if redis_pool is not None:
    task_queue: TaskQueue = RedisTaskQueue(redis_pool)
else:
    task_queue = InMemoryTaskQueue()

"""Background worker process.

RUN:  python -m app.worker

WHY A SEPARATE PROCESS?
-------------------------
The API answers sync batches; it must stay fast and must never block
on Redis being flaky.  Work that can wait is queued instead:

  cache_invalidation  — cache deletes that failed on the write path.
                        Each retry is re-queued with a delay that doubles
                        per attempt (the worker never sleeps on it) until
                        Redis answers or INVALIDATION_MAX_ATTEMPTS is
                        reached; after that the entry's TTL bounds
                        staleness.
  aggregate_rebuild   — operator-requested replay of a user's course
                        projections from the event store.

In Docker/Kubernetes this is the same image with a different command:
  api:    uvicorn app.main:app --host 0.0.0.0 --port 8000
  worker: python -m app.worker

THE WORKER LOOP
----------------
An infinite loop that polls every registered queue round-robin,
dequeues one task at a time and dispatches it to its handler.  A handler
that raises is logged and the loop moves on; handlers that want a retry
re-enqueue explicitly, with the attempt count in the payload.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from redis.exceptions import RedisError

from app.core.config import SETTINGS
from app.core.logging import setup_logging
from app.core.metrics import CACHE_INVALIDATIONS, QUEUE_DEPTH
from app.services.invalidation import invalidation_backoff
from app.services.progress_engine import progress_engine
from app.services.task_queue import INVALIDATION_QUEUE, REBUILD_QUEUE

TaskHandler = Callable[[dict], Coroutine[Any, Any, None]]

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Handler registry
# ---------------------------------------------------------------------------

HANDLERS: dict[str, TaskHandler] = {}


def register_handler(queue: str):
    """Decorator: register a coroutine as the handler for a queue."""

    def decorator(func):
        HANDLERS[queue] = func
        return func

    return decorator


# ---------------------------------------------------------------------------
# Task handlers
# ---------------------------------------------------------------------------


@register_handler(INVALIDATION_QUEUE)
async def handle_cache_invalidation(payload: dict) -> None:
    """One delete attempt; a failure is re-queued behind its backoff delay."""
    key = payload["key"]
    attempt = int(payload.get("attempt", 1))

    try:
        await progress_engine.cache.delete(key)
    except (RedisError, OSError):
        if attempt >= SETTINGS.invalidation_max_attempts:
            logger.error(
                "Giving up on cache invalidation after %d attempts key=%s",
                attempt,
                key,
            )
            CACHE_INVALIDATIONS.labels(result="abandoned").inc()
            return
        logger.warning("Cache invalidation retry %d failed key=%s", attempt, key)
        await progress_engine.queue.enqueue(
            INVALIDATION_QUEUE,
            {"key": key, "attempt": attempt + 1},
            delay_seconds=invalidation_backoff(attempt + 1),
        )
        CACHE_INVALIDATIONS.labels(result="retried").inc()
        return

    logger.info("Deferred cache invalidation applied key=%s attempt=%d", key, attempt)
    CACHE_INVALIDATIONS.labels(result="ok").inc()


@register_handler(REBUILD_QUEUE)
async def handle_aggregate_rebuild(payload: dict) -> None:
    """Drop and replay one user's projections for a course."""
    user_id = payload["user_id"]
    course_id = payload["course_id"]
    logger.info("Rebuilding course=%s for user=%s", course_id, user_id)
    progress = await progress_engine.rebuild_course(user_id, course_id)
    logger.info(
        "Rebuild complete course=%s user=%s completed=%s lessons=%d/%d",
        course_id,
        user_id,
        progress.completed,
        progress.completed_lesson_count,
        progress.total_lesson_count,
    )


# ---------------------------------------------------------------------------
# Main worker loop
# ---------------------------------------------------------------------------


async def process_one(queue_name: str, *, timeout: int = 1) -> bool:
    """Run at most one task from `queue_name`; True if a task was taken."""
    queue = progress_engine.queue
    task = await queue.dequeue(queue_name, timeout=timeout)
    QUEUE_DEPTH.labels(queue_name=queue_name).set(
        await queue.queue_length(queue_name)
    )
    if task is None:
        return False

    handler = HANDLERS[queue_name]
    try:
        await handler(task.payload)
        logger.info("Task %s on [%s] completed", task.id, queue_name)
    except Exception:
        logger.exception("Task %s on [%s] failed", task.id, queue_name)
    return True


async def run_worker() -> None:
    """Poll all registered queues and dispatch tasks to handlers."""
    queues = list(HANDLERS.keys())
    logger.info("Worker started, listening on queues: %s", queues)

    while True:
        for queue_name in queues:
            await process_one(queue_name)


if __name__ == "__main__":
    setup_logging(SETTINGS.log_level, json_format=SETTINGS.log_json)
    asyncio.run(run_worker())

"""Redis connection management.

Mirrors engine.py: when REDIS_URL is configured we create one shared
connection pool; when it's None (local dev, tests) every Redis-backed
service falls back to an in-memory implementation.

What lives in Redis here is all disposable:
  - cached course summaries and dashboards (recomputed on a miss)
  - the recent sync-batch window (bounded by TTL)
  - the invalidation-retry and rebuild task queues
  - pub/sub channels for live progress streams

Losing Redis therefore costs latency and live updates, never progress
data; the event store in Postgres is the only durable state.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis

from app.core.config import SETTINGS

logger = logging.getLogger(__name__)

if SETTINGS.redis_url:
    redis_pool: aioredis.Redis | None = aioredis.from_url(  # type: ignore[type-arg]
        SETTINGS.redis_url,
        decode_responses=True,  # return str instead of bytes
        max_connections=20,
    )
else:
    redis_pool = None


@asynccontextmanager
async def lifespan_redis():
    """Startup/shutdown hook for Redis — mirrors lifespan_db()."""
    if redis_pool is None:
        logger.info("No REDIS_URL configured, Redis features use in-memory fallbacks")
        yield
        return

    try:
        # redis stubs mistype async ping as bool
        await redis_pool.ping()  # type: ignore[misc]
        logger.info("Redis connected: %s", SETTINGS.redis_url)
    except Exception:
        # Start anyway: cache misses fall through to recompute and
        # invalidations queue up for retry once Redis is back.
        logger.exception("Redis connection failed on startup")
        yield
        return

    yield

    await redis_pool.aclose()
    logger.info("Redis connection pool closed")

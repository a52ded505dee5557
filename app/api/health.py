"""Health and readiness endpoints.

LIVENESS vs READINESS
---------------------
  /health (liveness):
    "Is this process alive?"  Always 200; the body reports each
    dependency so dashboards can show a degraded instance.

  /ready (readiness):
    "Can this instance accept sync batches right now?"
    The event store is the only dependency a sync cannot work without,
    so a configured but unreachable database answers 503 and the load
    balancer stops routing here until it recovers.

    Redis is not part of readiness: a cache miss recomputes from
    projections and a failed invalidation is queued for retry, so a
    Redis outage costs latency, not correctness.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Response
from redis.exceptions import RedisError
from sqlalchemy.exc import DBAPIError

from app.db.engine import engine, ping_database
from app.db.redis import redis_pool

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


async def _check_database() -> str:
    if engine is None:
        return "not_configured"
    try:
        await ping_database()
    except (DBAPIError, OSError):
        logger.warning("Database health check failed", exc_info=True)
        return "degraded"
    return "ok"


async def _check_redis() -> str:
    if redis_pool is None:
        return "not_configured"
    try:
        await redis_pool.ping()  # type: ignore[misc]
    except (RedisError, OSError):
        logger.warning("Redis health check failed", exc_info=True)
        return "degraded"
    return "ok"


@router.get("/health")
async def health() -> dict:
    """Liveness probe + dependency status.

    Returns 200 even when degraded; the status field carries the real
    answer.  A 503 here would make the orchestrator restart a process
    that is merely waiting on a dependency.
    """
    checks = {
        "database": await _check_database(),
        "redis": await _check_redis(),
    }
    overall = "degraded" if "degraded" in checks.values() else "ok"
    return {"status": overall, "checks": checks}


@router.get("/ready")
async def ready() -> Response:
    """Readiness probe: 503 while the event store is unreachable."""
    if await _check_database() == "degraded":
        return Response(status_code=503)
    return Response(status_code=200)

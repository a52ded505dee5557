"""Prometheus metrics endpoint.

Scraped by Prometheus every N seconds; returns the text exposition
format, not JSON.  Besides the HTTP metrics this includes the sync and
aggregation series, e.g.:

  progress_sync_events_total{outcome="accepted"} 1432.0
  progress_sync_rejections_total{reason="ClockSkew"} 3.0
  progress_aggregation_inconsistencies_total{level="course"} 0.0

Keep /metrics off the public ingress; counters by rejection reason and
queue depth reveal more about the system than clients need to know.
"""

from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

router = APIRouter(tags=["observability"])


@router.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    """Expose all Prometheus metrics in text exposition format."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )

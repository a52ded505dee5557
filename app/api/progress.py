"""Progress sync and read endpoints.

  POST /v1/progress/sync                      — submit a batch of events
  GET  /v1/progress/courses/{course_id}        — course summary (cached)
  GET  /v1/progress/courses/{course_id}/stream — live updates (SSE)
  GET  /v1/progress/lessons/{lesson_id}        — lesson summary (cached)
  GET  /v1/progress/dashboard                  — all courses with progress

SYNC OUTCOMES
-------------
  200  SyncResult.  Per-event partial success: some events may be
       accepted, some duplicates, some rejected (with a reason).
  503  Event store unavailable after retries.  Nothing was acknowledged;
       resubmit the same batch later (Retry-After).
  504  Ingest took longer than SYNC_TIMEOUT_SECONDS.  The outcome is
       unknown to the client but ingest keeps running server-side;
       resubmitting the same batch_id returns its result.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from redis.exceptions import RedisError

from app.api.dependencies import require_user
from app.core.config import SETTINGS
from app.core.errors import StoreUnavailable, UnknownReference
from app.models.principal import Principal
from app.models.progress import (
    CourseProgress,
    EventKind,
    LessonProgress,
    ProgressEvent,
    SyncBatch,
    SyncResult,
)
from app.services.progress_engine import progress_engine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/progress", tags=["progress"])

_RETRY_AFTER_SECONDS = 5


class ProgressEventIn(BaseModel):
    event_id: str = Field(min_length=1, max_length=64)
    # Defaults to the caller; a different user is rejected per event
    user_id: str | None = None
    section_id: str = Field(min_length=1, max_length=255)
    lesson_id: str = Field(min_length=1, max_length=255)
    course_id: str = Field(min_length=1, max_length=255)
    kind: EventKind
    value: float | None = None
    client_timestamp: int


class SyncBatchIn(BaseModel):
    batch_id: str = Field(min_length=1, max_length=255)
    events: list[ProgressEventIn] = Field(max_length=1000)


class RejectedEventOut(BaseModel):
    event_id: str
    reason: str
    detail: str


class SyncResultOut(BaseModel):
    batch_id: str
    accepted: list[str]
    duplicates: list[str]
    rejected: list[RejectedEventOut]
    state: str
    replayed: bool


class CourseProgressOut(BaseModel):
    course_id: str
    completed_lesson_count: int
    total_lesson_count: int
    completion_percentage: float
    completed: bool
    completed_at: int | None
    time_spent_total: int


class LessonProgressOut(BaseModel):
    lesson_id: str
    completed_section_count: int
    total_section_count: int
    percentage: float
    completed: bool
    completed_at: int | None


class DashboardOut(BaseModel):
    courses: list[CourseProgressOut]


def _result_out(result: SyncResult) -> SyncResultOut:
    return SyncResultOut(
        batch_id=result.batch_id,
        accepted=list(result.accepted),
        duplicates=list(result.duplicates),
        rejected=[
            RejectedEventOut(event_id=r.event_id, reason=r.reason, detail=r.detail)
            for r in result.rejected
        ],
        state=result.state.value,
        replayed=result.replayed,
    )


def _course_out(progress: CourseProgress) -> CourseProgressOut:
    return CourseProgressOut(
        course_id=progress.course_id,
        completed_lesson_count=progress.completed_lesson_count,
        total_lesson_count=progress.total_lesson_count,
        completion_percentage=progress.completion_percentage,
        completed=progress.completed,
        completed_at=progress.completed_at,
        time_spent_total=progress.time_spent_total,
    )


def _lesson_out(progress: LessonProgress) -> LessonProgressOut:
    return LessonProgressOut(
        lesson_id=progress.lesson_id,
        completed_section_count=progress.completed_section_count,
        total_section_count=progress.total_section_count,
        percentage=progress.percentage,
        completed=progress.completed,
        completed_at=progress.completed_at,
    )


def _store_unavailable() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Progress store unavailable, retry later",
        headers={"Retry-After": str(_RETRY_AFTER_SECONDS)},
    )


# ---------------------------------------------------------------------------
# POST /v1/progress/sync
# ---------------------------------------------------------------------------


@router.post("/sync", response_model=SyncResultOut)
async def sync_progress(
    body: SyncBatchIn,
    principal: Annotated[Principal, Depends(require_user)],
) -> SyncResultOut:
    batch = SyncBatch(
        batch_id=body.batch_id,
        events=tuple(
            ProgressEvent(
                event_id=e.event_id,
                user_id=e.user_id or principal.user_id,
                section_id=e.section_id,
                lesson_id=e.lesson_id,
                course_id=e.course_id,
                kind=e.kind,
                client_timestamp=e.client_timestamp,
                value=e.value,
            )
            for e in body.events
        ),
    )

    try:
        # The reconciler shields its own task, so hitting the timeout
        # abandons only this wait; ingest runs to completion.
        result = await asyncio.wait_for(
            progress_engine.submit_events(principal.user_id, batch),
            timeout=SETTINGS.sync_timeout_seconds,
        )
    except TimeoutError:
        logger.warning(
            "Sync batch exceeded %ds, outcome unknown to client batch_id=%s",
            SETTINGS.sync_timeout_seconds,
            batch.batch_id,
        )
        raise HTTPException(
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
            detail="Sync still in progress, resubmit the same batch_id",
        ) from None
    except StoreUnavailable:
        raise _store_unavailable() from None

    return _result_out(result)


# ---------------------------------------------------------------------------
# Read side
# ---------------------------------------------------------------------------


@router.get("/courses/{course_id}", response_model=CourseProgressOut)
async def get_course_progress(
    course_id: str,
    principal: Annotated[Principal, Depends(require_user)],
) -> CourseProgressOut:
    try:
        progress = await progress_engine.get_course_progress(
            principal.user_id, course_id
        )
    except UnknownReference:
        raise HTTPException(status_code=404, detail="course not found") from None
    except StoreUnavailable:
        raise _store_unavailable() from None
    return _course_out(progress)


@router.get("/courses/{course_id}/stream", response_model=None)
async def stream_course_progress(
    course_id: str,
    principal: Annotated[Principal, Depends(require_user)],
) -> StreamingResponse:
    """Server-sent events: the current summary, then every change."""
    # Subscribe before reading so a change landing in between is not lost
    subscription = AsyncExitStack()
    try:
        updates = await subscription.enter_async_context(
            progress_engine.progress_subscription(principal.user_id, course_id)
        )
        current = await progress_engine.get_course_progress(
            principal.user_id, course_id
        )
    except UnknownReference:
        await subscription.aclose()
        raise HTTPException(status_code=404, detail="course not found") from None
    except (StoreUnavailable, RedisError, OSError):
        await subscription.aclose()
        raise _store_unavailable() from None

    async def events() -> AsyncIterator[str]:
        async with subscription:
            yield _sse(current)
            async for progress in updates:
                yield _sse(progress)

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


def _sse(progress: CourseProgress) -> str:
    payload = json.dumps(_course_out(progress).model_dump())
    return f"event: progress\ndata: {payload}\n\n"


@router.get("/lessons/{lesson_id}", response_model=LessonProgressOut)
async def get_lesson_progress(
    lesson_id: str,
    principal: Annotated[Principal, Depends(require_user)],
) -> LessonProgressOut:
    try:
        progress = await progress_engine.get_lesson_progress(
            principal.user_id, lesson_id
        )
    except UnknownReference:
        raise HTTPException(status_code=404, detail="lesson not found") from None
    except StoreUnavailable:
        raise _store_unavailable() from None
    return _lesson_out(progress)


@router.get("/dashboard", response_model=DashboardOut)
async def get_dashboard(
    principal: Annotated[Principal, Depends(require_user)],
) -> DashboardOut:
    try:
        courses = await progress_engine.get_dashboard(principal.user_id)
    except StoreUnavailable:
        raise _store_unavailable() from None
    return DashboardOut(courses=[_course_out(c) for c in courses])

"""Operator endpoints (admin role required).

  GET    /v1/admin/dead-letters            — rejected events held for review
  DELETE /v1/admin/dead-letters/{event_id} — discard after manual handling
  POST   /v1/admin/rebuild                 — replay a user's course projections

Rebuild can touch every section of a course, so it follows the
background worker pattern: enqueue an aggregate_rebuild task and answer
202 Accepted with the task id.
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel

from app.api.dependencies import require_role
from app.core.errors import StoreUnavailable, UnknownReference
from app.models.principal import Principal
from app.models.progress import DeadLetter
from app.services.progress_engine import progress_engine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/admin", tags=["admin"])

RequireAdmin = Annotated[Principal, Depends(require_role("admin"))]


class DeadLetterOut(BaseModel):
    event_id: str
    user_id: str
    section_id: str
    lesson_id: str
    course_id: str
    kind: str
    value: float | None
    client_timestamp: int
    reason: str
    detail: str
    batch_id: str | None
    held_at: int


class RebuildIn(BaseModel):
    user_id: str
    course_id: str


class RebuildOut(BaseModel):
    task_id: str
    status: str


def _letter_out(letter: DeadLetter) -> DeadLetterOut:
    event = letter.event
    return DeadLetterOut(
        event_id=event.event_id,
        user_id=event.user_id,
        section_id=event.section_id,
        lesson_id=event.lesson_id,
        course_id=event.course_id,
        kind=event.kind.value,
        value=event.value,
        client_timestamp=event.client_timestamp,
        reason=letter.reason,
        detail=letter.detail,
        batch_id=letter.batch_id,
        held_at=letter.held_at,
    )


@router.get("/dead-letters", response_model=list[DeadLetterOut])
async def list_dead_letters(
    principal: RequireAdmin,
    user_id: str | None = None,
    limit: Annotated[int, Query(ge=1, le=1000)] = 100,
) -> list[DeadLetterOut]:
    logger.info(
        "Dead letters requested by user=%s filter_user=%s", principal.user_id, user_id
    )
    try:
        letters = await progress_engine.list_dead_letters(user_id=user_id, limit=limit)
    except StoreUnavailable:
        raise HTTPException(status_code=503, detail="store unavailable") from None
    return [_letter_out(letter) for letter in letters]


@router.delete("/dead-letters/{event_id}", status_code=status.HTTP_204_NO_CONTENT)
async def discard_dead_letter(event_id: str, principal: RequireAdmin) -> Response:
    try:
        discarded = await progress_engine.discard_dead_letter(event_id)
    except StoreUnavailable:
        raise HTTPException(status_code=503, detail="store unavailable") from None
    if not discarded:
        raise HTTPException(status_code=404, detail="dead letter not found")
    logger.info("Dead letter %s discarded by user=%s", event_id, principal.user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/rebuild",
    response_model=RebuildOut,
    status_code=status.HTTP_202_ACCEPTED,
)
async def request_rebuild(body: RebuildIn, principal: RequireAdmin) -> RebuildOut:
    """Enqueue a projection rebuild and return immediately (202 Accepted)."""
    try:
        task = await progress_engine.request_rebuild(body.user_id, body.course_id)
    except UnknownReference:
        raise HTTPException(status_code=404, detail="course not found") from None
    logger.info(
        "Rebuild of course=%s for user=%s requested by %s",
        body.course_id,
        body.user_id,
        principal.user_id,
    )
    return RebuildOut(task_id=task.id, status="queued")

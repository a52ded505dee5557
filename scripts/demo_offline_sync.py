"""Demo: record progress offline, lose a response, then sync.

Runs the whole loop in-process against the in-memory backends:
offline queue (SQLite in memory) → SyncClient → POST /v1/progress/sync
→ course summary.

Run with:
    python scripts/demo_offline_sync.py
"""

from __future__ import annotations

import uuid

import httpx
from fastapi.testclient import TestClient

from app.client.offline_queue import OfflineMutationQueue
from app.client.sync_client import SyncClient
from app.core.clock import utc_now
from app.main import app
from app.models.progress import EventKind, ProgressEvent
from app.repos.content_repo import (
    SAMPLE_COURSE,
    InMemoryContentHierarchy,
    seed_sample_course,
)
from app.services.progress_engine import progress_engine
from app.services.token_service import create_access_token

USER_ID = "demo-learner"


class _DroppedConnection(httpx.BaseTransport):
    def handle_request(self, request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("airplane mode", request=request)


def _event(section_id: str, kind: EventKind, value: float | None = None):
    parents = SAMPLE_COURSE.parents_of(section_id)
    return ProgressEvent(
        event_id=str(uuid.uuid4()),
        user_id=USER_ID,
        section_id=section_id,
        lesson_id=parents.lesson_id,
        course_id=parents.course_id,
        kind=kind,
        client_timestamp=utc_now(),
        value=value,
    )


def main() -> None:
    if isinstance(progress_engine.content, InMemoryContentHierarchy):
        seed_sample_course(progress_engine.content)

    token = create_access_token(sub=USER_ID)
    queue = OfflineMutationQueue("sqlite://")

    # ── Step 1: offline, events only reach the local queue ──────────
    offline = SyncClient(
        httpx.Client(base_url="http://offline", transport=_DroppedConnection()),
        queue,
        access_token=token,
    )
    for section_id in ("section-names", "section-types", "section-if"):
        offline.record(_event(section_id, EventKind.TIME_SPENT_DELTA, 120))
        offline.record(_event(section_id, EventKind.COMPLETED))
    print(f"1. recorded offline        → pending={queue.pending_count()}")

    results = offline.flush()
    print(f"2. flush while offline     → results={len(results)} (outcome unknown)")

    # ── Step 2: back online, same batch is resubmitted ──────────────
    online = SyncClient(TestClient(app), queue, access_token=token)
    results = online.flush()
    for result in results:
        print(
            f"3. flush online            → batch={result.batch_id[:8]} "
            f"accepted={len(result.accepted)} rejected={len(result.rejected)}"
        )
    print(f"   pending after flush     → {queue.pending_count()}")

    # ── Step 3: read the rolled-up course ───────────────────────────
    r = TestClient(app).get(
        f"/v1/progress/courses/{SAMPLE_COURSE.course_id}",
        headers={"Authorization": f"Bearer {token}"},
    )
    body = r.json()
    print(
        f"4. GET course summary      → {r.status_code}  "
        f"lessons={body['completed_lesson_count']}/{body['total_lesson_count']} "
        f"pct={body['completion_percentage']} time={body['time_spent_total']}s"
    )


if __name__ == "__main__":
    main()

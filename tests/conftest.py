from __future__ import annotations

import sys
import uuid
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from app.main import app
from app.models.course import CourseOutline
from app.models.progress import EventKind, ProgressEvent
from app.services import token_service
from app.services.progress_engine import progress_engine

# Ensure repo root is on sys.path so `import app` works under pytest.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Two lessons of two sections each; 600s estimated per lesson, so any
# single time delta above 1800s is flagged.
TEST_COURSE = CourseOutline.new(
    course_id="C",
    lessons={"L1": ["S1", "S2"], "L2": ["S3", "S4"]},
    estimated_durations={"L1": 600, "L2": 600},
)
SECTION_LESSON = {"S1": "L1", "S2": "L1", "S3": "L2", "S4": "L2"}


def _clear(backend: object) -> None:
    if hasattr(backend, "clear"):
        backend.clear()  # type: ignore[attr-defined]


@pytest.fixture(autouse=True)
def reset_progress_engine() -> None:
    """Clear every in-memory backend and re-seed the test course."""
    for backend in (
        progress_engine.store,
        progress_engine.projections,
        progress_engine.content,
        progress_engine.dead_letters,
        progress_engine.ledger,
        progress_engine.cache,
        progress_engine.queue,
        progress_engine.broadcaster,
    ):
        _clear(backend)
    progress_engine.content.register(TEST_COURSE)  # type: ignore[attr-defined]


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)


def mint_token(
    username: str = "test-user",
    roles: list[str] | None = None,
) -> str:
    """Create a valid ES256 JWT for testing."""
    return token_service.create_access_token(sub=username, roles=roles)


@pytest.fixture
def token() -> str:
    """Token with default role (user)."""
    return mint_token()


@pytest.fixture
def admin_token() -> str:
    """Token with admin role."""
    return mint_token(username="test-admin", roles=["admin"])


# ---------------------------------------------------------------------------
# Event helpers
# ---------------------------------------------------------------------------


def make_event(
    section_id: str = "S1",
    kind: EventKind = EventKind.COMPLETED,
    *,
    user_id: str = "test-user",
    value: float | None = None,
    client_timestamp: int = 1_700_000_000,
    event_id: str | None = None,
    lesson_id: str | None = None,
    course_id: str = "C",
) -> ProgressEvent:
    """Event for TEST_COURSE; lesson_id is derived from the section."""
    return ProgressEvent(
        event_id=event_id or str(uuid.uuid4()),
        user_id=user_id,
        section_id=section_id,
        lesson_id=lesson_id or SECTION_LESSON.get(section_id, "L1"),
        course_id=course_id,
        kind=kind,
        client_timestamp=client_timestamp,
        value=value,
    )


def event_json(event: ProgressEvent) -> dict:
    """Request body shape of one event for POST /v1/progress/sync."""
    return {
        "event_id": event.event_id,
        "user_id": event.user_id,
        "section_id": event.section_id,
        "lesson_id": event.lesson_id,
        "course_id": event.course_id,
        "kind": event.kind.value,
        "value": event.value,
        "client_timestamp": event.client_timestamp,
    }

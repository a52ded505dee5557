"""Sync client: acknowledgement rules and offline replay against the app."""

from __future__ import annotations

import httpx
import pytest
from fastapi.testclient import TestClient

from app.client.offline_queue import OfflineMutationQueue
from app.client.sync_client import SyncClient
from app.main import app
from app.models.progress import EventKind
from tests.conftest import make_event, mint_token


@pytest.fixture
def queue() -> OfflineMutationQueue:
    q = OfflineMutationQueue("sqlite://")
    yield q
    q.close()


def _mock_client(handler) -> httpx.Client:
    return httpx.Client(
        base_url="http://sync.test", transport=httpx.MockTransport(handler)
    )


def test_timeout_leaves_batch_in_flight(queue: OfflineMutationQueue) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("no response", request=request)

    client = SyncClient(_mock_client(handler), queue, access_token="t")
    client.record(make_event("S1"))
    in_flight = queue.drain()

    assert client.flush() == []
    assert queue.pending_count() == 1
    again = queue.drain()
    assert in_flight is not None and again is not None
    assert again.batch_id == in_flight.batch_id


def test_server_error_is_unknown_outcome(queue: OfflineMutationQueue) -> None:
    client = SyncClient(
        _mock_client(lambda request: httpx.Response(503)), queue, access_token="t"
    )
    client.record(make_event("S1"))
    assert client.flush() == []
    assert queue.pending_count() == 1


def test_client_error_is_raised_and_batch_kept(queue: OfflineMutationQueue) -> None:
    client = SyncClient(
        _mock_client(lambda request: httpx.Response(401)), queue, access_token="t"
    )
    client.record(make_event("S1"))
    with pytest.raises(httpx.HTTPStatusError):
        client.flush()
    assert queue.pending_count() == 1


def test_flush_sends_bearer_token_and_batch(queue: OfflineMutationQueue) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "batch_id": "ignored",
                "accepted": ["e1"],
                "duplicates": [],
                "rejected": [],
                "state": "acknowledged",
                "replayed": False,
            },
        )

    client = SyncClient(_mock_client(handler), queue, access_token="tok-123")
    client.record(make_event("S1", event_id="e1"))
    (result,) = client.flush()

    assert result.accepted == ("e1",)
    assert seen[0].url.path == "/v1/progress/sync"
    assert seen[0].headers["Authorization"] == "Bearer tok-123"
    assert queue.pending_count() == 0


def test_offline_events_sync_to_same_state_after_lost_response(
    queue: OfflineMutationQueue,
) -> None:
    token = mint_token()
    app_client = TestClient(app)

    lost: list[bool] = []

    def drop_first_response(request: httpx.Request) -> httpx.Response:
        # The server applies the batch, but the device never hears back
        response = app_client.post(
            request.url.path,
            content=request.content,
            headers={
                "Authorization": request.headers["Authorization"],
                "Content-Type": "application/json",
            },
        )
        if not lost:
            lost.append(True)
            raise httpx.ReadTimeout("response lost", request=request)
        return httpx.Response(response.status_code, content=response.content)

    client = SyncClient(_mock_client(drop_first_response), queue, access_token=token)
    for section_id in ("S1", "S2", "S3"):
        client.record(make_event(section_id, EventKind.TIME_SPENT_DELTA, value=60))
        client.record(make_event(section_id))

    assert client.flush() == []
    (result,) = client.flush()
    assert result.replayed is True
    assert len(result.accepted) == 6
    assert queue.pending_count() == 0

    summary = app_client.get(
        "/v1/progress/courses/C", headers={"Authorization": f"Bearer {token}"}
    ).json()
    assert summary["completed_lesson_count"] == 1
    assert summary["completion_percentage"] == 50.0
    assert summary["time_spent_total"] == 180

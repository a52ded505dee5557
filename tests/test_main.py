from __future__ import annotations

from fastapi.routing import APIRoute
from fastapi.testclient import TestClient

from app.main import app

client = TestClient(app)


def _routes() -> set[tuple[str, str]]:
    return {
        (method, route.path)
        for route in app.routes
        if isinstance(route, APIRoute)
        for method in route.methods
    }


def test_app_title() -> None:
    assert app.title == "progress-sync-service"


def test_progress_and_admin_routes_registered() -> None:
    assert {
        ("POST", "/v1/progress/sync"),
        ("GET", "/v1/progress/courses/{course_id}"),
        ("GET", "/v1/progress/courses/{course_id}/stream"),
        ("GET", "/v1/progress/lessons/{lesson_id}"),
        ("GET", "/v1/progress/dashboard"),
        ("GET", "/v1/admin/dead-letters"),
        ("DELETE", "/v1/admin/dead-letters/{event_id}"),
        ("POST", "/v1/admin/rebuild"),
        ("GET", "/health"),
        ("GET", "/ready"),
        ("GET", "/metrics"),
    } <= _routes()


def test_health_returns_ok() -> None:
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_sync_rejects_missing_token() -> None:
    resp = client.post("/v1/progress/sync", json={"batch_id": "b", "events": []})
    assert resp.status_code == 401
    assert resp.headers["WWW-Authenticate"] == "Bearer"

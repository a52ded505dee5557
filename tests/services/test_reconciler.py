"""Sync reconciler: validation, partial success, replay and store retries."""

from __future__ import annotations

import asyncio

import pytest
from prometheus_client import REGISTRY

from app.core.errors import StoreUnavailable
from app.models.progress import AppendResult, EventKind, ProgressEvent, SyncBatch
from app.repos.content_repo import InMemoryContentHierarchy
from app.repos.dead_letter_repo import InMemoryDeadLetterRepo
from app.repos.event_store import InMemoryEventStore
from app.repos.projection_repo import InMemoryProjectionRepo
from app.services.aggregator import ProgressAggregator
from app.services.batch_ledger import InMemorySyncBatchLedger
from app.services.reconciler import SyncReconciler
from tests.conftest import TEST_COURSE, make_event

NOW = 1_700_000_000


def _get_sample(name: str, labels: dict | None = None) -> float:
    value = REGISTRY.get_sample_value(name, labels=labels or {})
    return value if value is not None else 0.0


class _SpyAggregator(ProgressAggregator):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.recomputed: list[tuple[str, str]] = []

    async def recompute(self, user_id: str, section_id: str):
        self.recomputed.append((user_id, section_id))
        return await super().recompute(user_id, section_id)


class _FlakyStore(InMemoryEventStore):
    """Fails the first `failures` appends with StoreUnavailable."""

    def __init__(self, failures: int) -> None:
        super().__init__(clock=lambda: NOW)
        self.failures = failures
        self.calls = 0

    async def append(self, event: ProgressEvent) -> AppendResult:
        self.calls += 1
        if self.calls <= self.failures:
            raise StoreUnavailable("connection reset")
        return await super().append(event)


class _Harness:
    def __init__(self, store: InMemoryEventStore | None = None, attempts: int = 5):
        self.store = store or InMemoryEventStore(clock=lambda: NOW)
        self.content = InMemoryContentHierarchy()
        self.content.register(TEST_COURSE)
        self.projections = InMemoryProjectionRepo()
        self.dead_letters = InMemoryDeadLetterRepo()
        self.ledger = InMemorySyncBatchLedger()
        self.aggregator = _SpyAggregator(self.store, self.projections, self.content)
        self.sleeps: list[float] = []
        self.reconciler = SyncReconciler(
            self.store,
            self.aggregator,
            self.content,
            self.dead_letters,
            self.ledger,
            clock=lambda: NOW,
            skew_tolerance=300,
            retry_attempts=attempts,
            retry_base_delay=0.1,
            sleep=self._sleep,
        )

    async def _sleep(self, delay: float) -> None:
        self.sleeps.append(delay)

    def ingest(self, *events: ProgressEvent, batch_id: str = "b1", user="test-user"):
        batch = SyncBatch(batch_id=batch_id, events=tuple(events))
        return asyncio.run(self.reconciler.ingest(user, batch))


def test_valid_batch_is_fully_accepted() -> None:
    h = _Harness()
    events = [make_event("S1"), make_event("S2")]
    result = h.ingest(*events)

    assert result.accepted == tuple(e.event_id for e in events)
    assert result.duplicates == ()
    assert result.rejected == ()
    assert result.state.value == "acknowledged"
    assert result.replayed is False


def test_partial_batch_rejects_only_unknown_event() -> None:
    h = _Harness()
    good = [make_event(f"S{1 + n % 4}") for n in range(9)]
    bad = make_event("S-unknown")
    result = h.ingest(*good[:5], bad, *good[5:])

    assert len(result.accepted) == 9
    assert [r.event_id for r in result.rejected] == [bad.event_id]
    assert result.rejected[0].reason == "UnknownReference"
    # Aggregation only for the valid events' sections, once each
    assert sorted(s for _, s in h.aggregator.recomputed) == ["S1", "S2", "S3", "S4"]
    held = asyncio.run(h.dead_letters.list())
    assert [letter.event.event_id for letter in held] == [bad.event_id]
    assert held[0].batch_id == "b1"


def test_section_with_wrong_parents_is_rejected() -> None:
    h = _Harness()
    result = h.ingest(make_event("S1", lesson_id="L2"))
    assert result.accepted == ()
    assert result.rejected[0].reason == "UnknownReference"


def test_future_timestamp_beyond_tolerance_is_clock_skew() -> None:
    h = _Harness()
    before = _get_sample("progress_sync_rejections_total", {"reason": "ClockSkew"})
    ok = make_event("S1", client_timestamp=NOW + 300)
    skewed = make_event("S2", client_timestamp=NOW + 301)
    result = h.ingest(ok, skewed)

    assert result.accepted == (ok.event_id,)
    assert result.rejected[0].event_id == skewed.event_id
    assert result.rejected[0].reason == "ClockSkew"
    after = _get_sample("progress_sync_rejections_total", {"reason": "ClockSkew"})
    assert after - before == 1


def test_event_for_another_user_is_rejected() -> None:
    h = _Harness()
    result = h.ingest(make_event("S1", user_id="someone-else"))
    assert result.rejected[0].reason == "UserMismatch"


def test_reused_event_id_is_rejected_as_conflict() -> None:
    h = _Harness()
    original = make_event("S1", EventKind.TIME_SPENT_DELTA, value=30, event_id="e1")
    h.ingest(original, batch_id="b1")
    changed = make_event("S1", EventKind.TIME_SPENT_DELTA, value=90, event_id="e1")
    result = h.ingest(changed, batch_id="b2")
    assert result.rejected[0].reason == "EventIdConflict"


def test_resubmitted_batch_is_replayed_from_window() -> None:
    h = _Harness()
    events = [make_event("S1"), make_event("S2")]
    first = h.ingest(*events)
    h.aggregator.recomputed.clear()

    second = h.ingest(*events)
    assert second.replayed is True
    assert second.accepted == first.accepted
    assert h.aggregator.recomputed == []


def test_events_resent_in_new_batch_are_duplicates_and_still_recomputed() -> None:
    h = _Harness()
    event = make_event("S1")
    h.ingest(event, batch_id="b1")
    h.aggregator.recomputed.clear()

    result = h.ingest(event, batch_id="b2")
    assert result.accepted == ()
    assert result.duplicates == (event.event_id,)
    assert h.aggregator.recomputed == [("test-user", "S1")]


def test_concurrent_submissions_of_same_batch_process_once() -> None:
    h = _Harness()
    batch = SyncBatch(batch_id="b1", events=(make_event("S1"),))

    async def run():
        return await asyncio.gather(
            h.reconciler.ingest("test-user", batch),
            h.reconciler.ingest("test-user", batch),
        )

    first, second = asyncio.run(run())
    assert first == second
    assert h.aggregator.recomputed == [("test-user", "S1")]


def test_store_unavailable_is_retried_with_backoff() -> None:
    store = _FlakyStore(failures=2)
    h = _Harness(store=store)
    result = h.ingest(make_event("S1"))

    assert len(result.accepted) == 1
    assert h.sleeps == [0.1, 0.2]


def test_store_unavailable_after_all_retries_records_nothing() -> None:
    store = _FlakyStore(failures=100)
    h = _Harness(store=store, attempts=3)

    with pytest.raises(StoreUnavailable):
        h.ingest(make_event("S1"))

    assert store.calls == 3
    assert asyncio.run(h.ledger.get("test-user", "b1")) is None

    # Store recovers: the resubmission is processed for real
    store.failures = 0
    result = h.ingest(make_event("S1", event_id="e-retry"))
    assert result.accepted == ("e-retry",)
    assert result.replayed is False

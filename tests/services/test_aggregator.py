"""Progress aggregation: pure folds, rollups, invariants, and the
aggregator's recompute/listener behaviour over in-memory backends."""

from __future__ import annotations

import asyncio
import dataclasses
import itertools
import logging

import pytest
from prometheus_client import REGISTRY

from app.core.errors import AggregationInconsistency
from app.models.progress import (
    CourseProgress,
    EventKind,
    LessonProgress,
    ProgressEvent,
    SectionProgress,
)
from app.repos.content_repo import InMemoryContentHierarchy
from app.repos.event_store import InMemoryEventStore
from app.repos.projection_repo import InMemoryProjectionRepo
from app.services.aggregator import (
    KeyedLock,
    ProgressAggregator,
    check_course,
    check_section,
    fold_section,
    rollup_course,
    rollup_lesson,
)
from tests.conftest import TEST_COURSE, make_event


def _get_sample(name: str, labels: dict | None = None) -> float:
    value = REGISTRY.get_sample_value(name, labels=labels or {})
    return value if value is not None else 0.0


def _stored(event: ProgressEvent, seq: int, ingested_at: int = 100) -> ProgressEvent:
    return dataclasses.replace(event, server_sequence=seq, ingested_at=ingested_at)


def _empty(section_id: str = "S1") -> SectionProgress:
    return SectionProgress(user_id="test-user", section_id=section_id)


# ---------------------------------------------------------------------------
# fold_section
# ---------------------------------------------------------------------------


def test_fold_sums_time_and_marks_completion() -> None:
    events = [
        _stored(make_event("S1", EventKind.TIME_SPENT_DELTA, value=60), 1),
        _stored(make_event("S1", EventKind.COMPLETED), 2, ingested_at=500),
        _stored(make_event("S1", EventKind.TIME_SPENT_DELTA, value=30), 3),
    ]
    section = fold_section(_empty(), events)
    assert section.completed is True
    assert section.completed_at == 500
    assert section.time_spent_total == 90
    assert section.last_event_seq == 3


def test_fold_is_order_independent() -> None:
    events = [
        _stored(make_event("S1", EventKind.TIME_SPENT_DELTA, value=10), 1, 10),
        _stored(make_event("S1", EventKind.COMPLETED), 2, 20),
        _stored(make_event("S1", EventKind.COMPLETED), 3, 30),
        _stored(make_event("S1", EventKind.SCORE_RECORDED, value=0.8), 4, 40),
    ]
    results = {fold_section(_empty(), p) for p in itertools.permutations(events)}
    assert len(results) == 1
    (section,) = results
    assert section.completed_at == 20
    assert section.score == 0.8


def test_fold_ignores_events_already_applied() -> None:
    event = _stored(make_event("S1", EventKind.TIME_SPENT_DELTA, value=60), 1)
    once = fold_section(_empty(), [event])
    twice = fold_section(once, [event])
    assert twice == once


def test_completion_is_sticky_and_first_completion_wins() -> None:
    first = fold_section(
        _empty(), [_stored(make_event("S1", EventKind.COMPLETED), 1, 100)]
    )
    again = fold_section(
        first, [_stored(make_event("S1", EventKind.COMPLETED), 2, 900)]
    )
    assert again.completed is True
    assert again.completed_at == 100


def test_fold_flags_negative_and_oversized_deltas() -> None:
    negative = _stored(make_event("S1", EventKind.TIME_SPENT_DELTA, value=-5), 1)
    huge = _stored(make_event("S1", EventKind.TIME_SPENT_DELTA, value=5000), 2)
    missing = _stored(make_event("S1", EventKind.TIME_SPENT_DELTA), 3)
    fine = _stored(make_event("S1", EventKind.TIME_SPENT_DELTA, value=40), 4)

    section = fold_section(
        _empty(), [negative, huge, missing, fine], max_time_delta=1800
    )
    assert section.time_spent_total == 40
    assert section.flagged_event_ids == (
        negative.event_id,
        huge.event_id,
        missing.event_id,
    )


# ---------------------------------------------------------------------------
# Rollups
# ---------------------------------------------------------------------------


def _done(section_id: str, at: int) -> SectionProgress:
    return SectionProgress(
        user_id="test-user", section_id=section_id, completed=True, completed_at=at
    )


def test_lesson_completes_when_all_sections_complete() -> None:
    lesson = rollup_lesson(
        "test-user", "L1", ["S1", "S2"], {"S1": _done("S1", 10), "S2": _done("S2", 30)}
    )
    assert lesson.completed is True
    assert lesson.completed_at == 30
    assert lesson.percentage == 100.0


def test_lesson_partial_and_missing_sections() -> None:
    lesson = rollup_lesson("test-user", "L1", ["S1", "S2"], {"S1": _done("S1", 10)})
    assert lesson.completed is False
    assert lesson.completed_section_count == 1
    assert lesson.percentage == 50.0


def test_empty_lesson_is_never_complete() -> None:
    lesson = rollup_lesson("test-user", "L-empty", [], {})
    assert lesson.completed is False
    assert lesson.percentage == 0.0


def test_lesson_completion_survives_content_change() -> None:
    previous = LessonProgress(
        user_id="test-user",
        lesson_id="L1",
        completed_section_count=2,
        total_section_count=2,
        completed=True,
        completed_at=30,
    )
    # A third section was added after the learner finished
    lesson = rollup_lesson(
        "test-user",
        "L1",
        ["S1", "S2", "S-new"],
        {"S1": _done("S1", 10), "S2": _done("S2", 30)},
        previous,
    )
    assert lesson.completed is True
    assert lesson.completed_at == 30
    assert lesson.total_section_count == 3


def test_course_percentage_and_completion() -> None:
    half = rollup_course(
        "test-user",
        "C",
        ["L1", "L2"],
        {"L1": LessonProgress("test-user", "L1", 2, 2, True, 40)},
    )
    assert half.completion_percentage == 50.0
    assert half.completed is False

    full = rollup_course(
        "test-user",
        "C",
        ["L1", "L2"],
        {
            "L1": LessonProgress("test-user", "L1", 2, 2, True, 40),
            "L2": LessonProgress("test-user", "L2", 2, 2, True, 90),
        },
        time_spent_total=120,
    )
    assert full.completed is True
    assert full.completed_at == 90
    assert full.time_spent_total == 120


# ---------------------------------------------------------------------------
# Invariant checks
# ---------------------------------------------------------------------------


def test_check_section_rejects_time_decrease() -> None:
    previous = SectionProgress("test-user", "S1", time_spent_total=100)
    with pytest.raises(AggregationInconsistency):
        check_section(previous, dataclasses.replace(previous, time_spent_total=50))


def test_check_course_rejects_reverted_completion() -> None:
    previous = CourseProgress("test-user", "C", 2, 2, 100.0, True, 90, 10)
    with pytest.raises(AggregationInconsistency):
        check_course(previous, dataclasses.replace(previous, completed=False))


def test_check_course_rejects_count_above_total() -> None:
    with pytest.raises(AggregationInconsistency):
        check_course(None, CourseProgress("test-user", "C", 3, 2, 100.0))


# ---------------------------------------------------------------------------
# KeyedLock
# ---------------------------------------------------------------------------


def test_keyed_lock_serializes_same_key_and_drops_idle_locks() -> None:
    locks = KeyedLock()
    order: list[str] = []

    async def worker(name: str) -> None:
        async with locks.hold("k"):
            order.append(f"{name}-in")
            await asyncio.sleep(0)
            order.append(f"{name}-out")

    async def run() -> int:
        await asyncio.gather(worker("a"), worker("b"))
        return len(locks)

    assert asyncio.run(run()) == 0
    assert order == ["a-in", "a-out", "b-in", "b-out"]


# ---------------------------------------------------------------------------
# ProgressAggregator
# ---------------------------------------------------------------------------


class _Harness:
    def __init__(self) -> None:
        self.store = InMemoryEventStore(clock=lambda: 1_700_000_100)
        self.projections = InMemoryProjectionRepo()
        self.content = InMemoryContentHierarchy()
        self.content.register(TEST_COURSE)
        self.aggregator = ProgressAggregator(
            self.store, self.projections, self.content, ceiling_factor=3
        )
        self.updates: list[LessonProgress | CourseProgress] = []
        self.aggregator.add_listener(self._record)

    async def _record(self, aggregate: LessonProgress | CourseProgress) -> None:
        self.updates.append(aggregate)

    async def complete(self, *section_ids: str) -> None:
        for section_id in section_ids:
            await self.store.append(make_event(section_id))
            await self.aggregator.recompute("test-user", section_id)


def test_recompute_rolls_up_and_notifies_changes() -> None:
    h = _Harness()
    asyncio.run(h.complete("S1", "S2"))

    course = asyncio.run(h.projections.get_course("test-user", "C"))
    assert course is not None
    assert course.completed_lesson_count == 1
    assert course.completion_percentage == 50.0

    lesson_updates = [u for u in h.updates if isinstance(u, LessonProgress)]
    assert [u.completed_section_count for u in lesson_updates] == [1, 2]


def test_recompute_without_new_events_does_not_notify() -> None:
    h = _Harness()
    asyncio.run(h.complete("S1"))
    h.updates.clear()

    asyncio.run(h.aggregator.recompute("test-user", "S1"))
    assert h.updates == []


def test_oversized_delta_flagged_using_lesson_ceiling() -> None:
    h = _Harness()
    before = _get_sample("progress_time_spent_flagged_total")

    async def run() -> SectionProgress:
        # Ceiling is 600s estimated x 3 = 1800s
        await h.store.append(make_event("S1", EventKind.TIME_SPENT_DELTA, value=1800))
        await h.store.append(make_event("S1", EventKind.TIME_SPENT_DELTA, value=1801))
        return await h.aggregator.recompute("test-user", "S1")

    section = asyncio.run(run())
    assert section.time_spent_total == 1800
    assert len(section.flagged_event_ids) == 1
    assert _get_sample("progress_time_spent_flagged_total") - before == 1


def test_orphaned_section_is_folded_but_not_rolled_up(
    caplog: pytest.LogCaptureFixture,
) -> None:
    h = _Harness()

    async def run() -> SectionProgress:
        await h.store.append(make_event("S-orphan"))
        return await h.aggregator.recompute("test-user", "S-orphan")

    with caplog.at_level(logging.WARNING, logger="app.services.aggregator"):
        section = asyncio.run(run())

    assert section.completed is True
    assert h.updates == []
    assert "Orphaned section" in caplog.text


def test_inconsistency_keeps_previous_aggregate(
    caplog: pytest.LogCaptureFixture,
) -> None:
    h = _Harness()
    asyncio.run(h.complete("S1"))
    # Corrupt the stored course so the recomputed time looks like a decrease
    course = asyncio.run(h.projections.get_course("test-user", "C"))
    assert course is not None
    corrupted = dataclasses.replace(course, time_spent_total=10_000)
    asyncio.run(h.projections.put_course(corrupted))
    before = _get_sample(
        "progress_aggregation_inconsistencies_total", {"level": "course"}
    )

    with caplog.at_level(logging.CRITICAL, logger="app.services.aggregator"):
        result = asyncio.run(h.aggregator.recompute_course("test-user", "C"))

    assert result == corrupted
    assert asyncio.run(h.projections.get_course("test-user", "C")) == corrupted
    after = _get_sample(
        "progress_aggregation_inconsistencies_total", {"level": "course"}
    )
    assert after - before == 1
    assert "Aggregation inconsistency" in caplog.text


def test_failing_listener_does_not_break_recompute() -> None:
    h = _Harness()

    async def broken(_aggregate: LessonProgress | CourseProgress) -> None:
        raise RuntimeError("listener down")

    h.aggregator.add_listener(broken)
    asyncio.run(h.complete("S1"))
    assert asyncio.run(h.projections.get_lesson("test-user", "L1")) is not None


def test_rebuild_replays_projections_from_events() -> None:
    h = _Harness()
    asyncio.run(h.complete("S1", "S2", "S3"))
    original = asyncio.run(h.projections.get_course("test-user", "C"))
    h.projections.clear()

    rebuilt = asyncio.run(h.aggregator.rebuild("test-user", "C"))
    assert rebuilt == original
    assert asyncio.run(h.projections.get_section("test-user", "S3")) is not None


class _RacedProjections(InMemoryProjectionRepo):
    """Another writer stores `newer` just before our lesson write lands."""

    def __init__(self, newer: LessonProgress) -> None:
        super().__init__()
        self.newer: LessonProgress | None = newer

    async def put_lesson(self, progress: LessonProgress) -> bool:
        newer, self.newer = self.newer, None
        if newer is not None:
            await super().put_lesson(newer)
        return await super().put_lesson(progress)


def test_stale_lesson_write_yields_to_newer_stored_row() -> None:
    newer = LessonProgress(
        "test-user",
        "L1",
        completed_section_count=2,
        total_section_count=2,
        completed=True,
        completed_at=1_700_000_050,
    )
    store = InMemoryEventStore(clock=lambda: 1_700_000_100)
    projections = _RacedProjections(newer)
    content = InMemoryContentHierarchy()
    content.register(TEST_COURSE)
    aggregator = ProgressAggregator(store, projections, content)
    updates: list[LessonProgress | CourseProgress] = []

    async def record(aggregate: LessonProgress | CourseProgress) -> None:
        updates.append(aggregate)

    aggregator.add_listener(record)

    async def run() -> LessonProgress:
        await projections.put_section(
            SectionProgress("test-user", "S1", completed=True, last_event_seq=1)
        )
        return await aggregator.recompute_lesson("test-user", "L1")

    lesson = asyncio.run(run())
    assert lesson == newer
    assert asyncio.run(projections.get_lesson("test-user", "L1")) == newer
    # The half-complete rollup we computed was never announced
    assert updates == []

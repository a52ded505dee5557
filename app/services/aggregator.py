"""Progress aggregator: folds section event streams into projections.

EVENT SOURCING, READ SIDE
-------------------------
The event store holds what happened.  This module derives what it means:

  events(user, section) ──fold──► SectionProgress
  SectionProgress × lesson's sections ──rollup──► LessonProgress
  LessonProgress × course's lessons  ──rollup──► CourseProgress

The fold and rollups are pure functions, so the same event set always
produces the same aggregates, whatever order the devices delivered it in
and however often it is replayed.  Each stored SectionProgress remembers
the last sequence it consumed; a recompute folds only newer events.

Completion is OR-combined and sticky: once a section, lesson or course
is complete it stays complete, and its completed_at never moves.
completed_at comes from event ingest times (never from the wall clock
at recompute time), so rebuilding from scratch yields identical values.

TIME SPENT
----------
time_spent_delta events are summed, except for deltas that are negative
or larger than the lesson's estimated duration × TIME_SPENT_CEILING_FACTOR.
Those stay in the event store, are left out of the total and listed on
the section as flagged_event_ids for audit.

INVARIANTS
----------
Before a new aggregate replaces the stored one it is checked against the
previous value (counts within totals, percentage within [0, 100], no
completion reverting, no time total shrinking).  A violation is a bug:
it is logged at CRITICAL, counted, and the previous aggregate is kept.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Hashable, Iterable, Mapping
from contextlib import asynccontextmanager

from app.core.config import SETTINGS
from app.core.errors import AggregationInconsistency
from app.core.metrics import (
    AGGREGATION_INCONSISTENCIES,
    AGGREGATION_RECOMPUTES,
    TIME_SPENT_FLAGGED,
)
from app.models.progress import (
    CourseProgress,
    EventKind,
    LessonProgress,
    ProgressEvent,
    SectionProgress,
)
from app.repos.content_repo import ContentHierarchy
from app.repos.event_store import EventStore
from app.repos.projection_repo import ProjectionRepo

logger = logging.getLogger(__name__)

AggregateListener = Callable[[LessonProgress | CourseProgress], Awaitable[None]]


# ---------------------------------------------------------------------------
# Pure fold / rollup
# ---------------------------------------------------------------------------


def fold_section(
    previous: SectionProgress,
    events: Iterable[ProgressEvent],
    *,
    max_time_delta: int | None = None,
) -> SectionProgress:
    """Apply events (any order) on top of `previous`.

    Events at or below previous.last_event_seq are ignored, which makes
    the fold idempotent for overlapping reads.
    """
    completed = previous.completed
    completed_at = previous.completed_at
    time_spent = previous.time_spent_total
    score = previous.score
    flagged = list(previous.flagged_event_ids)
    last_seq = previous.last_event_seq

    fresh = sorted(
        (e for e in events if (e.server_sequence or 0) > previous.last_event_seq),
        key=lambda e: e.server_sequence,
    )
    for event in fresh:
        last_seq = event.server_sequence
        if event.kind is EventKind.COMPLETED:
            if not completed:
                completed = True
                completed_at = event.ingested_at
        elif event.kind is EventKind.TIME_SPENT_DELTA:
            delta = event.value
            if (
                delta is None
                or delta < 0
                or (max_time_delta is not None and delta > max_time_delta)
            ):
                flagged.append(event.event_id)
            else:
                time_spent += int(delta)
        elif event.kind is EventKind.SCORE_RECORDED:
            score = event.value

    return SectionProgress(
        user_id=previous.user_id,
        section_id=previous.section_id,
        completed=completed,
        time_spent_total=time_spent,
        last_event_seq=last_seq,
        completed_at=completed_at,
        score=score,
        flagged_event_ids=tuple(flagged),
    )


def rollup_lesson(
    user_id: str,
    lesson_id: str,
    section_ids: list[str],
    sections: Mapping[str, SectionProgress | None],
    previous: LessonProgress | None = None,
) -> LessonProgress:
    done = [
        section
        for sid in section_ids
        if (section := sections.get(sid)) is not None and section.completed
    ]
    total = len(section_ids)
    completed = total > 0 and len(done) == total
    completed_at = None
    if completed:
        completed_at = max(section.completed_at or 0 for section in done)

    if previous is not None and previous.completed:
        completed, completed_at = True, previous.completed_at

    return LessonProgress(
        user_id=user_id,
        lesson_id=lesson_id,
        completed_section_count=len(done),
        total_section_count=total,
        completed=completed,
        completed_at=completed_at,
    )


def rollup_course(
    user_id: str,
    course_id: str,
    lesson_ids: list[str],
    lessons: Mapping[str, LessonProgress | None],
    *,
    time_spent_total: int = 0,
    previous: CourseProgress | None = None,
) -> CourseProgress:
    done = [
        lesson
        for lid in lesson_ids
        if (lesson := lessons.get(lid)) is not None and lesson.completed
    ]
    total = len(lesson_ids)
    if total == 0:
        percentage = 0.0
    else:
        percentage = min(100.0, max(0.0, len(done) / total * 100))
    completed = total > 0 and len(done) == total
    completed_at = None
    if completed:
        completed_at = max(lesson.completed_at or 0 for lesson in done)

    if previous is not None and previous.completed:
        completed, completed_at = True, previous.completed_at

    return CourseProgress(
        user_id=user_id,
        course_id=course_id,
        completed_lesson_count=len(done),
        total_lesson_count=total,
        completion_percentage=percentage,
        completed=completed,
        completed_at=completed_at,
        time_spent_total=time_spent_total,
    )


# ---------------------------------------------------------------------------
# Invariant checks
# ---------------------------------------------------------------------------


def check_section(previous: SectionProgress | None, new: SectionProgress) -> None:
    if previous is None:
        return
    if new.time_spent_total < previous.time_spent_total:
        raise AggregationInconsistency(
            f"section {new.section_id}: time_spent_total decreased "
            f"{previous.time_spent_total} -> {new.time_spent_total}"
        )
    if previous.completed and not new.completed:
        raise AggregationInconsistency(f"section {new.section_id}: completion reverted")


def check_lesson(previous: LessonProgress | None, new: LessonProgress) -> None:
    if new.completed_section_count > new.total_section_count:
        raise AggregationInconsistency(
            f"lesson {new.lesson_id}: {new.completed_section_count} completed "
            f"of {new.total_section_count} sections"
        )
    if previous is not None and previous.completed and not new.completed:
        raise AggregationInconsistency(f"lesson {new.lesson_id}: completion reverted")


def check_course(previous: CourseProgress | None, new: CourseProgress) -> None:
    if new.completed_lesson_count > new.total_lesson_count:
        raise AggregationInconsistency(
            f"course {new.course_id}: {new.completed_lesson_count} completed "
            f"of {new.total_lesson_count} lessons"
        )
    if not 0.0 <= new.completion_percentage <= 100.0:
        raise AggregationInconsistency(
            f"course {new.course_id}: completion_percentage {new.completion_percentage}"
        )
    if previous is None:
        return
    if previous.completed and not new.completed:
        raise AggregationInconsistency(f"course {new.course_id}: completion reverted")
    if previous.completed_at is not None and new.completed_at != previous.completed_at:
        raise AggregationInconsistency(f"course {new.course_id}: completed_at changed")
    if new.time_spent_total < previous.time_spent_total:
        raise AggregationInconsistency(
            f"course {new.course_id}: time_spent_total decreased "
            f"{previous.time_spent_total} -> {new.time_spent_total}"
        )


# ---------------------------------------------------------------------------
# Per-key locking
# ---------------------------------------------------------------------------


class KeyedLock:
    """One asyncio.Lock per key, created on first use and dropped when idle.

    Recomputes of the same (user, section|lesson|course) queue up; different
    keys proceed concurrently.
    """

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._holders: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


# ---------------------------------------------------------------------------
# Aggregator
# ---------------------------------------------------------------------------


class ProgressAggregator:
    def __init__(
        self,
        store: EventStore,
        projections: ProjectionRepo,
        content: ContentHierarchy,
        *,
        ceiling_factor: int = SETTINGS.time_spent_ceiling_factor,
    ) -> None:
        self._store = store
        self._projections = projections
        self._content = content
        self._ceiling_factor = ceiling_factor
        self._listeners: list[AggregateListener] = []
        self._locks = KeyedLock()

    def add_listener(self, listener: AggregateListener) -> None:
        """Called with each LessonProgress / CourseProgress that changed."""
        self._listeners.append(listener)

    async def recompute(self, user_id: str, section_id: str) -> SectionProgress:
        """Fold new events for one section, then roll up its lesson and course."""
        parents = await self._content.get_section_parents(section_id)
        section = await self._recompute_section(
            user_id, section_id, parents.lesson_id if parents else None
        )
        if parents is None:
            logger.warning(
                "Orphaned section excluded from rollup user_id=%s section_id=%s",
                user_id,
                section_id,
            )
            return section

        await self.recompute_lesson(user_id, parents.lesson_id)
        await self.recompute_course(user_id, parents.course_id)
        return section

    async def recompute_lesson(self, user_id: str, lesson_id: str) -> LessonProgress:
        AGGREGATION_RECOMPUTES.labels(level="lesson").inc()
        async with self._locks.hold(("lesson", user_id, lesson_id)):
            section_ids = await self._content.get_lesson_sections(lesson_id)
            sections = {
                sid: await self._projections.get_section(user_id, sid)
                for sid in section_ids
            }
            previous = await self._projections.get_lesson(user_id, lesson_id)
            updated = rollup_lesson(user_id, lesson_id, section_ids, sections, previous)
            try:
                check_lesson(previous, updated)
            except AggregationInconsistency as exc:
                _report_inconsistency("lesson", user_id, exc)
                return previous if previous is not None else updated

            if updated == previous:
                return updated
            if not await self._projections.put_lesson(updated):
                return await self._newer_stored("lesson", user_id, lesson_id, updated)

        await self._notify(updated)
        return updated

    async def recompute_course(self, user_id: str, course_id: str) -> CourseProgress:
        AGGREGATION_RECOMPUTES.labels(level="course").inc()
        async with self._locks.hold(("course", user_id, course_id)):
            lesson_ids = await self._content.get_course_lessons(course_id)
            lessons = {}
            time_spent = 0
            for lesson_id in lesson_ids:
                lessons[lesson_id] = await self._projections.get_lesson(
                    user_id, lesson_id
                )
                for sid in await self._content.get_lesson_sections(lesson_id):
                    section = await self._projections.get_section(user_id, sid)
                    if section is not None:
                        time_spent += section.time_spent_total

            previous = await self._projections.get_course(user_id, course_id)
            updated = rollup_course(
                user_id,
                course_id,
                lesson_ids,
                lessons,
                time_spent_total=time_spent,
                previous=previous,
            )
            try:
                check_course(previous, updated)
            except AggregationInconsistency as exc:
                _report_inconsistency("course", user_id, exc)
                return previous if previous is not None else updated

            if updated == previous:
                return updated
            if not await self._projections.put_course(updated):
                return await self._newer_stored("course", user_id, course_id, updated)

        await self._notify(updated)
        return updated

    async def rebuild(self, user_id: str, course_id: str) -> CourseProgress:
        """Drop a course's projections and replay them from the event store."""
        lesson_ids = await self._content.get_course_lessons(course_id)
        sections_by_lesson = {
            lid: await self._content.get_lesson_sections(lid) for lid in lesson_ids
        }
        await self._projections.drop(
            user_id,
            course_id=course_id,
            lesson_ids=lesson_ids,
            section_ids=[sid for sids in sections_by_lesson.values() for sid in sids],
        )
        logger.info(
            "Rebuilding course progress user_id=%s course_id=%s", user_id, course_id
        )

        for lesson_id, section_ids in sections_by_lesson.items():
            for section_id in section_ids:
                await self._recompute_section(user_id, section_id, lesson_id)
            await self.recompute_lesson(user_id, lesson_id)
        return await self.recompute_course(user_id, course_id)

    async def _recompute_section(
        self, user_id: str, section_id: str, lesson_id: str | None
    ) -> SectionProgress:
        AGGREGATION_RECOMPUTES.labels(level="section").inc()
        async with self._locks.hold(("section", user_id, section_id)):
            stored = await self._projections.get_section(user_id, section_id)
            previous = stored or SectionProgress(user_id=user_id, section_id=section_id)
            events = await self._store.read_since(
                user_id, section_id, previous.last_event_seq
            )
            if not events:
                return previous

            updated = fold_section(
                previous, events, max_time_delta=await self._max_time_delta(lesson_id)
            )
            try:
                check_section(stored, updated)
            except AggregationInconsistency as exc:
                _report_inconsistency("section", user_id, exc)
                return previous

            newly_flagged = updated.flagged_event_ids[len(previous.flagged_event_ids) :]
            if newly_flagged:
                TIME_SPENT_FLAGGED.inc(len(newly_flagged))
                logger.warning(
                    "Time-spent deltas flagged user_id=%s section_id=%s event_ids=%s",
                    user_id,
                    section_id,
                    ",".join(newly_flagged),
                )

            if not await self._projections.put_section(updated):
                return await self._newer_stored("section", user_id, section_id, updated)
            return updated

    async def _newer_stored(self, level: str, user_id: str, entity_id: str, mine):
        """Another process stored a newer row first; serve that one instead."""
        logger.info(
            "Newer %s projection already stored user_id=%s id=%s",
            level,
            user_id,
            entity_id,
        )
        getter = {
            "section": self._projections.get_section,
            "lesson": self._projections.get_lesson,
            "course": self._projections.get_course,
        }[level]
        stored = await getter(user_id, entity_id)
        return stored if stored is not None else mine

    async def _max_time_delta(self, lesson_id: str | None) -> int | None:
        if lesson_id is None:
            return None
        duration = await self._content.get_lesson_estimated_duration(lesson_id)
        if not duration:
            return None
        return duration * self._ceiling_factor

    async def _notify(self, aggregate: LessonProgress | CourseProgress) -> None:
        for listener in self._listeners:
            try:
                await listener(aggregate)
            except Exception:
                # Listeners are best effort; the projection is already stored
                logger.exception("Aggregate listener failed")


def _report_inconsistency(
    level: str, user_id: str, exc: AggregationInconsistency
) -> None:
    AGGREGATION_INCONSISTENCIES.labels(level=level).inc()
    logger.critical(
        "Aggregation inconsistency, keeping previous aggregate user_id=%s: %s",
        user_id,
        exc.message,
    )

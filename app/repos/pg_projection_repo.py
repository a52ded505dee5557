"""PostgreSQL implementation of ProjectionRepo."""

from __future__ import annotations

from sqlalchemy import and_, delete, not_, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import StoreUnavailable
from app.db.tables import CourseProgressRow, LessonProgressRow, SectionProgressRow
from app.models.progress import CourseProgress, LessonProgress, SectionProgress


class PgProjectionRepo:
    """Satisfies the ProjectionRepo Protocol using PostgreSQL.

    Writes are upserts keyed on (user_id, <entity>_id).  The aggregator's
    per-key locks only serialize writers inside one process, so each
    upsert carries a WHERE guard mirroring the supersedes_* rules: a
    writer holding an older read cannot overwrite a newer row, and a
    completed lesson or course is never reset.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_section(
        self, user_id: str, section_id: str
    ) -> SectionProgress | None:
        stmt = select(SectionProgressRow).where(
            SectionProgressRow.user_id == user_id,
            SectionProgressRow.section_id == section_id,
        )
        row = await self._fetch_one(stmt)
        return None if row is None else _row_to_section(row)

    async def put_section(self, progress: SectionProgress) -> bool:
        values = {
            "user_id": progress.user_id,
            "section_id": progress.section_id,
            "completed": progress.completed,
            "time_spent_total": progress.time_spent_total,
            "last_event_seq": progress.last_event_seq,
            "completed_at": progress.completed_at,
            "score": progress.score,
            "flagged_event_ids": list(progress.flagged_event_ids),
        }
        return await self._upsert(section_upsert(values))

    async def get_lesson(self, user_id: str, lesson_id: str) -> LessonProgress | None:
        stmt = select(LessonProgressRow).where(
            LessonProgressRow.user_id == user_id,
            LessonProgressRow.lesson_id == lesson_id,
        )
        row = await self._fetch_one(stmt)
        return None if row is None else _row_to_lesson(row)

    async def put_lesson(self, progress: LessonProgress) -> bool:
        values = {
            "user_id": progress.user_id,
            "lesson_id": progress.lesson_id,
            "completed_section_count": progress.completed_section_count,
            "total_section_count": progress.total_section_count,
            "completed": progress.completed,
            "completed_at": progress.completed_at,
        }
        return await self._upsert(lesson_upsert(values))

    async def get_course(self, user_id: str, course_id: str) -> CourseProgress | None:
        stmt = select(CourseProgressRow).where(
            CourseProgressRow.user_id == user_id,
            CourseProgressRow.course_id == course_id,
        )
        row = await self._fetch_one(stmt)
        return None if row is None else _row_to_course(row)

    async def put_course(self, progress: CourseProgress) -> bool:
        return await self._upsert(course_upsert(progress.to_dict()))

    async def list_courses(self, user_id: str) -> list[CourseProgress]:
        stmt = (
            select(CourseProgressRow)
            .where(CourseProgressRow.user_id == user_id)
            .order_by(CourseProgressRow.course_id)
        )
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except (DBAPIError, OSError) as exc:
            raise StoreUnavailable(f"projection read failed: {exc}") from exc
        return [_row_to_course(row) for row in rows]

    async def drop(
        self,
        user_id: str,
        *,
        course_id: str,
        lesson_ids: list[str],
        section_ids: list[str],
    ) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(
                        delete(SectionProgressRow).where(
                            SectionProgressRow.user_id == user_id,
                            SectionProgressRow.section_id.in_(section_ids),
                        )
                    )
                    await session.execute(
                        delete(LessonProgressRow).where(
                            LessonProgressRow.user_id == user_id,
                            LessonProgressRow.lesson_id.in_(lesson_ids),
                        )
                    )
                    await session.execute(
                        delete(CourseProgressRow).where(
                            CourseProgressRow.user_id == user_id,
                            CourseProgressRow.course_id == course_id,
                        )
                    )
        except (DBAPIError, OSError) as exc:
            raise StoreUnavailable(f"projection drop failed: {exc}") from exc

    async def _fetch_one(self, stmt):
        try:
            async with self._session_factory() as session:
                return (await session.execute(stmt)).scalar_one_or_none()
        except (DBAPIError, OSError) as exc:
            raise StoreUnavailable(f"projection read failed: {exc}") from exc

    async def _upsert(self, stmt) -> bool:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(stmt)
                    # A guard that rejected the update leaves rowcount at 0
                    written = result.rowcount > 0
        except (DBAPIError, OSError) as exc:
            raise StoreUnavailable(f"projection write failed: {exc}") from exc
        return written


# ---------------------------------------------------------------------------
# Guarded upsert statements
# ---------------------------------------------------------------------------


def _guarded_upsert(table, values: dict, keys: list[str], guard):
    stmt = pg_insert(table).values(**values)
    return stmt.on_conflict_do_update(
        index_elements=keys,
        set_={k: v for k, v in values.items() if k not in keys},
        where=guard(stmt.excluded),
    )


def section_upsert(values: dict):
    return _guarded_upsert(
        SectionProgressRow,
        values,
        ["user_id", "section_id"],
        lambda new: SectionProgressRow.last_event_seq < new.last_event_seq,
    )


def lesson_upsert(values: dict):
    return _guarded_upsert(
        LessonProgressRow,
        values,
        ["user_id", "lesson_id"],
        lambda new: and_(
            or_(not_(LessonProgressRow.completed), new.completed),
            or_(
                LessonProgressRow.total_section_count != new.total_section_count,
                LessonProgressRow.completed_section_count
                <= new.completed_section_count,
            ),
        ),
    )


def course_upsert(values: dict):
    return _guarded_upsert(
        CourseProgressRow,
        values,
        ["user_id", "course_id"],
        lambda new: and_(
            or_(not_(CourseProgressRow.completed), new.completed),
            or_(
                CourseProgressRow.total_lesson_count != new.total_lesson_count,
                and_(
                    CourseProgressRow.completed_lesson_count
                    <= new.completed_lesson_count,
                    CourseProgressRow.time_spent_total <= new.time_spent_total,
                ),
            ),
        ),
    )


def _row_to_section(row: SectionProgressRow) -> SectionProgress:
    return SectionProgress(
        user_id=row.user_id,
        section_id=row.section_id,
        completed=row.completed,
        time_spent_total=row.time_spent_total,
        last_event_seq=row.last_event_seq,
        completed_at=row.completed_at,
        score=row.score,
        flagged_event_ids=tuple(row.flagged_event_ids or ()),
    )


def _row_to_lesson(row: LessonProgressRow) -> LessonProgress:
    return LessonProgress(
        user_id=row.user_id,
        lesson_id=row.lesson_id,
        completed_section_count=row.completed_section_count,
        total_section_count=row.total_section_count,
        completed=row.completed,
        completed_at=row.completed_at,
    )


def _row_to_course(row: CourseProgressRow) -> CourseProgress:
    return CourseProgress(
        user_id=row.user_id,
        course_id=row.course_id,
        completed_lesson_count=row.completed_lesson_count,
        total_lesson_count=row.total_lesson_count,
        completion_percentage=row.completion_percentage,
        completed=row.completed,
        completed_at=row.completed_at,
        time_spent_total=row.time_spent_total,
    )

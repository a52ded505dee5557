"""PostgreSQL implementation of ContentHierarchy (read-only)."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import StoreUnavailable
from app.db.tables import ContentCourseRow, ContentLessonRow, ContentSectionRow
from app.models.course import SectionParents


class PgContentHierarchy:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_section_parents(self, section_id: str) -> SectionParents | None:
        stmt = (
            select(ContentSectionRow.lesson_id, ContentLessonRow.course_id)
            .join(
                ContentLessonRow,
                ContentLessonRow.lesson_id == ContentSectionRow.lesson_id,
            )
            .where(ContentSectionRow.section_id == section_id)
        )
        row = (await self._execute(stmt)).one_or_none()
        if row is None:
            return None
        return SectionParents(lesson_id=row.lesson_id, course_id=row.course_id)

    async def get_lesson_sections(self, lesson_id: str) -> list[str]:
        stmt = (
            select(ContentSectionRow.section_id)
            .where(ContentSectionRow.lesson_id == lesson_id)
            .order_by(ContentSectionRow.position)
        )
        return list((await self._execute(stmt)).scalars().all())

    async def get_course_lessons(self, course_id: str) -> list[str]:
        stmt = (
            select(ContentLessonRow.lesson_id)
            .where(ContentLessonRow.course_id == course_id)
            .order_by(ContentLessonRow.position)
        )
        return list((await self._execute(stmt)).scalars().all())

    async def get_lesson_estimated_duration(self, lesson_id: str) -> int | None:
        stmt = select(ContentLessonRow.estimated_duration).where(
            ContentLessonRow.lesson_id == lesson_id
        )
        return (await self._execute(stmt)).scalar_one_or_none()

    async def course_exists(self, course_id: str) -> bool:
        stmt = select(ContentCourseRow.course_id).where(
            ContentCourseRow.course_id == course_id
        )
        return (await self._execute(stmt)).scalar_one_or_none() is not None

    async def lesson_exists(self, lesson_id: str) -> bool:
        stmt = select(ContentLessonRow.lesson_id).where(
            ContentLessonRow.lesson_id == lesson_id
        )
        return (await self._execute(stmt)).scalar_one_or_none() is not None

    async def _execute(self, stmt):
        try:
            async with self._session_factory() as session:
                return await session.execute(stmt)
        except (DBAPIError, OSError) as exc:
            raise StoreUnavailable(f"content read failed: {exc}") from exc

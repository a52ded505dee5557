"""PostgreSQL implementation of DeadLetterRepo."""

from __future__ import annotations

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import StoreUnavailable
from app.db.tables import DeadLetterRow
from app.models.progress import DeadLetter, EventKind, ProgressEvent


class PgDeadLetterRepo:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def add(self, letter: DeadLetter) -> None:
        event = letter.event
        stmt = (
            pg_insert(DeadLetterRow)
            .values(
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
            .on_conflict_do_nothing(index_elements=["event_id"])
        )
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(stmt)
        except (DBAPIError, OSError) as exc:
            raise StoreUnavailable(f"dead letter write failed: {exc}") from exc

    async def list(
        self, user_id: str | None = None, limit: int = 100
    ) -> list[DeadLetter]:
        stmt = select(DeadLetterRow).order_by(DeadLetterRow.held_at).limit(limit)
        if user_id is not None:
            stmt = stmt.where(DeadLetterRow.user_id == user_id)
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except (DBAPIError, OSError) as exc:
            raise StoreUnavailable(f"dead letter read failed: {exc}") from exc
        return [_row_to_letter(row) for row in rows]

    async def discard(self, event_id: str) -> bool:
        stmt = delete(DeadLetterRow).where(DeadLetterRow.event_id == event_id)
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(stmt)
        except (DBAPIError, OSError) as exc:
            raise StoreUnavailable(f"dead letter delete failed: {exc}") from exc
        return result.rowcount > 0


def _row_to_letter(row: DeadLetterRow) -> DeadLetter:
    return DeadLetter(
        event=ProgressEvent(
            event_id=row.event_id,
            user_id=row.user_id,
            section_id=row.section_id,
            lesson_id=row.lesson_id,
            course_id=row.course_id,
            kind=EventKind(row.kind),
            client_timestamp=row.client_timestamp,
            value=row.value,
        ),
        reason=row.reason,
        held_at=row.held_at,
        detail=row.detail,
        batch_id=row.batch_id,
    )

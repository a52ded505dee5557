"""PostgreSQL implementation of EventStore."""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.clock import Clock, utc_now
from app.core.errors import EventIdConflict, StoreUnavailable
from app.db.tables import ProgressEventRow, ProgressStreamRow
from app.models.progress import AppendResult, EventKind, ProgressEvent

logger = logging.getLogger(__name__)


class PgEventStore:
    """Satisfies the EventStore Protocol using PostgreSQL.

    Each append is one transaction:
      1. look up event_id (duplicate → return the stored row)
      2. bump the stream head, which row-locks it until commit
      3. insert the event with the returned sequence

    Two devices appending to the same stream queue up on step 2; appends
    to different streams never wait on each other.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    async def append(self, event: ProgressEvent) -> AppendResult:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    existing = await _get(session, event.event_id)
                    if existing is not None:
                        return _duplicate_of(existing, event)

                    head = (
                        pg_insert(ProgressStreamRow)
                        .values(
                            user_id=event.user_id,
                            section_id=event.section_id,
                            last_sequence=1,
                        )
                        .on_conflict_do_update(
                            index_elements=["user_id", "section_id"],
                            set_={"last_sequence": ProgressStreamRow.last_sequence + 1},
                        )
                        .returning(ProgressStreamRow.last_sequence)
                    )
                    sequence = (await session.execute(head)).scalar_one()

                    row = ProgressEventRow(
                        event_id=event.event_id,
                        user_id=event.user_id,
                        section_id=event.section_id,
                        server_sequence=sequence,
                        lesson_id=event.lesson_id,
                        course_id=event.course_id,
                        kind=event.kind.value,
                        value=event.value,
                        client_timestamp=event.client_timestamp,
                        ingested_at=self._clock(),
                    )
                    session.add(row)
                    await session.flush()
                    return AppendResult(event=_row_to_event(row))
        except IntegrityError:
            # A concurrent append of the same event_id committed first;
            # our transaction (including the head bump) was rolled back.
            logger.debug("Concurrent append race on event_id=%s", event.event_id)
            existing = await self._get_or_raise(event.event_id)
            return _duplicate_of(existing, event)
        except (DBAPIError, OSError) as exc:
            raise StoreUnavailable(f"append failed: {exc}") from exc

    async def read_since(
        self, user_id: str, section_id: str, since_seq: int = 0
    ) -> list[ProgressEvent]:
        stmt = (
            select(ProgressEventRow)
            .where(ProgressEventRow.user_id == user_id)
            .where(ProgressEventRow.section_id == section_id)
            .where(ProgressEventRow.server_sequence > since_seq)
            .order_by(ProgressEventRow.server_sequence)
        )
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except (DBAPIError, OSError) as exc:
            raise StoreUnavailable(f"read failed: {exc}") from exc
        return [_row_to_event(row) for row in rows]

    async def _get_or_raise(self, event_id: str) -> ProgressEventRow:
        try:
            async with self._session_factory() as session:
                row = await _get(session, event_id)
        except (DBAPIError, OSError) as exc:
            raise StoreUnavailable(f"read failed: {exc}") from exc
        if row is None:
            raise StoreUnavailable(f"event {event_id} vanished after integrity error")
        return row


async def _get(session: AsyncSession, event_id: str) -> ProgressEventRow | None:
    stmt = select(ProgressEventRow).where(ProgressEventRow.event_id == event_id)
    return (await session.execute(stmt)).scalar_one_or_none()


def _duplicate_of(row: ProgressEventRow, incoming: ProgressEvent) -> AppendResult:
    stored = _row_to_event(row)
    if stored.fingerprint() != incoming.fingerprint():
        raise EventIdConflict(
            f"event_id {incoming.event_id} already recorded with different content"
        )
    return AppendResult(event=stored, duplicate=True)


def _row_to_event(row: ProgressEventRow) -> ProgressEvent:
    return ProgressEvent(
        event_id=row.event_id,
        user_id=row.user_id,
        section_id=row.section_id,
        lesson_id=row.lesson_id,
        course_id=row.course_id,
        kind=EventKind(row.kind),
        client_timestamp=row.client_timestamp,
        value=row.value,
        server_sequence=row.server_sequence,
        ingested_at=row.ingested_at,
    )

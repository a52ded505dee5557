"""Offline mutation queue: the device-side half of sync.

While a client is disconnected, every progress event it produces is
written here first and only later submitted to POST /v1/progress/sync.
Storage is SQLite through synchronous SQLAlchemy: the queue lives on the
device, is used from one thread, and must survive the app being killed.

LIFECYCLE OF AN ENTRY
---------------------
  enqueue()      → pending      (batch_id NULL, local_seq assigned)
  drain()        → in flight    (batch_id set, same id until acknowledged)
  acknowledge()  → acknowledged (kept as history, purged under pressure)

An entry is never deleted before the server acknowledged its batch.  If
the response to a sync is lost (timeout, crash, airplane mode), the next
drain() hands back the *same* batch with the *same* batch_id, and the
server answers the resubmission from its recent-batch window, so nothing
is double-counted.

CAPACITY
--------
`capacity` bounds the number of stored rows.  When it is reached the
oldest acknowledged rows are purged to make room; unacknowledged rows are
never dropped, and if none can be purged enqueue() raises QueueFull.
"""

from __future__ import annotations

import logging
import uuid

from sqlalchemy import (
    BigInteger,
    Boolean,
    Float,
    Integer,
    String,
    create_engine,
    delete,
    func,
    select,
    update,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from app.core.errors import QueueFull
from app.models.progress import EventKind, ProgressEvent, SyncBatch

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 10_000
# Stays under the server's per-request limit of 1000 events
DEFAULT_MAX_BATCH_SIZE = 500


class LocalBase(DeclarativeBase):
    """Declarative base for device-local tables (never created server-side)."""


class QueuedEventRow(LocalBase):
    __tablename__ = "queued_events"
    # AUTOINCREMENT: local_seq is never reused, even after a purge
    __table_args__ = {"sqlite_autoincrement": True}

    local_seq: Mapped[int] = mapped_column(Integer, primary_key=True)
    event_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    section_id: Mapped[str] = mapped_column(String(255), nullable=False)
    lesson_id: Mapped[str] = mapped_column(String(255), nullable=False)
    course_id: Mapped[str] = mapped_column(String(255), nullable=False)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    value: Mapped[float | None] = mapped_column(Float, nullable=True)
    client_timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    batch_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    acknowledged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class OfflineMutationQueue:
    def __init__(
        self,
        url: str = "sqlite:///progress_queue.db",
        *,
        capacity: int = DEFAULT_CAPACITY,
        max_batch_size: int = DEFAULT_MAX_BATCH_SIZE,
    ) -> None:
        if capacity < 1 or max_batch_size < 1:
            raise ValueError("capacity and max_batch_size must be >= 1")
        self._engine = create_engine(url)
        LocalBase.metadata.create_all(self._engine)
        self._session = sessionmaker(self._engine, expire_on_commit=False)
        self.capacity = capacity
        self.max_batch_size = max_batch_size

    def close(self) -> None:
        self._engine.dispose()

    # --- Producer side ---

    def enqueue(self, event: ProgressEvent) -> int:
        """Persist `event` and return its local sequence number.

        Re-enqueuing an event_id already in the queue returns the
        existing local_seq.  Raises QueueFull when the queue is at
        capacity and holds no acknowledged rows to purge.
        """
        with self._session.begin() as session:
            existing = session.scalar(
                select(QueuedEventRow.local_seq).where(
                    QueuedEventRow.event_id == event.event_id
                )
            )
            if existing is not None:
                return existing

            stored = session.scalar(select(func.count()).select_from(QueuedEventRow))
            if stored >= self.capacity:
                self._purge(session, stored - self.capacity + 1)
                stored = session.scalar(
                    select(func.count()).select_from(QueuedEventRow)
                )
                if stored >= self.capacity:
                    logger.warning(
                        "Offline queue full capacity=%d event_id=%s",
                        self.capacity,
                        event.event_id,
                    )
                    raise QueueFull(
                        f"offline queue holds {stored} unacknowledged events"
                    )

            row = QueuedEventRow(
                event_id=event.event_id,
                user_id=event.user_id,
                section_id=event.section_id,
                lesson_id=event.lesson_id,
                course_id=event.course_id,
                kind=event.kind.value,
                value=event.value,
                client_timestamp=event.client_timestamp,
                acknowledged=False,
            )
            session.add(row)
            session.flush()
            logger.debug(
                "Queued event_id=%s local_seq=%d", event.event_id, row.local_seq
            )
            return row.local_seq

    # --- Sync side ---

    def drain(self) -> SyncBatch | None:
        """Next batch to submit, or None when nothing is pending.

        An in-flight batch (drained, not yet acknowledged) is returned
        again unchanged until it is acknowledged.
        """
        with self._session.begin() as session:
            in_flight = session.scalars(
                select(QueuedEventRow)
                .where(
                    QueuedEventRow.batch_id.is_not(None),
                    QueuedEventRow.acknowledged.is_(False),
                )
                .order_by(QueuedEventRow.local_seq)
            ).all()
            if in_flight:
                batch_id = in_flight[0].batch_id
                rows = [row for row in in_flight if row.batch_id == batch_id]
                logger.info(
                    "Resubmitting in-flight batch_id=%s events=%d", batch_id, len(rows)
                )
                return _to_batch(batch_id, rows)

            pending = session.scalars(
                select(QueuedEventRow)
                .where(
                    QueuedEventRow.batch_id.is_(None),
                    QueuedEventRow.acknowledged.is_(False),
                )
                .order_by(QueuedEventRow.local_seq)
                .limit(self.max_batch_size)
            ).all()
            if not pending:
                return None

            batch_id = str(uuid.uuid4())
            for row in pending:
                row.batch_id = batch_id
            logger.info("Drained batch_id=%s events=%d", batch_id, len(pending))
            return _to_batch(batch_id, pending)

    def acknowledge(self, batch_id: str) -> int:
        """Mark a batch as received by the server; returns rows affected."""
        with self._session.begin() as session:
            result = session.execute(
                update(QueuedEventRow)
                .where(
                    QueuedEventRow.batch_id == batch_id,
                    QueuedEventRow.acknowledged.is_(False),
                )
                .values(acknowledged=True)
                .execution_options(synchronize_session=False)
            )
        if result.rowcount == 0:
            logger.warning("Acknowledge for unknown batch_id=%s", batch_id)
        return result.rowcount

    # --- Introspection / housekeeping ---

    def pending_count(self) -> int:
        """Events not yet acknowledged (pending or in flight)."""
        with self._session() as session:
            return session.scalar(
                select(func.count())
                .select_from(QueuedEventRow)
                .where(QueuedEventRow.acknowledged.is_(False))
            )

    def purge_acknowledged(self, limit: int | None = None) -> int:
        """Delete acknowledged rows, oldest first; returns rows deleted."""
        with self._session.begin() as session:
            return self._purge(session, limit)

    def _purge(self, session, limit: int | None) -> int:
        oldest = (
            select(QueuedEventRow.local_seq)
            .where(QueuedEventRow.acknowledged.is_(True))
            .order_by(QueuedEventRow.local_seq)
        )
        if limit is not None:
            oldest = oldest.limit(limit)
        result = session.execute(
            delete(QueuedEventRow).where(
                QueuedEventRow.local_seq.in_(oldest)
            ).execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info("Purged %d acknowledged queue entries", result.rowcount)
        return result.rowcount


def _to_batch(batch_id: str, rows) -> SyncBatch:
    return SyncBatch(
        batch_id=batch_id,
        events=tuple(
            ProgressEvent(
                event_id=row.event_id,
                user_id=row.user_id,
                section_id=row.section_id,
                lesson_id=row.lesson_id,
                course_id=row.course_id,
                kind=EventKind(row.kind),
                client_timestamp=row.client_timestamp,
                value=row.value,
            )
            for row in rows
        ),
    )

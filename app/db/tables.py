"""SQLAlchemy table definitions.

These map to the frozen dataclass domain models in app/models/.
Repos convert between SQLAlchemy rows and domain dataclasses.

Only progress_events (and its stream heads) must be durable.  The
*_progress tables are projections: they can be truncated at any time and
rebuilt by replaying progress_events.
"""

from __future__ import annotations

from sqlalchemy import (
    BigInteger,
    Boolean,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import ARRAY
from sqlalchemy.orm import Mapped, mapped_column

from app.db.engine import Base

# --- Event store ---


class ProgressStreamRow(Base):
    """Head of one (user, section) stream; holds the last assigned sequence.

    Appends bump last_sequence with INSERT ... ON CONFLICT DO UPDATE, which
    row-locks the head until commit.  That lock is the only serialization
    point between devices of the same user.
    """

    __tablename__ = "progress_streams"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    section_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    last_sequence: Mapped[int] = mapped_column(BigInteger, nullable=False)


class ProgressEventRow(Base):
    __tablename__ = "progress_events"

    event_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    section_id: Mapped[str] = mapped_column(String(255), nullable=False)
    server_sequence: Mapped[int] = mapped_column(BigInteger, nullable=False)
    lesson_id: Mapped[str] = mapped_column(String(255), nullable=False)
    course_id: Mapped[str] = mapped_column(String(255), nullable=False)
    kind: Mapped[str] = mapped_column(
        String(32), nullable=False
    )  # completed|time_spent_delta|score_recorded
    value: Mapped[float | None] = mapped_column(Float, nullable=True)
    client_timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    ingested_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "section_id", "server_sequence"),
    )


# --- Projections (disposable) ---


class SectionProgressRow(Base):
    __tablename__ = "section_progress"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    section_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    time_spent_total: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_event_seq: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    completed_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    score: Mapped[float | None] = mapped_column(Float, nullable=True)
    flagged_event_ids: Mapped[list[str]] = mapped_column(
        ARRAY(String), nullable=False, default=[]
    )


class LessonProgressRow(Base):
    __tablename__ = "lesson_progress"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    lesson_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    completed_section_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    total_section_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    completed_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)


class CourseProgressRow(Base):
    __tablename__ = "course_progress"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    course_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    completed_lesson_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    total_lesson_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completion_percentage: Mapped[float] = mapped_column(
        Float, nullable=False, default=0.0
    )
    completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    completed_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    time_spent_total: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)


# --- Dead letters ---


class DeadLetterRow(Base):
    """Rejected events awaiting manual reconciliation."""

    __tablename__ = "dead_letter_events"

    event_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    section_id: Mapped[str] = mapped_column(String(255), nullable=False)
    lesson_id: Mapped[str] = mapped_column(String(255), nullable=False)
    course_id: Mapped[str] = mapped_column(String(255), nullable=False)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    value: Mapped[float | None] = mapped_column(Float, nullable=True)
    client_timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reason: Mapped[str] = mapped_column(
        String(64), nullable=False
    )  # UnknownReference|ClockSkew|EventIdConflict|UserMismatch
    detail: Mapped[str] = mapped_column(Text, nullable=False, default="")
    batch_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    held_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (Index("ix_dead_letter_events_held_at", "held_at"),)


# --- Content hierarchy (owned by the content service, read-only here) ---


class ContentCourseRow(Base):
    __tablename__ = "content_courses"

    course_id: Mapped[str] = mapped_column(String(255), primary_key=True)


class ContentLessonRow(Base):
    __tablename__ = "content_lessons"

    lesson_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    course_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    estimated_duration: Mapped[int | None] = mapped_column(
        Integer, nullable=True
    )  # seconds


class ContentSectionRow(Base):
    __tablename__ = "content_sections"

    section_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    lesson_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False)

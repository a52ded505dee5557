"""create progress tables

Revision ID: 3b9e1c7d2a10
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3b9e1c7d2a10"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "progress_streams",
        sa.Column("user_id", sa.String(length=255), primary_key=True),
        sa.Column("section_id", sa.String(length=255), primary_key=True),
        sa.Column("last_sequence", sa.BigInteger(), nullable=False),
    )
    op.create_table(
        "progress_events",
        sa.Column("event_id", sa.String(length=64), primary_key=True),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("section_id", sa.String(length=255), nullable=False),
        sa.Column("server_sequence", sa.BigInteger(), nullable=False),
        sa.Column("lesson_id", sa.String(length=255), nullable=False),
        sa.Column("course_id", sa.String(length=255), nullable=False),
        sa.Column("kind", sa.String(length=32), nullable=False),
        sa.Column("value", sa.Float(), nullable=True),
        sa.Column("client_timestamp", sa.BigInteger(), nullable=False),
        sa.Column("ingested_at", sa.BigInteger(), nullable=False),
        sa.UniqueConstraint("user_id", "section_id", "server_sequence"),
    )

    op.create_table(
        "section_progress",
        sa.Column("user_id", sa.String(length=255), primary_key=True),
        sa.Column("section_id", sa.String(length=255), primary_key=True),
        sa.Column("completed", sa.Boolean(), nullable=False),
        sa.Column("time_spent_total", sa.BigInteger(), nullable=False),
        sa.Column("last_event_seq", sa.BigInteger(), nullable=False),
        sa.Column("completed_at", sa.BigInteger(), nullable=True),
        sa.Column("score", sa.Float(), nullable=True),
        sa.Column(
            "flagged_event_ids",
            postgresql.ARRAY(sa.String()),
            nullable=False,
            server_default="{}",
        ),
    )
    op.create_table(
        "lesson_progress",
        sa.Column("user_id", sa.String(length=255), primary_key=True),
        sa.Column("lesson_id", sa.String(length=255), primary_key=True),
        sa.Column("completed_section_count", sa.Integer(), nullable=False),
        sa.Column("total_section_count", sa.Integer(), nullable=False),
        sa.Column("completed", sa.Boolean(), nullable=False),
        sa.Column("completed_at", sa.BigInteger(), nullable=True),
    )
    op.create_table(
        "course_progress",
        sa.Column("user_id", sa.String(length=255), primary_key=True),
        sa.Column("course_id", sa.String(length=255), primary_key=True),
        sa.Column("completed_lesson_count", sa.Integer(), nullable=False),
        sa.Column("total_lesson_count", sa.Integer(), nullable=False),
        sa.Column("completion_percentage", sa.Float(), nullable=False),
        sa.Column("completed", sa.Boolean(), nullable=False),
        sa.Column("completed_at", sa.BigInteger(), nullable=True),
        sa.Column("time_spent_total", sa.BigInteger(), nullable=False),
    )

    op.create_table(
        "dead_letter_events",
        sa.Column("event_id", sa.String(length=64), primary_key=True),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("section_id", sa.String(length=255), nullable=False),
        sa.Column("lesson_id", sa.String(length=255), nullable=False),
        sa.Column("course_id", sa.String(length=255), nullable=False),
        sa.Column("kind", sa.String(length=32), nullable=False),
        sa.Column("value", sa.Float(), nullable=True),
        sa.Column("client_timestamp", sa.BigInteger(), nullable=False),
        sa.Column("reason", sa.String(length=64), nullable=False),
        sa.Column("detail", sa.Text(), nullable=False),
        sa.Column("batch_id", sa.String(length=255), nullable=True),
        sa.Column("held_at", sa.BigInteger(), nullable=False),
    )
    op.create_index(
        "ix_dead_letter_events_held_at", "dead_letter_events", ["held_at"]
    )

    # Owned by the content service; created here so dev databases work.
    op.create_table(
        "content_courses",
        sa.Column("course_id", sa.String(length=255), primary_key=True),
    )
    op.create_table(
        "content_lessons",
        sa.Column("lesson_id", sa.String(length=255), primary_key=True),
        sa.Column("course_id", sa.String(length=255), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("estimated_duration", sa.Integer(), nullable=True),
    )
    op.create_index(
        "ix_content_lessons_course_id", "content_lessons", ["course_id"]
    )
    op.create_table(
        "content_sections",
        sa.Column("section_id", sa.String(length=255), primary_key=True),
        sa.Column("lesson_id", sa.String(length=255), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
    )
    op.create_index(
        "ix_content_sections_lesson_id", "content_sections", ["lesson_id"]
    )


def downgrade() -> None:
    op.drop_index("ix_content_sections_lesson_id", table_name="content_sections")
    op.drop_table("content_sections")
    op.drop_index("ix_content_lessons_course_id", table_name="content_lessons")
    op.drop_table("content_lessons")
    op.drop_table("content_courses")
    op.drop_index("ix_dead_letter_events_held_at", table_name="dead_letter_events")
    op.drop_table("dead_letter_events")
    op.drop_table("course_progress")
    op.drop_table("lesson_progress")
    op.drop_table("section_progress")
    op.drop_table("progress_events")
    op.drop_table("progress_streams")

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class EventKind(str, Enum):
    COMPLETED = "completed"
    TIME_SPENT_DELTA = "time_spent_delta"
    SCORE_RECORDED = "score_recorded"


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    """Append-only fact about one section; the source of truth for progress.

    event_id is generated by the client so that resubmissions are
    idempotent.  server_sequence and ingested_at stay None until the
    event store accepts the event.
    """

    event_id: str
    user_id: str
    section_id: str
    lesson_id: str
    course_id: str
    kind: EventKind
    client_timestamp: int
    value: float | None = None
    server_sequence: int | None = None
    ingested_at: int | None = None

    def fingerprint(self) -> tuple:
        """Client-supplied content, used to detect event_id reuse."""
        return (
            self.user_id,
            self.section_id,
            self.lesson_id,
            self.course_id,
            self.kind.value,
            self.value,
            self.client_timestamp,
        )

    def to_dict(self) -> dict:
        return {
            "event_id": self.event_id,
            "user_id": self.user_id,
            "section_id": self.section_id,
            "lesson_id": self.lesson_id,
            "course_id": self.course_id,
            "kind": self.kind.value,
            "client_timestamp": self.client_timestamp,
            "value": self.value,
            "server_sequence": self.server_sequence,
            "ingested_at": self.ingested_at,
        }

    @staticmethod
    def from_dict(data: dict) -> ProgressEvent:
        return ProgressEvent(
            event_id=data["event_id"],
            user_id=data["user_id"],
            section_id=data["section_id"],
            lesson_id=data["lesson_id"],
            course_id=data["course_id"],
            kind=EventKind(data["kind"]),
            client_timestamp=int(data["client_timestamp"]),
            value=data.get("value"),
            server_sequence=data.get("server_sequence"),
            ingested_at=data.get("ingested_at"),
        )


@dataclass(frozen=True, slots=True)
class SectionProgress:
    """Projection of one (user, section) event stream.

    time_spent_total never decreases and completed never reverts.
    flagged_event_ids lists time deltas that were kept in the store but
    excluded from the total (negative, or above the lesson's ceiling).
    """

    user_id: str
    section_id: str
    completed: bool = False
    time_spent_total: int = 0
    last_event_seq: int = 0
    completed_at: int | None = None
    score: float | None = None
    flagged_event_ids: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class LessonProgress:
    user_id: str
    lesson_id: str
    completed_section_count: int = 0
    total_section_count: int = 0
    completed: bool = False
    completed_at: int | None = None

    @property
    def percentage(self) -> float:
        if self.total_section_count <= 0:
            return 0.0
        ratio = self.completed_section_count / self.total_section_count
        return min(100.0, ratio * 100)

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "lesson_id": self.lesson_id,
            "completed_section_count": self.completed_section_count,
            "total_section_count": self.total_section_count,
            "completed": self.completed,
            "completed_at": self.completed_at,
        }

    @staticmethod
    def from_dict(data: dict) -> LessonProgress:
        return LessonProgress(**data)


@dataclass(frozen=True, slots=True)
class CourseProgress:
    """Projection / read model, derived from the section event streams."""

    user_id: str
    course_id: str
    completed_lesson_count: int = 0
    total_lesson_count: int = 0
    completion_percentage: float = 0.0
    completed: bool = False
    completed_at: int | None = None
    time_spent_total: int = 0

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "course_id": self.course_id,
            "completed_lesson_count": self.completed_lesson_count,
            "total_lesson_count": self.total_lesson_count,
            "completion_percentage": self.completion_percentage,
            "completed": self.completed,
            "completed_at": self.completed_at,
            "time_spent_total": self.time_spent_total,
        }

    @staticmethod
    def from_dict(data: dict) -> CourseProgress:
        return CourseProgress(**data)


# ---------------------------------------------------------------------------
# Sync protocol
# ---------------------------------------------------------------------------


class BatchState(str, Enum):
    RECEIVED = "received"
    VALIDATING = "validating"
    INGESTING = "ingesting"
    AGGREGATING = "aggregating"
    ACKNOWLEDGED = "acknowledged"


@dataclass(frozen=True, slots=True)
class SyncBatch:
    batch_id: str
    events: tuple[ProgressEvent, ...]


@dataclass(frozen=True, slots=True)
class RejectedEvent:
    event_id: str
    reason: str
    detail: str = ""


@dataclass(frozen=True, slots=True)
class SyncResult:
    batch_id: str
    accepted: tuple[str, ...] = ()
    duplicates: tuple[str, ...] = ()
    rejected: tuple[RejectedEvent, ...] = ()
    state: BatchState = BatchState.ACKNOWLEDGED
    # True when served from the recent-batch window instead of processed
    replayed: bool = False

    def to_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "accepted": list(self.accepted),
            "duplicates": list(self.duplicates),
            "rejected": [
                {"event_id": r.event_id, "reason": r.reason, "detail": r.detail}
                for r in self.rejected
            ],
            "state": self.state.value,
        }

    @staticmethod
    def from_dict(data: dict, *, replayed: bool = False) -> SyncResult:
        return SyncResult(
            batch_id=data["batch_id"],
            accepted=tuple(data.get("accepted", ())),
            duplicates=tuple(data.get("duplicates", ())),
            rejected=tuple(RejectedEvent(**r) for r in data.get("rejected", ())),
            state=BatchState(data.get("state", BatchState.ACKNOWLEDGED.value)),
            replayed=replayed,
        )


@dataclass(frozen=True, slots=True)
class DeadLetter:
    """A rejected event held for manual review."""

    event: ProgressEvent
    reason: str
    held_at: int
    detail: str = ""
    batch_id: str | None = None


@dataclass(frozen=True, slots=True)
class AppendResult:
    event: ProgressEvent
    duplicate: bool = False

    @property
    def sequence(self) -> int:
        assert self.event.server_sequence is not None
        return self.event.server_sequence


from __future__ import annotations

from typing import Protocol, runtime_checkable

from app.models.progress import CourseProgress, LessonProgress, SectionProgress


@runtime_checkable
class ProjectionRepo(Protocol):
    """Storage for the derived section / lesson / course aggregates.

    Everything here can be dropped and rebuilt from the event store.

    Writers in different processes are not serialized with each other, so
    every put_* is conditional: it stores the row only if it supersedes
    the one already there (see the supersedes_* rules below) and returns
    whether it did.
    """

    async def get_section(
        self, user_id: str, section_id: str
    ) -> SectionProgress | None:
        ...

    async def put_section(self, progress: SectionProgress) -> bool: ...

    async def get_lesson(self, user_id: str, lesson_id: str) -> LessonProgress | None:
        ...

    async def put_lesson(self, progress: LessonProgress) -> bool: ...

    async def get_course(self, user_id: str, course_id: str) -> CourseProgress | None:
        ...

    async def put_course(self, progress: CourseProgress) -> bool: ...

    async def list_courses(self, user_id: str) -> list[CourseProgress]: ...

    async def drop(
        self,
        user_id: str,
        *,
        course_id: str,
        lesson_ids: list[str],
        section_ids: list[str],
    ) -> None: ...


# ---------------------------------------------------------------------------
# Write guards
# ---------------------------------------------------------------------------


def supersedes_section(stored: SectionProgress | None, new: SectionProgress) -> bool:
    """A section row only moves forward along its event stream."""
    return stored is None or new.last_event_seq > stored.last_event_seq


def supersedes_lesson(stored: LessonProgress | None, new: LessonProgress) -> bool:
    """Completion never reverts; counts only grow while the structure holds."""
    if stored is None:
        return True
    if stored.completed and not new.completed:
        return False
    if new.total_section_count != stored.total_section_count:
        return True
    return new.completed_section_count >= stored.completed_section_count


def supersedes_course(stored: CourseProgress | None, new: CourseProgress) -> bool:
    if stored is None:
        return True
    if stored.completed and not new.completed:
        return False
    if new.total_lesson_count != stored.total_lesson_count:
        return True
    return (
        new.completed_lesson_count >= stored.completed_lesson_count
        and new.time_spent_total >= stored.time_spent_total
    )


class InMemoryProjectionRepo:
    def __init__(self) -> None:
        self._sections: dict[tuple[str, str], SectionProgress] = {}
        self._lessons: dict[tuple[str, str], LessonProgress] = {}
        self._courses: dict[tuple[str, str], CourseProgress] = {}

    async def get_section(
        self, user_id: str, section_id: str
    ) -> SectionProgress | None:
        return self._sections.get((user_id, section_id))

    async def put_section(self, progress: SectionProgress) -> bool:
        key = (progress.user_id, progress.section_id)
        if not supersedes_section(self._sections.get(key), progress):
            return False
        self._sections[key] = progress
        return True

    async def get_lesson(self, user_id: str, lesson_id: str) -> LessonProgress | None:
        return self._lessons.get((user_id, lesson_id))

    async def put_lesson(self, progress: LessonProgress) -> bool:
        key = (progress.user_id, progress.lesson_id)
        if not supersedes_lesson(self._lessons.get(key), progress):
            return False
        self._lessons[key] = progress
        return True

    async def get_course(self, user_id: str, course_id: str) -> CourseProgress | None:
        return self._courses.get((user_id, course_id))

    async def put_course(self, progress: CourseProgress) -> bool:
        key = (progress.user_id, progress.course_id)
        if not supersedes_course(self._courses.get(key), progress):
            return False
        self._courses[key] = progress
        return True

    async def list_courses(self, user_id: str) -> list[CourseProgress]:
        courses = [p for (uid, _), p in self._courses.items() if uid == user_id]
        return sorted(courses, key=lambda p: p.course_id)

    async def drop(
        self,
        user_id: str,
        *,
        course_id: str,
        lesson_ids: list[str],
        section_ids: list[str],
    ) -> None:
        for section_id in section_ids:
            self._sections.pop((user_id, section_id), None)
        for lesson_id in lesson_ids:
            self._lessons.pop((user_id, lesson_id), None)
        self._courses.pop((user_id, course_id), None)

    def clear(self) -> None:
        self._sections.clear()
        self._lessons.clear()
        self._courses.clear()

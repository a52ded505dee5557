"""Read-only view of the course → lesson → section hierarchy.

Content is authored and stored by the content service; this service only
needs to resolve a section to its parents, list children for rollups and
look up a lesson's estimated duration for the time-spent ceiling.

A course with no lessons (or a lesson with no sections) still exists:
its rollup is the zero aggregate, not an unknown reference.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from app.models.course import CourseOutline, SectionParents


@runtime_checkable
class ContentHierarchy(Protocol):
    async def get_section_parents(self, section_id: str) -> SectionParents | None: ...
    async def get_lesson_sections(self, lesson_id: str) -> list[str]: ...
    async def get_course_lessons(self, course_id: str) -> list[str]: ...
    async def get_lesson_estimated_duration(self, lesson_id: str) -> int | None: ...
    async def course_exists(self, course_id: str) -> bool: ...
    async def lesson_exists(self, lesson_id: str) -> bool: ...


class InMemoryContentHierarchy:
    def __init__(self) -> None:
        self._parents: dict[str, SectionParents] = {}
        self._lesson_sections: dict[str, list[str]] = {}
        self._course_lessons: dict[str, list[str]] = {}
        self._durations: dict[str, int | None] = {}

    def register(self, outline: CourseOutline) -> None:
        """Add or replace a course's structure."""
        for lesson_id in self._course_lessons.get(outline.course_id, []):
            for section_id in self._lesson_sections.pop(lesson_id, []):
                self._parents.pop(section_id, None)
            self._durations.pop(lesson_id, None)

        self._course_lessons[outline.course_id] = [
            lesson.lesson_id for lesson in outline.lessons
        ]
        for lesson in outline.lessons:
            self._lesson_sections[lesson.lesson_id] = list(lesson.section_ids)
            self._durations[lesson.lesson_id] = lesson.estimated_duration
            for section_id in lesson.section_ids:
                self._parents[section_id] = SectionParents(
                    lesson_id=lesson.lesson_id, course_id=outline.course_id
                )

    def clear(self) -> None:
        self._parents.clear()
        self._lesson_sections.clear()
        self._course_lessons.clear()
        self._durations.clear()

    async def get_section_parents(self, section_id: str) -> SectionParents | None:
        return self._parents.get(section_id)

    async def get_lesson_sections(self, lesson_id: str) -> list[str]:
        return list(self._lesson_sections.get(lesson_id, []))

    async def get_course_lessons(self, course_id: str) -> list[str]:
        return list(self._course_lessons.get(course_id, []))

    async def get_lesson_estimated_duration(self, lesson_id: str) -> int | None:
        return self._durations.get(lesson_id)

    async def course_exists(self, course_id: str) -> bool:
        return course_id in self._course_lessons

    async def lesson_exists(self, lesson_id: str) -> bool:
        return lesson_id in self._lesson_sections


SAMPLE_COURSE = CourseOutline.new(
    course_id="course-intro-python",
    lessons={
        "lesson-variables": ["section-names", "section-types"],
        "lesson-control-flow": ["section-if", "section-loops"],
    },
    estimated_durations={"lesson-variables": 900, "lesson-control-flow": 1200},
)


def seed_sample_course(content: InMemoryContentHierarchy) -> None:
    """Dev convenience: one course with two lessons of two sections each."""
    content.register(SAMPLE_COURSE)

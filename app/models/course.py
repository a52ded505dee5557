from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True, slots=True)
class SectionParents:
    lesson_id: str
    course_id: str


@dataclass(frozen=True, slots=True)
class LessonOutline:
    lesson_id: str
    section_ids: tuple[str, ...]
    estimated_duration: int | None = None  # seconds


@dataclass(frozen=True, slots=True)
class CourseOutline:
    """Course → lesson → section structure as published by the content service."""

    course_id: str
    lessons: tuple[LessonOutline, ...] = field(default_factory=tuple)

    @staticmethod
    def new(
        *,
        course_id: str,
        lessons: dict[str, list[str]],
        estimated_durations: dict[str, int] | None = None,
    ) -> CourseOutline:
        durations = estimated_durations or {}
        return CourseOutline(
            course_id=course_id,
            lessons=tuple(
                LessonOutline(
                    lesson_id=lesson_id,
                    section_ids=tuple(section_ids),
                    estimated_duration=durations.get(lesson_id),
                )
                for lesson_id, section_ids in lessons.items()
            ),
        )

    def parents_of(self, section_id: str) -> SectionParents | None:
        for lesson in self.lessons:
            if section_id in lesson.section_ids:
                return SectionParents(
                    lesson_id=lesson.lesson_id, course_id=self.course_id
                )
        return None

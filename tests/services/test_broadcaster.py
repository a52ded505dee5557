"""Live progress broadcasts (in-memory backend)."""

from __future__ import annotations

import asyncio

from app.models.progress import CourseProgress
from app.services.broadcaster import InMemoryProgressBroadcaster


def _progress(user_id: str = "u1", course_id: str = "C", done: int = 1):
    return CourseProgress(
        user_id=user_id,
        course_id=course_id,
        completed_lesson_count=done,
        total_lesson_count=2,
        completion_percentage=done * 50.0,
    )


def test_subscriber_receives_updates_for_its_course_only() -> None:
    broadcaster = InMemoryProgressBroadcaster()

    async def run() -> list[CourseProgress]:
        received: list[CourseProgress] = []
        stream = broadcaster.subscribe("u1", "C")

        async def consume() -> None:
            async for progress in stream:
                received.append(progress)
                if len(received) == 2:
                    break

        consumer = asyncio.create_task(consume())
        await asyncio.sleep(0)  # let the subscription register

        await broadcaster.publish(_progress(done=1))
        await broadcaster.publish(_progress(user_id="u2"))
        await broadcaster.publish(_progress(course_id="other"))
        await broadcaster.publish(_progress(done=2))
        await asyncio.wait_for(consumer, timeout=1)
        await stream.aclose()
        return received

    received = asyncio.run(run())
    assert [p.completed_lesson_count for p in received] == [1, 2]
    assert {(p.user_id, p.course_id) for p in received} == {("u1", "C")}


def test_closing_stream_unregisters_subscriber() -> None:
    broadcaster = InMemoryProgressBroadcaster()

    async def run() -> tuple[int, int]:
        stream = broadcaster.subscribe("u1", "C")
        pending = asyncio.ensure_future(stream.__anext__())
        await asyncio.sleep(0)
        during = broadcaster.subscriber_count("u1", "C")
        await broadcaster.publish(_progress())
        await pending
        await stream.aclose()
        return during, broadcaster.subscriber_count("u1", "C")

    assert asyncio.run(run()) == (1, 0)


def test_publish_without_subscribers_is_noop() -> None:
    asyncio.run(InMemoryProgressBroadcaster().publish(_progress()))


def test_subscription_is_registered_before_first_read() -> None:
    broadcaster = InMemoryProgressBroadcaster()

    async def run() -> tuple[int, CourseProgress]:
        async with broadcaster.subscription("u1", "C") as updates:
            registered = broadcaster.subscriber_count("u1", "C")
            # Published before anyone iterates, as in snapshot-then-stream
            await broadcaster.publish(_progress(done=2))
            update = await asyncio.wait_for(updates.__anext__(), timeout=1)
        return registered, update

    registered, update = asyncio.run(run())
    assert registered == 1
    assert update.completed_lesson_count == 2
    assert broadcaster.subscriber_count("u1", "C") == 0

from __future__ import annotations

from typing import Protocol, runtime_checkable

from app.models.progress import DeadLetter


@runtime_checkable
class DeadLetterRepo(Protocol):
    async def add(self, letter: DeadLetter) -> None:
        """Hold a rejected event.  Re-adding the same event_id is a no-op."""
        ...

    async def list(
        self, user_id: str | None = None, limit: int = 100
    ) -> list[DeadLetter]:
        """Oldest first."""
        ...

    async def discard(self, event_id: str) -> bool:
        """Remove a held event; False when it wasn't there."""
        ...


class InMemoryDeadLetterRepo:
    def __init__(self) -> None:
        self._by_event_id: dict[str, DeadLetter] = {}

    async def add(self, letter: DeadLetter) -> None:
        self._by_event_id.setdefault(letter.event.event_id, letter)

    async def list(
        self, user_id: str | None = None, limit: int = 100
    ) -> list[DeadLetter]:
        letters = [
            letter
            for letter in self._by_event_id.values()
            if user_id is None or letter.event.user_id == user_id
        ]
        letters.sort(key=lambda letter: letter.held_at)
        return letters[:limit]

    async def discard(self, event_id: str) -> bool:
        return self._by_event_id.pop(event_id, None) is not None

    def clear(self) -> None:
        self._by_event_id.clear()

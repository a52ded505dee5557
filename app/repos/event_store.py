"""Append-only store of section-level progress events.

Every event belongs to exactly one stream, keyed by (user_id, section_id).
The store assigns each accepted event the next sequence number in its
stream (1, 2, 3, ...).  That sequence is the only ordering authority:
client timestamps come from device clocks and are never used to order
anything.

append() is idempotent on event_id so clients can deliver at-least-once:
re-appending a known event returns the original sequence and flags the
result as a duplicate.  Re-using an event_id for different content is a
client bug and raises EventIdConflict.
"""

from __future__ import annotations

import dataclasses
from typing import Protocol, runtime_checkable

from app.core.clock import Clock, utc_now
from app.core.errors import EventIdConflict
from app.models.progress import AppendResult, ProgressEvent


@runtime_checkable
class EventStore(Protocol):
    async def append(self, event: ProgressEvent) -> AppendResult:
        """Append an event; returns the stored event with its sequence.

        Raises StoreUnavailable on storage failure (safe to retry) and
        EventIdConflict when event_id is already bound to other content.
        """
        ...

    async def read_since(
        self, user_id: str, section_id: str, since_seq: int = 0
    ) -> list[ProgressEvent]:
        """Events of one stream with server_sequence > since_seq, in order."""
        ...


class InMemoryEventStore:
    """In-memory event store for tests and local dev.

    Single-process only; the Pg store provides the same guarantees across
    API instances.
    """

    def __init__(self, clock: Clock = utc_now) -> None:
        self._clock = clock
        self._streams: dict[tuple[str, str], list[ProgressEvent]] = {}
        self._by_event_id: dict[str, ProgressEvent] = {}

    async def append(self, event: ProgressEvent) -> AppendResult:
        existing = self._by_event_id.get(event.event_id)
        if existing is not None:
            if existing.fingerprint() != event.fingerprint():
                raise EventIdConflict(
                    f"event_id {event.event_id} already recorded with different content"
                )
            return AppendResult(event=existing, duplicate=True)

        # No await between the lookup above and the insert below, so two
        # coroutines can't both pass the duplicate check.
        stream = self._streams.setdefault((event.user_id, event.section_id), [])
        stored = dataclasses.replace(
            event,
            server_sequence=len(stream) + 1,
            ingested_at=self._clock(),
        )
        stream.append(stored)
        self._by_event_id[stored.event_id] = stored
        return AppendResult(event=stored)

    async def read_since(
        self, user_id: str, section_id: str, since_seq: int = 0
    ) -> list[ProgressEvent]:
        stream = self._streams.get((user_id, section_id), [])
        # Sequences are dense and 1-based, so the slice start is since_seq
        return list(stream[max(since_seq, 0) :])

    def clear(self) -> None:
        self._streams.clear()
        self._by_event_id.clear()

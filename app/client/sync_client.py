"""Device-side sync client: offline queue + POST /v1/progress/sync.

record() always writes to the local queue first, connected or not.
flush() pushes queued batches until the queue is empty or the server
cannot be reached.

OUTCOMES OF ONE SUBMISSION
--------------------------
  2xx               acknowledged; the batch's entries become purgeable
  timeout / network unknown outcome; the batch stays in flight and the
  error / 5xx       next flush() resubmits it with the same batch_id
  other 4xx         the request itself is wrong (bad token, invalid
                    payload); raised to the caller, batch stays in flight

Per-event rejections (unknown section, clock skew) arrive inside a 2xx
result.  They are the server's final answer for those events, so the
batch is still acknowledged.
"""

from __future__ import annotations

import logging

import httpx

from app.client.offline_queue import OfflineMutationQueue
from app.models.progress import ProgressEvent, SyncBatch, SyncResult

logger = logging.getLogger(__name__)

SYNC_PATH = "/v1/progress/sync"


class SyncClient:
    def __init__(
        self,
        http: httpx.Client,
        queue: OfflineMutationQueue,
        *,
        access_token: str,
    ) -> None:
        self._http = http
        self._queue = queue
        self._headers = {"Authorization": f"Bearer {access_token}"}

    @property
    def queue(self) -> OfflineMutationQueue:
        return self._queue

    def record(self, event: ProgressEvent) -> int:
        """Queue an event locally; returns its local sequence number."""
        return self._queue.enqueue(event)

    def flush(self) -> list[SyncResult]:
        """Submit queued batches until drained or the outcome is unknown."""
        results: list[SyncResult] = []
        while (batch := self._queue.drain()) is not None:
            result = self._submit(batch)
            if result is None:
                break
            self._queue.acknowledge(batch.batch_id)
            results.append(result)
            if result.rejected:
                logger.warning(
                    "Server rejected %d events in batch_id=%s",
                    len(result.rejected),
                    batch.batch_id,
                )
        return results

    def _submit(self, batch: SyncBatch) -> SyncResult | None:
        body = {
            "batch_id": batch.batch_id,
            "events": [_event_body(event) for event in batch.events],
        }
        try:
            response = self._http.post(SYNC_PATH, json=body, headers=self._headers)
        except httpx.TransportError as e:
            # Includes timeouts: the server may or may not have applied it
            logger.warning(
                "Sync outcome unknown batch_id=%s error=%s", batch.batch_id, e
            )
            return None

        if response.status_code >= 500:
            logger.warning(
                "Sync outcome unknown batch_id=%s status=%d",
                batch.batch_id,
                response.status_code,
            )
            return None
        response.raise_for_status()

        data = response.json()
        logger.info(
            "Batch acknowledged batch_id=%s accepted=%d duplicates=%d replayed=%s",
            batch.batch_id,
            len(data["accepted"]),
            len(data["duplicates"]),
            data.get("replayed", False),
        )
        return SyncResult.from_dict(data, replayed=data.get("replayed", False))


def _event_body(event: ProgressEvent) -> dict:
    return {
        "event_id": event.event_id,
        "user_id": event.user_id,
        "section_id": event.section_id,
        "lesson_id": event.lesson_id,
        "course_id": event.course_id,
        "kind": event.kind.value,
        "value": event.value,
        "client_timestamp": event.client_timestamp,
    }

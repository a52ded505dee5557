"""Sync reconciler: turns a client's batch into appended events.

BATCH LIFECYCLE
---------------
  received → validating → ingesting → aggregating → acknowledged

  received     Look the batch_id up in the recent-batch window.  A hit
               returns the stored result unchanged (replayed=True).  A
               batch already being processed by this process is awaited,
               not started twice.
  validating   Per event: caller owns it, section/lesson/course exist and
               agree with the content hierarchy, timestamp not too far in
               the future.  Failures are rejected one by one and held in
               the dead-letter set; the rest of the batch carries on.
  ingesting    Append each valid event.  StoreUnavailable is retried with
               exponential backoff; event_id reuse with different content
               is rejected.
  aggregating  Recompute once per distinct section touched.  Duplicates
               count as touched: if an earlier attempt crashed between
               append and recompute, the retry still converges.
  acknowledged Result stored in the window and returned.

If the store stays down after every retry, StoreUnavailable propagates
and nothing is recorded in the window, so the client's resubmission is
processed for real.  Partial success is the normal outcome; there is no
batch-level rollback.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

from app.core.clock import Clock, utc_now
from app.core.config import SETTINGS
from app.core.errors import (
    REJECTION_ERRORS,
    ClockSkew,
    ProgressError,
    StoreUnavailable,
    UnknownReference,
    UserMismatch,
)
from app.core.metrics import (
    STORE_RETRIES,
    SYNC_BATCH_DURATION,
    SYNC_BATCHES,
    SYNC_EVENTS,
    SYNC_REJECTIONS,
)
from app.middleware.request_context import batch_id_var
from app.models.progress import (
    BatchState,
    DeadLetter,
    ProgressEvent,
    RejectedEvent,
    SyncBatch,
    SyncResult,
)
from app.repos.content_repo import ContentHierarchy
from app.repos.dead_letter_repo import DeadLetterRepo
from app.repos.event_store import EventStore
from app.services.aggregator import ProgressAggregator
from app.services.batch_ledger import SyncBatchLedger

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RETRY_MAX_DELAY = 2.0


class SyncReconciler:
    def __init__(
        self,
        store: EventStore,
        aggregator: ProgressAggregator,
        content: ContentHierarchy,
        dead_letters: DeadLetterRepo,
        ledger: SyncBatchLedger,
        *,
        clock: Clock = utc_now,
        skew_tolerance: int = SETTINGS.clock_skew_tolerance_seconds,
        retry_attempts: int = SETTINGS.store_retry_attempts,
        retry_base_delay: float = 0.05,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._aggregator = aggregator
        self._content = content
        self._dead_letters = dead_letters
        self._ledger = ledger
        self._clock = clock
        self._skew_tolerance = skew_tolerance
        self._retry_attempts = max(retry_attempts, 1)
        self._retry_base_delay = retry_base_delay
        self._sleep = sleep
        self._in_flight: dict[tuple[str, str], asyncio.Task[SyncResult]] = {}

    async def ingest(self, user_id: str, batch: SyncBatch) -> SyncResult:
        replay = await self._ledger.get(user_id, batch.batch_id)
        if replay is not None:
            SYNC_BATCHES.labels(result="replayed").inc()
            logger.info(
                "Sync batch replayed from window batch_id=%s user_id=%s",
                batch.batch_id,
                user_id,
            )
            return replay

        key = (user_id, batch.batch_id)
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.create_task(self._process(user_id, batch))
            self._in_flight[key] = task
            task.add_done_callback(lambda t: self._forget(key, t))
        else:
            logger.info(
                "Sync batch already in flight, awaiting batch_id=%s", batch.batch_id
            )

        # Shielded: a caller that gives up (HTTP timeout) must not cancel
        # the ingest itself.
        return await asyncio.shield(task)

    def _forget(self, key: tuple[str, str], task: asyncio.Task[SyncResult]) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        if not task.cancelled() and task.exception() is not None:
            # Retrieved here so an abandoned batch doesn't log "never retrieved"
            logger.debug("Sync batch task ended with %r", task.exception())

    async def _process(self, user_id: str, batch: SyncBatch) -> SyncResult:
        batch_id_var.set(batch.batch_id)
        started = time.perf_counter()
        state = BatchState.RECEIVED
        logger.info(
            "Sync batch %s user_id=%s events=%d",
            state.value,
            user_id,
            len(batch.events),
        )

        accepted: list[str] = []
        duplicates: list[str] = []
        rejected: list[RejectedEvent] = []
        touched: dict[str, None] = {}

        try:
            state = BatchState.VALIDATING
            logger.debug("Sync batch %s", state.value)
            valid: list[ProgressEvent] = []
            for event in batch.events:
                try:
                    await self._validate(user_id, event)
                except REJECTION_ERRORS as exc:
                    rejected.append(await self._reject(event, exc, batch.batch_id))
                    continue
                valid.append(event)

            state = BatchState.INGESTING
            logger.debug("Sync batch %s events=%d", state.value, len(valid))
            for event in valid:
                try:
                    outcome = await self._with_retry(
                        lambda e=event: self._store.append(e)
                    )
                except REJECTION_ERRORS as exc:
                    rejected.append(await self._reject(event, exc, batch.batch_id))
                    continue
                if outcome.duplicate:
                    duplicates.append(event.event_id)
                    SYNC_EVENTS.labels(outcome="duplicate").inc()
                else:
                    accepted.append(event.event_id)
                    SYNC_EVENTS.labels(outcome="accepted").inc()
                touched.setdefault(event.section_id)

            state = BatchState.AGGREGATING
            logger.debug("Sync batch %s sections=%d", state.value, len(touched))
            for section_id in touched:
                await self._with_retry(
                    lambda s=section_id: self._aggregator.recompute(user_id, s)
                )
        except StoreUnavailable:
            SYNC_BATCHES.labels(result="failed").inc()
            logger.error(
                "Sync batch failed in state=%s, store unavailable after %d attempts",
                state.value,
                self._retry_attempts,
            )
            raise
        finally:
            SYNC_BATCH_DURATION.observe(time.perf_counter() - started)

        result = SyncResult(
            batch_id=batch.batch_id,
            accepted=tuple(accepted),
            duplicates=tuple(duplicates),
            rejected=tuple(rejected),
            state=BatchState.ACKNOWLEDGED,
        )
        await self._ledger.record(user_id, result)
        SYNC_BATCHES.labels(result="acknowledged").inc()
        logger.info(
            "Sync batch %s accepted=%d duplicates=%d rejected=%d",
            result.state.value,
            len(accepted),
            len(duplicates),
            len(rejected),
        )
        return result

    async def _validate(self, user_id: str, event: ProgressEvent) -> None:
        if event.user_id != user_id:
            raise UserMismatch(f"event belongs to user {event.user_id}")

        parents = await self._with_retry(
            lambda: self._content.get_section_parents(event.section_id)
        )
        if parents is None:
            raise UnknownReference(f"unknown section {event.section_id}")
        if parents.lesson_id != event.lesson_id or parents.course_id != event.course_id:
            raise UnknownReference(
                f"section {event.section_id} belongs to lesson {parents.lesson_id} "
                f"in course {parents.course_id}"
            )

        now = self._clock()
        if event.client_timestamp > now + self._skew_tolerance:
            raise ClockSkew(
                f"client_timestamp {event.client_timestamp} is "
                f"{event.client_timestamp - now}s ahead of server time"
            )

    async def _reject(
        self, event: ProgressEvent, exc: ProgressError, batch_id: str
    ) -> RejectedEvent:
        SYNC_EVENTS.labels(outcome="rejected").inc()
        SYNC_REJECTIONS.labels(reason=exc.code).inc()
        logger.warning(
            "Event rejected and held for review event_id=%s reason=%s: %s",
            event.event_id,
            exc.code,
            exc.message,
            extra={"user_id": event.user_id, "section_id": event.section_id},
        )
        letter = DeadLetter(
            event=event,
            reason=exc.code,
            held_at=self._clock(),
            detail=exc.message,
            batch_id=batch_id,
        )
        await self._with_retry(lambda: self._dead_letters.add(letter))
        return RejectedEvent(
            event_id=event.event_id, reason=exc.code, detail=exc.message
        )

    async def _with_retry(self, operation: Callable[[], Awaitable[T]]) -> T:
        attempt = 1
        while True:
            try:
                return await operation()
            except StoreUnavailable as exc:
                if attempt >= self._retry_attempts:
                    raise
                delay = min(
                    _RETRY_MAX_DELAY, self._retry_base_delay * 2 ** (attempt - 1)
                )
                STORE_RETRIES.inc()
                logger.warning(
                    "Store unavailable, retrying attempt=%d delay=%.2fs: %s",
                    attempt,
                    delay,
                    exc.message,
                )
                await self._sleep(delay)
                attempt += 1

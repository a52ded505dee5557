"""Recent-batch window for sync replay.

A client that never saw the response to a sync (timeout, dropped
connection) resubmits the same batch_id.  If the first attempt finished,
we hand back the stored SyncResult instead of re-running the batch.  The
event store's per-event idempotency would make a re-run safe anyway;
the ledger keeps it cheap and keeps the response identical.

The window is bounded two ways:
  - Redis: each entry expires after SYNC_BATCH_WINDOW_SECONDS
  - in-memory: at most SYNC_BATCH_WINDOW_SIZE entries, oldest evicted

Only acknowledged results are recorded.  A batch that failed with
StoreUnavailable leaves no entry, so its resubmission is processed for
real.
"""

from __future__ import annotations

import json
import logging
from collections import OrderedDict
from typing import Protocol, runtime_checkable

from redis.exceptions import RedisError

from app.core.config import SETTINGS
from app.db.redis import redis_pool
from app.models.progress import SyncResult

logger = logging.getLogger(__name__)


@runtime_checkable
class SyncBatchLedger(Protocol):
    async def get(self, user_id: str, batch_id: str) -> SyncResult | None: ...
    async def record(self, user_id: str, result: SyncResult) -> None: ...


class InMemorySyncBatchLedger:
    def __init__(self, max_entries: int = SETTINGS.sync_batch_window_size) -> None:
        self._max_entries = max_entries
        self._entries: OrderedDict[tuple[str, str], dict] = OrderedDict()

    async def get(self, user_id: str, batch_id: str) -> SyncResult | None:
        data = self._entries.get((user_id, batch_id))
        if data is None:
            return None
        return SyncResult.from_dict(data, replayed=True)

    async def record(self, user_id: str, result: SyncResult) -> None:
        key = (user_id, result.batch_id)
        self._entries[key] = result.to_dict()
        self._entries.move_to_end(key)
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()


class RedisSyncBatchLedger:
    """Ledger shared by every API instance; entries expire with SETEX."""

    _PREFIX = "syncbatch:"

    def __init__(
        self, redis_client, ttl_seconds: int = SETTINGS.sync_batch_window_seconds
    ) -> None:
        self._redis = redis_client
        self._ttl = ttl_seconds

    def _key(self, user_id: str, batch_id: str) -> str:
        # Scoped by user so one user can't read another's result by guessing ids
        return f"{self._PREFIX}{user_id}:{batch_id}"

    async def get(self, user_id: str, batch_id: str) -> SyncResult | None:
        try:
            raw = await self._redis.get(self._key(user_id, batch_id))
        except RedisError:
            # Without the window the batch is re-run; appends are idempotent
            logger.warning("Batch ledger lookup failed batch_id=%s", batch_id)
            return None
        if raw is None:
            return None
        return SyncResult.from_dict(json.loads(raw), replayed=True)

    async def record(self, user_id: str, result: SyncResult) -> None:
        try:
            await self._redis.setex(
                self._key(user_id, result.batch_id),
                self._ttl,
                json.dumps(result.to_dict()),
            )
        except RedisError:
            logger.warning("Batch ledger write failed batch_id=%s", result.batch_id)


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

if redis_pool is not None:
    batch_ledger: SyncBatchLedger = RedisSyncBatchLedger(redis_pool)
else:
    batch_ledger = InMemorySyncBatchLedger()

"""Prometheus metrics inventory for progress-sync-service.

Every metric the service exposes is declared here; the modules that own
the behavior import and increment them at the point of action.

Counters only go up (use rate() in PromQL), gauges go up and down,
histograms bucket observations so Prometheus can derive percentiles.
The sync-specific metrics are what an on-call engineer reads first:

  progress_sync_events_total{outcome="rejected"} rising
      → clients are sending references the content service doesn't know,
        or device clocks are off (see progress_sync_rejections_total).

  progress_aggregation_inconsistencies_total > 0
      → a rollup invariant was violated.  Always a bug; the previous
        aggregate was kept.

  progress_cache_invalidations_total{result="deferred"} rising
      → Redis is flaky; invalidations are going through the retry queue.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# ---------------------------------------------------------------------------
# HTTP metrics (populated by the MetricsMiddleware)
# ---------------------------------------------------------------------------

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests by method, endpoint, and status code",
    ["method", "endpoint", "status_code"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

ACTIVE_REQUESTS = Gauge(
    "http_active_requests",
    "Number of HTTP requests currently being processed",
)

# ---------------------------------------------------------------------------
# Sync reconciler
# ---------------------------------------------------------------------------

SYNC_BATCHES = Counter(
    "progress_sync_batches_total",
    "Sync batches handled, by result",
    ["result"],  # "acknowledged" | "replayed" | "failed"
)

SYNC_EVENTS = Counter(
    "progress_sync_events_total",
    "Progress events seen by the reconciler, by outcome",
    ["outcome"],  # "accepted" | "duplicate" | "rejected"
)

SYNC_REJECTIONS = Counter(
    "progress_sync_rejections_total",
    "Rejected progress events by reason",
    ["reason"],
)

SYNC_BATCH_DURATION = Histogram(
    "progress_sync_batch_duration_seconds",
    "Wall-clock time to ingest one sync batch",
    # Offline bursts can carry hundreds of events; allow a longer tail
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

STORE_RETRIES = Counter(
    "progress_store_retries_total",
    "Event store operations retried after StoreUnavailable",
)

# ---------------------------------------------------------------------------
# Aggregator
# ---------------------------------------------------------------------------

AGGREGATION_RECOMPUTES = Counter(
    "progress_aggregation_recomputes_total",
    "Aggregate recomputations by level",
    ["level"],  # "section" | "lesson" | "course"
)

AGGREGATION_INCONSISTENCIES = Counter(
    "progress_aggregation_inconsistencies_total",
    "Invariant violations detected during recompute (previous aggregate kept)",
    ["level"],
)

TIME_SPENT_FLAGGED = Counter(
    "progress_time_spent_flagged_total",
    "Time-spent deltas excluded from totals and flagged for audit",
)

# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------

CACHE_OPERATIONS = Counter(
    "cache_operations_total",
    "Cache get operations by result",
    ["operation"],  # "hit" or "miss"
)

CACHE_INVALIDATIONS = Counter(
    "progress_cache_invalidations_total",
    "Cache invalidations by result",
    ["result"],  # "ok" | "deferred" | "retried" | "abandoned"
)

# ---------------------------------------------------------------------------
# Background work
# ---------------------------------------------------------------------------

QUEUE_DEPTH = Gauge(
    "task_queue_depth",
    "Number of tasks waiting in a queue",
    ["queue_name"],  # "cache_invalidation", "aggregate_rebuild"
)

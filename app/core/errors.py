"""Error taxonomy for progress tracking and sync.

Two families:

  Transient — StoreUnavailable.  Retried locally with backoff and never
  reported as data loss.  Safe to retry because appends are idempotent
  on event_id.

  Data problems — UnknownReference, ClockSkew, EventIdConflict,
  UserMismatch.  Raised while validating/appending a single event and
  turned into a `rejected` entry on the batch result by the reconciler.
  They never fail the whole batch.

QueueFull is client-side only.  AggregationInconsistency is a bug signal:
the aggregator logs it and keeps the previous aggregate.
"""

from __future__ import annotations


class ProgressError(Exception):
    """Base class; `code` is the stable identifier surfaced to clients."""

    code = "progress_error"

    def __init__(self, message: str = "") -> None:
        self.message = message or self.code
        super().__init__(self.message)


class StoreUnavailable(ProgressError):
    code = "StoreUnavailable"


class QueueFull(ProgressError):
    code = "QueueFull"


class UnknownReference(ProgressError):
    code = "UnknownReference"


class ClockSkew(ProgressError):
    code = "ClockSkew"


class EventIdConflict(ProgressError):
    """event_id re-used with a different payload."""

    code = "EventIdConflict"


class UserMismatch(ProgressError):
    """Event claims a user other than the authenticated caller."""

    code = "UserMismatch"


class AggregationInconsistency(ProgressError):
    code = "AggregationInconsistency"


# Reasons that hold an event in the dead-letter set
REJECTION_ERRORS: tuple[type[ProgressError], ...] = (
    UnknownReference,
    ClockSkew,
    EventIdConflict,
    UserMismatch,
)

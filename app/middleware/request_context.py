"""Request context middleware and log correlation.

Every HTTP request gets an ID (X-Request-ID, echoed or generated), and
every sync batch carries the client's batch_id.  Both are stored in
ContextVars so that any log line emitted while serving them, from any
module, can be stamped without passing IDs through every call:

  INFO  [req-abc] Sync batch received events=12           batch_id=b-7
  WARN  [req-abc] Event rejected reason=UnknownReference  batch_id=b-7
  INFO  [req-abc] Sync batch acknowledged accepted=11     batch_id=b-7

ContextVars (not thread-locals) because concurrent requests share one
thread under asyncio; each task sees its own copy.  A background task
spawned for ingest inherits a copy of the request's context, so
batch-level lines keep the request_id even after the HTTP response was
sent (e.g. after a 504).
"""

from __future__ import annotations

import logging
import time
import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

request_id_var: ContextVar[str] = ContextVar("request_id", default="-")
batch_id_var: ContextVar[str] = ContextVar("batch_id", default="-")


class RequestContextFilter(logging.Filter):
    """Copies request_id / batch_id from the ContextVars onto each record.

    A filter (not a formatter) because formatters can only read fields
    that already exist on the LogRecord.  setup_logging() installs it on
    the output handler so records propagated from child loggers get it.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            record.request_id = request_id_var.get("-")  # type: ignore[attr-defined]
        if not hasattr(record, "batch_id"):
            record.batch_id = batch_id_var.get("-")  # type: ignore[attr-defined]
        return True


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Assigns a request ID, times the request and logs one summary line."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        req_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request_id_var.set(req_id)

        start = time.monotonic()
        response = await call_next(request)
        duration_ms = round((time.monotonic() - start) * 1000, 1)

        # Extra fields become top-level keys under the JSON formatter
        logger.info(
            "%s %s → %d (%.1fms)",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            extra={
                "request_id": req_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
            },
        )

        response.headers["X-Request-ID"] = req_id
        return response

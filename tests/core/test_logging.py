from __future__ import annotations

import logging

from app.core.logging import _ContainerFormatter, setup_logging
from app.middleware.request_context import (
    RequestContextFilter,
    batch_id_var,
    request_id_var,
)


def _record(level: int = logging.INFO, msg: str = "hello") -> logging.LogRecord:
    return logging.LogRecord(
        name="test",
        level=level,
        pathname="sync.py",
        lineno=7,
        msg=msg,
        args=(),
        exc_info=None,
    )


def test_setup_logging_sets_root_level() -> None:
    setup_logging("debug")
    assert logging.getLogger().level == logging.DEBUG

    setup_logging("warning")
    assert logging.getLogger().level == logging.WARNING


def test_setup_logging_defaults_to_info_for_unknown_level() -> None:
    setup_logging("nonexistent")
    assert logging.getLogger().level == logging.INFO


def test_setup_logging_quiets_third_party_at_debug() -> None:
    setup_logging("debug")
    assert logging.getLogger("uvicorn").level == logging.WARNING
    assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING


def test_setup_logging_installs_context_filter_on_handler() -> None:
    setup_logging("info")
    handler = logging.getLogger().handlers[-1]
    assert any(isinstance(f, RequestContextFilter) for f in handler.filters)


def test_formatter_excludes_location_for_info() -> None:
    output = _ContainerFormatter().format(_record())
    assert "hello" in output
    assert "[sync.py:" not in output


def test_formatter_includes_location_for_warning() -> None:
    output = _ContainerFormatter().format(_record(logging.WARNING, "skewed"))
    assert "skewed" in output
    assert "[sync.py:7]" in output


# ---- RequestContextFilter ----


def test_filter_defaults_outside_request() -> None:
    record = _record()
    assert RequestContextFilter().filter(record) is True
    assert record.request_id == "-"  # type: ignore[attr-defined]
    assert record.batch_id == "-"  # type: ignore[attr-defined]


def test_filter_stamps_current_request_and_batch() -> None:
    req_token = request_id_var.set("req-1")
    batch_token = batch_id_var.set("batch-9")
    try:
        record = _record()
        RequestContextFilter().filter(record)
    finally:
        batch_id_var.reset(batch_token)
        request_id_var.reset(req_token)
    assert record.request_id == "req-1"  # type: ignore[attr-defined]
    assert record.batch_id == "batch-9"  # type: ignore[attr-defined]


def test_filter_keeps_explicit_extra() -> None:
    record = _record()
    record.request_id = "from-extra"  # type: ignore[attr-defined]
    RequestContextFilter().filter(record)
    assert record.request_id == "from-extra"  # type: ignore[attr-defined]

"""
wark — unit tests for observability logging

File: tests/unit/observability/test_logging.py

Purpose
- Validate structured JSON logging with redaction, correlation metadata, and queue-backed
  reliability.

What this test file should cover
- JSON line validity and redaction guarantees.
- Correlation field propagation.
- structlog events landing in the same sinks.
- Multi-threaded logging stability and queue drain on shutdown.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import threading
from typing import TYPE_CHECKING
from uuid import uuid4

import pytest
import structlog

from wark.observability.logging import (
    LoggingConfig,
    configure_structlog,
    correlation_scope,
    default_log_redactor,
    get_active_logging_handle,
    get_correlation_context,
    setup_logging,
    setup_structured_logging,
    shutdown_logging,
)

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path


@pytest.fixture(autouse=True)
def _cleanup_logging() -> Iterator[None]:
    yield
    shutdown_logging()


def _logger_name() -> str:
    return f"wark.tests.logging.{uuid4().hex}"


def _file_config(tmp_path: Path, session_id: str, **overrides: object) -> LoggingConfig:
    fields: dict[str, object] = {
        "session_id": session_id,
        "base_log_dir": tmp_path,
        "logger_name": _logger_name(),
        "level": "INFO",
        "log_to_file": True,
        "log_to_stderr": False,
    }
    fields.update(overrides)
    return LoggingConfig(**fields)  # type: ignore[arg-type]


def _read_json_lines(path: Path) -> list[dict[str, object]]:
    lines = path.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines]


def test_json_logging_redacts_secrets_and_preserves_correlation_fields(tmp_path: Path) -> None:
    handle = setup_structured_logging(_file_config(tmp_path, "sess-redaction"))
    logger = handle.logger

    with correlation_scope(ticket_key="PROJ-4", worker_id="agent-1"):
        logger.info(
            "claim granted token=tok-FAKE and api_key=sk-FAKE123456789012345",
            extra={"nested": {"password": "hunter2", "safe": "ok"}},
        )

    shutdown_logging(handle)

    assert handle.log_path is not None
    parsed = _read_json_lines(handle.log_path)
    assert len(parsed) == 1
    first = parsed[0]
    assert first["session_id"] == "sess-redaction"
    assert first["ticket_key"] == "PROJ-4"
    assert first["worker_id"] == "agent-1"
    assert first["level"] == "INFO"
    assert first["fields"] == {"nested": {"password": "***REDACTED***", "safe": "ok"}}

    line = handle.log_path.read_text(encoding="utf-8")
    assert "tok-FAKE" not in line
    assert "sk-FAKE" not in line
    assert "hunter2" not in line


def test_correlation_scope_restores_previous_fields() -> None:
    with correlation_scope(operation="ticket.claim", ticket_key="PROJ-1"):
        with correlation_scope(ticket_key="PROJ-2", operation=None):
            assert get_correlation_context() == {"ticket_key": "PROJ-2"}
        assert get_correlation_context() == {
            "operation": "ticket.claim",
            "ticket_key": "PROJ-1",
        }
    assert get_correlation_context() == {}

    with pytest.raises(ValueError, match="correlation value"):
        with correlation_scope(ticket_key="  "):
            pass


def test_setup_logging_wrapper_uses_observability_config(tmp_path: Path) -> None:
    handle = setup_logging(
        {"log_level": "INFO", "log_to_file": True, "redact_secrets": True},
        session_id="sess-wrapper",
        log_dir=tmp_path,
    )
    logging.getLogger("wark.service").info("hello", extra={"token": "t-123"})
    shutdown_logging()

    assert handle.log_path == tmp_path / "wark.jsonl"
    content = handle.log_path.read_text(encoding="utf-8")
    assert "hello" in content
    assert "t-123" not in content
    assert get_active_logging_handle() is None


def test_setup_logging_can_disable_redaction(tmp_path: Path) -> None:
    handle = setup_logging(
        {"log_level": "WARNING", "log_to_file": True, "redact_secrets": False},
        session_id="sess-plain",
        log_dir=tmp_path,
        verbose=True,
    )
    logging.getLogger("wark").debug("raw", extra={"token": "t-456"})
    shutdown_logging()

    assert handle.log_path is not None
    assert "t-456" in handle.log_path.read_text(encoding="utf-8")


def test_structlog_events_are_routed_through_the_same_sinks(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(
        _file_config(tmp_path, "sess-structlog", logger_name=logger_name)
    )
    configure_structlog()

    log = structlog.get_logger(logger_name)
    log.info("lease.expired", ticket="PROJ-9", escalated=True, secret_ref="s3cr3t")
    log.debug("dropped by level filter")
    shutdown_logging(handle)

    assert handle.log_path is not None
    parsed = _read_json_lines(handle.log_path)
    assert len(parsed) == 1
    event = parsed[0]
    assert event["message"] == "lease.expired"
    fields = event["fields"]
    assert isinstance(fields, dict)
    assert fields["ticket"] == "PROJ-9"
    assert fields["escalated"] is True
    assert fields["secret_ref"] == "***REDACTED***"
    assert "event_time" in fields


def test_default_redactor_handles_bearer_tokens_and_nested_lists() -> None:
    redacted = default_log_redactor(
        {"headers": ["sent Bearer abc.def", "ok"], "credentials": {"a": 1}}
    )
    assert redacted == {
        "headers": ["sent Bearer ***REDACTED***", "ok"],
        "credentials": "***REDACTED***",
    }


def test_multithreaded_logging_produces_valid_json_lines(tmp_path: Path) -> None:
    handle = setup_structured_logging(_file_config(tmp_path, "sess-threaded", queue_size=4096))
    logger = handle.logger

    total_threads = 8
    per_thread = 40

    def worker(thread_idx: int) -> None:
        with correlation_scope(worker_id=f"agent-{thread_idx}"):
            for i in range(per_thread):
                logger.info(
                    f"thread={thread_idx} index={i} token=tok-secret-{thread_idx}-{i}",
                    extra={"api_key": f"sk-FAKE-{thread_idx}-{i}"},
                )

    threads = [threading.Thread(target=worker, args=(idx,)) for idx in range(total_threads)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    shutdown_logging(handle)

    assert handle.log_path is not None
    lines = handle.log_path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == total_threads * per_thread
    for line in lines:
        parsed = json.loads(line)
        assert str(parsed["worker_id"]).startswith("agent-")
        assert "tok-secret" not in line
        assert "sk-FAKE" not in line


def test_queue_handler_non_blocking_and_shutdown_flushes(tmp_path: Path) -> None:
    handle = setup_structured_logging(_file_config(tmp_path, "sess-flush", queue_size=10_000))
    logger = handle.logger

    queue_handlers = [h for h in logger.handlers if isinstance(h, logging.handlers.QueueHandler)]
    assert queue_handlers, "expected queue-backed non-blocking logging"

    expected = 300
    for i in range(expected):
        logger.info("message %s", i)

    shutdown_logging(handle)
    shutdown_logging(handle)

    assert handle.is_shutdown
    assert handle.log_path is not None
    lines = handle.log_path.read_text(encoding="utf-8").splitlines()
    assert handle.dropped_records == 0
    assert len(lines) == expected


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"log_filename": "sub/wark.jsonl"}, "path separators"),
        ({"queue_size": 0}, "queue_size"),
        ({"level": "CHATTY"}, "unsupported logging level"),
    ],
)
def test_invalid_logging_config_is_rejected(
    tmp_path: Path, overrides: dict[str, object], message: str
) -> None:
    with pytest.raises(ValueError, match=message):
        setup_structured_logging(_file_config(tmp_path, "sess-bad", **overrides))

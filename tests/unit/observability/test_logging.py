"""
constraint-framework — unit tests for observability logging

File: tests/unit/observability/test_logging.py

Purpose
- Validate structured JSON logging: redaction, correlation metadata, queue-backed delivery.

What this test file should cover
- JSON line validity and redaction guarantees.
- Correlation field propagation.
- structlog events routed into the JSON-lines sink with their keyword fields.
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

from constraint_framework.observability.logging import (
    LoggingConfig,
    correlation_scope,
    default_log_redactor,
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
    structlog.reset_defaults()


def _logger_name() -> str:
    return f"constraint_framework.tests.logging.{uuid4().hex}"


def _read_json_lines(path: Path) -> list[dict[str, object]]:
    lines = path.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines]


def test_json_logging_redacts_secrets_and_preserves_correlation_fields(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(
        LoggingConfig(log_dir=tmp_path, logger_name=logger_name, log_to_stdout=False)
    )
    logger = logging.getLogger(logger_name)

    with correlation_scope(review_id="rev-1", target="admission.k8s.gatekeeper.sh"):
        logger.info(
            "driver call token=tok-FAKE and api_key=sk-FAKE123456789012345",
            extra={"nested": {"password": "hunter2", "safe": "ok"}},
        )

    shutdown_logging(handle)

    assert handle.log_path is not None and handle.log_path.exists()
    [first] = _read_json_lines(handle.log_path)
    assert first["review_id"] == "rev-1"
    assert first["target"] == "admission.k8s.gatekeeper.sh"
    assert first["fields"] == {"nested": {"password": "***REDACTED***", "safe": "ok"}}

    line = handle.log_path.read_text(encoding="utf-8")
    assert "tok-FAKE" not in line
    assert "sk-FAKE" not in line
    assert "hunter2" not in line


def test_setup_logging_routes_structlog_events(tmp_path: Path) -> None:
    setup_logging(
        {
            "log_level": "INFO",
            "log_dir": str(tmp_path),
            "log_to_stdout": False,
            "redact_secrets": True,
        }
    )
    log = structlog.get_logger("constraint_framework.client")

    log.info("template_added", kind="RequiredLabels", token="t-123")
    log.debug("below_threshold", kind="Ignored")
    shutdown_logging()

    [record] = _read_json_lines(tmp_path / "constraint-framework.jsonl")
    assert record["message"] == "template_added"
    assert record["logger"] == "constraint_framework.client"
    assert record["level"] == "INFO"
    assert record["fields"] == {"kind": "RequiredLabels", "token": "***REDACTED***"}


def test_redaction_can_be_disabled(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(
        LoggingConfig(
            log_dir=tmp_path, logger_name=logger_name, log_to_stdout=False, redact_secrets=False
        )
    )

    logging.getLogger(logger_name).warning("token=visible")
    shutdown_logging(handle)

    assert handle.log_path is not None
    [record] = _read_json_lines(handle.log_path)
    assert record["message"] == "token=visible"


def test_correlation_scope_validates_and_restores_fields() -> None:
    with correlation_scope(audit_id="audit-1"):
        with correlation_scope(audit_id=None, driver="local"):
            assert get_correlation_context() == {"driver": "local"}
        assert get_correlation_context() == {"audit_id": "audit-1"}
    assert get_correlation_context() == {}

    with pytest.raises(ValueError, match="unknown correlation key"):
        with correlation_scope(run_id="x"):
            pass
    with pytest.raises(ValueError, match="non-empty string"):
        with correlation_scope(review_id="  "):
            pass


def test_default_redactor_masks_bearer_tokens_and_sensitive_keys() -> None:
    redacted = default_log_redactor(
        {"headers": {"Authorization": "Bearer abc.def"}, "note": "sent Bearer xyz123"}
    )

    assert redacted == {
        "headers": {"Authorization": "***REDACTED***"},
        "note": "sent Bearer ***REDACTED***",
    }


def test_multithreaded_logging_produces_valid_json_lines(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(
        LoggingConfig(
            log_dir=tmp_path, logger_name=logger_name, log_to_stdout=False, queue_size=4096
        )
    )
    logger = logging.getLogger(logger_name)

    total_threads = 8
    per_thread = 40

    def worker(thread_idx: int) -> None:
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
        assert isinstance(json.loads(line), dict)
        assert "tok-secret" not in line
        assert "sk-FAKE" not in line


def test_queue_handler_non_blocking_and_shutdown_flushes(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(
        LoggingConfig(
            log_dir=tmp_path, logger_name=logger_name, log_to_stdout=False, queue_size=10_000
        )
    )
    logger = logging.getLogger(logger_name)

    queue_handlers = [h for h in logger.handlers if isinstance(h, logging.handlers.QueueHandler)]
    assert queue_handlers, "expected queue-backed non-blocking logging"

    expected = 300
    for i in range(expected):
        logger.info("message %s", i)

    shutdown_logging(handle)

    assert handle.log_path is not None
    lines = handle.log_path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == expected
    assert handle.is_shutdown


@pytest.mark.parametrize(
    ("config", "fragment"),
    [
        (LoggingConfig(queue_size=0, log_to_stdout=False), "queue_size"),
        (LoggingConfig(level="LOUD", log_to_stdout=False), "unsupported logging level"),
        (LoggingConfig(logger_name="  ", log_to_stdout=False), "logger_name"),
    ],
)
def test_invalid_logging_config_is_rejected(config: LoggingConfig, fragment: str) -> None:
    with pytest.raises(ValueError, match=fragment):
        setup_structured_logging(config)


def test_log_filename_must_not_contain_separators(tmp_path: Path) -> None:
    config = LoggingConfig(log_dir=tmp_path, log_filename="nested/out.jsonl", log_to_stdout=False)

    with pytest.raises(ValueError, match="path separators"):
        setup_structured_logging(config)

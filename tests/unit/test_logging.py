"""Unit tests for logging configuration."""

from __future__ import annotations

import asyncio
import json
import logging
import logging.handlers
from io import StringIO
from pathlib import Path
from typing import Any

import pytest
import structlog

from releasegate.config import LoggingConfig
from releasegate.logging import (
    add_correlation_id,
    bind_work_item_context,
    get_correlation_id,
    get_logger,
    set_correlation_id,
    setup_logging,
)


@pytest.fixture(autouse=True)
def reset_logging() -> None:
    """Reset logging configuration before each test."""
    root = logging.getLogger()
    root.handlers.clear()
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()
    set_correlation_id(None)


@pytest.fixture
def capture_stream() -> StringIO:
    return StringIO()


@pytest.fixture
def json_config() -> LoggingConfig:
    return LoggingConfig(level="INFO", format="json", file=None)


def _capture(config: LoggingConfig, stream: StringIO) -> None:
    setup_logging(config)
    logging.getLogger().handlers[0].stream = stream


def _last_entry(stream: StringIO) -> dict[str, Any]:
    return json.loads(stream.getvalue().strip().splitlines()[-1])


def test_json_output_format(json_config: LoggingConfig, capture_stream: StringIO) -> None:
    """JSON format produces one parseable object per event."""
    _capture(json_config, capture_stream)

    get_logger("releasegate.test").info("ci_watch_started", poll_interval=30)

    entry = _last_entry(capture_stream)
    assert entry["event"] == "ci_watch_started"
    assert entry["poll_interval"] == 30
    assert entry["level"] == "info"
    assert entry["logger"] == "releasegate.test"
    assert "timestamp" in entry


def test_console_output_format(capture_stream: StringIO) -> None:
    """Console format is human-readable, not JSON."""
    _capture(LoggingConfig(level="DEBUG", format="console"), capture_stream)

    get_logger("releasegate.test").debug("merge_attempt", attempt=2)

    output = capture_stream.getvalue()
    assert "merge_attempt" in output
    assert "attempt" in output
    with pytest.raises(json.JSONDecodeError):
        json.loads(output.strip())


def test_log_level_filtering(json_config: LoggingConfig, capture_stream: StringIO) -> None:
    _capture(json_config, capture_stream)
    logger = get_logger("releasegate.test")

    logger.debug("debug_message")
    assert capture_stream.getvalue() == ""

    logger.warning("warning_message")
    assert "warning_message" in capture_stream.getvalue()


def test_correlation_id_binding(json_config: LoggingConfig, capture_stream: StringIO) -> None:
    _capture(json_config, capture_stream)
    logger = get_logger("releasegate.test")

    set_correlation_id("release-123")
    assert get_correlation_id() == "release-123"
    logger.info("with_correlation")
    assert _last_entry(capture_stream)["correlation_id"] == "release-123"

    set_correlation_id(None)
    logger.info("without_correlation")
    assert "correlation_id" not in _last_entry(capture_stream)


def test_correlation_id_processor() -> None:
    event_dict: dict[str, Any] = {"event": "test"}

    assert "correlation_id" not in add_correlation_id(None, "", event_dict.copy())

    set_correlation_id("test-id")
    assert add_correlation_id(None, "", event_dict.copy())["correlation_id"] == "test-id"


def test_work_item_context_binding(json_config: LoggingConfig, capture_stream: StringIO) -> None:
    _capture(json_config, capture_stream)

    bind_work_item_context(work_item_id="WI-9", change_request_id="481")
    get_logger("releasegate.test").info("change_request_transition")

    entry = _last_entry(capture_stream)
    assert entry["work_item_id"] == "WI-9"
    assert entry["change_request_id"] == "481"


def test_work_item_context_without_change_request(
    json_config: LoggingConfig, capture_stream: StringIO
) -> None:
    _capture(json_config, capture_stream)

    bind_work_item_context(work_item_id="WI-9")
    get_logger("releasegate.test").info("review_decided")

    entry = _last_entry(capture_stream)
    assert entry["work_item_id"] == "WI-9"
    assert "change_request_id" not in entry


@pytest.mark.asyncio
async def test_work_item_context_is_per_task(
    json_config: LoggingConfig, capture_stream: StringIO
) -> None:
    """Context bound inside one pipeline run does not leak into another."""
    _capture(json_config, capture_stream)
    logger = get_logger("releasegate.test")

    async def run(work_item_id: str) -> None:
        bind_work_item_context(work_item_id=work_item_id)
        await asyncio.sleep(0)
        logger.info("run_finished", expected=work_item_id)

    await asyncio.gather(run("WI-1"), run("WI-2"))

    entries = [json.loads(line) for line in capture_stream.getvalue().strip().splitlines()]
    assert len(entries) == 2
    for entry in entries:
        assert entry["work_item_id"] == entry["expected"]


def test_file_rotation_handler_configuration(tmp_path: Path) -> None:
    log_file = tmp_path / "logs" / "releasegate.log"
    setup_logging(
        LoggingConfig(
            level="INFO", format="json", file=log_file, rotation_size_mb=10, retention_count=3
        )
    )

    root = logging.getLogger()
    assert len(root.handlers) == 1
    handler = root.handlers[0]
    assert isinstance(handler, logging.handlers.RotatingFileHandler)
    assert handler.maxBytes == 10 * 1024 * 1024
    assert handler.backupCount == 3
    assert log_file.exists()

    get_logger("releasegate.test").info("written_to_file", data="test")
    handler.flush()

    entry = json.loads(log_file.read_text().strip())
    assert entry["event"] == "written_to_file"
    assert entry["data"] == "test"


def test_exception_formatting(json_config: LoggingConfig, capture_stream: StringIO) -> None:
    _capture(json_config, capture_stream)
    logger = get_logger("releasegate.test")

    try:
        raise ValueError("merge exploded")
    except ValueError:
        logger.exception("merge_failed")

    lines = capture_stream.getvalue().strip().splitlines()
    assert len(lines) == 1
    entry = json.loads(lines[0])
    assert entry["event"] == "merge_failed"
    assert entry["level"] == "error"
    assert "ValueError: merge exploded" in entry["exception"]


def test_stdlib_records_rendered_as_json(
    json_config: LoggingConfig, capture_stream: StringIO
) -> None:
    """Records from plain stdlib loggers share the JSON format and context."""
    _capture(json_config, capture_stream)
    set_correlation_id("corr-7")

    try:
        raise RuntimeError("git failed")
    except RuntimeError:
        logging.getLogger("git.cmd").exception("worktree removal failed")

    lines = capture_stream.getvalue().strip().splitlines()
    assert len(lines) == 1
    entry = json.loads(lines[0])
    assert entry["event"] == "worktree removal failed"
    assert entry["logger"] == "git.cmd"
    assert entry["level"] == "error"
    assert entry["correlation_id"] == "corr-7"
    assert "RuntimeError: git failed" in entry["exception"]


def test_setup_replaces_existing_handlers(json_config: LoggingConfig) -> None:
    setup_logging(json_config)
    setup_logging(json_config)

    assert len(logging.getLogger().handlers) == 1

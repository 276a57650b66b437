"""Tests for structured JSON logging."""

from __future__ import annotations

import json
import logging

import pytest

from bounty_board_service.logging import (
    SERVICE_LOGGER_NAME,
    JSONFormatter,
    get_logger,
    setup_logging,
)


@pytest.mark.unit
def test_setup_logging_rejects_unknown_level():
    with pytest.raises(ValueError, match="Invalid log level"):
        setup_logging("LOUD", "bounty-board", None)


@pytest.mark.unit
def test_setup_logging_writes_daily_file(tmp_path):
    """A log directory adds a file handler named after the current date."""
    logger = setup_logging("debug", "bounty-board", str(tmp_path / "logs"))
    try:
        assert logger.level == logging.DEBUG
        assert len(logger.handlers) == 2
        assert logger.propagate is False
        files = list((tmp_path / "logs").glob("*.log"))
        assert len(files) == 1
    finally:
        for handler in logger.handlers:
            handler.close()
        logger.handlers.clear()


@pytest.mark.unit
def test_get_logger_nests_under_service_namespace():
    assert get_logger("retry").name == f"{SERVICE_LOGGER_NAME}.retry"
    assert get_logger(f"{SERVICE_LOGGER_NAME}.services.retry").name == (
        f"{SERVICE_LOGGER_NAME}.services.retry"
    )


@pytest.mark.unit
def test_json_formatter_includes_extra_fields():
    record = logging.LogRecord(
        name="bounty_board_service.test",
        level=logging.WARNING,
        pathname=__file__,
        lineno=1,
        msg="Escrow funded for %s",
        args=("t-1",),
        exc_info=None,
    )
    record.task_id = "t-1"

    payload = json.loads(JSONFormatter().format(record))

    assert payload["level"] == "WARNING"
    assert payload["message"] == "Escrow funded for t-1"
    assert payload["extra"] == {"task_id": "t-1"}

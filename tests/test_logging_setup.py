"""
Tests for configure_logging and the failure log.
"""

import json
import logging

import pytest

from token_relay.errors import HttpError
from token_relay.failure_logger import log_failure
from token_relay.logging_setup import configure_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers = handlers
    root.setLevel(level)


def test_configure_logging_writes_files(tmp_path, restore_root_logger):
    logger = configure_logging("debug", log_dir=tmp_path, debug_file=True)

    logger.info("pipeline ready")
    logging.getLogger("token_relay.pipeline").debug("sent GET /api/items")
    logging.getLogger("someone.else").debug("not ours")
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert logger.name == "token_relay"
    assert "pipeline ready" in (tmp_path / "token_relay.log").read_text()
    debug_text = (tmp_path / "token_relay_debug.log").read_text()
    assert "sent GET /api/items" in debug_text
    assert "not ours" not in debug_text
    assert logging.getLogger("httpx").level == logging.WARNING


def test_log_failure_writes_json_record(failure_log_dir):
    error = HttpError(503)

    log_failure("request", error, "GET", "/api/items", attempt=3, extra={"request_id": "r-1"})

    lines = (failure_log_dir / "failures.log").read_text().strip().splitlines()
    record = json.loads(lines[-1])
    assert record["event"] == "request"
    assert record["method"] == "GET"
    assert record["attempt_number"] == 3
    assert record["error"]["status_code"] == 503
    assert record["request_id"] == "r-1"

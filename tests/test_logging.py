from __future__ import annotations

import io
import json
import logging

import pytest
from tandem_core.logging import get_logger, setup_logging


@pytest.fixture(autouse=True)
def _clean_root_logger():
    root = logging.getLogger("tandem")
    saved = list(root.handlers)
    root.handlers.clear()
    yield
    root.handlers[:] = saved


class TestLogging:
    def test_child_logger_namespace(self):
        assert get_logger("orchestration").name == "tandem.orchestration"

    def test_setup_is_idempotent(self):
        first = setup_logging(stream=io.StringIO())
        second = setup_logging(level="DEBUG", stream=io.StringIO())
        assert first is second
        assert len(first.handlers) == 1
        assert first.level == logging.INFO

    def test_plain_output_carries_context(self):
        stream = io.StringIO()
        setup_logging(stream=stream)
        get_logger("test").info("hello", extra={"run_id": "r1", "agent_id": "qa"})
        line = stream.getvalue().strip()
        assert "tandem.test: hello" in line
        assert line.endswith("[run=r1 agent=qa]")

    def test_json_output(self):
        stream = io.StringIO()
        setup_logging(json_output=True, stream=stream)
        get_logger("test").warning("careful", extra={"provider_id": "codex"})
        record = json.loads(stream.getvalue())
        assert record["level"] == "WARNING"
        assert record["logger"] == "tandem.test"
        assert record["msg"] == "careful"
        assert record["provider_id"] == "codex"

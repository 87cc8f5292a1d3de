from __future__ import annotations

import json
import logging

from qemuvm.logging_config import JSONFormatter, setup_logging


def test_json_formatter_includes_extras():
    record = logging.LogRecord("qemuvm.lifecycle", logging.INFO, __file__, 1, "VM %s started", ("web1",), None)
    record.vm = "web1"

    payload = json.loads(JSONFormatter().format(record))

    assert payload["message"] == "VM web1 started"
    assert payload["level"] == "INFO"
    assert payload["logger"] == "qemuvm.lifecycle"
    assert payload["vm"] == "web1"


def test_setup_logging_selects_formatter():
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    try:
        setup_logging(level="debug", fmt="json")
        assert isinstance(root.handlers[-1].formatter, JSONFormatter)
        assert root.level == logging.DEBUG
        assert logging.getLogger("httpx").level == logging.WARNING

        setup_logging(fmt="text")
        assert not isinstance(root.handlers[-1].formatter, JSONFormatter)
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)

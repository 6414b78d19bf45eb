from __future__ import annotations

import json
import logging

import pytest

from batterywatch.observability import JsonFormatter, JsonLogConfig, configure_logging


def test_json_formatter_emits_one_object_per_record() -> None:
    formatter = JsonFormatter(JsonLogConfig(device_id="bench-laptop"))
    record = logging.LogRecord(
        name="batterywatch.transmitter",
        level=logging.WARNING,
        pathname=__file__,
        lineno=1,
        msg="attempt %s failed",
        args=(2,),
        exc_info=None,
    )

    payload = json.loads(formatter.format(record))

    assert payload["severity"] == "WARNING"
    assert payload["logger"] == "batterywatch.transmitter"
    assert payload["message"] == "attempt 2 failed"
    assert payload["service"] == "batterywatch-agent"
    assert payload["device_id"] == "bench-laptop"
    assert payload["timestamp"].endswith("+00:00")


@pytest.mark.parametrize("log_format,formatter_type", [("json", JsonFormatter), ("text", logging.Formatter)])
def test_configure_logging_replaces_root_handlers(log_format: str, formatter_type: type) -> None:
    root = logging.getLogger()
    saved_handlers = list(root.handlers)
    saved_level = root.level
    try:
        configure_logging(level="DEBUG", log_format=log_format)
        configure_logging(level="DEBUG", log_format=log_format)

        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, formatter_type)
        assert root.level == logging.DEBUG
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)

import io
import json
import logging

from crisp_channel.logging_setup import JsonFormatter, setup_logging


def test_formatter_includes_context_keys():
    record = logging.LogRecord("crisp_channel.webhook", logging.WARNING, __file__, 1, "Invalid secret", None, None)
    record.account_id = "default"
    record.failure = "auth"

    entry = json.loads(JsonFormatter().format(record))

    assert entry["level"] == "WARNING"
    assert entry["msg"] == "Invalid secret"
    assert entry["account_id"] == "default"
    assert entry["failure"] == "auth"
    assert "session_id" not in entry


def test_setup_logging_writes_json_lines_and_quiets_httpx():
    stream = io.StringIO()
    setup_logging("debug", stream=stream)
    try:
        logging.getLogger("crisp_channel.test").info("Stored reply", extra={"ticket_id": "AB12CD"})

        entry = json.loads(stream.getvalue().splitlines()[-1])
        assert entry["ticket_id"] == "AB12CD"
        assert logging.getLogger().level == logging.DEBUG
        assert logging.getLogger("httpx").level == logging.WARNING
    finally:
        logging.getLogger().handlers.clear()
        logging.getLogger().setLevel(logging.WARNING)

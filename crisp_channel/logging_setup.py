from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import TextIO

CONTEXT_KEYS = ("account_id", "session_id", "website_id", "ticket_id", "event", "failure")

QUIET_LOGGERS = {
    # Telegram request URLs embed the bot token.
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    # Access lines would carry ?secret= from the webhook URL.
    "uvicorn.access": logging.WARNING,
    "telegram.ext": logging.INFO,
}


class JsonFormatter(logging.Formatter):
    """One JSON object per line; conversation context comes from ``extra=``."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        entry.update(
            {key: getattr(record, key) for key in CONTEXT_KEYS if getattr(record, key, None) is not None}
        )
        if record.exc_info:
            entry["exc_type"] = record.exc_info[0].__name__ if record.exc_info[0] else None
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


def setup_logging(level: str, stream: TextIO | None = None) -> None:
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JsonFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name, logger_level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(logger_level)

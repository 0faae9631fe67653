"""
Structured logging for the storefront engine.

Every module logs through `logging.getLogger(__name__)`. `setup_logging`
installs a formatter that writes one JSON object per line, and `log_event`
attaches structured fields to a record:

    log_event(logger, "info", "flash_sale.reserved", sale_id=..., qty=2)
    -> {"ts": "...", "level": "info", "logger": "...", "event": "flash_sale.reserved", "sale_id": ..., "qty": 2}
"""
from __future__ import annotations
from datetime import datetime, timezone
from typing import Any
import json
import logging
import os
import sys

_RESERVED = set(logging.LogRecord("", 0, "", 0, "", None, None).__dict__) | {"message", "asctime"}


class JsonLineFormatter(logging.Formatter):
    """Render a record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in _RESERVED and not key.startswith("_"):
                payload[key] = value
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logging(level: str | None = None, stream=None) -> logging.Handler:
    """Install the JSON handler on the root logger. Returns the handler."""
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JsonLineFormatter())

    root = logging.getLogger()
    root.handlers = [h for h in root.handlers if not isinstance(h.formatter, JsonLineFormatter)]
    root.addHandler(handler)
    root.setLevel((level or os.getenv("LOG_LEVEL", "INFO")).upper())
    return handler


def log_event(logger: logging.Logger, level: str, event: str, **fields: Any) -> None:
    """Log `event` with `fields` as structured extras."""
    logger.log(logging.getLevelName(level.upper()), event, extra=fields)

"""JSON-lines logging with a stable field set."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

LOGGER_NAMES = ("engine", "geo", "layers")

EVENT_FIELDS = (
    "stage",
    "window",
    "layer",
    "attempt",
    "rows_in",
    "rows_out",
    "duration_ms",
    "error_code",
)


class JsonLineFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in EVENT_FIELDS:
            payload[name] = getattr(record, name, None)
        extra = getattr(record, "data", None)
        if extra:
            payload["data"] = extra
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def set_log_level(level: str) -> None:
    for name in LOGGER_NAMES:
        logging.getLogger(name).setLevel(level.upper())


def configure_logging(level: str = "INFO", *, json_lines: bool = True) -> None:
    handler = logging.StreamHandler()
    if json_lines:
        handler.setFormatter(JsonLineFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    set_log_level(level)
    for name in LOGGER_NAMES:
        logger = logging.getLogger(name)
        logger.handlers.clear()
        logger.addHandler(handler)
        logger.propagate = False


def log_event(
    logger: logging.Logger, message: str, *, level: int = logging.INFO, **fields: Any
) -> None:
    known = {k: v for k, v in fields.items() if k in EVENT_FIELDS}
    rest = {k: v for k, v in fields.items() if k not in EVENT_FIELDS}
    if rest:
        known["data"] = rest
    logger.log(level, message, extra=known)

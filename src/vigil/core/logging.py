"""Logging setup: text or JSON-lines output on the root ``vigil`` logger."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path

from vigil.core.config import LoggingConfig

_TEXT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

# LogRecord attributes that are not user-supplied ``extra`` fields
_RESERVED = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    """One JSON object per line; ``extra`` fields are carried through."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, object] = {
            "ts": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in _RESERVED and not key.startswith("_"):
                payload[key] = value
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(cfg: LoggingConfig, log_path: Path | None = None) -> logging.Logger:
    """
    Install a handler on the ``vigil`` logger according to *cfg*.

    Logs go to stderr, or to *log_path* when given. Calling this again
    replaces the previously installed handler.
    """
    logger = logging.getLogger("vigil")
    logger.setLevel(cfg.level)

    for existing in list(logger.handlers):
        if getattr(existing, "_vigil_handler", False):
            logger.removeHandler(existing)
            existing.close()

    if log_path is not None:
        log_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        handler: logging.Handler = logging.FileHandler(log_path, encoding="utf-8")
    else:
        handler = logging.StreamHandler()

    if cfg.format == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT))
    handler._vigil_handler = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
    return logger

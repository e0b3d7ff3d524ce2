"""Structured logging helpers shared by the CLI and long-running refreshers."""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Mapping
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

__all__ = ["JSONFormatter", "mask_sensitive_data", "setup_logging"]

_LOGGER_NAME = "DandiSearch.SemanticSearch"
_SENSITIVE_KEYS = frozenset({"authorization", "api_key", "apikey", "token", "password"})


def mask_sensitive_data(payload: Any) -> Any:
    """Return ``payload`` with credential-like mapping values replaced by ``***``."""

    if isinstance(payload, Mapping):
        masked = {}
        for key, value in payload.items():
            if str(key).lower() in _SENSITIVE_KEYS:
                masked[key] = "***"
            else:
                masked[key] = mask_sensitive_data(value)
        return masked
    if isinstance(payload, (list, tuple)):
        return [mask_sensitive_data(item) for item in payload]
    return payload


class JSONFormatter(logging.Formatter):
    """Formatter rendering records, and their ``event`` payload, as JSON lines."""

    def format(self, record: logging.LogRecord) -> str:
        """Render ``record`` as a JSON string."""

        now = datetime.now(timezone.utc)
        payload: dict[str, Any] = {
            "timestamp": now.isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        event = getattr(record, "event", None)
        if isinstance(event, Mapping):
            payload["event"] = dict(event)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(mask_sensitive_data(payload), default=str)


def setup_logging(
    *,
    level: str = "INFO",
    log_dir: Optional[Path] = None,
    json_console: bool = False,
    max_log_size_mb: int = 50,
) -> logging.Logger:
    """Configure the ``DandiSearch.SemanticSearch`` logger hierarchy.

    Console output goes to stderr so stdout stays free for command results.
    When ``log_dir`` is given, a rotating ``dandisearch.jsonl`` file handler is
    added. Calling this repeatedly replaces the handlers it installed earlier.
    """

    logger = logging.getLogger(_LOGGER_NAME)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.propagate = False

    for handler in list(logger.handlers):
        if getattr(handler, "_dandisearch_managed", False):
            logger.removeHandler(handler)
            if handler.stream not in (sys.stdout, sys.stderr):  # type: ignore[attr-defined]
                handler.close()

    stream_handler = logging.StreamHandler(sys.stderr)
    if json_console:
        stream_handler.setFormatter(JSONFormatter())
    else:
        stream_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    stream_handler._dandisearch_managed = True  # type: ignore[attr-defined]
    logger.addHandler(stream_handler)

    if log_dir is not None:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_dir / "dandisearch.jsonl",
            maxBytes=int(max_log_size_mb * 1024 * 1024),
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setFormatter(JSONFormatter())
        file_handler._dandisearch_managed = True  # type: ignore[attr-defined]
        logger.addHandler(file_handler)

    return logger

"""
Structured JSON Logging.

Every service receives a :class:`StructuredLogger` through its constructor.
Records are rendered as one JSON object per line so that security events
(``extra={"event": "RESEND_UNKNOWN_EMAIL"}`` and friends) can be filtered
by log shippers without parsing free text.

Fields whose name looks like a credential (``password``, ``token``,
``secret``) are masked before they are written, so a careless ``extra``
never puts a live verification link into the log file.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional, TextIO

_REDACTED = "***"
_SENSITIVE_MARKERS: tuple[str, ...] = ("password", "token", "secret")

# Attributes every LogRecord carries; anything else came from ``extra``.
_RESERVED_ATTRS: frozenset[str] = frozenset(
    vars(logging.makeLogRecord({})).keys()
) | {"message", "asctime", "taskName"}


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    return any(marker in lowered for marker in _SENSITIVE_MARKERS)


class JSONFormatter(logging.Formatter):
    """Render a record as ``{"timestamp", "level", "logger_name", "message", ...}``.

    ``event`` is promoted to a top-level key; remaining caller context is
    nested under ``extra`` and credential-like keys are masked.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger_name": record.name,
            "message": record.getMessage(),
        }

        context: dict[str, str] = {}
        for key, value in vars(record).items():
            if key in _RESERVED_ATTRS:
                continue
            context[key] = _REDACTED if _is_sensitive(key) else str(value)

        event = context.pop("event", None)
        if event is not None:
            entry["event"] = event
        if context:
            entry["extra"] = context

        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        if record.exc_text:
            entry["exception"] = record.exc_text

        return json.dumps(entry, ensure_ascii=False)


def _file_handler(path: str, max_bytes: int, backup_count: int) -> RotatingFileHandler:
    log_path = Path(path)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    return RotatingFileHandler(
        filename=str(log_path),
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )


class StructuredLogger:
    """Injectable wrapper around a named ``logging.Logger``.

    Parameters
    ----------
    name:
        Logger name. Handlers are attached once per name, so building
        several wrappers for the same name does not duplicate output.
    level:
        Numeric level; defaults to ``LOG_LEVEL`` from the configuration.
    stream:
        Console stream; defaults to ``sys.stdout``.
    log_file:
        Rotating log file path; ``""`` disables file output and ``None``
        uses ``LOG_FILE``.
    max_bytes, backup_count:
        Rotation policy; default to ``LOG_MAX_BYTES`` / ``LOG_BACKUP_COUNT``.
    """

    def __init__(
        self,
        name: str = "identity",
        level: Optional[int] = None,
        stream: Optional[TextIO] = None,
        log_file: Optional[str] = None,
        max_bytes: Optional[int] = None,
        backup_count: Optional[int] = None,
    ) -> None:
        # Imported here: config logs through this module during validation.
        from opinions_identity.config import get_config
        cfg = get_config()

        if level is None:
            level = cfg.log_level
        self._logger: logging.Logger = logging.getLogger(name)
        self._logger.setLevel(level)

        if self._logger.handlers:
            return

        formatter = JSONFormatter()
        console = logging.StreamHandler(stream or sys.stdout)
        console.setFormatter(formatter)
        self._logger.addHandler(console)

        target = cfg.LOG_FILE if log_file is None else log_file
        if not target:
            return
        try:
            handler = _file_handler(
                target,
                cfg.LOG_MAX_BYTES if max_bytes is None else max_bytes,
                cfg.LOG_BACKUP_COUNT if backup_count is None else backup_count,
            )
        except OSError as exc:
            self._logger.warning(
                "Log file %s unavailable (%s); logging to console only.", target, exc,
            )
            return
        handler.setFormatter(formatter)
        self._logger.addHandler(handler)

    @property
    def logger(self) -> logging.Logger:
        return self._logger

    def debug(self, msg: str, *args: object, **kwargs: Any) -> None:
        self._logger.debug(msg, *args, **kwargs)

    def info(self, msg: str, *args: object, **kwargs: Any) -> None:
        self._logger.info(msg, *args, **kwargs)

    def warning(self, msg: str, *args: object, **kwargs: Any) -> None:
        self._logger.warning(msg, *args, **kwargs)

    def error(self, msg: str, *args: object, **kwargs: Any) -> None:
        self._logger.error(msg, *args, **kwargs)

    def critical(self, msg: str, *args: object, **kwargs: Any) -> None:
        self._logger.critical(msg, *args, **kwargs)


def get_logger(name: str = "identity") -> StructuredLogger:
    """Shorthand for ``StructuredLogger(name=name)`` with configured defaults."""
    return StructuredLogger(name=name)

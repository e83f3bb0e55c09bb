"""Logger construction for the bridge.

Loggers are built explicitly and handed to each component at construction.
``dispose_logger`` flushes and closes the handlers at process or test teardown.
"""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from providerbridge.util.masking import redact_mapping, redact_text

LOGGER_NAME = "providerbridge"
MAX_BYTES = 10 * 1024 * 1024
BACKUP_COUNT = 10
_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"


def _normalize_level(raw: str) -> int:
    candidate = str(raw or "INFO").strip().upper()
    return {
        "CRITICAL": logging.CRITICAL,
        "ERROR": logging.ERROR,
        "WARNING": logging.WARNING,
        "WARN": logging.WARNING,
        "INFO": logging.INFO,
        "DEBUG": logging.DEBUG,
    }.get(candidate, logging.INFO)


class SecretRedactionFilter(logging.Filter):
    """Masks auth tokens and bearer credentials before a record is emitted."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.args:
            if isinstance(record.args, dict):
                record.args = redact_mapping(record.args)
            else:
                record.args = tuple(redact_mapping(arg) for arg in record.args)
        # args are rendered first so a "token=%s" placeholder is not consumed by redaction
        record.msg = redact_text(record.getMessage())
        record.args = None
        return True


def create_logger(
    level: str = "info",
    log_file: str | None = None,
    name: str = LOGGER_NAME,
) -> logging.Logger:
    configured_logger = logging.getLogger(name)
    # rebuilding an existing logger replaces its handlers rather than stacking them
    dispose_logger(configured_logger)

    resolved_level = _normalize_level(level)
    configured_logger.setLevel(resolved_level)
    formatter = logging.Formatter(_FORMAT, datefmt=_DATEFMT)
    redaction = SecretRedactionFilter()

    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(resolved_level)
    stream_handler.setFormatter(formatter)
    stream_handler.addFilter(redaction)
    configured_logger.addHandler(stream_handler)

    if log_file:
        try:
            path = Path(log_file)
            path.parent.mkdir(parents=True, exist_ok=True)
            rotating_handler = RotatingFileHandler(
                path,
                maxBytes=MAX_BYTES,
                backupCount=BACKUP_COUNT,
                encoding="utf-8",
            )
            rotating_handler.setLevel(resolved_level)
            rotating_handler.setFormatter(formatter)
            rotating_handler.addFilter(redaction)
            configured_logger.addHandler(rotating_handler)
        except (OSError, PermissionError):
            configured_logger.warning("log file not writable path=%s, using stderr only", log_file)

    configured_logger.propagate = False
    return configured_logger


def dispose_logger(target: logging.Logger) -> None:
    for handler in list(target.handlers):
        try:
            handler.flush()
            handler.close()
        finally:
            target.removeHandler(handler)

"""
Logging configuration and utilities.
"""

import json
import logging
import logging.handlers
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from .config import LoggingConfig

SERVICE_NAME = "coursebilling"

# Attributes every LogRecord carries; anything else was passed through `extra`
_RESERVED_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}

_QUIET_LOGGERS = ("uvicorn", "uvicorn.access", "asyncio", "aiohttp", "sqlalchemy")


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with bound context fields inlined."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "service": SERVICE_NAME,
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        entry.update({
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS and not key.startswith("_")
        })
        return json.dumps(entry, default=str)


class ColorFormatter(logging.Formatter):
    """Console formatter that colors the level name."""

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno)
        if color is None:
            return super().format(record)
        original = record.levelname
        record.levelname = f"{color}{original}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = original


def setup_logging(config: Optional[LoggingConfig] = None) -> None:
    """
    Setup logging configuration.

    Args:
        config: Logging configuration (defaults are used when omitted)
    """
    config = config or LoggingConfig()
    level = config.level.value

    if config.json_format:
        file_formatter: logging.Formatter = JSONFormatter()
        console_formatter: logging.Formatter = file_formatter
    else:
        file_formatter = logging.Formatter(fmt=config.format, datefmt=config.date_format)
        console_formatter = ColorFormatter(fmt=config.format, datefmt=config.date_format)

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(console_formatter)
    handlers = [console]

    if config.file_path:
        Path(config.file_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            rotating = logging.handlers.RotatingFileHandler(
                filename=config.file_path,
                maxBytes=config.max_file_size,
                backupCount=config.backup_count,
                encoding="utf-8",
            )
        except OSError as e:
            logging.warning(f"File logging disabled, cannot open {config.file_path}: {e}")
        else:
            rotating.setFormatter(file_formatter)
            handlers.append(rotating)

    for handler in handlers:
        handler.setLevel(level)
    logging.basicConfig(level=level, handlers=handlers, force=True)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(SERVICE_NAME).info(f"Logging configured at {level}")


def get_logger(name: str) -> logging.Logger:
    """Get a module logger."""
    return logging.getLogger(name)


class LoggerAdapter(logging.LoggerAdapter):
    """Prefixes messages with, and attaches as record fields, a fixed set of identifiers."""

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        kwargs.setdefault("extra", {}).update(self.extra)
        context = " ".join(f"{k}={v}" for k, v in self.extra.items())
        return f"[{context}] {msg}", kwargs


def bind_logger(logger: logging.Logger, **context: Any) -> LoggerAdapter:
    """Attach identifiers (subscription_id, event_id, ...) to every record from `logger`."""
    return LoggerAdapter(logger, context)


class LoggingContext:
    """Logs the start and duration of a block."""

    def __init__(self, logger: logging.Logger, message: str, level: int = logging.INFO):
        self.logger = logger
        self.message = message
        self.level = level
        self._started: Optional[float] = None

    def __enter__(self):
        self._started = time.monotonic()
        self.logger.debug(f"Starting {self.message}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        elapsed = time.monotonic() - self._started
        outcome = "finished" if exc_type is None else f"aborted ({exc_type.__name__})"
        self.logger.log(self.level, f"{self.message} {outcome} after {elapsed:.2f}s")

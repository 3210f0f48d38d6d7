"""Logging setup for SiteCorpus.

Console output is either human readable (optionally colored) or one JSON
object per line; file output is always JSON. ``StructuredLogger`` attaches
crawl context (depth, url, component) to records as ``ctx_*`` attributes,
which both formatters render.
"""

from __future__ import annotations
import logging
import sys
import json
from typing import Any, Dict, Optional
from datetime import datetime, timezone
from pathlib import Path

CONTEXT_PREFIX = "ctx_"

# Third-party loggers that are too chatty at INFO during a crawl
NOISY_LOGGERS = ("uvicorn", "uvicorn.access", "fastapi", "aiohttp", "httpx", "openai")

_RECORD_ATTRS = set(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}


def record_context(record: logging.LogRecord) -> Dict[str, Any]:
    """The ``ctx_*`` attributes of a record, without the prefix."""
    return {
        key[len(CONTEXT_PREFIX):]: value
        for key, value in record.__dict__.items()
        if key.startswith(CONTEXT_PREFIX)
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per record; crawl context is grouped under ``context``."""

    def __init__(self, service_name: str = "sitecorpus"):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service_name,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }

        context = record_context(record)
        if context:
            entry["context"] = context

        # Plain ``extra=`` fields passed to stdlib loggers
        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRS and not key.startswith(CONTEXT_PREFIX):
                entry[key] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class ColoredFormatter(logging.Formatter):
    """Single-line console format with the crawl context appended."""

    COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[35m',
    }
    RESET = '\033[0m'

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime('%Y-%m-%d %H:%M:%S')
        line = f"{timestamp} | {record.levelname:8} | {record.name} | {record.getMessage()}"

        context = record_context(record)
        if context:
            line += " | " + " ".join(f"{k}={v}" for k, v in context.items())

        color = self.COLORS.get(record.levelname) if self.use_colors else None
        if color:
            line = f"{color}{line}{self.RESET}"

        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(
    level: str = "INFO",
    service_name: str = "sitecorpus",
    log_file: Optional[str] = None,
    use_json: bool = False,
    use_colors: bool = True
) -> None:
    """Configure the root logger.

    Args:
        level: Log level name; unknown names fall back to INFO
        service_name: Value of the ``service`` field in JSON records
        log_file: Optional path of an additional JSON log file
        use_json: JSON instead of the colored console format
        use_colors: ANSI colors for the console format (ignored with JSON)
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(numeric_level)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(
        JSONFormatter(service_name) if use_json
        else ColoredFormatter(use_colors and sys.stdout.isatty())
    )
    root_logger.addHandler(console_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(JSONFormatter(service_name))
        root_logger.addHandler(file_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))


def setup_logging_from_settings(settings) -> None:
    """Apply the ``LOG_*`` settings of a ``config.Settings`` instance."""
    setup_logging(level=settings.log_level, log_file=settings.log_file, use_json=settings.log_json)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class StructuredLogger:
    """Logger wrapper that tags every record with bound context.

    >>> log = get_structured_logger("pipelines.crawler").bind(depth=1)
    >>> log.info("Successfully processed", url="https://example.org/")
    """

    def __init__(self, name: str, **default_context):
        self.logger = logging.getLogger(name)
        self.default_context = default_context

    def bind(self, **context) -> "StructuredLogger":
        """Return a logger carrying this logger's context plus ``context``."""
        return StructuredLogger(self.logger.name, **{**self.default_context, **context})

    def _extra(self, context: Dict[str, Any]) -> Dict[str, Any]:
        merged = {**self.default_context, **context}
        return {f"{CONTEXT_PREFIX}{k}": v for k, v in merged.items()}

    def log(self, level: int, message: str, exc_info: bool = False, **context) -> None:
        if self.logger.isEnabledFor(level):
            self.logger.log(level, message, exc_info=exc_info, extra=self._extra(context))

    def debug(self, message: str, **context) -> None:
        self.log(logging.DEBUG, message, **context)

    def info(self, message: str, **context) -> None:
        self.log(logging.INFO, message, **context)

    def warning(self, message: str, **context) -> None:
        self.log(logging.WARNING, message, **context)

    def error(self, message: str, **context) -> None:
        self.log(logging.ERROR, message, **context)

    def exception(self, message: str, **context) -> None:
        self.log(logging.ERROR, message, exc_info=True, **context)


def get_structured_logger(name: str, **default_context) -> StructuredLogger:
    return StructuredLogger(name, **default_context)

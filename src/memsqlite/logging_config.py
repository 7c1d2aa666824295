"""
Logging configuration for memsqlite.

Each entry point (cli, watch daemon, api) calls setup_logging() once with its
own context so that log files are split per process type:

    <log_dir>/cli.log
    <log_dir>/watch.log
    <log_dir>/api.log
"""

import json
import logging
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Optional

from memsqlite.config import Settings, settings

STANDARD_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Chatty third-party loggers kept at WARNING unless we are debugging
_NOISY_LOGGERS = ("watchdog", "sqlalchemy.engine", "uvicorn.access")


class JsonFormatter(logging.Formatter):
    """Render each record as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = getattr(record, "context", None)
        if context:
            payload["context"] = context
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class _ContextFilter(logging.Filter):
    def __init__(self, context: str):
        super().__init__()
        self.context = context

    def filter(self, record: logging.LogRecord) -> bool:
        record.context = self.context
        return True


def _build_formatter(log_format: str) -> logging.Formatter:
    if log_format == "json":
        return JsonFormatter()
    return logging.Formatter(STANDARD_FORMAT)


def setup_logging(
    context: str = "app", config: Optional[Settings] = None
) -> logging.Logger:
    """
    Configure root logging for one process context.

    Safe to call more than once: handlers installed by a previous call are
    replaced rather than duplicated.

    Args:
        context: Name of the entry point, used for the log file name
        config: Settings to read from (defaults to the global settings)

    Returns:
        The configured root logger
    """
    config = config or settings
    level = getattr(logging, config.log_level.upper(), logging.INFO)
    formatter = _build_formatter(config.log_format)

    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_memsqlite_handler", False):
            root.removeHandler(handler)
            handler.close()

    root.setLevel(level)
    context_filter = _ContextFilter(context)

    if config.log_console_enabled:
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(formatter)
        console.addFilter(context_filter)
        console._memsqlite_handler = True  # type: ignore[attr-defined]
        root.addHandler(console)

    if config.log_file_enabled:
        log_dir = config.log_directory
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                log_dir / f"{context}.log",
                maxBytes=config.log_max_bytes,
                backupCount=config.log_backup_count,
                encoding="utf-8",
            )
        except OSError as e:
            # Fall back to console-only logging
            root.warning(f"File logging disabled, cannot use {log_dir}: {e}")
        else:
            file_handler.setFormatter(formatter)
            file_handler.addFilter(context_filter)
            file_handler._memsqlite_handler = True  # type: ignore[attr-defined]
            root.addHandler(file_handler)

    if level > logging.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    return root

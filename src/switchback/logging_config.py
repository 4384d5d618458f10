"""Centralized logging configuration for switchback.

Usage:
    from switchback.logging_config import configure_logging

    # Configure once at application startup
    configure_logging(level="DEBUG", format="json")

Modules log through the standard library:
    logger = logging.getLogger(__name__)

Environment Variables:
    SWITCHBACK_LOG_LEVEL: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    SWITCHBACK_LOG_FORMAT: Output format ("text" or "json")
    SWITCHBACK_LOG_FILE: Optional log file path
"""

import json
import logging
import os
import sys
from datetime import datetime
from typing import Any, Literal

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
TEXT_FORMAT_WITH_MS = "%(asctime)s.%(msecs)03d - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# LogRecord attributes that are not user-supplied extras
_STANDARD_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)

_configured = False


class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging.

    Outputs one JSON object per record:
    {
        "timestamp": "2026-01-12T14:30:00.123000",
        "level": "INFO",
        "logger": "switchback.gateway.proxy",
        "message": "[00001_143000_1msgs_hello] Request: ...",
        "extra": {...}
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        extra = {k: v for k, v in record.__dict__.items() if k not in _STANDARD_ATTRS}
        if extra:
            log_data["extra"] = extra

        return json.dumps(log_data, default=str)


def configure_logging(
    level: str | None = None,
    format: Literal["text", "json"] | None = None,
    file_path: str | None = None,
    include_ms: bool = True,
    force: bool = False,
) -> None:
    """Configure the root logger.

    Called once at startup; later calls are ignored unless force=True.

    Args:
        level: Log level. Defaults to SWITCHBACK_LOG_LEVEL or "INFO".
        format: Output format. Defaults to SWITCHBACK_LOG_FORMAT or "text".
        file_path: Optional file path. Defaults to SWITCHBACK_LOG_FILE.
        include_ms: Include milliseconds in text timestamps.
        force: Reconfigure even if already configured.

    Raises:
        ValueError: If the level name is not a known log level.
    """
    global _configured
    if _configured and not force:
        return

    level = level or os.environ.get("SWITCHBACK_LOG_LEVEL", "INFO")
    format = format or os.environ.get("SWITCHBACK_LOG_FORMAT", "text")  # type: ignore[assignment]
    file_path = file_path or os.environ.get("SWITCHBACK_LOG_FILE")

    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        raise ValueError(f"Unknown log level: {level}")

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    if format == "json":
        formatter: logging.Formatter = JsonFormatter()
    else:
        fmt = TEXT_FORMAT_WITH_MS if include_ms else TEXT_FORMAT
        formatter = logging.Formatter(fmt, datefmt=DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if file_path:
        file_handler = logging.FileHandler(file_path)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # aiohttp logs every request at INFO
    logging.getLogger("aiohttp.access").setLevel(max(numeric_level, logging.WARNING))

    _configured = True

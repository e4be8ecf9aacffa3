"""
Structured logging setup using structlog.
Every run writes to stdout and appends to the configured log file.
"""

import sys
import logging
from typing import Optional
from pathlib import Path

import structlog
from rich.console import Console
from rich.logging import RichHandler

from .config import Settings


_SEVERITY_BY_LEVEL = {
    "debug": "DEBUG",
    "info": "INFO",
    "warning": "WARN",
    "warn": "WARN",
    "error": "ERROR",
    "exception": "ERROR",
    "critical": "ERROR",
}


def add_severity(logger, method_name: str, event_dict: dict) -> dict:
    """Tag events with INFO/WARN/ERROR, or SUCCESS when `success=True` is passed."""
    if event_dict.pop("success", False):
        event_dict["severity"] = "SUCCESS"
    else:
        event_dict["severity"] = _SEVERITY_BY_LEVEL.get(method_name, method_name.upper())
    return event_dict


def setup_logging(settings: Settings, log_file: Optional[str] = None) -> None:
    """
    Configure structured logging for a job run.

    Args:
        settings: Job settings (level, format, log file)
        log_file: Optional override for the log file path
    """
    # Clear any existing handlers
    logging.getLogger().handlers.clear()

    timestamper = structlog.processors.TimeStamper(fmt="ISO")

    if settings.log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        add_severity,
        structlog.stdlib.PositionalArgumentsFormatter(),
        timestamper,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        renderer,
    ]

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    level = getattr(logging, settings.log_level)
    handlers = []

    # Rich console when attached to a terminal
    if settings.log_format == "console" and sys.stdout.isatty():
        rich_handler = RichHandler(
            console=Console(file=sys.stdout),
            show_time=False,
            show_path=False,
            rich_tracebacks=True,
        )
        rich_handler.setLevel(level)
        handlers.append(rich_handler)
    else:
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setLevel(level)
        stream_handler.setFormatter(logging.Formatter('%(message)s'))
        handlers.append(stream_handler)

    file_error = None
    target = log_file or settings.log_file
    if target:
        try:
            file_path = Path(target).expanduser()
            file_path.parent.mkdir(parents=True, exist_ok=True)

            file_handler = logging.FileHandler(file_path, mode="a")
            file_handler.setLevel(level)
            file_handler.setFormatter(logging.Formatter('%(message)s'))
            handlers.append(file_handler)
        except OSError as e:
            file_error = str(e)

    logging.basicConfig(level=level, handlers=handlers, force=True)

    # Reduce noise from third-party libraries
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("aiohttp").setLevel(logging.WARNING)

    if file_error:
        get_logger(__name__).warning("Log file unavailable, logging to stdout only", error=file_error)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured logger instance
    """
    return structlog.get_logger(name)

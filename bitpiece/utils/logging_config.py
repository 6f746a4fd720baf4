"""Structured logging configuration for bitpiece.

Provides logging setup with correlation IDs, structured output,
and configurable log levels.
"""

from __future__ import annotations

import json
import logging
import logging.config
import sys
import time
from contextvars import ContextVar
from pathlib import Path
from typing import TYPE_CHECKING, Any

from rich.console import Console
from rich.logging import RichHandler

if TYPE_CHECKING:  # pragma: no cover
    from bitpiece.models import ObservabilityConfig

# Peer address (or other unit of work) the current task is acting for
correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)

_RECORD_ATTRIBUTES = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "correlation_id", "asctime", "taskName"}


class CorrelationFilter(logging.Filter):
    """Filter to add correlation ID to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        """Add correlation ID to log record."""
        record.correlation_id = correlation_id.get() or "-"
        return True


class StructuredFormatter(logging.Formatter):
    """Structured JSON formatter for logs."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured JSON."""
        log_entry: dict[str, Any] = {
            "timestamp": time.time(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if hasattr(record, "correlation_id"):
            log_entry["correlation_id"] = record.correlation_id

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        # Fields passed through ``extra=``
        log_entry.update(
            {
                key: value
                for key, value in record.__dict__.items()
                if key not in _RECORD_ATTRIBUTES
            }
        )

        return json.dumps(log_entry, default=str)


def create_rich_handler(level: str = "INFO") -> logging.Handler:
    """Create a RichHandler writing to stderr."""
    return RichHandler(
        console=Console(stderr=True),
        level=level,
        show_path=False,
        rich_tracebacks=True,
        markup=False,
        log_time_format="[%X]",
    )


def setup_logging(config: ObservabilityConfig) -> None:
    """Set up logging configuration with Rich console output.

    Console records go through rich (or JSON lines on stderr when
    ``structured_logging`` is on); ``log_file`` adds a rotating file handler.
    """
    level = config.log_level.value

    logging_config: dict[str, Any] = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "rich": {
                "format": "[%(correlation_id)s] %(message)s",
            },
            "structured": {
                "()": StructuredFormatter,
            },
            "simple": {
                "format": config.log_format,
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "filters": {
            "correlation": {
                "()": CorrelationFilter,
            },
        },
        "handlers": {},
        "loggers": {
            "bitpiece": {
                "level": level,
                "handlers": ["console"],
                "propagate": False,
            },
        },
        "root": {
            "level": logging.WARNING,
            "handlers": ["console"],
        },
    }

    if config.structured_logging:
        logging_config["handlers"]["console"] = {
            "class": "logging.StreamHandler",
            "level": level,
            "formatter": "structured",
            "filters": ["correlation"],
            "stream": sys.stderr,
        }
    else:
        logging_config["handlers"]["console"] = {
            "()": create_rich_handler,
            "level": level,
            "formatter": "rich",
            "filters": ["correlation"],
        }

    if config.log_file:
        log_path = Path(config.log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        logging_config["handlers"]["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": level,
            "formatter": "structured" if config.structured_logging else "simple",
            "filters": ["correlation"],
            "filename": str(log_path),
            "maxBytes": 10 * 1024 * 1024,  # 10MB
            "backupCount": 5,
            "encoding": "utf-8",
        }
        logging_config["loggers"]["bitpiece"]["handlers"].append("file")

    logging.config.dictConfig(logging_config)


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the ``bitpiece`` namespace."""
    if name == "bitpiece" or name.startswith("bitpiece."):
        return logging.getLogger(name)
    return logging.getLogger(f"bitpiece.{name}")


def set_correlation_id(corr_id: str) -> str:
    """Set correlation ID for the current context."""
    correlation_id.set(corr_id)
    return corr_id


def get_correlation_id() -> str | None:
    """Get the current correlation ID."""
    return correlation_id.get()

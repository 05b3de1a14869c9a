"""Logging setup for Assist Adoption.

Aggregation runs, key rotation and the queue worker tag their log lines with
the unit of work in hand. Those fields ride in a contextvar, so store and
service code below them logs with the right tags without passing them along.
"""

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Dict, Iterator, Optional

# Output order of the context fields
CONTEXT_FIELDS = ("run_id", "report_date", "table", "scope", "message_id")

_context: ContextVar[Dict[str, str]] = ContextVar("log_context", default={})


def _merged(fields: Dict[str, Optional[object]]) -> Dict[str, str]:
    unknown = set(fields) - set(CONTEXT_FIELDS)
    if unknown:
        raise TypeError(f"Unknown log context fields: {', '.join(sorted(unknown))}")
    merged = dict(_context.get())
    merged.update({name: str(value) for name, value in fields.items() if value is not None})
    return merged


def set_log_context(**fields: Optional[object]):
    """Tag every following log line in this async context. None leaves a field as is."""
    _context.set(_merged(fields))


def clear_log_context():
    _context.set({})


@contextmanager
def log_context(**fields: Optional[object]) -> Iterator[None]:
    """Tag log lines inside the block, restoring the previous tags on exit."""
    token = _context.set(_merged(fields))
    try:
        yield
    finally:
        _context.reset(token)


def current_log_context() -> Dict[str, str]:
    context = _context.get()
    return {name: context[name] for name in CONTEXT_FIELDS if name in context}


class StructuredFormatter(logging.Formatter):
    """One JSON object per line, context fields inline."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        log_entry.update(current_log_context())

        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry)


class HumanReadableFormatter(logging.Formatter):
    """Console format for development, context fields in a trailing bracket."""

    def format(self, record: logging.LogRecord) -> str:
        msg = (
            f"[{self.formatTime(record, self.datefmt)}] "
            f"{record.levelname:8s} {record.name}: {record.getMessage()}"
        )

        context = current_log_context()
        if context:
            msg += " [" + ", ".join(f"{k}={v}" for k, v in context.items()) + "]"

        if record.exc_info and record.exc_info[1]:
            msg += "\n" + self.formatException(record.exc_info)

        return msg


def configure_logging(environment: str = "development", log_level: str = "INFO"):
    """Install a single stdout handler on the root logger.

    Production gets JSON lines for the log pipeline, everything else the
    console format.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    if environment == "production":
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(HumanReadableFormatter(datefmt="%Y-%m-%d %H:%M:%S"))
    root_logger.addHandler(handler)

    # Statement echo and per-request client lines drown out rotation progress
    for name in ("uvicorn.access", "sqlalchemy.engine", "aiosqlite", "httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.WARNING)

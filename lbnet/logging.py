"""lbnet structured logging with JSON output and reconciliation context.

Every lbnet module logs through ``get_logger(__name__-ish)`` under the
``lbnet`` root. Records may carry reconciliation fields (replica, workload
set, load balancer, ...) passed through ``extra`` or a replica-bound
``LoggerAdapter``; both formatters surface them.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import MutableMapping
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from lbnet.config import LoggingConfig

ROOT_LOGGER = "lbnet"
LOG_FILE_NAME = "lbnet.log"

# Reconciliation fields copied from a record into the JSON payload, in order
CONTEXT_FIELDS = ("workload_set", "replica", "load_balancer", "owner_key", "line_type", "event")

# Fields shown as the console prefix
_CONSOLE_PREFIX = ("workload_set", "replica", "load_balancer")

_LEVEL_NAMES = {"warn": "WARNING"}

# Process-wide fields added to every JSON record (e.g. controller instance)
_log_context: dict[str, Any] = {}


def _record_context(record: logging.LogRecord, fields: tuple[str, ...]) -> dict[str, Any]:
    return {key: getattr(record, key) for key in fields if getattr(record, key, None) is not None}


class JsonFormatter(logging.Formatter):
    """One JSON object per record, for the rotating log file."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Args:
            record: Log record to format

        Returns:
            JSON-formatted log string
        """
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
            **_log_context,
            **_record_context(record, CONTEXT_FIELDS),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class ConsoleFormatter(logging.Formatter):
    """Short colored lines for stderr: time, level, context prefix, message."""

    LEVEL_COLORS = {
        logging.DEBUG: "\033[2m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[1;31m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno, "")
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        prefix = ":".join(str(v) for v in _record_context(record, _CONSOLE_PREFIX).values())
        line = f"{color}{stamp} {record.levelname:<8}{self.RESET} "
        if prefix:
            line += f"[{prefix}] "
        line += record.getMessage()
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def set_log_context(**kwargs: Any) -> None:
    """Replace the fields added to every JSON record.

    Args:
        **kwargs: Context fields, e.g. ``instance="lbnet-0"``
    """
    global _log_context
    _log_context = dict(kwargs)


def clear_log_context() -> None:
    """Drop all process-wide log context."""
    global _log_context
    _log_context = {}


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the ``lbnet`` root.

    Args:
        name: Component name, e.g. ``allocator``

    Returns:
        Logger named ``lbnet.<name>``
    """
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


def setup_logging(
    level: str = "info",
    log_dir: str | Path | None = None,
    json_output: bool = True,
    console_output: bool = True,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> None:
    """Install handlers on the ``lbnet`` root logger, replacing earlier ones.

    Args:
        level: Log level (debug, info, warn, error)
        log_dir: Directory of the rotating JSON log file
        json_output: Write JSON records to ``log_dir``
        console_output: Write colored lines to stderr
        max_bytes: Size at which the log file rotates
        backup_count: Rotated files to keep
    """
    level_name = _LEVEL_NAMES.get(level.lower(), level.upper())
    log_level = logging.getLevelName(level_name)
    if not isinstance(log_level, int):
        log_level = logging.INFO

    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(log_level)
    root.handlers = []
    root.propagate = False

    handlers: list[logging.Handler] = []
    if console_output:
        stream = logging.StreamHandler(sys.stderr)
        stream.setFormatter(ConsoleFormatter())
        handlers.append(stream)
    if log_dir and json_output:
        directory = Path(log_dir)
        directory.mkdir(parents=True, exist_ok=True)
        rotating = RotatingFileHandler(directory / LOG_FILE_NAME, maxBytes=max_bytes, backupCount=backup_count)
        rotating.setFormatter(JsonFormatter())
        handlers.append(rotating)

    for handler in handlers:
        handler.setLevel(log_level)
        root.addHandler(handler)


def configure_logging(config: LoggingConfig) -> None:
    """Apply the ``logging`` section of the lbnet configuration."""
    setup_logging(
        level=config.level,
        log_dir=config.directory,
        json_output=config.json_output,
        max_bytes=config.max_log_size_mb * 1024 * 1024,
    )


class LoggerAdapter(logging.LoggerAdapter[logging.Logger]):
    """Adapter merging its bound fields into the ``extra`` of every call."""

    def process(self, msg: str, kwargs: MutableMapping[str, Any]) -> tuple[str, MutableMapping[str, Any]]:
        kwargs["extra"] = {**kwargs.get("extra", {}), **self.extra}
        return msg, kwargs


def get_replica_logger(name: str, replica: str, workload_set: str | None = None) -> LoggerAdapter:
    """Get a logger adapter bound to one replica.

    Args:
        name: Component name
        replica: ``namespace/name`` of the replica
        workload_set: Owning workload-set key, if any

    Returns:
        LoggerAdapter adding ``replica`` and ``workload_set`` to each record
    """
    extra: dict[str, Any] = {"replica": replica}
    if workload_set is not None:
        extra["workload_set"] = workload_set
    return LoggerAdapter(get_logger(name), extra)


# Console logging until the CLI applies the configuration
setup_logging(console_output=True, json_output=False)

"""Logging setup for migration runs.

Text logs for people at a terminal, one JSON object per line for log
aggregation. Records carry the migration name and the load step as
extra fields so a JSON log can be filtered per table:

    {"timestamp": "2025-01-15T10:30:00.123Z", "level": "INFO",
     "logger": "migration.lib.orchestrator", "message": "METRIC rows_loaded=51000",
     "migration": "product", "step": "load", "metric_name": "rows_loaded",
     "metric_value": 51000, "metric_unit": "rows"}

Console output goes to stderr; stdout belongs to command output such as
``run --json`` and ``script``.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, MutableMapping, Optional, Tuple

__all__ = [
    "setup_logging",
    "JSONFormatter",
    "MigrationLogger",
    "get_migration_logger",
]

TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Attributes every LogRecord has; anything else arrived through ``extra``
_STANDARD_ATTRS = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {
    "message",
    "asctime",
}

_QUIET_LOGGERS = ("azure", "adlfs", "fsspec", "urllib3")


class JSONFormatter(logging.Formatter):
    """Render records as single-line JSON.

    Fields passed through ``extra`` (migration, step, metric_*) are placed
    at the top level next to the standard ones.

    Args:
        exclude_fields: Extra fields to leave out of the output
        include_location: Add ``"at": "file.py:42"`` to every record
    """

    def __init__(self, exclude_fields: Optional[list[str]] = None, include_location: bool = False):
        super().__init__()
        self.exclude_fields = set(exclude_fields or [])
        self.include_location = include_location

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if self.include_location:
            payload["at"] = f"{record.filename}:{record.lineno}"

        for key, value in record.__dict__.items():
            if key in _STANDARD_ATTRS or key in self.exclude_fields or key in payload:
                continue
            payload[key] = value

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class MigrationLogger(logging.LoggerAdapter):
    """Logger adapter that stamps the migration context onto every record.

    Example:
        log = get_migration_logger(__name__)
        log.set_context(migration="online_sales")
        log.set_context(step="load")
        log.metric("rows_loaded", 12_627_608, unit="rows")
    """

    def __init__(self, name: str):
        super().__init__(logging.getLogger(name), {})

    @property
    def context(self) -> Dict[str, Any]:
        return dict(self.extra)

    def set_context(self, **fields: Any) -> None:
        self.extra.update(fields)

    def clear_context(self) -> None:
        self.extra.clear()

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        # Per-call extra wins over the adapter's context
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs

    def metric(self, name: str, value: Any, unit: Optional[str] = None, **tags: Any) -> None:
        """Log a numeric measurement such as ``rows_loaded`` or ``step_duration_seconds``."""
        extra: Dict[str, Any] = {"metric_name": name, "metric_value": value}
        if unit:
            extra["metric_unit"] = unit
        extra.update(tags)
        self.info("METRIC %s=%s", name, value, extra=extra)


def get_migration_logger(name: str) -> MigrationLogger:
    return MigrationLogger(name)


def setup_logging(
    verbose: bool = False,
    json_format: bool = False,
    log_file: Optional[str] = None,
) -> None:
    """Configure the root logger for a command-line run.

    Replaces any handlers already on the root logger, so calling it twice
    does not duplicate output.

    Args:
        verbose: Log at DEBUG instead of INFO
        json_format: One JSON object per line instead of text
        log_file: Also write records to this file
    """
    level = logging.DEBUG if verbose else logging.INFO
    formatter = JSONFormatter() if json_format else logging.Formatter(TEXT_FORMAT, datefmt=DATE_FORMAT)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

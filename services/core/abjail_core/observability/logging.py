"""Structured logging for AB Jail services.

Log lines are named "<component>:<event>" (e.g. "ingest:created") and carry
the submission id, pipeline stage and channel as fields, so every line
written while a submission moves through the pipeline can be correlated.

Usage:
    logger = get_logger(__name__)

    context = PipelineContext(submission_id=sub.id, stage="classify")
    logger.info("classify:done", context=context, violations=3, ms=812)

Fields whose name looks like a credential are masked before output.
"""

import json
import logging
import sys
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_SERVICE_NAME = "abjail"
TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s%(fields)s"

# Attributes every LogRecord has; anything else came in through extra=
_RECORD_ATTRIBUTES = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__
) | {"message", "asctime", "fields"}

_SECRET_MARKERS = ("api_key", "apikey", "token", "secret", "password", "authorization")
_MASK = "***"

_loggers: dict[str, "StructuredLogger"] = {}


def _is_secret(name: str) -> bool:
    lowered = name.lower()
    return any(marker in lowered for marker in _SECRET_MARKERS)


def _record_fields(record: logging.LogRecord) -> dict[str, Any]:
    """Collect the structured fields attached to a record, secrets masked."""
    fields: dict[str, Any] = {}
    for key, value in record.__dict__.items():
        if key in _RECORD_ATTRIBUTES or key.startswith("_"):
            continue
        fields[key] = _MASK if _is_secret(key) and value else value
    return fields


class JsonFormatter(logging.Formatter):
    """One JSON object per line; warnings and errors include their source."""

    def __init__(self, service_name: str = DEFAULT_SERVICE_NAME):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service_name,
            "logger": record.name,
            "event": record.getMessage(),
        }
        if record.levelno >= logging.WARNING:
            entry["where"] = f"{record.module}.{record.funcName}:{record.lineno}"
        if record.exc_info:
            entry["exception"] = "".join(traceback.format_exception(*record.exc_info))

        for key, value in _record_fields(record).items():
            entry[key] = value
        return json.dumps(entry, default=str)


class KeyValueFormatter(logging.Formatter):
    """Human-readable lines for local runs: the event followed by key=value pairs."""

    def __init__(self):
        super().__init__(TEXT_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        pairs = " ".join(f"{key}={value}" for key, value in _record_fields(record).items())
        record.fields = f" {pairs}" if pairs else ""
        return super().format(record)


@dataclass
class PipelineContext:
    """Which submission, stage and channel a log line belongs to."""

    submission_id: Optional[str] = None
    stage: Optional[str] = None
    channel: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        result = {
            key: value
            for key, value in (
                ("submission_id", self.submission_id),
                ("stage", self.stage),
                ("channel", self.channel),
            )
            if value
        }
        result.update(self.extra)
        return result


class StructuredLogger:
    """Thin wrapper over a stdlib logger that takes fields as keyword arguments."""

    def __init__(self, name: str):
        self.name = name
        self._logger = logging.getLogger(name)

    def _log(
        self,
        level: int,
        event: str,
        context: Optional[PipelineContext],
        exc_info: bool,
        fields: dict[str, Any],
    ) -> None:
        if not self._logger.isEnabledFor(level):
            return
        extra = context.to_dict() if context else {}
        extra.update(fields)
        self._logger.log(level, event, exc_info=exc_info, extra=extra)

    def debug(self, event: str, context: Optional[PipelineContext] = None, **fields: Any) -> None:
        self._log(logging.DEBUG, event, context, False, fields)

    def info(self, event: str, context: Optional[PipelineContext] = None, **fields: Any) -> None:
        self._log(logging.INFO, event, context, False, fields)

    def warning(
        self,
        event: str,
        context: Optional[PipelineContext] = None,
        exc_info: bool = False,
        **fields: Any,
    ) -> None:
        self._log(logging.WARNING, event, context, exc_info, fields)

    def error(
        self,
        event: str,
        context: Optional[PipelineContext] = None,
        exc_info: bool = False,
        **fields: Any,
    ) -> None:
        self._log(logging.ERROR, event, context, exc_info, fields)


def get_logger(name: str) -> StructuredLogger:
    """Return the shared StructuredLogger for a module name."""
    logger = _loggers.get(name)
    if logger is None:
        logger = _loggers[name] = StructuredLogger(name)
    return logger


def configure_logging(
    level: str = DEFAULT_LOG_LEVEL,
    json_format: bool = True,
    service_name: str = DEFAULT_SERVICE_NAME,
) -> None:
    """Install a single stdout handler on the root logger.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR).
        json_format: JSON lines when true, key=value text otherwise.
        service_name: Value of the "service" field in JSON output.
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        JsonFormatter(service_name=service_name) if json_format else KeyValueFormatter()
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(numeric_level)

    # httpx logs every request at INFO, including OCR and inference calls
    logging.getLogger("httpx").setLevel(max(numeric_level, logging.WARNING))

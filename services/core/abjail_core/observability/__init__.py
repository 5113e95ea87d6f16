"""Structured logging helpers shared by the API and the worker."""

from abjail_core.observability.logging import (
    JsonFormatter,
    KeyValueFormatter,
    PipelineContext,
    StructuredLogger,
    configure_logging,
    get_logger,
)

__all__ = [
    "JsonFormatter",
    "KeyValueFormatter",
    "PipelineContext",
    "StructuredLogger",
    "configure_logging",
    "get_logger",
]

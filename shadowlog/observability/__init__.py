"""Observability helpers."""

from shadowlog.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_ingestion,
    record_parser_failure,
    record_poll_retry,
    record_tool_result,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_ingestion",
    "record_parser_failure",
    "record_poll_retry",
    "record_tool_result",
]

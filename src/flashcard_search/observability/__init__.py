"""Logging, metrics and tracing for indexing and search operations."""

from flashcard_search.observability.context import current_operation, operation_scope
from flashcard_search.observability.logging import JsonFormatter, configure_logging
from flashcard_search.observability.metrics import (
    INDEXED_CARDS,
    REBUILD_COUNT,
    SEARCH_LATENCY,
    WORKER_FALLBACKS,
    get_metrics,
    init_metrics,
)
from flashcard_search.observability.tracing import create_span, get_tracer, init_tracing


__all__ = [
    "INDEXED_CARDS",
    "REBUILD_COUNT",
    "SEARCH_LATENCY",
    "WORKER_FALLBACKS",
    "JsonFormatter",
    "configure_logging",
    "create_span",
    "current_operation",
    "get_metrics",
    "get_tracer",
    "init_metrics",
    "init_tracing",
    "operation_scope",
]

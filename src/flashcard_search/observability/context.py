"""Correlation ids shared by every log line of one rebuild, prime or search."""

from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager
from contextvars import ContextVar
from uuid import uuid4


_operation: ContextVar[dict[str, str] | None] = ContextVar("search_operation", default=None)


def new_trace_id() -> str:
    return uuid4().hex


def new_span_id() -> str:
    return uuid4().hex[:16]


def current_operation() -> dict[str, str]:
    """Ids and labels of the operation running in this task; empty outside one."""
    return dict(_operation.get() or {})


@contextmanager
def operation_scope(
    operation: str,
    *,
    trace_id: str | None = None,
    span_id: str | None = None,
    **labels: str,
) -> Generator[dict[str, str], None, None]:
    """Tag the enclosed work as ``operation``.

    Nested scopes inherit the enclosing trace id and labels. The previous scope
    is restored on exit, including when the body raises.
    """
    parent = _operation.get() or {}
    scope = {
        **parent,
        **labels,
        "operation": operation,
        "trace_id": trace_id or parent.get("trace_id") or new_trace_id(),
        "span_id": span_id or new_span_id(),
    }
    token = _operation.set(scope)
    try:
        yield scope
    finally:
        _operation.reset(token)

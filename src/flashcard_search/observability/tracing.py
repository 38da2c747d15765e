"""OpenTelemetry spans around rebuilds, priming and ranked searches.

Without ``init_tracing`` the spans go to whatever tracer provider the host
application installed, which is the no-op provider by default. Log
correlation works either way: ``create_span`` opens an ``operation_scope``
keyed by the span's ids, or by generated ids when the span is not recording.
"""

from __future__ import annotations

from contextlib import contextmanager
import logging
from typing import TYPE_CHECKING, Any

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.trace import SpanKind, Status, StatusCode

from flashcard_search.observability.context import operation_scope


if TYPE_CHECKING:
    from collections.abc import Generator

    from opentelemetry.trace import Span, Tracer

logger = logging.getLogger(__name__)

_TRACER_NAME = "flashcard_search"

_tracer_holder: dict[str, Any] = {"tracer": None, "provider": None}


def init_tracing(service_name: str, resource_attributes: dict[str, str] | None = None) -> TracerProvider:
    """Install an SDK tracer provider for this process and bind the search tracer to it.

    Only the first call installs a provider; later calls return it.
    """
    if isinstance(_tracer_holder["provider"], TracerProvider):
        return _tracer_holder["provider"]
    resource = Resource.create({"service.name": service_name, **(resource_attributes or {})})
    provider = TracerProvider(resource=resource)
    trace.set_tracer_provider(provider)
    _tracer_holder.update(provider=provider, tracer=provider.get_tracer(_TRACER_NAME))
    logger.info("Search tracing enabled for %s", service_name)
    return provider


def get_tracer() -> Tracer:
    if _tracer_holder["tracer"] is None:
        _tracer_holder["tracer"] = trace.get_tracer(_TRACER_NAME)
    return _tracer_holder["tracer"]  # type: ignore[return-value]


def _scope_labels(attributes: dict[str, Any]) -> dict[str, str]:
    # "rebuild.mode" -> "rebuild_mode" so the labels read as plain JSON log keys
    return {key.replace(".", "_"): str(value) for key, value in attributes.items()}


@contextmanager
def create_span(name: str, attributes: dict[str, Any] | None = None) -> Generator[Span, None, None]:
    """Run the enclosed block inside span ``name`` and its log-correlation scope.

    Span attributes double as log labels for every record emitted in the block.
    Exceptions mark the span as failed and propagate unchanged.
    """
    attributes = attributes or {}
    tracer = get_tracer()
    with tracer.start_as_current_span(
        name,
        kind=SpanKind.INTERNAL,
        attributes=attributes,
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        span_context = span.get_span_context()
        ids: dict[str, str] = {}
        if span_context.is_valid:
            ids = {"trace_id": format(span_context.trace_id, "032x"), "span_id": format(span_context.span_id, "016x")}
        with operation_scope(name, **ids, **_scope_labels(attributes)):
            try:
                yield span
            except Exception as exc:
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                span.record_exception(exc)
                raise

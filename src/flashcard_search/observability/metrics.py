"""Prometheus metrics for the search engine, bridged to OpenTelemetry instruments."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from opentelemetry import metrics as otel_metrics
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.resources import Resource
from prometheus_client import Counter, Gauge, Histogram, generate_latest


if TYPE_CHECKING:
    from opentelemetry.sdk.metrics.export import MetricReader


_METER_NAME = "flashcard_search"

_meter_holder: dict[str, Any] = {"meter": None, "provider": None}


def init_metrics(
    service_name: str,
    resource_attributes: dict[str, str] | None = None,
    metric_readers: list[MetricReader] | None = None,
) -> MeterProvider:
    """Install the OpenTelemetry meter provider that receives the bridged search metrics.

    Idempotent: the first provider wins for the life of the process.
    """
    provider = _meter_holder.get("provider")
    if isinstance(provider, MeterProvider):
        return provider

    attributes = {"service.name": service_name}
    if resource_attributes:
        attributes.update(resource_attributes)
    resource = Resource.create(attributes)
    provider = MeterProvider(resource=resource, metric_readers=metric_readers or [])
    otel_metrics.set_meter_provider(provider)
    _meter_holder["provider"] = provider
    _meter_holder["meter"] = provider.get_meter(_METER_NAME)
    return provider


def _get_meter():
    # Until init_metrics runs, instruments come from the global proxy meter and
    # start recording once any SDK provider is installed.
    meter = _meter_holder.get("meter")
    if meter is None:
        meter = otel_metrics.get_meter(_METER_NAME)
        _meter_holder["meter"] = meter
    return meter


def _label_key(labels: dict[str, str]) -> tuple[tuple[str, str], ...]:
    return tuple(sorted(labels.items()))


class _BoundMetric:
    def __init__(self, wrapper: MetricBridge, labels: dict[str, str]) -> None:
        self._wrapper = wrapper
        self._labels = labels

    def inc(self, amount: float = 1.0) -> None:
        self._wrapper.inc(self._labels, amount)

    def observe(self, value: float) -> None:
        self._wrapper.observe(self._labels, value)

    def set(self, value: float) -> None:
        self._wrapper.set(self._labels, value)


class MetricBridge:
    """Bridge Prometheus metrics to OTel instruments."""

    def __init__(
        self,
        prom_metric: Counter | Histogram | Gauge,
        *,
        otel_name: str,
        otel_description: str,
        otel_kind: str,
    ) -> None:
        self._prom_metric = prom_metric
        self._otel_name = otel_name
        self._otel_description = otel_description
        self._otel_kind = otel_kind
        self._otel_instrument = None
        self._last_values: dict[tuple[tuple[str, str], ...], float] = {}

    def labels(self, **labels: str) -> _BoundMetric:
        return _BoundMetric(self, labels)

    def _ensure_otel_instrument(self):
        if self._otel_instrument is not None:
            return self._otel_instrument
        meter = _get_meter()
        if self._otel_kind == "counter":
            self._otel_instrument = meter.create_counter(self._otel_name, description=self._otel_description)
        elif self._otel_kind == "histogram":
            self._otel_instrument = meter.create_histogram(self._otel_name, description=self._otel_description)
        elif self._otel_kind == "gauge":
            self._otel_instrument = meter.create_up_down_counter(self._otel_name, description=self._otel_description)
        else:
            raise ValueError(f"Unknown metric kind: {self._otel_kind}")
        return self._otel_instrument

    def _prom(self, labels: dict[str, str]):
        return self._prom_metric.labels(**labels) if labels else self._prom_metric

    def inc(self, labels: dict[str, str], amount: float) -> None:
        self._prom(labels).inc(amount)
        otel = self._ensure_otel_instrument()
        otel.add(amount, labels)

    def observe(self, labels: dict[str, str], value: float) -> None:
        self._prom(labels).observe(value)
        otel = self._ensure_otel_instrument()
        otel.record(value, labels)

    def set(self, labels: dict[str, str], value: float) -> None:
        self._prom(labels).set(value)
        otel = self._ensure_otel_instrument()
        key = _label_key(labels)
        last = self._last_values.get(key, 0.0)
        delta = value - last
        if delta:
            otel.add(delta, labels)
        self._last_values[key] = value


_SEARCH_LATENCY_PROM = Histogram(
    "search_latency_seconds",
    "Search query latency",
    ["ranking"],
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5),
)

_INDEXED_CARDS_PROM = Gauge(
    "search_index_card_count",
    "Cards represented in the search index",
)

_REBUILD_COUNT_PROM = Counter(
    "search_rebuilds_total",
    "Full index rebuilds by mode and outcome",
    ["mode", "outcome"],
)

_WORKER_FALLBACKS_PROM = Counter(
    "search_worker_fallbacks_total",
    "Worker failures that degraded to local computation",
    ["worker"],
)

SEARCH_LATENCY = MetricBridge(
    _SEARCH_LATENCY_PROM,
    otel_name="search_latency_seconds",
    otel_description="Search query latency",
    otel_kind="histogram",
)

INDEXED_CARDS = MetricBridge(
    _INDEXED_CARDS_PROM,
    otel_name="search_index_card_count",
    otel_description="Cards represented in the search index",
    otel_kind="gauge",
)

REBUILD_COUNT = MetricBridge(
    _REBUILD_COUNT_PROM,
    otel_name="search_rebuilds_total",
    otel_description="Full index rebuilds by mode and outcome",
    otel_kind="counter",
)

WORKER_FALLBACKS = MetricBridge(
    _WORKER_FALLBACKS_PROM,
    otel_name="search_worker_fallbacks_total",
    otel_description="Worker failures that degraded to local computation",
    otel_kind="counter",
)


def get_metrics() -> bytes:
    """Prometheus text exposition of the default registry, search metrics included."""
    return generate_latest()

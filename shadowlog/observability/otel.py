"""OpenTelemetry + Prometheus fallback wiring for shadowlog.

Every recorder is a no-op until ``initialize()`` has run with
``SHADOWLOG_OTEL_ENABLED`` set, so the store can call them unconditionally.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from fastapi import FastAPI

from shadowlog import config

logger = logging.getLogger("shadowlog.observability")


# name -> (instrument kind, description, unit, label names)
_METRIC_DEFS: dict[str, tuple[str, str, str, tuple[str, ...]]] = {
    "shadowlog_polls_total": ("counter", "Count of rollout file poll cycles", "1", ("entity", "result", "root")),
    "shadowlog_poll_latency_ms": ("histogram", "Latency of rollout file poll cycles", "ms", ("entity", "result", "root")),
    "shadowlog_parse_errors_total": ("counter", "Count of rollout lines that failed to decode", "1", ("parser", "root")),
    "shadowlog_tool_results_total": ("counter", "Tool results observed while tailing sessions", "1", ("tool", "severity", "root")),
    "shadowlog_poll_retries_total": ("counter", "Poll retries caused by transient I/O failures", "1", ("root",)),
}


@dataclass
class _Metric:
    kind: str
    label_names: tuple[str, ...]
    otel: Any = None
    prom: Any = None

    def emit(self, value: float, labels: dict[str, str]) -> None:
        clean = {name: (labels.get(name) or "").strip() or "unknown" for name in self.label_names}
        if self.otel is not None:
            if self.kind == "histogram":
                self.otel.record(value, clean)
            else:
                self.otel.add(value, clean)
        if self.prom is not None:
            child = self.prom.labels(**clean)
            if self.kind == "histogram":
                child.observe(value)
            else:
                child.inc(value)


@dataclass
class _Telemetry:
    initialized: bool = False
    enabled: bool = False
    tracer: Any = None
    trace_provider: Any = None
    meter_provider: Any = None
    instrumentor: Any = None
    metrics: dict[str, _Metric] = field(default_factory=dict)


_state = _Telemetry()


def _normalize_otlp_endpoint(base_endpoint: str, signal_path: str) -> str:
    endpoint = (base_endpoint or "").strip().rstrip("/")
    if not endpoint:
        return ""
    if endpoint.endswith(signal_path):
        return endpoint
    if endpoint.endswith("/v1"):
        return endpoint + signal_path[len("/v1"):]
    return endpoint + signal_path


def _start_prometheus(metrics: dict[str, _Metric]) -> None:
    try:
        from prometheus_client import Counter, Histogram, start_http_server

        start_http_server(config.PROM_PORT)
        for name, metric in metrics.items():
            _kind, description, _unit, labels = _METRIC_DEFS[name]
            prom_cls = Histogram if metric.kind == "histogram" else Counter
            metric.prom = prom_cls(name, description, list(labels))
        logger.info("Prometheus fallback metrics server listening on port %s", config.PROM_PORT)
    except Exception as exc:  # noqa: BLE001
        logger.warning("Prometheus fallback not started: %s", exc)
        for metric in metrics.values():
            metric.prom = None


def initialize(app: FastAPI | None = None) -> None:
    if _state.initialized:
        if _state.enabled and app and _state.instrumentor:
            _state.instrumentor.instrument_app(app)
        return
    _state.initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (SHADOWLOG_OTEL_ENABLED=false)")
        return

    try:
        from opentelemetry import metrics, trace
        from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError as exc:
        logger.warning("OpenTelemetry dependencies unavailable: %s", exc)
        return

    service_name = config.OTEL_SERVICE_NAME or "shadowlog"
    resource = Resource.create({"service.name": service_name, "service.namespace": "shadowlog"})

    traces_endpoint = _normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/traces")
    _state.trace_provider = TracerProvider(resource=resource)
    _state.trace_provider.add_span_processor(
        BatchSpanProcessor(OTLPSpanExporter(endpoint=traces_endpoint or None))
    )
    trace.set_tracer_provider(_state.trace_provider)
    _state.tracer = trace.get_tracer("shadowlog.store")

    metrics_endpoint = _normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/metrics")
    reader = PeriodicExportingMetricReader(OTLPMetricExporter(endpoint=metrics_endpoint or None))
    _state.meter_provider = MeterProvider(resource=resource, metric_readers=[reader])
    metrics.set_meter_provider(_state.meter_provider)
    meter = metrics.get_meter("shadowlog.store")

    for name, (kind, description, unit, labels) in _METRIC_DEFS.items():
        create = meter.create_histogram if kind == "histogram" else meter.create_counter
        _state.metrics[name] = _Metric(
            kind=kind,
            label_names=labels,
            otel=create(name, unit=unit, description=description),
        )

    _state.instrumentor = FastAPIInstrumentor()
    _state.enabled = True
    if app:
        _state.instrumentor.instrument_app(app)

    if config.PROM_PORT > 0:
        _start_prometheus(_state.metrics)

    logger.info("OpenTelemetry initialized (service=%s endpoint=%s)", service_name, config.OTEL_ENDPOINT)


def shutdown(app: FastAPI | None = None) -> None:
    if not _state.initialized:
        return
    steps = (
        ("FastAPI uninstrument", lambda: app and _state.instrumentor and _state.instrumentor.uninstrument_app(app)),
        ("Meter provider shutdown", lambda: _state.meter_provider and _state.meter_provider.shutdown()),
        ("Trace provider shutdown", lambda: _state.trace_provider and _state.trace_provider.shutdown()),
    )
    for label, step in steps:
        try:
            step()
        except Exception:
            logger.debug("%s failed", label, exc_info=True)
    _state.enabled = False


@contextmanager
def start_span(name: str, attributes: dict[str, Any] | None = None):
    if not _state.enabled or _state.tracer is None:
        yield None
        return
    with _state.tracer.start_as_current_span(name) as span:
        for key, value in (attributes or {}).items():
            if value is not None:
                span.set_attribute(key, value)
        yield span


def _emit(name: str, value: float, **labels: str) -> None:
    if not _state.enabled:
        return
    metric = _state.metrics.get(name)
    if metric is not None:
        metric.emit(value, labels)


def record_ingestion(entity: str, result: str, duration_ms: float, *, root: str) -> None:
    """One finished poll of a rollout file (``result`` is ``ok`` or ``error``)."""
    _emit("shadowlog_polls_total", 1, entity=entity, result=result, root=root)
    _emit("shadowlog_poll_latency_ms", max(0.0, float(duration_ms)), entity=entity, result=result, root=root)


def record_parser_failure(parser: str, *, root: str, count: int = 1) -> None:
    if count > 0:
        _emit("shadowlog_parse_errors_total", int(count), parser=parser, root=root)


def record_tool_result(tool: str, severity: str, *, root: str, count: int = 1) -> None:
    if count > 0:
        _emit("shadowlog_tool_results_total", int(count), tool=tool, severity=severity, root=root)


def record_poll_retry(*, root: str) -> None:
    _emit("shadowlog_poll_retries_total", 1, root=root)

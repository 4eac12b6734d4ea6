from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
import logging
import os

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

from rawwire.core.config import Settings

LOG_FORMAT = (
    "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s "
    "execution_id=%(execution_id)s %(message)s"
)
NO_EXECUTION = "-"

_execution_id: ContextVar[str] = ContextVar("rawwire_execution_id", default=NO_EXECUTION)
_base_record_factory = logging.getLogRecordFactory()
_record_factory_installed = False
_httpx_instrumentor = HTTPXClientInstrumentor()


@dataclass(slots=True)
class TelemetryRuntime:
    component: str
    provider: TracerProvider | None = None
    app: FastAPI | None = None

    @property
    def enabled(self) -> bool:
        return self.provider is not None


@contextmanager
def bind_execution(execution_id: str) -> Iterator[None]:
    """Tag log records emitted inside the block with a pipeline execution id."""
    token = _execution_id.set(execution_id)
    try:
        yield
    finally:
        _execution_id.reset(token)


def current_execution_id() -> str:
    return _execution_id.get()


def configure_logging(level: int = logging.INFO) -> None:
    install_record_factory()
    if logging.getLogger().handlers:
        return
    logging.basicConfig(level=level, format=LOG_FORMAT)


def install_record_factory() -> None:
    global _record_factory_installed
    if _record_factory_installed:
        return

    def record_factory(*args: object, **kwargs: object) -> logging.LogRecord:
        record = _base_record_factory(*args, **kwargs)
        span_context = trace.get_current_span().get_span_context()
        record.trace_id = format(span_context.trace_id, "032x") if span_context.is_valid else "0" * 32
        record.span_id = format(span_context.span_id, "016x") if span_context.is_valid else "0" * 16
        record.execution_id = _execution_id.get()
        return record

    logging.setLogRecordFactory(record_factory)
    _record_factory_installed = True


def setup_telemetry(settings: Settings, app: FastAPI | None = None, *, component: str = "api") -> TelemetryRuntime:
    """Install the tracer provider for the API process or the background worker."""
    if not settings.otel_enabled:
        return TelemetryRuntime(component=component)

    if settings.otel_log_correlation:
        install_record_factory()

    resource = Resource.create(
        {
            SERVICE_NAME: settings.otel_service_name,
            DEPLOYMENT_ENVIRONMENT: settings.environment,
            "rawwire.component": component,
            "rawwire.semantic_scoring": bool(settings.generation_endpoint),
        }
    )
    provider = TracerProvider(resource=resource, sampler=TraceIdRatioBased(settings.otel_trace_sample_ratio))
    exporter = build_exporter(settings)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)

    # pipeline http steps and adapters share the global httpx instrumentation
    _httpx_instrumentor.instrument()
    if app is not None:
        FastAPIInstrumentor.instrument_app(app, tracer_provider=provider)
    return TelemetryRuntime(component=component, provider=provider, app=app)


def shutdown_telemetry(runtime: TelemetryRuntime) -> None:
    if runtime.provider is None:
        return
    if runtime.app is not None:
        FastAPIInstrumentor.uninstrument_app(runtime.app)
    if _httpx_instrumentor.is_instrumented_by_opentelemetry:
        _httpx_instrumentor.uninstrument()
    runtime.provider.force_flush()
    runtime.provider.shutdown()
    runtime.provider = None


def build_exporter(settings: Settings) -> OTLPSpanExporter | None:
    endpoint = (
        settings.otel_exporter_otlp_endpoint
        or os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
        or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    )
    if not endpoint:
        logging.getLogger(__name__).info(
            "otlp endpoint not configured; spans stay in-process service=%s",
            settings.otel_service_name,
        )
        return None

    headers = parse_otlp_headers(settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
    return OTLPSpanExporter(endpoint=endpoint, headers=headers or None)


def parse_otlp_headers(raw: str | None) -> dict[str, str]:
    """Parse ``key=value,key2=value2``; entries without ``=`` or a key are dropped."""
    headers: dict[str, str] = {}
    for chunk in (raw or "").split(","):
        key, separator, value = chunk.partition("=")
        if separator and key.strip():
            headers[key.strip()] = value.strip()
    return headers

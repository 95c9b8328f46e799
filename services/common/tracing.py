"""OpenTelemetry wiring shared by the booking platform services."""

import logging

from fastapi import FastAPI

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (  # type: ignore[attr-defined]
    OTLPSpanExporter as OTLPGrpcExporter,
)
from opentelemetry.exporter.otlp.proto.http.trace_exporter import (  # type: ignore[attr-defined]
    OTLPSpanExporter as OTLPHttpExporter,
)
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SpanExporter
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from opentelemetry.trace import TracerProvider as APITracerProvider

from .config import SERVICE_VERSION, ServiceSettings

_LOGGER = logging.getLogger(__name__)
_INSTRUMENTED_APPS: set[int] = set()
_HTTPX_INSTRUMENTED = False
_TRACER_NAME = "services.booking-platform"
# Liveness probes and Prometheus scrapes are not traced.
_EXCLUDED_URLS = "health,metrics"


def _create_exporter(settings: ServiceSettings) -> SpanExporter | None:
    if settings.tracing_endpoint is None:
        return None
    if settings.tracing_protocol == "grpc":
        return OTLPGrpcExporter(endpoint=settings.tracing_endpoint, insecure=settings.tracing_insecure)
    return OTLPHttpExporter(endpoint=settings.tracing_endpoint)


def _ensure_provider(settings: ServiceSettings) -> APITracerProvider:
    current_provider = trace.get_tracer_provider()
    if isinstance(current_provider, TracerProvider):
        return current_provider

    resource = Resource.create(
        {
            "service.name": settings.app_name,
            "service.version": SERVICE_VERSION,
            "deployment.environment": settings.environment,
        }
    )
    # Child spans inherit the caller's sampling decision.
    sampler = ParentBased(root=TraceIdRatioBased(settings.tracing_sample_rate))
    provider = TracerProvider(resource=resource, sampler=sampler)
    exporter = _create_exporter(settings)
    if exporter is None:
        _LOGGER.warning(
            "Tracing is enabled for %s but no OTLP endpoint is configured; spans will not be exported.",
            settings.app_name,
        )
    else:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    try:
        trace.set_tracer_provider(provider)
    except RuntimeError:  # pragma: no cover - occurs when provider already initialized elsewhere
        return trace.get_tracer_provider()
    return provider


def _instrument_httpx(provider: APITracerProvider) -> None:
    global _HTTPX_INSTRUMENTED
    if _HTTPX_INSTRUMENTED:
        return
    try:
        HTTPXClientInstrumentor().instrument(tracer_provider=provider)
    except Exception as exc:  # pragma: no cover - instrumentation is best effort
        _LOGGER.warning("Failed to instrument httpx for tracing: %s", exc)
    else:
        _HTTPX_INSTRUMENTED = True


def configure_tracing(app: FastAPI, settings: ServiceSettings) -> None:
    """Instrument ``app`` (once) and outbound httpx calls when tracing is enabled."""

    if not settings.enable_tracing:
        return

    provider = _ensure_provider(settings)
    if id(app) not in _INSTRUMENTED_APPS:
        FastAPIInstrumentor.instrument_app(app, tracer_provider=provider, excluded_urls=_EXCLUDED_URLS)
        _INSTRUMENTED_APPS.add(id(app))
    _instrument_httpx(provider)


def flush_tracing(timeout_millis: int = 5000) -> bool:
    """Export buffered spans; called on shutdown so the last requests are not lost."""

    provider = trace.get_tracer_provider()
    if not isinstance(provider, TracerProvider):
        return True
    return provider.force_flush(timeout_millis)


def get_tracer(name: str | None = None) -> trace.Tracer:
    """Return a tracer from the active provider (a no-op tracer when tracing is off)."""

    return trace.get_tracer(name or _TRACER_NAME)

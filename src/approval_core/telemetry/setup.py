"""Central OTel setup: providers, propagation and library instrumentation.

Everything here is a no-op when OTEL_ENABLED is false, so the API and the
worker can call it unconditionally.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.redis import RedisInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.propagate import set_global_textmap
from opentelemetry.propagators.composite import CompositePropagator
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

from approval_core.settings import OTelSettings

if TYPE_CHECKING:
    from fastapi import FastAPI
    from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)

# Health and readiness checks stay out of traces
UNTRACED_PATHS = "health,ready"

_tracer_provider: TracerProvider | None = None
_meter_provider: MeterProvider | None = None


def init_telemetry(service_name: str | None = None, *, engine: AsyncEngine | None = None) -> bool:
    """Install OTLP gRPC exporters and instrument Redis and, if given, the database engine.

    Call once at startup. Returns whether telemetry is active; later calls
    return True without re-initializing.
    """
    global _tracer_provider, _meter_provider

    if _tracer_provider is not None:
        return True

    settings = OTelSettings()
    if not settings.enabled:
        logger.info("OTel telemetry disabled via OTEL_ENABLED=false")
        return False

    name = service_name or settings.service_name
    resource = Resource.create({SERVICE_NAME: name})
    endpoint = settings.exporter_otlp_endpoint

    _tracer_provider = TracerProvider(resource=resource)
    _tracer_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, insecure=True)))
    trace.set_tracer_provider(_tracer_provider)

    reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=endpoint, insecure=True),
        export_interval_millis=settings.metric_export_interval_ms,
    )
    _meter_provider = MeterProvider(resource=resource, metric_readers=[reader])
    metrics.set_meter_provider(_meter_provider)

    # Trace context crosses the recalculation queue in NATS headers
    set_global_textmap(CompositePropagator([TraceContextTextMapPropagator()]))

    RedisInstrumentor().instrument()
    if engine is not None:
        SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)

    logger.info("OTel telemetry initialized for '%s' -> %s", name, endpoint)
    return True


def instrument_app(app: FastAPI) -> None:
    """Trace API requests. Spans go to the global provider once init_telemetry has run."""
    if not OTelSettings().enabled:
        return
    FastAPIInstrumentor.instrument_app(app, excluded_urls=UNTRACED_PATHS)


def shutdown_telemetry() -> None:
    """Flush and shut down OTel providers."""
    global _tracer_provider, _meter_provider

    if _tracer_provider is None:
        return

    _tracer_provider.shutdown()
    _tracer_provider = None
    if _meter_provider is not None:
        _meter_provider.shutdown()
        _meter_provider = None
    logger.info("OTel telemetry shut down")


def get_tracer(name: str) -> trace.Tracer:
    """Tracer from the global provider; a no-op tracer until init_telemetry runs."""
    return trace.get_tracer(name)

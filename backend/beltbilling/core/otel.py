"""OpenTelemetry tracing for webhook handling and outbound gateway calls.

Metrics are served by prometheus_client on /metrics, so only spans are
exported over OTLP.
"""
import logging

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from beltbilling.core.config import settings

logger = logging.getLogger(__name__)

# Proxy tracer: a no-op until initialize_otel installs a provider
tracer = trace.get_tracer("beltbilling")


def initialize_otel() -> bool:
    """Install the OTLP span exporter when an endpoint is configured"""
    if not settings.OTEL_EXPORTER_OTLP_ENDPOINT:
        return False

    try:
        provider = TracerProvider(resource=Resource.create({
            "service.name": settings.OTEL_SERVICE_NAME,
            "deployment.environment": settings.OTEL_ENVIRONMENT,
        }))
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(
            endpoint=settings.OTEL_EXPORTER_OTLP_ENDPOINT,
            insecure=True
        )))
        trace.set_tracer_provider(provider)
        return True
    except Exception as e:
        logger.warning(f"Failed to initialize OpenTelemetry: {e}")
        return False


def gateway_span(gateway: str, operation: str):
    """Span around one authenticated gateway operation, retries included"""
    return tracer.start_as_current_span(
        f"{gateway}.{operation}",
        kind=trace.SpanKind.CLIENT,
        attributes={"billing.gateway": gateway, "billing.operation": operation},
    )


def instrument_app(app, engine):
    """Auto-instrument FastAPI routes, httpx gateway traffic and SQLAlchemy"""
    FastAPIInstrumentor.instrument_app(app)
    HTTPXClientInstrumentor().instrument()
    try:
        SQLAlchemyInstrumentor().instrument(engine=engine)
        logger.info("SQLAlchemy instrumentation enabled")
    except Exception as e:
        logger.warning(f"Failed to instrument SQLAlchemy: {e}")

"""OpenTelemetry tracing configuration for the SuperPOD simulator."""

from __future__ import annotations

from typing import Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

from superpod_sim import __version__
from superpod_sim.infrastructure.config import Config, get_config

SERVICE_NAME = "superpod_sim"


def setup_tracing(config: Optional[Config] = None) -> trace.Tracer:
    """Configure OpenTelemetry tracing.

    Spans go to the OTLP endpoint when one is configured and to the console
    otherwise.
    """
    config = config or get_config()

    resource = Resource.create(
        {
            "service.name": SERVICE_NAME,
            "service.version": __version__,
            "deployment.environment": config.observability.environment,
        }
    )

    provider = TracerProvider(resource=resource)

    if config.observability.otel_endpoint:
        otlp_exporter = OTLPSpanExporter(
            endpoint=config.observability.otel_endpoint,
            insecure=True,
        )
        provider.add_span_processor(BatchSpanProcessor(otlp_exporter))
    else:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)

    return trace.get_tracer(SERVICE_NAME)


def get_tracer(name: str = SERVICE_NAME) -> trace.Tracer:
    """Get a tracer instance."""
    return trace.get_tracer(name)

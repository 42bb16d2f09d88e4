"""OpenTelemetry tracing configuration."""

from __future__ import annotations

import sys

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
)

from mastodon_orchestrator.config import ObservabilitySettings


def setup_tracing(settings: ObservabilitySettings) -> TracerProvider | None:
    """Install a tracer provider exporting spans to stderr when enabled."""
    if not settings.tracing_enabled:
        return None

    resource = Resource.create({
        "service.name": settings.service_name,
        "service.version": "1.0.0",
    })
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter(out=sys.stderr)))
    trace.set_tracer_provider(provider)
    return provider


def get_tracer(name: str = "mastodon_orchestrator") -> trace.Tracer:
    """Get a tracer instance."""
    return trace.get_tracer(name)

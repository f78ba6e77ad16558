"""Tracing OpenTelemetry optionnel.

Les spans sont exportés vers l'endpoint OTLP (gRPC) configuré par `OTLP_ENDPOINT`; sans endpoint,
le tracing reste désactivé et le provider global n'est pas modifié.
"""

from __future__ import annotations

import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from flightops.core.container import container


def setup_tracing() -> bool:
    """Installe un `TracerProvider` exportant en OTLP; renvoie False si non configuré."""
    settings = container.settings
    endpoint = getattr(settings, "OTLP_ENDPOINT", None)
    if not endpoint:
        return False

    provider = TracerProvider(
        resource=Resource.create(
            {"service.name": settings.APP_NAME, "deployment.environment": settings.APP_ENV}
        )
    )
    exporter = OTLPSpanExporter(endpoint=endpoint, insecure=True)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    structlog.get_logger(__name__).info("tracing_enabled", endpoint=endpoint)
    return True

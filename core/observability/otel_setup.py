"""
Storefront OpenTelemetry Setup

Traces for checkout and payment:
- One span per checkout attempt, with a child span per line reservation
- One span per payment attempt, tagged with the outcome
- Spans go to an OTLP collector when an endpoint is configured
"""
from __future__ import annotations
from typing import Optional
import os

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor, SpanExporter


def build_tracer_provider(
    service_name: str = "storefront",
    endpoint: Optional[str] = None,
    exporter: Optional[SpanExporter] = None,
) -> TracerProvider:
    """Create a TracerProvider.

    An explicit `exporter` is attached synchronously. Otherwise spans are
    batched to the OTLP endpoint, if one is given or set in the environment.
    """
    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)

    if exporter is not None:
        provider.add_span_processor(SimpleSpanProcessor(exporter))
        return provider

    otlp_endpoint = endpoint or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if otlp_endpoint:
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint)))
    return provider


def setup_otel(
    service_name: str = "storefront",
    endpoint: Optional[str] = None,
) -> trace.Tracer:
    """Install a global TracerProvider and return a tracer for the service."""
    trace.set_tracer_provider(build_tracer_provider(service_name, endpoint))
    return trace.get_tracer(service_name)


def get_tracer(name: str) -> trace.Tracer:
    """Tracer from the global provider; a no-op tracer until `setup_otel` runs."""
    return trace.get_tracer(name)

"""
tokenusage - OpenTelemetry Tracing

Spans around message handling and aggregation runs.

Until setup_tracing() is called, get_tracer() hands out the OpenTelemetry
API's default tracer, which records nothing.

Usage:
    from tokenusage.observability.tracing import setup_tracing, trace_pipeline_step

    # Setup at startup
    setup_tracing(service_name="tokenusage")

    with trace_pipeline_step("usage.handle", {"usage.message_id": message_id}) as span:
        ...
"""

import os
from contextlib import contextmanager
from typing import Any, Dict, Optional

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource, SERVICE_NAME, SERVICE_VERSION
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    ConsoleSpanExporter,
    SimpleSpanProcessor,
    SpanExporter,
)
from opentelemetry.trace import SpanKind, Status, StatusCode

INSTRUMENTATION_NAME = "tokenusage"


class TracingManager:
    """
    Owns the SDK tracer provider for the pipeline.

    The provider is kept local; it only becomes the global provider when
    set_global is requested.
    """

    _instance: Optional["TracingManager"] = None

    def __init__(
        self,
        service_name: str = "tokenusage",
        service_version: str = "1.0.0",
        console_export: bool = False,
        exporter: Optional[SpanExporter] = None,
        set_global: bool = False,
    ):
        """
        Initialize tracing.

        Args:
            service_name: Name of the service
            service_version: Version of the service
            console_export: Whether to export spans to console (for debugging)
            exporter: Extra span exporter (tests use an in-memory one)
            set_global: Install the provider as the global tracer provider
        """
        self.service_name = service_name
        self.service_version = service_version

        resource = Resource.create({
            SERVICE_NAME: service_name,
            SERVICE_VERSION: service_version,
            "deployment.environment": os.getenv("MODE", "local"),
        })

        self.provider = TracerProvider(resource=resource)

        if console_export:
            self.provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
        if exporter is not None:
            self.provider.add_span_processor(SimpleSpanProcessor(exporter))

        if set_global:
            trace.set_tracer_provider(self.provider)

        self.tracer = self.provider.get_tracer(INSTRUMENTATION_NAME, service_version)

    @classmethod
    def reset_instance(cls):
        """Reset singleton (for testing)."""
        cls._instance = None

    def get_tracer(self) -> trace.Tracer:
        return self.tracer

    def shutdown(self):
        """Shutdown the tracer provider."""
        self.provider.shutdown()


def setup_tracing(
    service_name: str = "tokenusage",
    service_version: str = "1.0.0",
    console_export: bool = False,
    exporter: Optional[SpanExporter] = None,
    set_global: bool = False,
) -> TracingManager:
    """
    Setup tracing.

    Call once at application startup. OTEL_CONSOLE_EXPORT=true turns on
    console export.
    """
    if os.getenv("OTEL_CONSOLE_EXPORT", "").lower() == "true":
        console_export = True

    TracingManager._instance = TracingManager(
        service_name=service_name,
        service_version=service_version,
        console_export=console_export,
        exporter=exporter,
        set_global=set_global,
    )
    return TracingManager._instance


def get_tracer() -> trace.Tracer:
    """Get the pipeline tracer."""
    if TracingManager._instance is None:
        return trace.get_tracer(INSTRUMENTATION_NAME)
    return TracingManager._instance.get_tracer()


@contextmanager
def trace_pipeline_step(
    name: str,
    attributes: Optional[Dict[str, Any]] = None,
    kind: SpanKind = SpanKind.INTERNAL,
):
    """
    Context manager for tracing one pipeline step.

    Usage:
        with trace_pipeline_step("usage.aggregate.incremental") as span:
            result = await ...
            span.set_attribute("usage.processed_records", result.processed_records)
    """
    clean = {k: v for k, v in (attributes or {}).items() if v is not None}
    with get_tracer().start_as_current_span(name, kind=kind, attributes=clean) as span:
        try:
            yield span
        except Exception as e:
            span.set_status(Status(StatusCode.ERROR, str(e)))
            raise

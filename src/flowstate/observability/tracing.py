"""
OpenTelemetry tracing setup for the engine process.
"""

from collections.abc import Mapping
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Status, StatusCode
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

from .logging import get_logger

logger = get_logger(__name__)


class TracingManager:
    """Owns the process tracer provider and W3C trace-context propagation."""

    def __init__(self, service_name: str = "flowstate", service_version: str = "1.0.0"):
        self.service_name = service_name
        self.service_version = service_version
        self.tracer_provider: TracerProvider | None = None
        self.propagator = TraceContextTextMapPropagator()
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def initialize(
        self,
        otlp_endpoint: str | None = None,
        service_name: str | None = None,
        service_version: str | None = None,
    ) -> None:
        """
        Install the SDK tracer provider, exporting over OTLP when an endpoint is given.

        ``service_name`` and ``service_version`` override the resource attributes
        the manager was built with.
        """
        if self._initialized:
            return

        self.service_name = service_name or self.service_name
        self.service_version = service_version or self.service_version

        resource = Resource.create(
            {
                "service.name": self.service_name,
                "service.version": self.service_version,
            }
        )
        self.tracer_provider = TracerProvider(resource=resource)

        if otlp_endpoint:
            exporter = OTLPSpanExporter(endpoint=otlp_endpoint)
            self.tracer_provider.add_span_processor(BatchSpanProcessor(exporter))
            logger.info("OTLP span export enabled", endpoint=otlp_endpoint)

        trace.set_tracer_provider(self.tracer_provider)
        self._initialized = True

    def extract_trace_id(self, headers: Mapping[str, str]) -> str | None:
        """Return the caller's trace id from a ``traceparent`` header, if present."""
        ctx = self.propagator.extract(dict(headers))
        span_context = trace.get_current_span(ctx).get_span_context()
        if span_context.trace_id:
            return format(span_context.trace_id, "032x")
        return None

    def shutdown(self) -> None:
        if self.tracer_provider:
            self.tracer_provider.shutdown()
        self._initialized = False


def add_span_attributes(**attributes: Any) -> None:
    """Add attributes to the current span."""
    current_span = trace.get_current_span()
    if current_span.is_recording():
        for key, value in attributes.items():
            current_span.set_attribute(key, str(value))


def set_span_error(error: Exception) -> None:
    """Mark the current span as having an error."""
    current_span = trace.get_current_span()
    if current_span.is_recording():
        current_span.record_exception(error)
        current_span.set_status(Status(StatusCode.ERROR, str(error)))


_tracing_manager: TracingManager | None = None


def get_tracing_manager() -> TracingManager:
    """Get the process tracing manager (not initialized until ``initialize`` is called)."""
    global _tracing_manager
    if _tracing_manager is None:
        _tracing_manager = TracingManager()
    return _tracing_manager

"""
Observability for the flow engine.

- Structured logging: one key=value line per record with trace and instance ids
- Probes: timing, Prometheus counters/histograms and OpenTelemetry spans per operation
- Metrics: business counters (transitions, conflicts, idempotent replays, ...)
- Tracing: OpenTelemetry SDK provider with optional OTLP export

Configuration:
    - FLOW_OBSERVABILITY__LOG_LEVEL=INFO
    - FLOW_OBSERVABILITY__ENABLE_TRACING=true
    - FLOW_OBSERVABILITY__OTLP_ENDPOINT=http://collector:4317
"""

from .logging import get_logger, setup_logging
from .metrics import MetricsCollector, get_metrics_collector
from .probe import probe
from .tracing import TracingManager, get_tracing_manager

__all__ = [
    "get_logger",
    "setup_logging",
    "probe",
    "MetricsCollector",
    "get_metrics_collector",
    "TracingManager",
    "get_tracing_manager",
]

"""
Performance probing for engine operations.
Every probe emits a timing log line, Prometheus metrics and an OpenTelemetry span.
"""

import contextlib
import time

from opentelemetry import trace
from prometheus_client import Counter, Histogram

from .logging import get_logger, get_trace_id
from .tracing import add_span_attributes, set_span_error

log = get_logger("flowstate.probe")

tracer = trace.get_tracer("flowstate")

REQS = Counter("flowstate_operations_total", "Engine operations", ["op", "ok"])
LAT = Histogram("flowstate_operation_latency_seconds", "Engine operation latency", ["op"])


@contextlib.contextmanager
def probe(op: str, **labels):
    """
    Time an engine operation.

    Args:
        op: Operation name (e.g., "orchestrator.apply_event")
        **labels: Extra fields for the log line and span attributes
    """
    start_time = time.perf_counter()
    ok = "true"
    error_type = None

    with tracer.start_as_current_span(op) as span:
        add_span_attributes(**{f"flowstate.{key}": value for key, value in labels.items()})
        try:
            yield span
        except Exception as e:
            ok = "false"
            error_type = type(e).__name__
            set_span_error(e)
            raise
        finally:
            duration_ms = (time.perf_counter() - start_time) * 1000

            log.debug(
                f'op={op} ms={duration_ms:.1f} trace={get_trace_id() or "-"} ok={ok}'
                + (f" error={error_type}" if error_type else "")
                + "".join(f" {k}={v}" for k, v in labels.items())
            )

            REQS.labels(op=op, ok=ok).inc()
            LAT.labels(op=op).observe(duration_ms / 1000.0)

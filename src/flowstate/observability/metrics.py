"""
Business metrics for flow orchestration on top of OpenTelemetry.

Instruments:
- instances created per capability
- transitions applied and handler failures
- optimistic-concurrency conflicts and exhausted retries
- idempotent replays and sync snapshots
"""

from collections import defaultdict
from typing import Any

from opentelemetry import metrics
from opentelemetry.metrics import Counter, Histogram, Meter

from .logging import get_logger

logger = get_logger(__name__)


class MetricsCollector:
    """Centralized metrics collection for the orchestration engine."""

    def __init__(self, meter: Meter):
        self.meter = meter
        self._counters: dict[str, Counter] = {}
        self._histograms: dict[str, Histogram] = {}

        # Totals kept in-process for health reporting
        self._totals: dict[str, int] = defaultdict(int)

        self._setup_default_metrics()

    def _setup_default_metrics(self):
        self._counters["instances_created"] = self.meter.create_counter(
            "flowstate_instances_created_total", description="Flow instances created", unit="1"
        )
        self._counters["transitions"] = self.meter.create_counter(
            "flowstate_transitions_total", description="Committed transitions", unit="1"
        )
        self._counters["handler_failures"] = self.meter.create_counter(
            "flowstate_handler_failures_total",
            description="Event handlers that reported a business failure",
            unit="1",
        )
        self._counters["rejections"] = self.meter.create_counter(
            "flowstate_rejected_events_total",
            description="Events rejected by the state machine",
            unit="1",
        )
        self._counters["version_conflicts"] = self.meter.create_counter(
            "flowstate_version_conflicts_total",
            description="Optimistic commits rejected by a concurrent writer",
            unit="1",
        )
        self._counters["retries_exhausted"] = self.meter.create_counter(
            "flowstate_conflict_retries_exhausted_total",
            description="Operations that gave up after repeated conflicts",
            unit="1",
        )
        self._counters["idempotent_replays"] = self.meter.create_counter(
            "flowstate_idempotent_replays_total",
            description="Duplicate requests answered from the idempotency cache",
            unit="1",
        )
        self._counters["sync_snapshots"] = self.meter.create_counter(
            "flowstate_sync_snapshots_total",
            description="Sync requests answered with a snapshot instead of a replay",
            unit="1",
        )
        self._counters["dismissals"] = self.meter.create_counter(
            "flowstate_dismissals_total", description="Instances dismissed", unit="1"
        )
        self._histograms["commit_attempts"] = self.meter.create_histogram(
            "flowstate_commit_attempts",
            description="Attempts needed to commit one operation",
            unit="1",
        )

    def _add(self, name: str, attributes: dict[str, str] | None = None) -> None:
        self._counters[name].add(1, attributes or {})
        self._totals[name] += 1

    def record_created(self, capability_id: str) -> None:
        self._add("instances_created", {"capability": capability_id})

    def record_transition(self, capability_id: str, event: str) -> None:
        self._add("transitions", {"capability": capability_id, "event": event})

    def record_handler_failure(self, capability_id: str, effect: str) -> None:
        self._add("handler_failures", {"capability": capability_id, "effect": effect})

    def record_rejection(self, capability_id: str, code: str) -> None:
        self._add("rejections", {"capability": capability_id, "code": code})

    def record_conflict(self, operation: str) -> None:
        self._add("version_conflicts", {"operation": operation})

    def record_retries_exhausted(self, operation: str) -> None:
        self._add("retries_exhausted", {"operation": operation})

    def record_commit_attempts(self, operation: str, attempts: int) -> None:
        self._histograms["commit_attempts"].record(attempts, {"operation": operation})

    def record_idempotent_replay(self) -> None:
        self._add("idempotent_replays")

    def record_sync_snapshot(self) -> None:
        self._add("sync_snapshots")

    def record_dismissal(self, reason: str) -> None:
        self._add("dismissals", {"reason": reason.split(":", 1)[0]})

    def get_totals(self) -> dict[str, Any]:
        """In-process totals since startup."""
        return dict(self._totals)


_metrics_collector: MetricsCollector | None = None


def setup_metrics(meter: Meter | None = None) -> MetricsCollector:
    """Setup global metrics collector."""
    global _metrics_collector
    _metrics_collector = MetricsCollector(meter or metrics.get_meter("flowstate"))
    return _metrics_collector


def get_metrics_collector() -> MetricsCollector:
    """Get global metrics collector, creating one on the current meter provider."""
    if _metrics_collector is None:
        return setup_metrics()
    return _metrics_collector

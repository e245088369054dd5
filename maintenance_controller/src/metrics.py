from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Reconcile outcomes share one counter with an ``outcome`` label so
    operators can alert on the ratio of budget contention to approvals.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "maintenance_reconcile_total",
            "Total reconciliations by outcome",
            ["outcome"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "maintenance_reconcile_duration_seconds",
            "Seconds spent in a single reconciliation",
            buckets=(0.005, 0.01, 0.05, 0.1, 0.5, 1, 2, 5, 10, float("inf")),
        )
    )
    approvals_total: Counter = field(
        default_factory=lambda: Counter(
            "maintenance_approvals_total",
            "Total units annotated as approved for maintenance",
        )
    )
    retries_total: Counter = field(
        default_factory=lambda: Counter(
            "maintenance_retries_total",
            "Total keys re-queued with backoff after a failed reconciliation",
        )
    )
    dropped_total: Counter = field(
        default_factory=lambda: Counter(
            "maintenance_dropped_total",
            "Total keys dropped from the queue",
            ["reason"],
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "maintenance_queue_depth",
            "Current number of keys waiting in the work queue",
        )
    )
    unavailable_units: Gauge = field(
        default_factory=lambda: Gauge(
            "maintenance_unavailable_units",
            "Unavailable units observed at the last admission check",
        )
    )
    cached_units: Gauge = field(
        default_factory=lambda: Gauge(
            "maintenance_cached_units",
            "Number of units held in the fleet cache",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "maintenance_watch_errors_total",
            "Total Kubernetes list/watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "maintenance_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    resyncs_total: Counter = field(
        default_factory=lambda: Counter(
            "maintenance_resyncs_total",
            "Total periodic cache resyncs",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "maintenance_controller",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()

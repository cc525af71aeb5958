from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``."""

    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "expose_controller_queue_depth",
            "Keys ready to be picked up by a worker",
        )
    )
    queue_adds_total: Counter = field(
        default_factory=lambda: Counter(
            "expose_controller_queue_adds_total",
            "Total keys accepted by the work queue",
        )
    )
    queue_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "expose_controller_queue_retries_total",
            "Total rate-limited re-enqueues after failed syncs",
        )
    )
    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "expose_controller_reconcile_total",
            "Total reconcile passes by outcome",
            ["outcome"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "expose_controller_reconcile_duration_seconds",
            "Seconds spent in a single reconcile pass",
            buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, float("inf")),
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "expose_controller_watch_errors_total",
            "Total Kubernetes list/watch errors",
            ["resource"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "expose_controller_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["resource"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "expose_controller",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()

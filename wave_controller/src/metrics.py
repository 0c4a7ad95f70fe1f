from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Reconcile counters carry the workload ``kind`` so Deployment and
    StatefulSet error rates can be alerted on independently.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "wave_reconcile_total",
            "Total workload reconciles by outcome",
            ["kind", "result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "wave_reconcile_duration_seconds",
            "Seconds spent in a single workload reconcile",
            ["kind"],
        )
    )
    hash_updates_total: Counter = field(
        default_factory=lambda: Counter(
            "wave_config_hash_updates_total",
            "Total pod template config hash updates written",
            ["kind"],
        )
    )
    owner_reference_updates_total: Counter = field(
        default_factory=lambda: Counter(
            "wave_owner_reference_updates_total",
            "Total owner reference additions and removals on ConfigMaps and Secrets",
            ["action"],
        )
    )
    conflict_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "wave_conflict_retries_total",
            "Total writes retried after a resourceVersion conflict",
            ["kind"],
        )
    )
    requeues_total: Counter = field(
        default_factory=lambda: Counter(
            "wave_requeues_total",
            "Total reconcile requests requeued with backoff after a failure",
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "wave_queue_depth",
            "Current number of workloads waiting to be reconciled",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "wave_watch_errors_total",
            "Total Kubernetes watch errors",
            ["resource"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "wave_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["resource"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "wave",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()

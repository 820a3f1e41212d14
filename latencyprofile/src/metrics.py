from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Status write counters carry a ``resource`` label so conflicts on the
    node config and on the operator resource can be told apart.
    """

    syncs_total: Counter = field(
        default_factory=lambda: Counter(
            "latency_profile_syncs_total",
            "Total sync cycles by outcome",
            ["result"],
        )
    )
    sync_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "latency_profile_sync_errors_total",
            "Total failed sync cycles by error class",
            ["reason"],
        )
    )
    sync_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "latency_profile_sync_duration_seconds",
            "Seconds spent in one sync cycle",
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, float("inf")),
        )
    )
    status_writes_total: Counter = field(
        default_factory=lambda: Counter(
            "latency_profile_status_writes_total",
            "Total successful status subresource writes",
            ["resource"],
        )
    )
    status_conflicts_total: Counter = field(
        default_factory=lambda: Counter(
            "latency_profile_status_conflicts_total",
            "Total status writes rejected with 409 Conflict",
            ["resource"],
        )
    )
    observed_revisions: Gauge = field(
        default_factory=lambda: Gauge(
            "latency_profile_observed_revisions",
            "Distinct kube-controller-manager revisions seen in the last evaluation",
        )
    )
    converged: Gauge = field(
        default_factory=lambda: Gauge(
            "latency_profile_converged",
            "Whether every revision runs the expected arguments (1=yes, 0=no)",
        )
    )
    triggers_total: Counter = field(
        default_factory=lambda: Counter(
            "latency_profile_triggers_total",
            "Total sync triggers received by source",
            ["source"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "latency_profile_watch_errors_total",
            "Total Kubernetes watch errors",
            ["source"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "latency_profile_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["source"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "latency_profile_controller",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()

from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the revision controller on ``/metrics``.

    ``latest_available_revision`` mirrors the value last written to the
    operator status so operators can alert on a revision counter that stops
    moving while ``sync_total{result="error"}`` keeps climbing.
    """

    sync_total: Counter = field(
        default_factory=lambda: Counter(
            "revision_controller_sync_total",
            "Total reconciliation passes by result",
            ["result"],
        )
    )
    sync_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "revision_controller_sync_duration_seconds",
            "Seconds spent in a single reconciliation pass",
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, float("inf")),
        )
    )
    revisions_created_total: Counter = field(
        default_factory=lambda: Counter(
            "revision_controller_revisions_created_total",
            "Total revisions successfully created",
        )
    )
    revision_create_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "revision_controller_revision_create_errors_total",
            "Total failed attempts to materialize a revision",
        )
    )
    latest_available_revision: Gauge = field(
        default_factory=lambda: Gauge(
            "revision_controller_latest_available_revision",
            "Latest revision recorded in the operator status",
        )
    )
    status_update_conflicts_total: Counter = field(
        default_factory=lambda: Counter(
            "revision_controller_status_update_conflicts_total",
            "Total operator status writes rejected by optimistic concurrency",
        )
    )
    requeues_total: Counter = field(
        default_factory=lambda: Counter(
            "revision_controller_requeues_total",
            "Total work items re-added with backoff after a failed sync",
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "revision_controller_queue_depth",
            "Distinct work items waiting in the queue",
        )
    )
    events_total: Counter = field(
        default_factory=lambda: Counter(
            "revision_controller_events_total",
            "Total operator events recorded",
            ["type", "reason"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "revision_controller_watch_errors_total",
            "Total Kubernetes watch errors",
            ["informer"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "revision_controller_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["informer"],
        )
    )
    leader_transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "revision_controller_leader_transitions_total",
            "Total leadership state transitions",
            ["transition"],
        )
    )
    leader_state: Gauge = field(
        default_factory=lambda: Gauge(
            "revision_controller_leader_state",
            "Whether this controller replica is currently leader (1=yes, 0=no)",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "revision_controller",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()

from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Info


@dataclass(frozen=True)
class ShipperMetrics:
    """Prometheus metrics exported by the log shipper on ``/metrics``.

    Watch metrics describe the health of the pod change feed, queue metrics
    the reconciliation backlog, and shipping metrics the outcome of each
    per-container delivery attempt.
    """

    watch_events_total: Counter = field(
        default_factory=lambda: Counter(
            "podlog_shipper_watch_events_total",
            "Total pod watch events applied to the local cache",
            ["type"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "podlog_shipper_watch_errors_total",
            "Total Kubernetes list/watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "podlog_shipper_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    relists_total: Counter = field(
        default_factory=lambda: Counter(
            "podlog_shipper_relists_total",
            "Total full pod re-lists after an expired resource version",
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "podlog_shipper_queue_depth",
            "Current number of resource keys pending in the work queue",
        )
    )
    requeues_total: Counter = field(
        default_factory=lambda: Counter(
            "podlog_shipper_requeues_total",
            "Total rate-limited requeues after failed reconciliations",
        )
    )
    reconcile_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "podlog_shipper_reconcile_errors_total",
            "Total failed reconciliations",
        )
    )
    dropped_keys_total: Counter = field(
        default_factory=lambda: Counter(
            "podlog_shipper_dropped_keys_total",
            "Total resource keys dropped after exhausting their retry budget",
        )
    )
    logs_shipped_total: Counter = field(
        default_factory=lambda: Counter(
            "podlog_shipper_logs_shipped_total",
            "Total container log buffers delivered to the notification sink",
        )
    )
    shipping_failures_total: Counter = field(
        default_factory=lambda: Counter(
            "podlog_shipper_shipping_failures_total",
            "Total failed container log deliveries",
            ["stage"],
        )
    )
    shipping_backlog: Gauge = field(
        default_factory=lambda: Gauge(
            "podlog_shipper_shipping_backlog",
            "Current number of pod snapshots waiting for a shipping worker",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "podlog_shipper",
            "Build information for the log shipper",
        )
    )


METRICS = ShipperMetrics()

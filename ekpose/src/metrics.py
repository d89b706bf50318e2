from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Reconcile counters carry ``path`` (``create``/``delete``/``read``, or
    ``error`` when an exception escaped the sync) and ``result`` labels so
    operators can alert on the failure ratio of each sync path independently.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "ekpose_reconcile_total",
            "Total reconciliation attempts",
            ["path", "result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "ekpose_reconcile_duration_seconds",
            "Seconds spent reconciling one key",
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, float("inf")),
        )
    )
    derived_operations_total: Counter = field(
        default_factory=lambda: Counter(
            "ekpose_derived_operations_total",
            "Service and Ingress operations by outcome",
            ["kind", "outcome"],
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "ekpose_queue_depth",
            "Keys currently waiting in the work queue",
        )
    )
    queue_adds_total: Counter = field(
        default_factory=lambda: Counter(
            "ekpose_queue_adds_total",
            "Total keys added to the work queue after deduplication",
        )
    )
    queue_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "ekpose_queue_retries_total",
            "Total keys requeued with backoff after a failed reconciliation",
        )
    )
    malformed_keys_total: Counter = field(
        default_factory=lambda: Counter(
            "ekpose_malformed_keys_total",
            "Total notifications or work items dropped because no key could be derived",
        )
    )
    informer_events_total: Counter = field(
        default_factory=lambda: Counter(
            "ekpose_informer_events_total",
            "Total Deployment notifications emitted by the informer",
            ["type"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "ekpose_watch_errors_total",
            "Total Kubernetes list/watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "ekpose_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "ekpose",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()

from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class SyncerMetrics:
    """Prometheus metrics exported by the syncer on ``/metrics``.

    Copy counters carry a ``kind`` label (``ConfigMap`` or ``Secret``); queue
    metrics carry the queue name so namespace fan-out is visible separately.
    """

    copies_created_total: Counter = field(
        default_factory=lambda: Counter(
            "konfig_syncer_copies_created_total",
            "Total copies created in target namespaces",
            ["kind"],
        )
    )
    copies_updated_total: Counter = field(
        default_factory=lambda: Counter(
            "konfig_syncer_copies_updated_total",
            "Total copies updated because the source payload changed",
            ["kind"],
        )
    )
    copies_deleted_total: Counter = field(
        default_factory=lambda: Counter(
            "konfig_syncer_copies_deleted_total",
            "Total copies deleted during cleanup or orphan removal",
            ["kind"],
        )
    )
    writes_suppressed_total: Counter = field(
        default_factory=lambda: Counter(
            "konfig_syncer_writes_suppressed_total",
            "Total copy writes skipped because the payload was already equal",
            ["kind"],
        )
    )
    write_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "konfig_syncer_write_errors_total",
            "Total failed create/update/delete calls against copies",
            ["kind", "operation"],
        )
    )
    invalid_annotations_total: Counter = field(
        default_factory=lambda: Counter(
            "konfig_syncer_invalid_annotations_total",
            "Total malformed sync selectors or provenance records encountered",
            ["kind", "annotation"],
        )
    )
    sync_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "konfig_syncer_sync_errors_total",
            "Total reconciliations that failed and were requeued",
            ["queue"],
        )
    )
    sync_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "konfig_syncer_sync_duration_seconds",
            "Seconds spent reconciling a single key",
            ["queue"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, float("inf")),
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "konfig_syncer_queue_depth",
            "Current number of keys waiting in a work queue",
            ["queue"],
        )
    )
    queue_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "konfig_syncer_queue_retries_total",
            "Total keys requeued with backoff",
            ["queue"],
        )
    )
    tracker_entries: Gauge = field(
        default_factory=lambda: Gauge(
            "konfig_syncer_tracker_entries",
            "Current number of sources awaiting copy cleanup",
            ["kind"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "konfig_syncer_watch_errors_total",
            "Total Kubernetes list/watch errors",
            ["resource"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "konfig_syncer_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["resource"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "konfig_syncer",
            "Build information for the syncer",
        )
    )


METRICS = SyncerMetrics()

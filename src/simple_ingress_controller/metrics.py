"""Prometheus metrics exported by the controller."""

from __future__ import annotations

from prometheus_client import Counter, Gauge

RECONCILE_TOTAL = Counter(
    "ingress_controller_reconcile_total",
    "Completed reconciliation passes by resulting action.",
    ["action"],
)

RECONCILE_ERRORS_TOTAL = Counter(
    "ingress_controller_reconcile_errors_total",
    "Failed reconciliation passes by error class and work-queue key.",
    ["error_class", "key"],
)

REQUEUES_TOTAL = Counter(
    "ingress_controller_requeues_total",
    "Keys re-added to the work queue with backoff after a failure.",
)

DROPPED_TOTAL = Counter(
    "ingress_controller_dropped_total",
    "Keys dropped after exhausting their retries.",
)

WORKQUEUE_DEPTH = Gauge(
    "ingress_controller_workqueue_depth",
    "Keys ready for processing.",
)

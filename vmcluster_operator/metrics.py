"""Prometheus metrics for the reconcile loop."""

from prometheus_client import Counter, Gauge, Histogram

RECONCILE_TOTAL = Counter(
    "vmcluster_operator_reconcile_total",
    "Reconcile passes by outcome",
    ["result"],
)
RECONCILE_DURATION = Histogram(
    "vmcluster_operator_reconcile_duration_seconds",
    "Wall time of one reconcile pass",
)
QUEUE_DEPTH = Gauge(
    "vmcluster_operator_queue_depth",
    "Cluster keys waiting for a worker",
)
CLUSTER_TRANSITIONS = Counter(
    "vmcluster_operator_status_transitions_total",
    "Persisted clusterStatus transitions",
    ["to"],
)

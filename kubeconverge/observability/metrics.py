"""Prometheus metrics for KubeConverge."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# Executor metrics
kubectl_errors_total = Counter(
    "kubeconverge_kubectl_errors_total",
    "Total failed kubectl attempts",
    ["context", "namespace", "cmd"],
)

kubectl_duration_seconds = Histogram(
    "kubeconverge_kubectl_duration_seconds",
    "kubectl invocation duration in seconds",
    ["cmd"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 15.0, 30.0),
)

# Cache metrics
cache_fetches_total = Counter(
    "kubeconverge_cache_fetches_total",
    "Total list fetches issued by the sync mediator",
    ["kind", "result"],
)

sync_duration_seconds = Histogram(
    "kubeconverge_sync_duration_seconds",
    "Duration of one full sync pass over pending resources",
    buckets=(0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

# Watch metrics
resource_duration_seconds = Histogram(
    "kubeconverge_resource_duration_seconds",
    "Time from watch start until a resource reached a terminal state",
    ["kind", "status"],
    buckets=(1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0),
)

resources_pending = Gauge(
    "kubeconverge_resources_pending",
    "Number of resources still being watched",
)

# File: metrics.py

from prometheus_client import Counter, Gauge, Histogram

METRICS = {
    "clusters_total": Gauge("control_plane_clusters_total", "Total count of cluster objects"),
    "instances_total": Gauge("control_plane_instances_total", "Total count of database instances"),
    "consensus_records_total": Gauge(
        "control_plane_consensus_records_total", "Total count of consensus-store records"
    ),
    "reconciliation_latency": Histogram(
        "control_plane_reconciliation_duration_ms",
        "Time taken for reconciliation in milliseconds",
        buckets=(10, 50, 100, 250, 500, 1000, 2500, 5000),
    ),
    "api_requests": Counter(
        "control_plane_api_requests_total",
        "Total REST API requests",
        ["method", "endpoint"],
    ),
    "api_latency": Histogram(
        "control_plane_api_request_duration_ms",
        "REST API request latency in milliseconds",
        ["method"],
        buckets=(5, 10, 25, 50, 100, 250, 500, 1000),
    ),
    "reconciliation_actions": Counter(
        "control_plane_reconciliation_actions_total",
        "Count of reconciliation actions",
        ["action_type"],
    ),
    "teardown_transient_errors": Counter(
        "control_plane_teardown_transient_errors_total",
        "Teardown invocations interrupted by a retryable platform error",
    ),
    "teardowns_stuck": Gauge(
        "control_plane_teardowns_stuck",
        "Clusters whose teardown has been pending longer than the stuck threshold",
    ),
}

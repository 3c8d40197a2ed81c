"""Prometheus metrics for the connector engine.

Defines operational metrics for monitoring and alerting on external system
integrations. Labels never carry tenant data beyond connector and endpoint
ids.
"""

from prometheus_client import Counter, Histogram

# Execution metrics
connector_executions_total = Counter(
    "connector_executions_total",
    "Total endpoint executions",
    ["connector_id", "endpoint_id", "status"]  # status: completed|failed|cancelled
)

connector_execution_duration_ms = Histogram(
    "connector_execution_duration_ms",
    "Endpoint execution duration in milliseconds, retries included",
    ["connector_id", "endpoint_id"],
    buckets=[10, 50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000, 60000]
)

connector_retries_total = Counter(
    "connector_retries_total",
    "Transport retries performed",
    ["connector_id", "endpoint_id", "error_type"]  # error_type: timeout|network_error|...
)

connector_rate_limited_total = Counter(
    "connector_rate_limited_total",
    "Calls rejected by the rate limiter",
    ["connector_id", "endpoint_id", "limit"]  # limit: burst|minute|hour|day
)

connector_transformation_failures_total = Counter(
    "connector_transformation_failures_total",
    "Records rejected by transformation or mapping rules",
    ["connector_id", "rule_id"]
)

# Audit outbox metrics
audit_delivery_failures_total = Counter(
    "connector_audit_delivery_failures_total",
    "Audit events left pending after all delivery attempts",
    ["action"]
)

audit_events_dropped_total = Counter(
    "connector_audit_events_dropped_total",
    "Pending audit events discarded because the outbox was full",
    ["action"]
)

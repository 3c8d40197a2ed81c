"""Observability module for the connector engine.

Provides structured logging, execution correlation and metrics.
"""

from .correlation import correlation_context, correlation_var, get_correlation, get_execution_id
from .logging_config import CorrelationFilter, JSONFormatter, configure_logging
from .metrics import (
    audit_delivery_failures_total,
    audit_events_dropped_total,
    connector_execution_duration_ms,
    connector_executions_total,
    connector_rate_limited_total,
    connector_retries_total,
    connector_transformation_failures_total,
)

__all__ = [
    # Logging
    "configure_logging",
    "CorrelationFilter",
    "JSONFormatter",
    # Correlation
    "correlation_context",
    "correlation_var",
    "get_correlation",
    "get_execution_id",
    # Metrics
    "audit_delivery_failures_total",
    "audit_events_dropped_total",
    "connector_execution_duration_ms",
    "connector_executions_total",
    "connector_rate_limited_total",
    "connector_retries_total",
    "connector_transformation_failures_total",
]

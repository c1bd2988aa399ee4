"""API usage analytics over raw request logs."""

from src.analytics.usage import (
    EndpointUsage,
    RequestLog,
    RequestLogStore,
    UsageSummary,
    aggregate_by_endpoint,
    get_usage_summary,
)

__all__ = [
    "EndpointUsage",
    "RequestLog",
    "RequestLogStore",
    "UsageSummary",
    "aggregate_by_endpoint",
    "get_usage_summary",
]

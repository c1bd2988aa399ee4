"""API usage analytics.

Summarizes raw request logs into per-endpoint statistics and an overall
summary with a 95th percentile response time.
"""

import asyncio
import math
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

# Status codes at or above this count as errors
ERROR_STATUS_THRESHOLD = 400
P95 = 0.95


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


@dataclass(frozen=True)
class RequestLog:
    """One handled API request.

    Attributes:
        endpoint: Request path.
        method: HTTP method.
        status_code: Response status code.
        response_time: Response time in milliseconds.
        created_at: When the request was handled.
        tenant_id: Tenant of the API key, if authenticated.
        api_key_id: API key used, if authenticated.
    """

    endpoint: str
    method: str
    status_code: int
    response_time: float
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    tenant_id: str | None = None
    api_key_id: str | None = None


@dataclass(frozen=True)
class EndpointUsage:
    """Statistics for one "METHOD path" group."""

    count: int
    avg_response_time: int
    error_rate: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "avg_response_time": self.avg_response_time,
            "error_rate": self.error_rate,
        }


@dataclass(frozen=True)
class UsageSummary:
    """Overall request statistics for a set of logs."""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    avg_response_time: int = 0
    p95_response_time: float = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "avg_response_time": self.avg_response_time,
            "p95_response_time": self.p95_response_time,
        }


def aggregate_by_endpoint(logs: Iterable[RequestLog]) -> dict[str, EndpointUsage]:
    """Group logs by "METHOD path".

    Args:
        logs: Raw request logs.

    Returns:
        Per-group count, average response time (ms) and error rate
        (percentage of responses with status >= 400), rounded half up.
    """
    totals: dict[str, dict[str, float]] = {}

    for log in logs:
        key = f"{log.method} {log.endpoint}"
        current = totals.setdefault(key, {"count": 0, "total_time": 0.0, "errors": 0})
        current["count"] += 1
        current["total_time"] += log.response_time
        if log.status_code >= ERROR_STATUS_THRESHOLD:
            current["errors"] += 1

    return {
        key: EndpointUsage(
            count=int(value["count"]),
            avg_response_time=_round_half_up(value["total_time"] / value["count"]),
            error_rate=_round_half_up(value["errors"] / value["count"] * 100),
        )
        for key, value in totals.items()
    }


def get_usage_summary(logs: Iterable[RequestLog]) -> UsageSummary:
    """Summarize a set of logs.

    The p95 response time is the sorted response time at index
    floor(n * 0.95), clamped to the last element.

    Args:
        logs: Raw request logs.

    Returns:
        Summary; all zeros for an empty set.
    """
    logs = list(logs)
    if not logs:
        return UsageSummary()

    successful = sum(1 for log in logs if log.status_code < ERROR_STATUS_THRESHOLD)
    response_times = sorted(log.response_time for log in logs)
    p95_index = min(math.floor(len(response_times) * P95), len(response_times) - 1)

    return UsageSummary(
        total_requests=len(logs),
        successful_requests=successful,
        failed_requests=len(logs) - successful,
        avg_response_time=_round_half_up(sum(response_times) / len(response_times)),
        p95_response_time=response_times[p95_index],
    )


class RequestLogStore:
    """In-memory request log, appended to by the HTTP layer."""

    def __init__(self, max_entries: int = 100_000) -> None:
        self._logs: list[RequestLog] = []
        self._max_entries = max_entries
        self._lock = asyncio.Lock()

    async def record(self, log: RequestLog) -> None:
        """Append a log entry, dropping the oldest beyond max_entries."""
        async with self._lock:
            self._logs.append(log)
            overflow = len(self._logs) - self._max_entries
            if overflow > 0:
                del self._logs[:overflow]
                logger.debug("request_logs_trimmed", dropped=overflow)

    async def list_for_tenant(
        self,
        tenant_id: str,
        *,
        since: datetime | None = None,
    ) -> list[RequestLog]:
        """List a tenant's logs, optionally only those after a timestamp."""
        async with self._lock:
            return [
                log
                for log in self._logs
                if log.tenant_id == tenant_id and (since is None or log.created_at >= since)
            ]

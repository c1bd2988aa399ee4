"""Backoff calculation and the delayed-retry scheduler.

The scheduler is an explicit delayed-task queue: a failed delivery
registers its next attempt with a timer instead of sleeping, so pending
retries can be listed and cancelled when their endpoint goes away.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

import structlog

from src.webhooks.manager import RetryPolicy

logger = structlog.get_logger(__name__)

RetryCallback = Callable[[], Awaitable[None]]
CancelCallback = Callable[[], None]


def calculate_retry_delay(attempt: int, policy: RetryPolicy) -> float:
    """Calculate the delay before a retry with exponential backoff.

    delay = min(initial_delay_ms * backoff_multiplier ** attempt, max_delay_ms)

    Args:
        attempt: 0-based retry index (0 is the first retry).
        policy: Retry policy.

    Returns:
        Delay in milliseconds, never above max_delay_ms.
    """
    try:
        delay = policy.initial_delay_ms * (policy.backoff_multiplier ** attempt)
    except OverflowError:
        return float(policy.max_delay_ms)
    return float(min(delay, policy.max_delay_ms))


@dataclass
class ScheduledRetry:
    """A retry waiting for its timer.

    Attributes:
        delivery_id: Delivery the retry belongs to.
        endpoint_id: Target endpoint, used for cancellation.
        due_at: When the retry fires.
        callback: Coroutine factory that performs the attempt.
        on_cancel: Invoked if the retry is dropped before firing.
    """

    delivery_id: str
    endpoint_id: str
    due_at: datetime
    callback: RetryCallback
    on_cancel: CancelCallback | None = None
    handle: asyncio.TimerHandle | None = field(default=None, repr=False)


class RetryScheduler:
    """Delayed-task queue for webhook retries.

    At most one retry is pending per delivery, i.e. per (endpoint, event)
    pair, so attempt N+1 cannot be issued before attempt N has finished
    and its delay has elapsed.
    """

    def __init__(self) -> None:
        self._pending: dict[str, ScheduledRetry] = {}
        self._running: set[asyncio.Task[None]] = set()
        self._logger = logger.bind(component="retry_scheduler")

    def schedule(
        self,
        delivery_id: str,
        endpoint_id: str,
        delay_ms: float,
        callback: RetryCallback,
        *,
        on_cancel: CancelCallback | None = None,
    ) -> datetime:
        """Schedule the next attempt of a delivery.

        Must be called from within a running event loop.

        Args:
            delivery_id: Delivery to retry.
            endpoint_id: Target endpoint.
            delay_ms: Delay before the attempt in milliseconds.
            callback: Coroutine factory performing the attempt.
            on_cancel: Invoked if the retry is cancelled before it fires.

        Returns:
            When the retry is due.

        Raises:
            RuntimeError: If a retry is already pending for the delivery.
        """
        if delivery_id in self._pending:
            raise RuntimeError(f"Retry already scheduled for delivery {delivery_id}")

        loop = asyncio.get_running_loop()
        due_at = datetime.now(UTC) + timedelta(milliseconds=delay_ms)
        entry = ScheduledRetry(
            delivery_id=delivery_id,
            endpoint_id=endpoint_id,
            due_at=due_at,
            callback=callback,
            on_cancel=on_cancel,
        )
        entry.handle = loop.call_later(delay_ms / 1000.0, self._fire, delivery_id)
        self._pending[delivery_id] = entry

        self._logger.debug(
            "retry_scheduled",
            delivery_id=delivery_id,
            endpoint_id=endpoint_id,
            delay_ms=delay_ms,
        )
        return due_at

    def _fire(self, delivery_id: str) -> None:
        entry = self._pending.pop(delivery_id, None)
        if entry is None:
            return

        task = asyncio.get_running_loop().create_task(entry.callback())
        self._running.add(task)
        task.add_done_callback(self._running.discard)

    def is_scheduled(self, delivery_id: str) -> bool:
        return delivery_id in self._pending

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def pending_for_endpoint(self, endpoint_id: str) -> list[ScheduledRetry]:
        """List pending retries targeting an endpoint."""
        return [e for e in self._pending.values() if e.endpoint_id == endpoint_id]

    def cancel(self, delivery_id: str) -> bool:
        """Drop the pending retry of a delivery.

        Returns:
            True if a retry was pending and has been dropped.
        """
        entry = self._pending.pop(delivery_id, None)
        if entry is None:
            return False

        if entry.handle is not None:
            entry.handle.cancel()
        if entry.on_cancel is not None:
            entry.on_cancel()

        self._logger.info(
            "retry_cancelled",
            delivery_id=delivery_id,
            endpoint_id=entry.endpoint_id,
        )
        return True

    def cancel_for_endpoint(self, endpoint_id: str) -> int:
        """Drop every pending retry targeting an endpoint.

        Returns:
            Number of retries dropped.
        """
        delivery_ids = [e.delivery_id for e in self.pending_for_endpoint(endpoint_id)]
        return sum(1 for delivery_id in delivery_ids if self.cancel(delivery_id))

    async def shutdown(self) -> None:
        """Drop all pending retries and wait for running attempts."""
        for delivery_id in list(self._pending):
            self.cancel(delivery_id)

        if self._running:
            await asyncio.gather(*self._running, return_exceptions=True)
        # running attempts may have armed another retry
        for delivery_id in list(self._pending):
            self.cancel(delivery_id)

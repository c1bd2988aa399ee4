"""Webhook event dispatcher with scheduled retries.

Resolves the endpoints subscribed to an event, signs the canonical payload
and posts it. Failed attempts are handed to the RetryScheduler with an
exponential backoff delay until the delivery succeeds, is cancelled, or
exhausts its retry policy.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

import httpx
import structlog

from src.errors import DeliveryError
from src.webhooks.events import (
    WebhookEvent,
    WebhookEventType,
    create_webhook_event,
    serialize_payload,
)
from src.webhooks.manager import (
    DeliveryResult,
    WebhookDelivery,
    WebhookEndpoint,
    WebhookRegistry,
)
from src.webhooks.retry import RetryScheduler, calculate_retry_delay
from src.webhooks.security import create_signature_headers

logger = structlog.get_logger(__name__)

USER_AGENT = "IntegrationGateway-Webhook/1.0"
EVENT_HEADER = "X-Webhook-Event"
DELIVERY_HEADER = "X-Webhook-Delivery"

# Type for event listeners
EventListener = Callable[[WebhookEvent], Awaitable[None] | None]
# Type for listeners notified when a delivery runs out of retries
ExhaustionListener = Callable[[WebhookDelivery], Awaitable[None] | None]


class WebhookDispatcher:
    """Dispatches webhook events to registered endpoints.

    Features:
    - Independent, concurrent delivery per (endpoint, event) pair
    - Exponential backoff retries through an explicit scheduler
    - HMAC signature over the exact body bytes
    - Retries dropped when an endpoint is deactivated or deleted
    - Exhausted deliveries logged and reported to listeners
    """

    def __init__(
        self,
        registry: WebhookRegistry,
        *,
        scheduler: RetryScheduler | None = None,
        http_client: httpx.AsyncClient | None = None,
        delivery_timeout: float = 30.0,
        max_concurrent_deliveries: int = 10,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            registry: Webhook registry to resolve endpoints from.
            scheduler: Retry scheduler (a new one if not provided).
            http_client: Shared HTTP client. A short-lived client per
                attempt is used when omitted.
            delivery_timeout: HTTP request timeout in seconds.
            max_concurrent_deliveries: Max concurrent delivery requests.
        """
        self._registry = registry
        self._scheduler = scheduler or RetryScheduler()
        self._http_client = http_client
        self._delivery_timeout = delivery_timeout
        self._semaphore = asyncio.Semaphore(max_concurrent_deliveries)
        self._listeners: list[EventListener] = []
        self._exhaustion_listeners: list[ExhaustionListener] = []
        self._completions: dict[str, asyncio.Future[WebhookDelivery]] = {}
        self._background_tasks: set[asyncio.Task[None]] = set()
        self._closed = False
        self._logger = logger.bind(component="webhook_dispatcher")

        registry.add_deactivation_listener(self.cancel_retries)

    @property
    def scheduler(self) -> RetryScheduler:
        return self._scheduler

    def add_listener(self, listener: EventListener) -> None:
        """Add a local event listener called for every dispatched event.

        Args:
            listener: Async or sync function to call with events.
        """
        self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def add_exhaustion_listener(self, listener: ExhaustionListener) -> None:
        """Add a listener notified when a delivery exhausts its retries.

        Args:
            listener: Async or sync function to call with the delivery.
        """
        self._exhaustion_listeners.append(listener)

    async def dispatch(
        self,
        event: WebhookEvent,
        *,
        wait: bool = False,
    ) -> list[WebhookDelivery]:
        """Dispatch an event to the tenant's subscribed endpoints.

        Args:
            event: Event to deliver.
            wait: If True, wait until every delivery reaches a terminal
                state (including all retries).

        Returns:
            Delivery records created, one per matching endpoint.
        """
        self._logger.info(
            "dispatching_event",
            event_id=event.id,
            event_type=event.type.value,
            tenant_id=event.tenant_id,
        )

        await self._notify(self._listeners, event, "listener_error")

        endpoints = self._registry.get_endpoints_for_event(event.tenant_id, event.type)

        if not endpoints:
            self._logger.debug(
                "no_webhooks_subscribed",
                event_type=event.type.value,
                tenant_id=event.tenant_id,
            )
            return []

        deliveries = [self._registry.create_delivery(endpoint, event) for endpoint in endpoints]
        for delivery in deliveries:
            self._start(delivery)

        if wait:
            await self.wait_for(deliveries)

        self._logger.info(
            "event_dispatched",
            event_id=event.id,
            delivery_count=len(deliveries),
        )

        return deliveries

    async def dispatch_event(
        self,
        tenant_id: str,
        event_type: WebhookEventType,
        data: dict[str, Any],
        *,
        wait: bool = False,
    ) -> list[WebhookDelivery]:
        """Convenience method to dispatch by event type and data."""
        event = create_webhook_event(event_type, tenant_id, data)
        return await self.dispatch(event, wait=wait)

    async def wait_for(self, deliveries: list[WebhookDelivery]) -> None:
        """Wait until the given deliveries reach a terminal state."""
        futures = [self._completions[d.id] for d in deliveries if d.id in self._completions]
        if futures:
            await asyncio.gather(*futures)

    def cancel_retries(self, endpoint_id: str) -> int:
        """Drop pending retries for an endpoint.

        Called by the registry when an endpoint is deactivated or deleted.

        Returns:
            Number of retries dropped.
        """
        cancelled = self._scheduler.cancel_for_endpoint(endpoint_id)
        if cancelled:
            self._logger.info(
                "endpoint_retries_cancelled",
                endpoint_id=endpoint_id,
                count=cancelled,
            )
        return cancelled

    def _start(self, delivery: WebhookDelivery) -> None:
        self._completions[delivery.id] = asyncio.get_running_loop().create_future()
        task = asyncio.create_task(self._run_attempt(delivery))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    def _finish(self, delivery: WebhookDelivery) -> None:
        future = self._completions.pop(delivery.id, None)
        if future is not None and not future.done():
            future.set_result(delivery)

    def _cancel_delivery(self, delivery: WebhookDelivery) -> None:
        delivery.mark_cancelled()
        self._logger.info(
            "delivery_cancelled",
            delivery_id=delivery.id,
            endpoint_id=delivery.endpoint_id,
            attempts=delivery.attempt_count,
        )
        self._finish(delivery)

    async def _run_attempt(self, delivery: WebhookDelivery) -> None:
        """Run one attempt and decide the next state of the delivery.

        Args:
            delivery: Delivery record to drive.
        """
        endpoint = self._registry.get_by_id(delivery.endpoint_id)
        if self._closed or endpoint is None or not endpoint.is_active:
            self._cancel_delivery(delivery)
            return

        attempt_number = delivery.start_attempt()
        requested_at = datetime.now(UTC)

        async with self._semaphore:
            result = await self._attempt_delivery(endpoint, delivery, attempt_number)

        delivery.record_attempt(requested_at, result)

        if result.success:
            delivery.mark_delivered()
            if not delivery.is_test:
                endpoint.record_delivery(success=True)
            self._logger.info(
                "delivery_success",
                delivery_id=delivery.id,
                endpoint_id=endpoint.id,
                status_code=result.status_code,
                attempt=attempt_number,
            )
            self._finish(delivery)
            return

        if self._closed or not self._registry.is_deliverable(endpoint.id):
            self._cancel_delivery(delivery)
            return

        if delivery.can_retry:
            delay_ms = calculate_retry_delay(delivery.attempt_count - 1, endpoint.retry_policy)
            next_attempt_at = self._scheduler.schedule(
                delivery.id,
                endpoint.id,
                delay_ms,
                lambda: self._run_attempt(delivery),
                on_cancel=lambda: self._cancel_delivery(delivery),
            )
            delivery.mark_retry_scheduled(next_attempt_at)
            self._logger.debug(
                "scheduling_retry",
                delivery_id=delivery.id,
                delay_ms=delay_ms,
                next_attempt=attempt_number + 1,
            )
            return

        if delivery.is_test:
            delivery.mark_exhausted()
            self._logger.info(
                "test_delivery_failed",
                delivery_id=delivery.id,
                endpoint_id=endpoint.id,
                error=result.error_message,
            )
            self._finish(delivery)
            return

        await self._exhaust(endpoint, delivery)

    async def _exhaust(self, endpoint: WebhookEndpoint, delivery: WebhookDelivery) -> None:
        delivery.mark_exhausted()
        endpoint.record_delivery(success=False)
        last = delivery.last_result
        self._logger.error(
            "delivery_failed_permanently",
            delivery_id=delivery.id,
            endpoint_id=endpoint.id,
            event_id=delivery.event_id,
            attempts=delivery.attempt_count,
            last_error=last.error_message if last else None,
        )
        await self._notify(self._exhaustion_listeners, delivery, "exhaustion_listener_error")
        self._finish(delivery)

    async def _notify(self, listeners: list[Callable[[Any], Any]], item: Any, error_event: str) -> None:
        for listener in listeners:
            try:
                result = listener(item)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                self._logger.warning(error_event, item_id=getattr(item, "id", None), error=str(e))

    async def _post(self, url: str, body: bytes, headers: dict[str, str]) -> httpx.Response:
        if self._http_client is not None:
            return await self._http_client.post(
                url, content=body, headers=headers, timeout=self._delivery_timeout
            )
        async with httpx.AsyncClient(timeout=self._delivery_timeout) as client:
            return await client.post(url, content=body, headers=headers)

    async def _attempt_delivery(
        self,
        endpoint: WebhookEndpoint,
        delivery: WebhookDelivery,
        attempt_number: int,
    ) -> DeliveryResult:
        """Make a single delivery attempt.

        Any 2xx response is a success; every other outcome is a failure.

        Returns:
            Typed result of the attempt.
        """
        body = serialize_payload(delivery.payload)
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            EVENT_HEADER: delivery.event_type.value,
            DELIVERY_HEADER: delivery.id,
        }
        headers.update(create_signature_headers(body, endpoint.secret))

        self._logger.debug(
            "attempting_delivery",
            delivery_id=delivery.id,
            attempt=attempt_number,
            url=endpoint.url,
        )

        start = time.monotonic()
        try:
            response = await self._post(endpoint.url, body, headers)
            if not response.is_success:
                raise DeliveryError(
                    f"HTTP {response.status_code}",
                    status_code=response.status_code,
                    response_body=response.text,
                )
            return DeliveryResult(
                success=True,
                status_code=response.status_code,
                response_body=response.text,
                duration_ms=(time.monotonic() - start) * 1000,
            )

        except DeliveryError as e:
            error_message = e.message
            status_code = e.status_code
            response_body = e.response_body
        except httpx.TimeoutException:
            error_message = "Request timeout"
            status_code = None
            response_body = None
        except httpx.HTTPError as e:
            error_message = f"Connection error: {e.__class__.__name__}"
            status_code = None
            response_body = None
        except Exception as e:
            error_message = f"Unexpected error: {e.__class__.__name__}"
            status_code = None
            response_body = None

        self._logger.warning(
            "delivery_attempt_failed",
            delivery_id=delivery.id,
            attempt=attempt_number,
            status_code=status_code,
            error=error_message,
        )
        return DeliveryResult(
            success=False,
            status_code=status_code,
            response_body=response_body,
            error_message=error_message,
            duration_ms=(time.monotonic() - start) * 1000,
        )

    async def send_test_event(self, tenant_id: str, endpoint_id: str) -> WebhookDelivery | None:
        """Send a single test delivery to one endpoint, without retries.

        Args:
            tenant_id: Owning tenant.
            endpoint_id: Endpoint to test.

        Returns:
            Delivery record if the endpoint exists, None otherwise.
        """
        endpoint = self._registry.get(tenant_id, endpoint_id)
        if endpoint is None:
            return None

        event_type = endpoint.events[0] if endpoint.events else WebhookEventType.CLIENT_CREATED
        test_event = create_webhook_event(
            event_type,
            tenant_id,
            {
                "test": True,
                "message": "This is a test webhook delivery",
                "webhook_id": endpoint_id,
            },
        )

        delivery = self._registry.create_delivery(endpoint, test_event)
        delivery.max_attempts = 1
        delivery.is_test = True
        self._start(delivery)
        await self.wait_for([delivery])
        return delivery

    async def shutdown(self) -> None:
        """Drop pending retries and wait for in-flight attempts.

        Attempts that fail after shutdown has started are cancelled instead
        of being scheduled again.
        """
        self._closed = True
        if self._background_tasks:
            self._logger.info(
                "waiting_for_pending_deliveries",
                count=len(self._background_tasks),
            )
        await self._scheduler.shutdown()
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)

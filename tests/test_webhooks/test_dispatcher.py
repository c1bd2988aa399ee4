"""Tests for webhook dispatcher module."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from src.webhooks.dispatcher import (
    DELIVERY_HEADER,
    EVENT_HEADER,
    USER_AGENT,
    WebhookDispatcher,
)
from src.webhooks.events import WebhookEventType, create_webhook_event
from src.webhooks.manager import DeliveryState, RetryPolicy, WebhookRegistry
from src.webhooks.security import SIGNATURE_HEADER, verify

FAST_POLICY = RetryPolicy(max_retries=2, initial_delay_ms=1, max_delay_ms=5)
SLOW_POLICY = RetryPolicy(max_retries=3, initial_delay_ms=10_000, max_delay_ms=60_000)


class RecordingTransport:
    """Mock receiver returning scripted responses and recording requests."""

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcome = self.responses.pop(0) if self.responses else 200
        if isinstance(outcome, Exception):
            raise outcome
        return httpx.Response(outcome, text="ok" if outcome < 400 else "error")


class BlockingTransport:
    """Mock receiver that holds each request until released, then fails it."""

    def __init__(self, status_code=500):
        self.status_code = status_code
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def __call__(self, request: httpx.Request) -> httpx.Response:  # noqa: ARG002
        self.started.set()
        await self.release.wait()
        return httpx.Response(self.status_code)


async def _wait_for_state(delivery, state, timeout=1.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while delivery.state != state:
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"delivery stuck in {delivery.state}")
        await asyncio.sleep(0.005)


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def registry():
    """Create test webhook registry."""
    return WebhookRegistry()


@pytest.fixture
def receiver():
    """Create a receiver that accepts everything by default."""
    return RecordingTransport()


@pytest.fixture
def dispatcher(registry, receiver):
    """Create test webhook dispatcher with a mocked HTTP transport."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(receiver))
    return WebhookDispatcher(registry, http_client=client, max_concurrent_deliveries=5)


@pytest.fixture
def registration(registry):
    """Register an endpoint subscribed to client.created."""
    return registry.register(
        "firm_1",
        "https://example.com/webhook",
        [WebhookEventType.CLIENT_CREATED],
        retry_policy=FAST_POLICY,
    )


@pytest.fixture
def sample_event():
    """Create a sample event."""
    return create_webhook_event(
        WebhookEventType.CLIENT_CREATED, "firm_1", {"client_id": "c_1", "name": "Acme"}
    )


# ============================================================================
# Listener Tests
# ============================================================================


class TestListeners:
    """Tests for event listeners."""

    def test_add_and_remove_listener(self, dispatcher):
        """Test adding and removing a listener."""
        listener = MagicMock()
        dispatcher.add_listener(listener)
        assert listener in dispatcher._listeners

        dispatcher.remove_listener(listener)
        assert listener not in dispatcher._listeners

    def test_remove_nonexistent_listener(self, dispatcher):
        """Test removing a listener that doesn't exist."""
        dispatcher.remove_listener(MagicMock())

    @pytest.mark.asyncio
    async def test_sync_and_async_listeners_called(self, dispatcher, sample_event):
        """Test that listeners are notified of every event."""
        sync_listener = MagicMock()
        async_listener = AsyncMock()
        dispatcher.add_listener(sync_listener)
        dispatcher.add_listener(async_listener)

        await dispatcher.dispatch(sample_event)

        sync_listener.assert_called_once_with(sample_event)
        async_listener.assert_awaited_once_with(sample_event)

    @pytest.mark.asyncio
    async def test_listener_error_does_not_stop_dispatch(
        self, dispatcher, registration, sample_event, receiver
    ):
        """Test that listener errors don't stop delivery."""
        dispatcher.add_listener(MagicMock(side_effect=Exception("Listener error")))

        deliveries = await dispatcher.dispatch(sample_event, wait=True)

        assert deliveries[0].state == DeliveryState.DELIVERED
        assert len(receiver.requests) == 1


# ============================================================================
# Dispatch Tests
# ============================================================================


class TestDispatch:
    """Tests for event dispatching."""

    @pytest.mark.asyncio
    async def test_dispatch_no_webhooks(self, dispatcher, sample_event):
        """Test dispatching with no webhooks registered."""
        assert await dispatcher.dispatch(sample_event) == []

    @pytest.mark.asyncio
    async def test_successful_delivery(self, dispatcher, registration, sample_event, receiver):
        """Test a first-attempt 2xx delivery."""
        deliveries = await dispatcher.dispatch(sample_event, wait=True)

        delivery = deliveries[0]
        assert delivery.state == DeliveryState.DELIVERED
        assert delivery.attempt_count == 1
        assert delivery.last_result.status_code == 200
        assert delivery.completed_at is not None
        assert registration.endpoint.successful_deliveries == 1

    @pytest.mark.asyncio
    async def test_request_is_signed_canonical_payload(
        self, dispatcher, registration, sample_event, receiver
    ):
        """Test that the exact posted bytes carry a valid signature."""
        await dispatcher.dispatch(sample_event, wait=True)

        request = receiver.requests[0]
        body = request.content
        assert request.method == "POST"
        assert request.headers["Content-Type"] == "application/json"
        assert request.headers["User-Agent"] == USER_AGENT
        assert request.headers[EVENT_HEADER] == "client.created"
        assert request.headers[DELIVERY_HEADER].startswith("dlv_")
        assert verify(body, request.headers[SIGNATURE_HEADER], registration.secret)
        assert json.loads(body) == sample_event.to_payload()
        assert set(json.loads(body)) == {"id", "event", "timestamp", "firmId", "data"}

    @pytest.mark.asyncio
    async def test_unsubscribed_event_never_delivered(
        self, dispatcher, registration, receiver  # noqa: ARG002
    ):
        """Test that client.created subscribers never receive document.filed."""
        event = create_webhook_event(WebhookEventType.DOCUMENT_FILED, "firm_1", {})

        deliveries = await dispatcher.dispatch(event, wait=True)

        assert deliveries == []
        assert receiver.requests == []

    @pytest.mark.asyncio
    async def test_other_tenant_never_delivered(
        self, dispatcher, registration, receiver  # noqa: ARG002
    ):
        """Test that events only reach the event's tenant."""
        event = create_webhook_event(WebhookEventType.CLIENT_CREATED, "firm_2", {})

        assert await dispatcher.dispatch(event, wait=True) == []
        assert receiver.requests == []

    @pytest.mark.asyncio
    async def test_inactive_endpoint_skipped(self, dispatcher, registry, registration, sample_event):
        """Test that deactivated endpoints receive nothing."""
        registry.deactivate("firm_1", registration.endpoint.id)

        assert await dispatcher.dispatch(sample_event) == []

    @pytest.mark.asyncio
    async def test_endpoints_delivered_independently(self, registry, sample_event):
        """Test that one failing endpoint does not affect another."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500 if request.url.host == "down.example.com" else 204)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        dispatcher = WebhookDispatcher(registry, http_client=client)
        registry.register(
            "firm_1", "https://up.example.com/hook", [WebhookEventType.CLIENT_CREATED],
            retry_policy=FAST_POLICY,
        )
        registry.register(
            "firm_1", "https://down.example.com/hook", [WebhookEventType.CLIENT_CREATED],
            retry_policy=FAST_POLICY,
        )

        deliveries = await dispatcher.dispatch(sample_event, wait=True)

        states = {registry.get_by_id(d.endpoint_id).url: d.state for d in deliveries}
        assert states == {
            "https://up.example.com/hook": DeliveryState.DELIVERED,
            "https://down.example.com/hook": DeliveryState.EXHAUSTED,
        }

    @pytest.mark.asyncio
    async def test_dispatch_event_convenience(self, dispatcher, registration, receiver):  # noqa: ARG002
        """Test dispatching by type and data."""
        deliveries = await dispatcher.dispatch_event(
            "firm_1", WebhookEventType.CLIENT_CREATED, {"client_id": "c_2"}, wait=True
        )

        assert deliveries[0].state == DeliveryState.DELIVERED
        assert json.loads(receiver.requests[0].content)["data"] == {"client_id": "c_2"}


# ============================================================================
# Retry Tests
# ============================================================================


class TestRetries:
    """Tests for failure handling and retries."""

    @pytest.mark.asyncio
    async def test_retry_until_success(self, dispatcher, registration, sample_event, receiver):  # noqa: ARG002
        """Test that failures are retried until a 2xx."""
        receiver.responses = [500, 503, 200]

        deliveries = await dispatcher.dispatch(sample_event, wait=True)

        delivery = deliveries[0]
        assert delivery.state == DeliveryState.DELIVERED
        assert [a.attempt_number for a in delivery.attempts] == [1, 2, 3]
        assert [a.result.success for a in delivery.attempts] == [False, False, True]

    @pytest.mark.asyncio
    async def test_same_bytes_on_every_attempt(self, dispatcher, registration, sample_event, receiver):  # noqa: ARG002
        """Test that retries resend the identical signed body."""
        receiver.responses = [500, 200]

        await dispatcher.dispatch(sample_event, wait=True)

        first, second = receiver.requests
        assert first.content == second.content
        assert first.headers[SIGNATURE_HEADER] == second.headers[SIGNATURE_HEADER]

    @pytest.mark.asyncio
    async def test_exhaustion(self, dispatcher, registry, registration, sample_event, receiver):
        """Test that max_retries + 1 failures exhaust the delivery."""
        receiver.responses = [500] * 10
        exhausted = AsyncMock()
        dispatcher.add_exhaustion_listener(exhausted)

        deliveries = await dispatcher.dispatch(sample_event, wait=True)

        delivery = deliveries[0]
        assert delivery.state == DeliveryState.EXHAUSTED
        assert delivery.attempt_count == FAST_POLICY.max_retries + 1
        assert len(receiver.requests) == FAST_POLICY.max_retries + 1
        exhausted.assert_awaited_once_with(delivery)
        assert registry.list_exhausted("firm_1") == [delivery]
        assert registration.endpoint.failed_deliveries == 1

        await asyncio.sleep(0.05)
        assert len(receiver.requests) == FAST_POLICY.max_retries + 1

    @pytest.mark.asyncio
    async def test_client_errors_are_failures(self, dispatcher, registration, sample_event, receiver):  # noqa: ARG002
        """Test that 4xx responses are retried like any failure."""
        receiver.responses = [404, 200]

        deliveries = await dispatcher.dispatch(sample_event, wait=True)

        assert deliveries[0].attempts[0].result.error_message == "HTTP 404"
        assert deliveries[0].attempts[0].result.response_body == "error"
        assert deliveries[0].state == DeliveryState.DELIVERED

    @pytest.mark.asyncio
    async def test_timeout_is_failure(self, dispatcher, registration, sample_event, receiver):  # noqa: ARG002
        """Test that timeouts are recorded as failures."""
        receiver.responses = [httpx.ReadTimeout("slow"), 200]

        deliveries = await dispatcher.dispatch(sample_event, wait=True)

        first = deliveries[0].attempts[0].result
        assert first.success is False
        assert first.status_code is None
        assert first.error_message == "Request timeout"

    @pytest.mark.asyncio
    async def test_connection_error_is_failure(self, dispatcher, registration, sample_event, receiver):  # noqa: ARG002
        """Test that network errors are recorded as failures."""
        receiver.responses = [httpx.ConnectError("refused"), 200]

        deliveries = await dispatcher.dispatch(sample_event, wait=True)

        assert deliveries[0].attempts[0].result.error_message == "Connection error: ConnectError"

    @pytest.mark.asyncio
    async def test_attempts_for_a_pair_never_overlap(self, registry, sample_event):
        """Test that attempt N+1 starts only after attempt N finished."""
        in_flight = 0
        max_in_flight = 0
        calls = 0

        async def handler(request: httpx.Request) -> httpx.Response:  # noqa: ARG001
            nonlocal in_flight, max_in_flight, calls
            in_flight += 1
            max_in_flight = max(max_in_flight, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            calls += 1
            return httpx.Response(500 if calls < 3 else 200)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        dispatcher = WebhookDispatcher(registry, http_client=client)
        registry.register(
            "firm_1", "https://example.com/hook", [WebhookEventType.CLIENT_CREATED],
            retry_policy=FAST_POLICY,
        )

        deliveries = await dispatcher.dispatch(sample_event, wait=True)

        assert deliveries[0].state == DeliveryState.DELIVERED
        assert max_in_flight == 1


# ============================================================================
# Cancellation Tests
# ============================================================================


class TestCancellation:
    """Tests for dropping retries when endpoints go away."""

    @pytest.fixture
    def slow_registration(self, registry):
        """Register an endpoint whose retries are far in the future."""
        return registry.register(
            "firm_1",
            "https://example.com/slow",
            [WebhookEventType.CLIENT_CREATED],
            retry_policy=SLOW_POLICY,
        )

    @pytest.mark.asyncio
    async def test_deactivate_cancels_pending_retry(
        self, dispatcher, registry, slow_registration, sample_event, receiver
    ):
        """Test that deactivation drops the scheduled retry."""
        receiver.responses = [500]
        deliveries = await dispatcher.dispatch(sample_event)
        delivery = deliveries[0]
        await _wait_for_state(delivery, DeliveryState.RETRY_SCHEDULED)

        assert delivery.next_attempt_at is not None
        assert dispatcher.scheduler.is_scheduled(delivery.id)

        registry.deactivate("firm_1", slow_registration.endpoint.id)
        await asyncio.wait_for(dispatcher.wait_for(deliveries), timeout=1)

        assert delivery.state == DeliveryState.CANCELLED
        assert not dispatcher.scheduler.is_scheduled(delivery.id)
        assert len(receiver.requests) == 1

    @pytest.mark.asyncio
    async def test_delete_cancels_pending_retry(
        self, dispatcher, registry, slow_registration, sample_event, receiver
    ):
        """Test that deletion drops the scheduled retry."""
        receiver.responses = [500]
        deliveries = await dispatcher.dispatch(sample_event)
        await _wait_for_state(deliveries[0], DeliveryState.RETRY_SCHEDULED)

        registry.delete("firm_1", slow_registration.endpoint.id)

        assert deliveries[0].state == DeliveryState.CANCELLED
        assert dispatcher.scheduler.pending_count == 0

    @pytest.mark.asyncio
    async def test_shutdown_drops_pending_retries(
        self, dispatcher, slow_registration, sample_event, receiver  # noqa: ARG002
    ):
        """Test that shutdown leaves no timers behind."""
        receiver.responses = [500]
        deliveries = await dispatcher.dispatch(sample_event)
        await _wait_for_state(deliveries[0], DeliveryState.RETRY_SCHEDULED)

        await dispatcher.shutdown()

        assert dispatcher.scheduler.pending_count == 0
        assert deliveries[0].state == DeliveryState.CANCELLED

    @pytest.mark.asyncio
    async def test_shutdown_during_in_flight_attempt(self, registry, sample_event):
        """Test that an attempt failing during shutdown is not rescheduled."""
        transport = BlockingTransport()
        dispatcher = WebhookDispatcher(
            registry, http_client=httpx.AsyncClient(transport=httpx.MockTransport(transport))
        )
        registry.register(
            "firm_1",
            "https://example.com/slow",
            [WebhookEventType.CLIENT_CREATED],
            retry_policy=SLOW_POLICY,
        )
        deliveries = await dispatcher.dispatch(sample_event)
        await asyncio.wait_for(transport.started.wait(), timeout=1)

        shutdown = asyncio.create_task(dispatcher.shutdown())
        await asyncio.sleep(0)
        transport.release.set()
        await asyncio.wait_for(shutdown, timeout=1)

        assert dispatcher.scheduler.pending_count == 0
        assert deliveries[0].state == DeliveryState.CANCELLED
        assert deliveries[0].attempt_count == 1
        await asyncio.wait_for(dispatcher.wait_for(deliveries), timeout=1)

    @pytest.mark.asyncio
    async def test_no_attempts_after_shutdown(self, dispatcher, registration, sample_event):  # noqa: ARG002
        """Test that events dispatched after shutdown are cancelled unsent."""
        await dispatcher.shutdown()

        deliveries = await dispatcher.dispatch(sample_event, wait=True)

        assert deliveries[0].state == DeliveryState.CANCELLED
        assert deliveries[0].attempt_count == 0


# ============================================================================
# Test Event Tests
# ============================================================================


class TestSendTestEvent:
    """Tests for send_test_event."""

    @pytest.mark.asyncio
    async def test_send_test_event(self, dispatcher, registration, receiver):
        """Test sending a test event."""
        delivery = await dispatcher.send_test_event("firm_1", registration.endpoint.id)

        assert delivery.state == DeliveryState.DELIVERED
        payload = json.loads(receiver.requests[0].content)
        assert payload["data"]["test"] is True
        assert payload["data"]["webhook_id"] == registration.endpoint.id

    @pytest.mark.asyncio
    async def test_test_event_is_not_retried(self, dispatcher, registration, receiver):
        """Test that a failing test delivery makes exactly one attempt."""
        receiver.responses = [500, 500]

        delivery = await dispatcher.send_test_event("firm_1", registration.endpoint.id)

        assert delivery.state == DeliveryState.EXHAUSTED
        assert delivery.attempt_count == 1
        assert len(receiver.requests) == 1

    @pytest.mark.asyncio
    async def test_send_test_event_unknown(self, dispatcher):
        """Test sending to a missing endpoint."""
        assert await dispatcher.send_test_event("firm_1", "wh_missing") is None

    @pytest.mark.asyncio
    async def test_send_test_event_other_tenant(self, dispatcher, registration):
        """Test that tenants cannot test each other's endpoints."""
        assert await dispatcher.send_test_event("firm_2", registration.endpoint.id) is None

    @pytest.mark.asyncio
    async def test_failed_test_event_not_reported(self, dispatcher, registry, registration, receiver):
        """Test that a failing test ping does not count as an exhausted delivery."""
        receiver.responses = [500]
        exhausted = MagicMock()
        dispatcher.add_exhaustion_listener(exhausted)

        delivery = await dispatcher.send_test_event("firm_1", registration.endpoint.id)

        assert delivery.is_test
        assert delivery.last_result.error_message == "HTTP 500"
        exhausted.assert_not_called()
        assert registry.list_exhausted("firm_1") == []
        assert registration.endpoint.failed_deliveries == 0
        assert registration.endpoint.total_deliveries == 0

    @pytest.mark.asyncio
    async def test_successful_test_event_not_counted(self, dispatcher, registry, registration):
        """Test that test pings stay out of endpoint statistics but keep history."""
        delivery = await dispatcher.send_test_event("firm_1", registration.endpoint.id)

        assert registration.endpoint.total_deliveries == 0
        assert registry.list_deliveries(registration.endpoint.id) == [delivery]

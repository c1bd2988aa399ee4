"""Tests for webhook registry module."""

from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest
from pydantic import ValidationError

from src.errors import NotFoundError
from src.webhooks.events import WebhookEventType, create_webhook_event
from src.webhooks.manager import (
    MAX_RESPONSE_BODY_LENGTH,
    DeliveryResult,
    DeliveryState,
    RetryPolicy,
    WebhookRegistry,
    get_default_retry_policy,
    validate_url,
)

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def registry():
    """Create an empty registry."""
    return WebhookRegistry()


@pytest.fixture
def endpoint(registry):
    """Register a sample endpoint."""
    registration = registry.register(
        "firm_1",
        "https://example.com/webhook",
        [WebhookEventType.CLIENT_CREATED],
        description="Test webhook",
    )
    return registration.endpoint


# ============================================================================
# validate_url Tests
# ============================================================================


class TestValidateUrl:
    """Tests for validate_url."""

    def test_https_public_host_valid(self):
        """Test a normal HTTPS URL."""
        assert validate_url("https://api.example.com/hook").valid

    def test_http_public_host_invalid(self):
        """Test that HTTP is refused for public hosts."""
        result = validate_url("http://evil.com")

        assert not result.valid
        assert result.errors == ["HTTP is only allowed for localhost URLs"]

    def test_http_localhost_valid(self):
        """Test that HTTP is allowed for localhost."""
        assert validate_url("http://localhost:3000/hook").valid

    def test_http_host_containing_localhost_valid(self):
        """Test that the HTTP rule matches hosts containing localhost."""
        assert validate_url("http://localhost.example.com/hook").valid

    @pytest.mark.parametrize("host", ["localhost", "127.0.0.1", "0.0.0.0"])
    def test_https_local_hosts_invalid(self, host):
        """Test that HTTPS to local hosts is refused."""
        result = validate_url(f"https://{host}/hook")

        assert result.errors == ["Cannot use localhost for HTTPS webhooks"]

    def test_https_loopback_alias_not_blocked(self):
        """Test that only the literal hosts are blocked for HTTPS."""
        assert validate_url("https://127.0.0.2/hook").valid

    def test_http_loopback_ip_invalid(self):
        """Test that HTTP to 127.0.0.1 is refused (host is not localhost)."""
        assert validate_url("http://127.0.0.1/hook").errors == [
            "HTTP is only allowed for localhost URLs"
        ]

    def test_other_protocol_invalid(self):
        """Test that non-HTTP protocols are refused."""
        result = validate_url("ftp://example.com/file")

        assert "URL must use HTTP or HTTPS protocol" in result.errors

    @pytest.mark.parametrize("url", ["not a url", "", "https://", "https://example.com:99999"])
    def test_malformed_invalid(self, url):
        """Test that unparseable URLs are refused."""
        assert validate_url(url).errors == ["Invalid URL format"]


# ============================================================================
# RetryPolicy Tests
# ============================================================================


class TestRetryPolicy:
    """Tests for RetryPolicy model."""

    def test_defaults(self):
        """Test default policy values."""
        policy = get_default_retry_policy()

        assert policy.max_retries == 3
        assert policy.initial_delay_ms == 1000
        assert policy.max_delay_ms == 60000
        assert policy.backoff_multiplier == 2

    def test_max_retries_bounds(self):
        """Test max_retries validation."""
        with pytest.raises(ValidationError):
            RetryPolicy(max_retries=11)
        with pytest.raises(ValidationError):
            RetryPolicy(max_retries=-1)

    def test_multiplier_at_least_one(self):
        """Test that delays cannot shrink."""
        with pytest.raises(ValidationError):
            RetryPolicy(backoff_multiplier=0.5)


# ============================================================================
# Registration Tests
# ============================================================================


class TestRegister:
    """Tests for endpoint registration."""

    def test_register(self, registry):
        """Test registering an endpoint."""
        registration = registry.register(
            "firm_1",
            "https://example.com/webhook",
            [WebhookEventType.CLIENT_CREATED, WebhookEventType.CLIENT_UPDATED],
        )

        endpoint = registration.endpoint
        assert registration.validation.valid
        assert endpoint.id.startswith("wh_")
        assert endpoint.tenant_id == "firm_1"
        assert endpoint.is_active is True
        assert len(endpoint.events) == 2

    def test_secret_returned_once(self, registry):
        """Test that the secret is returned with the registration only."""
        registration = registry.register(
            "firm_1", "https://example.com/webhook", [WebhookEventType.CLIENT_CREATED]
        )

        assert len(registration.secret) == 64
        assert registration.secret == registration.endpoint.secret
        assert registration.endpoint.secret_prefix == registration.secret[:8] + "..."

    def test_secret_hidden_from_dumps_and_repr(self, endpoint):
        """Test that the secret never appears in serialized output."""
        assert "secret" not in endpoint.model_dump()
        assert endpoint.secret not in repr(endpoint)

    def test_secret_immutable(self, endpoint):
        """Test that the secret cannot be changed."""
        with pytest.raises(ValidationError):
            endpoint.secret = "new"

    def test_duplicate_events_collapsed(self, registry):
        """Test that subscriptions are a set."""
        registration = registry.register(
            "firm_1",
            "https://example.com/webhook",
            [WebhookEventType.CLIENT_CREATED, WebhookEventType.CLIENT_CREATED],
        )

        assert registration.endpoint.events == [WebhookEventType.CLIENT_CREATED]

    def test_invalid_url_rejected(self, registry):
        """Test that an invalid URL is not registered."""
        registration = registry.register(
            "firm_1", "http://evil.com", [WebhookEventType.CLIENT_CREATED]
        )

        assert registration.endpoint is None
        assert registration.secret is None
        assert registration.validation.errors == ["HTTP is only allowed for localhost URLs"]
        assert registry.list_for_tenant("firm_1") == []

    def test_events_required(self, registry):
        """Test that at least one event type is needed."""
        registration = registry.register("firm_1", "https://example.com/webhook", [])

        assert registration.validation.errors == ["At least one event type is required"]


# ============================================================================
# Lookup and Update Tests
# ============================================================================


class TestLookup:
    """Tests for tenant-scoped lookups."""

    def test_get(self, registry, endpoint):
        """Test getting an endpoint by id."""
        assert registry.get("firm_1", endpoint.id) is endpoint

    def test_get_other_tenant(self, registry, endpoint):
        """Test that other tenants cannot see an endpoint."""
        assert registry.get("firm_2", endpoint.id) is None

    def test_list_for_tenant(self, registry, endpoint):
        """Test listing is tenant-scoped."""
        registry.register("firm_2", "https://other.com/hook", [WebhookEventType.CLIENT_CREATED])

        assert registry.list_for_tenant("firm_1") == [endpoint]

    def test_list_filters(self, registry, endpoint):
        """Test active and event type filters."""
        other = registry.register(
            "firm_1", "https://other.com/hook", [WebhookEventType.DOCUMENT_FILED]
        ).endpoint
        registry.deactivate("firm_1", other.id)

        assert registry.list_for_tenant("firm_1", active_only=True) == [endpoint]
        assert registry.list_for_tenant(
            "firm_1", event_type=WebhookEventType.DOCUMENT_FILED
        ) == [other]

    def test_endpoints_for_event(self, registry, endpoint):
        """Test subscription matching."""
        assert registry.get_endpoints_for_event("firm_1", WebhookEventType.CLIENT_CREATED) == [endpoint]
        assert registry.get_endpoints_for_event("firm_1", WebhookEventType.DOCUMENT_FILED) == []
        assert registry.get_endpoints_for_event("firm_2", WebhookEventType.CLIENT_CREATED) == []

    def test_inactive_endpoints_not_matched(self, registry, endpoint):
        """Test that deactivated endpoints receive nothing."""
        registry.deactivate("firm_1", endpoint.id)

        assert registry.get_endpoints_for_event("firm_1", WebhookEventType.CLIENT_CREATED) == []


class TestUpdate:
    """Tests for endpoint updates."""

    def test_update_fields(self, registry, endpoint):
        """Test updating url, description and events."""
        secret = endpoint.secret
        result = registry.update(
            "firm_1",
            endpoint.id,
            url="https://new.example.com/hook",
            description="Updated",
            events=[WebhookEventType.DOCUMENT_FILED],
        )

        assert result.valid
        assert endpoint.url == "https://new.example.com/hook"
        assert endpoint.description == "Updated"
        assert endpoint.events == [WebhookEventType.DOCUMENT_FILED]
        assert endpoint.secret == secret

    def test_invalid_update_not_applied(self, registry, endpoint):
        """Test that nothing changes when validation fails."""
        result = registry.update(
            "firm_1", endpoint.id, url="http://evil.com", description="Changed"
        )

        assert not result.valid
        assert endpoint.url == "https://example.com/webhook"
        assert endpoint.description == "Test webhook"

    def test_update_unknown(self, registry):
        """Test updating a missing endpoint."""
        with pytest.raises(NotFoundError):
            registry.update("firm_1", "wh_missing", description="x")

    def test_update_deactivate_notifies(self, registry, endpoint):
        """Test that deactivating through update notifies listeners."""
        listener = MagicMock()
        registry.add_deactivation_listener(listener)

        registry.update("firm_1", endpoint.id, is_active=False)

        assert endpoint.is_active is False
        listener.assert_called_once_with(endpoint.id)


class TestDeactivateAndDelete:
    """Tests for deactivation and deletion."""

    def test_deactivate(self, registry, endpoint):
        """Test deactivating an endpoint."""
        listener = MagicMock()
        registry.add_deactivation_listener(listener)

        registry.deactivate("firm_1", endpoint.id)

        assert endpoint.is_active is False
        assert registry.is_deliverable(endpoint.id) is False
        listener.assert_called_once_with(endpoint.id)

    def test_deactivate_other_tenant(self, registry, endpoint):
        """Test that tenants cannot deactivate each other's endpoints."""
        with pytest.raises(NotFoundError):
            registry.deactivate("firm_2", endpoint.id)

    def test_delete(self, registry, endpoint):
        """Test deleting an endpoint."""
        listener = MagicMock()
        registry.add_deactivation_listener(listener)

        assert registry.delete("firm_1", endpoint.id) is True
        assert registry.get("firm_1", endpoint.id) is None
        listener.assert_called_once_with(endpoint.id)

    def test_delete_missing(self, registry):
        """Test deleting a missing endpoint."""
        assert registry.delete("firm_1", "wh_missing") is False


# ============================================================================
# Delivery Record Tests
# ============================================================================


class TestDeliveryRecords:
    """Tests for delivery records and their state machine."""

    @pytest.fixture
    def delivery(self, registry, endpoint):
        """Create a delivery for the sample endpoint."""
        event = create_webhook_event(WebhookEventType.CLIENT_CREATED, "firm_1", {"id": "c1"})
        return registry.create_delivery(endpoint, event)

    def test_create_delivery(self, delivery, endpoint):
        """Test initial delivery state."""
        assert delivery.id.startswith("dlv_")
        assert delivery.state == DeliveryState.PENDING
        assert delivery.max_attempts == endpoint.retry_policy.max_retries + 1
        assert delivery.payload["firmId"] == "firm_1"
        assert delivery.payload["event"] == "client.created"

    def test_attempt_lifecycle(self, delivery):
        """Test recording attempts."""
        assert delivery.start_attempt() == 1
        assert delivery.state == DeliveryState.ATTEMPTING

        attempt = delivery.record_attempt(
            datetime.now(UTC), DeliveryResult(success=False, status_code=500)
        )

        assert attempt.attempt_number == 1
        assert delivery.attempt_count == 1
        assert delivery.last_result.status_code == 500
        assert delivery.can_retry is True

    def test_response_body_truncated(self, delivery):
        """Test that stored response bodies are bounded."""
        delivery.start_attempt()
        delivery.record_attempt(
            datetime.now(UTC),
            DeliveryResult(success=False, status_code=500, response_body="x" * 5000),
        )

        assert len(delivery.last_result.response_body) == MAX_RESPONSE_BODY_LENGTH

    def test_terminal_states(self, delivery):
        """Test terminal transitions set completed_at."""
        delivery.mark_exhausted()

        assert delivery.is_terminal
        assert delivery.completed_at is not None

    def test_list_deliveries(self, registry, endpoint, delivery):
        """Test listing and filtering deliveries."""
        assert registry.list_deliveries(endpoint.id) == [delivery]
        assert registry.list_deliveries(endpoint.id, state=DeliveryState.DELIVERED) == []
        assert registry.get_delivery(delivery.id) is delivery

    def test_list_exhausted(self, registry, delivery):
        """Test surfacing exhausted deliveries per tenant."""
        delivery.mark_exhausted()

        assert registry.list_exhausted("firm_1") == [delivery]
        assert registry.list_exhausted("firm_2") == []


class TestEndpointStatistics:
    """Tests for endpoint delivery counters."""

    def test_record_delivery(self, endpoint):
        """Test success and failure counters."""
        endpoint.record_delivery(success=True)
        endpoint.record_delivery(success=False)

        assert endpoint.total_deliveries == 2
        assert endpoint.successful_deliveries == 1
        assert endpoint.failed_deliveries == 1
        assert endpoint.last_success_at is not None
        assert endpoint.last_failure_at is not None


class TestDeliveryRetention:
    """Tests for bounding stored delivery records."""

    def test_delete_drops_endpoint_deliveries(self, registry, endpoint):
        """Test that deleting an endpoint removes its delivery history."""
        event = create_webhook_event(WebhookEventType.CLIENT_CREATED, "firm_1", {})
        delivery = registry.create_delivery(endpoint, event)
        other = registry.register(
            "firm_1", "https://example.com/other", [WebhookEventType.CLIENT_CREATED]
        ).endpoint
        kept = registry.create_delivery(other, event)

        registry.delete("firm_1", endpoint.id)

        assert registry.get_delivery(delivery.id) is None
        assert registry.get_delivery(kept.id) is kept

    def test_oldest_terminal_deliveries_trimmed(self, endpoint):
        """Test that the record cap drops the oldest finished deliveries first."""
        registry = WebhookRegistry(max_deliveries=2)
        event = create_webhook_event(WebhookEventType.CLIENT_CREATED, "firm_1", {})

        in_flight = registry.create_delivery(endpoint, event)
        finished = registry.create_delivery(endpoint, event)
        finished.mark_delivered()
        newest = registry.create_delivery(endpoint, event)

        assert registry.get_delivery(finished.id) is None
        assert registry.get_delivery(in_flight.id) is in_flight
        assert registry.get_delivery(newest.id) is newest

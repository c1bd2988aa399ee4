"""Webhook endpoint registry and delivery tracking.

Provides tenant-scoped storage of webhook endpoints, URL validation,
subscription matching, and the per-(endpoint, event) delivery records
that the dispatcher drives through their state machine.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from urllib.parse import urlparse

import structlog
from pydantic import BaseModel, Field

from src.errors import NotFoundError, ValidationResult
from src.webhooks.events import WebhookEvent, WebhookEventType
from src.webhooks.security import generate_secret

logger = structlog.get_logger(__name__)

# Hosts that may not be targeted over HTTPS
BLOCKED_HTTPS_HOSTS = ("127.0.0.1", "0.0.0.0", "localhost")

# Response bodies are truncated before being stored on an attempt
MAX_RESPONSE_BODY_LENGTH = 1000
# Delivery records kept in memory before the oldest terminal ones are dropped
DEFAULT_MAX_DELIVERIES = 10_000

DeactivationListener = Callable[[str], None]


class RetryPolicy(BaseModel):
    """Backoff policy for failed deliveries."""

    max_retries: int = Field(
        default=3,
        description="Retries after the first attempt",
        ge=0,
        le=10,
    )
    initial_delay_ms: int = Field(
        default=1000,
        description="Delay before the first retry",
        ge=0,
    )
    max_delay_ms: int = Field(
        default=60000,
        description="Upper bound for any retry delay",
        ge=0,
    )
    backoff_multiplier: float = Field(
        default=2,
        description="Growth factor between consecutive delays",
        ge=1,
    )


def get_default_retry_policy() -> RetryPolicy:
    """Get the default retry policy (3 retries, 1s doubling, 60s cap)."""
    return RetryPolicy()


def validate_url(url: str) -> ValidationResult:
    """Validate a webhook endpoint URL.

    Rules:
    - the protocol must be http or https;
    - http is only allowed when the host contains "localhost";
    - https is rejected when the host is exactly localhost, 127.0.0.1
      or 0.0.0.0.

    Args:
        url: URL to validate.

    Returns:
        ValidationResult with every violated rule.
    """
    result = ValidationResult()

    try:
        parsed = urlparse(url)
        hostname = parsed.hostname or ""
        _ = parsed.port
    except (ValueError, AttributeError, TypeError):
        result.errors.append("Invalid URL format")
        return result

    scheme = parsed.scheme.lower()
    if not scheme or (scheme in ("http", "https") and not hostname):
        result.errors.append("Invalid URL format")
        return result

    if scheme not in ("http", "https"):
        result.errors.append("URL must use HTTP or HTTPS protocol")

    if scheme == "http" and "localhost" not in hostname:
        result.errors.append("HTTP is only allowed for localhost URLs")

    if scheme == "https" and hostname in BLOCKED_HTTPS_HOSTS:
        result.errors.append("Cannot use localhost for HTTPS webhooks")

    return result


class WebhookEndpoint(BaseModel):
    """A tenant-registered webhook endpoint."""

    id: str = Field(
        default_factory=lambda: f"wh_{uuid.uuid4().hex[:12]}",
        description="Unique endpoint identifier",
    )
    tenant_id: str = Field(
        ..., description="Owning tenant"
    )
    url: str = Field(
        ..., description="Endpoint URL"
    )
    description: str = Field(
        default="",
        description="Human-readable description",
    )
    events: list[WebhookEventType] = Field(
        default_factory=list,
        description="Subscribed event types",
    )
    secret: str = Field(
        default_factory=generate_secret,
        description="HMAC secret, shown once at creation",
        repr=False,
        exclude=True,
        frozen=True,
    )
    retry_policy: RetryPolicy = Field(
        default_factory=get_default_retry_policy,
        description="Backoff policy for failed deliveries",
    )
    is_active: bool = Field(
        default=True,
        description="Whether the endpoint receives deliveries",
    )
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
    )

    # Statistics
    total_deliveries: int = 0
    successful_deliveries: int = 0
    failed_deliveries: int = 0
    last_delivery_at: datetime | None = None
    last_success_at: datetime | None = None
    last_failure_at: datetime | None = None

    @property
    def secret_prefix(self) -> str:
        """Displayable hint of the secret."""
        return f"{self.secret[:8]}..."

    def should_receive_event(self, event_type: WebhookEventType) -> bool:
        """Check if this endpoint subscribes to an event type.

        Args:
            event_type: Event type to check.

        Returns:
            True if the event type is in the subscription set.
        """
        return event_type in self.events

    def record_delivery(self, success: bool) -> None:
        """Record the terminal outcome of a delivery.

        Args:
            success: Whether the delivery succeeded.
        """
        now = datetime.now(UTC)
        self.total_deliveries += 1
        self.last_delivery_at = now

        if success:
            self.successful_deliveries += 1
            self.last_success_at = now
        else:
            self.failed_deliveries += 1
            self.last_failure_at = now


class DeliveryState(str, Enum):
    """State of a delivery for one (endpoint, event) pair."""

    PENDING = "pending"
    ATTEMPTING = "attempting"
    RETRY_SCHEDULED = "retry_scheduled"
    DELIVERED = "delivered"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset(
    {DeliveryState.DELIVERED, DeliveryState.EXHAUSTED, DeliveryState.CANCELLED}
)


class DeliveryResult(BaseModel):
    """Outcome of a single delivery attempt."""

    success: bool
    status_code: int | None = None
    response_body: str | None = None
    error_message: str | None = None
    duration_ms: float = 0.0


class DeliveryAttempt(BaseModel):
    """One HTTP attempt for an (endpoint, event) pair."""

    endpoint_id: str
    event_id: str
    attempt_number: int
    requested_at: datetime
    result: DeliveryResult


class WebhookDelivery(BaseModel):
    """Delivery record for one event to one endpoint."""

    id: str = Field(
        default_factory=lambda: f"dlv_{uuid.uuid4().hex[:12]}",
        description="Unique delivery identifier",
    )
    endpoint_id: str
    tenant_id: str
    event_id: str
    event_type: WebhookEventType
    payload: dict[str, Any] = Field(default_factory=dict)
    state: DeliveryState = DeliveryState.PENDING
    max_attempts: int = Field(
        default=4,
        description="max_retries + 1",
    )
    attempts: list[DeliveryAttempt] = Field(default_factory=list)
    is_test: bool = Field(
        default=False,
        description="Manual test ping, kept out of endpoint statistics",
    )
    next_attempt_at: datetime | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None

    @property
    def attempt_count(self) -> int:
        """Number of attempts made so far."""
        return len(self.attempts)

    @property
    def is_terminal(self) -> bool:
        """Whether no further attempts will happen."""
        return self.state in TERMINAL_STATES

    @property
    def last_result(self) -> DeliveryResult | None:
        """Result of the most recent attempt."""
        return self.attempts[-1].result if self.attempts else None

    def start_attempt(self) -> int:
        """Move to ATTEMPTING and return the 1-based attempt number."""
        self.state = DeliveryState.ATTEMPTING
        self.next_attempt_at = None
        return self.attempt_count + 1

    def record_attempt(self, requested_at: datetime, result: DeliveryResult) -> DeliveryAttempt:
        """Append the result of the attempt in progress.

        Args:
            requested_at: When the request was issued.
            result: Attempt outcome.

        Returns:
            The recorded attempt.
        """
        if result.response_body and len(result.response_body) > MAX_RESPONSE_BODY_LENGTH:
            result = result.model_copy(
                update={"response_body": result.response_body[:MAX_RESPONSE_BODY_LENGTH]}
            )
        attempt = DeliveryAttempt(
            endpoint_id=self.endpoint_id,
            event_id=self.event_id,
            attempt_number=self.attempt_count + 1,
            requested_at=requested_at,
            result=result,
        )
        self.attempts.append(attempt)
        return attempt

    @property
    def can_retry(self) -> bool:
        """Whether another attempt is allowed by the retry policy."""
        return self.attempt_count < self.max_attempts

    def mark_delivered(self) -> None:
        self.state = DeliveryState.DELIVERED
        self.completed_at = datetime.now(UTC)
        self.next_attempt_at = None

    def mark_retry_scheduled(self, next_attempt_at: datetime) -> None:
        self.state = DeliveryState.RETRY_SCHEDULED
        self.next_attempt_at = next_attempt_at

    def mark_exhausted(self) -> None:
        self.state = DeliveryState.EXHAUSTED
        self.completed_at = datetime.now(UTC)
        self.next_attempt_at = None

    def mark_cancelled(self) -> None:
        self.state = DeliveryState.CANCELLED
        self.completed_at = datetime.now(UTC)
        self.next_attempt_at = None


@dataclass
class WebhookRegistration:
    """Outcome of registering an endpoint.

    Attributes:
        endpoint: The created endpoint, None when validation failed.
        secret: The endpoint secret. This is the only time it is returned.
        validation: URL and subscription validation result.
    """

    endpoint: WebhookEndpoint | None = None
    secret: str | None = field(default=None, repr=False)
    validation: ValidationResult = field(default_factory=ValidationResult)


class WebhookRegistry:
    """Tenant-scoped registry of webhook endpoints and deliveries.

    Endpoints are only visible to their own tenant. Deactivating or
    deleting an endpoint notifies listeners so pending retries can be
    dropped.
    """

    def __init__(self, max_deliveries: int = DEFAULT_MAX_DELIVERIES) -> None:
        """Initialize an empty registry.

        Args:
            max_deliveries: Delivery records to keep. Beyond it the oldest
                terminal records are dropped.
        """
        self._endpoints: dict[str, WebhookEndpoint] = {}
        self._deliveries: dict[str, WebhookDelivery] = {}
        self._max_deliveries = max_deliveries
        self._deactivation_listeners: list[DeactivationListener] = []
        self._logger = logger.bind(component="webhook_registry")

    def add_deactivation_listener(self, listener: DeactivationListener) -> None:
        """Register a callback invoked with the endpoint id on deactivate/delete."""
        self._deactivation_listeners.append(listener)

    def _notify_deactivated(self, endpoint_id: str) -> None:
        for listener in self._deactivation_listeners:
            listener(endpoint_id)

    def register(
        self,
        tenant_id: str,
        url: str,
        events: list[WebhookEventType],
        *,
        description: str = "",
        retry_policy: RetryPolicy | None = None,
    ) -> WebhookRegistration:
        """Register a new endpoint for a tenant.

        Args:
            tenant_id: Owning tenant.
            url: Endpoint URL.
            events: Event types to subscribe to (at least one).
            description: Human-readable description.
            retry_policy: Backoff policy (defaults apply when omitted).

        Returns:
            Registration with the endpoint and its one-time secret, or the
            collected validation errors.
        """
        validation = validate_url(url)
        if not events:
            validation.errors.append("At least one event type is required")
        if not validation.valid:
            self._logger.info(
                "webhook_registration_rejected",
                tenant_id=tenant_id,
                error_count=len(validation.errors),
            )
            return WebhookRegistration(validation=validation)

        endpoint = WebhookEndpoint(
            tenant_id=tenant_id,
            url=url,
            description=description,
            events=list(dict.fromkeys(events)),
            retry_policy=retry_policy or get_default_retry_policy(),
        )
        self._endpoints[endpoint.id] = endpoint

        self._logger.info(
            "webhook_registered",
            tenant_id=tenant_id,
            endpoint_id=endpoint.id,
            url=endpoint.url,
            event_count=len(endpoint.events),
        )

        return WebhookRegistration(
            endpoint=endpoint,
            secret=endpoint.secret,
            validation=validation,
        )

    def get(self, tenant_id: str, endpoint_id: str) -> WebhookEndpoint | None:
        """Get a tenant's endpoint by ID.

        Returns:
            The endpoint, or None if it does not exist for this tenant.
        """
        endpoint = self._endpoints.get(endpoint_id)
        if endpoint is None or endpoint.tenant_id != tenant_id:
            return None
        return endpoint

    def _require(self, tenant_id: str, endpoint_id: str) -> WebhookEndpoint:
        endpoint = self.get(tenant_id, endpoint_id)
        if endpoint is None:
            raise NotFoundError(f"Webhook {endpoint_id} not found")
        return endpoint

    def list_for_tenant(
        self,
        tenant_id: str,
        *,
        active_only: bool = False,
        event_type: WebhookEventType | None = None,
    ) -> list[WebhookEndpoint]:
        """List a tenant's endpoints, newest first.

        Args:
            tenant_id: Owning tenant.
            active_only: Only return active endpoints.
            event_type: Filter by event subscription.

        Returns:
            Matching endpoints.
        """
        endpoints = [e for e in self._endpoints.values() if e.tenant_id == tenant_id]

        if active_only:
            endpoints = [e for e in endpoints if e.is_active]

        if event_type:
            endpoints = [e for e in endpoints if e.should_receive_event(event_type)]

        endpoints.sort(key=lambda e: e.created_at, reverse=True)
        return endpoints

    def update(
        self,
        tenant_id: str,
        endpoint_id: str,
        *,
        url: str | None = None,
        description: str | None = None,
        events: list[WebhookEventType] | None = None,
        retry_policy: RetryPolicy | None = None,
        is_active: bool | None = None,
    ) -> ValidationResult:
        """Update an endpoint. The secret is never changed.

        Nothing is applied when validation fails.

        Returns:
            Validation result of the new URL and subscriptions.

        Raises:
            NotFoundError: If the endpoint does not exist for this tenant.
        """
        endpoint = self._require(tenant_id, endpoint_id)

        validation = validate_url(url) if url is not None else ValidationResult()
        if events is not None and not events:
            validation.errors.append("At least one event type is required")
        if not validation.valid:
            return validation

        if url is not None:
            endpoint.url = url
        if description is not None:
            endpoint.description = description
        if events is not None:
            endpoint.events = list(dict.fromkeys(events))
        if retry_policy is not None:
            endpoint.retry_policy = retry_policy
        endpoint.updated_at = datetime.now(UTC)

        if is_active is False and endpoint.is_active:
            self.deactivate(tenant_id, endpoint_id)
        elif is_active is True:
            endpoint.is_active = True

        self._logger.info("webhook_updated", tenant_id=tenant_id, endpoint_id=endpoint_id)
        return validation

    def deactivate(self, tenant_id: str, endpoint_id: str) -> WebhookEndpoint:
        """Deactivate an endpoint and drop its pending retries.

        Raises:
            NotFoundError: If the endpoint does not exist for this tenant.
        """
        endpoint = self._require(tenant_id, endpoint_id)
        endpoint.is_active = False
        endpoint.updated_at = datetime.now(UTC)
        self._notify_deactivated(endpoint_id)
        self._logger.info("webhook_deactivated", tenant_id=tenant_id, endpoint_id=endpoint_id)
        return endpoint

    def delete(self, tenant_id: str, endpoint_id: str) -> bool:
        """Delete an endpoint and drop its pending retries.

        Returns:
            True if deleted, False if not found for this tenant.
        """
        if self.get(tenant_id, endpoint_id) is None:
            return False
        del self._endpoints[endpoint_id]
        self._notify_deactivated(endpoint_id)
        self._deliveries = {
            delivery_id: delivery
            for delivery_id, delivery in self._deliveries.items()
            if delivery.endpoint_id != endpoint_id
        }
        self._logger.info("webhook_deleted", tenant_id=tenant_id, endpoint_id=endpoint_id)
        return True

    def is_deliverable(self, endpoint_id: str) -> bool:
        """Whether an endpoint still exists and is active."""
        endpoint = self._endpoints.get(endpoint_id)
        return endpoint is not None and endpoint.is_active

    def get_by_id(self, endpoint_id: str) -> WebhookEndpoint | None:
        """Internal lookup that ignores tenant scoping."""
        return self._endpoints.get(endpoint_id)

    def get_endpoints_for_event(
        self,
        tenant_id: str,
        event_type: WebhookEventType,
    ) -> list[WebhookEndpoint]:
        """Get the tenant's active endpoints subscribed to an event type."""
        return [
            endpoint
            for endpoint in self._endpoints.values()
            if endpoint.tenant_id == tenant_id
            and endpoint.is_active
            and endpoint.should_receive_event(event_type)
        ]

    def create_delivery(
        self,
        endpoint: WebhookEndpoint,
        event: WebhookEvent,
    ) -> WebhookDelivery:
        """Create the delivery record for an (endpoint, event) pair."""
        delivery = WebhookDelivery(
            endpoint_id=endpoint.id,
            tenant_id=endpoint.tenant_id,
            event_id=event.id,
            event_type=event.type,
            payload=event.to_payload(),
            max_attempts=endpoint.retry_policy.max_retries + 1,
        )
        self._deliveries[delivery.id] = delivery
        self._trim_deliveries()

        self._logger.debug(
            "delivery_created",
            delivery_id=delivery.id,
            endpoint_id=endpoint.id,
            event_id=event.id,
        )
        return delivery

    def _trim_deliveries(self) -> None:
        overflow = len(self._deliveries) - self._max_deliveries
        if overflow <= 0:
            return
        # dicts keep insertion order, so this walks oldest first
        stale = [d.id for d in self._deliveries.values() if d.is_terminal][:overflow]
        for delivery_id in stale:
            del self._deliveries[delivery_id]
        if stale:
            self._logger.debug("delivery_records_trimmed", dropped=len(stale))

    def get_delivery(self, delivery_id: str) -> WebhookDelivery | None:
        return self._deliveries.get(delivery_id)

    def list_deliveries(
        self,
        endpoint_id: str,
        *,
        limit: int = 50,
        state: DeliveryState | None = None,
    ) -> list[WebhookDelivery]:
        """List deliveries for an endpoint, newest first."""
        deliveries = [d for d in self._deliveries.values() if d.endpoint_id == endpoint_id]

        if state:
            deliveries = [d for d in deliveries if d.state == state]

        deliveries.sort(key=lambda d: d.created_at, reverse=True)
        return deliveries[:limit]

    def list_exhausted(self, tenant_id: str) -> list[WebhookDelivery]:
        """List a tenant's deliveries that ran out of retries."""
        return [
            d
            for d in self._deliveries.values()
            if d.tenant_id == tenant_id and d.state == DeliveryState.EXHAUSTED and not d.is_test
        ]

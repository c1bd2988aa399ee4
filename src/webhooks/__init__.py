"""Webhook notification system for tenant integrations.

This module provides:
- WebhookEventType: Enumeration of all domain event types
- WebhookEvent: Immutable tenant-scoped event with its canonical payload
- WebhookRegistry: Registration and management of endpoints
- WebhookDispatcher: Event dispatch with scheduled retries
- RetryScheduler: Cancellable delayed-retry queue
- HMAC signature generation and verification
"""

from src.webhooks.dispatcher import WebhookDispatcher
from src.webhooks.events import (
    EVENT_CATEGORIES,
    WebhookEvent,
    WebhookEventType,
    create_webhook_event,
    get_events_by_category,
    serialize_payload,
)
from src.webhooks.manager import (
    DeliveryAttempt,
    DeliveryResult,
    DeliveryState,
    RetryPolicy,
    WebhookDelivery,
    WebhookEndpoint,
    WebhookRegistration,
    WebhookRegistry,
    get_default_retry_policy,
    validate_url,
)
from src.webhooks.retry import RetryScheduler, calculate_retry_delay
from src.webhooks.security import (
    SIGNATURE_HEADER,
    create_signature_headers,
    generate_secret,
    sign,
    verify,
    verify_from_headers,
)

__all__ = [
    # Events
    "EVENT_CATEGORIES",
    "WebhookEvent",
    "WebhookEventType",
    "create_webhook_event",
    "get_events_by_category",
    "serialize_payload",
    # Registry
    "DeliveryAttempt",
    "DeliveryResult",
    "DeliveryState",
    "RetryPolicy",
    "WebhookDelivery",
    "WebhookEndpoint",
    "WebhookRegistration",
    "WebhookRegistry",
    "get_default_retry_policy",
    "validate_url",
    # Delivery
    "RetryScheduler",
    "WebhookDispatcher",
    "calculate_retry_delay",
    # Security
    "SIGNATURE_HEADER",
    "create_signature_headers",
    "generate_secret",
    "sign",
    "verify",
    "verify_from_headers",
]

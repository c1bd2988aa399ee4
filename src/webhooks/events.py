"""Webhook event types and payload models.

This module defines the domain events that platform collaborators raise
and the canonical payload delivered to tenant webhook endpoints.
"""

import json
import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class WebhookEventType(str, Enum):
    """Supported webhook event types.

    Events are organized by category:
    - client.*, engagement.*, document.*, user.*: resource lifecycle
    - project.*, task.*: project tracking
    - invoice.*, payment.*: financial events
    - deadline.*, health_score.*, kpi_alert.*: alerts
    """

    # Client events
    CLIENT_CREATED = "client.created"
    CLIENT_UPDATED = "client.updated"
    CLIENT_DELETED = "client.deleted"

    # Engagement events
    ENGAGEMENT_CREATED = "engagement.created"
    ENGAGEMENT_STATUS_CHANGED = "engagement.status_changed"
    ENGAGEMENT_COMPLETED = "engagement.completed"

    # Document events
    DOCUMENT_CREATED = "document.created"
    DOCUMENT_FILED = "document.filed"
    DOCUMENT_SHARED = "document.shared"

    # User events
    USER_CREATED = "user.created"
    USER_ROLE_CHANGED = "user.role_changed"

    # Project events
    PROJECT_CREATED = "project.created"
    PROJECT_COMPLETED = "project.completed"
    TASK_COMPLETED = "task.completed"

    # Financial events
    INVOICE_CREATED = "invoice.created"
    PAYMENT_RECEIVED = "payment.received"

    # Alert events
    DEADLINE_APPROACHING = "deadline.approaching"
    HEALTH_SCORE_CHANGED = "health_score.changed"
    KPI_ALERT_TRIGGERED = "kpi_alert.triggered"


EVENT_CATEGORIES: dict[str, list[WebhookEventType]] = {
    "clients": [
        WebhookEventType.CLIENT_CREATED,
        WebhookEventType.CLIENT_UPDATED,
        WebhookEventType.CLIENT_DELETED,
    ],
    "engagements": [
        WebhookEventType.ENGAGEMENT_CREATED,
        WebhookEventType.ENGAGEMENT_STATUS_CHANGED,
        WebhookEventType.ENGAGEMENT_COMPLETED,
    ],
    "documents": [
        WebhookEventType.DOCUMENT_CREATED,
        WebhookEventType.DOCUMENT_FILED,
        WebhookEventType.DOCUMENT_SHARED,
    ],
    "users": [
        WebhookEventType.USER_CREATED,
        WebhookEventType.USER_ROLE_CHANGED,
    ],
    "projects": [
        WebhookEventType.PROJECT_CREATED,
        WebhookEventType.PROJECT_COMPLETED,
        WebhookEventType.TASK_COMPLETED,
    ],
    "financial": [
        WebhookEventType.INVOICE_CREATED,
        WebhookEventType.PAYMENT_RECEIVED,
    ],
    "alerts": [
        WebhookEventType.DEADLINE_APPROACHING,
        WebhookEventType.HEALTH_SCORE_CHANGED,
        WebhookEventType.KPI_ALERT_TRIGGERED,
    ],
}


def get_events_by_category() -> dict[str, list[WebhookEventType]]:
    """Get all event types grouped by category.

    Returns:
        Mapping of category name to its event types.
    """
    return {category: list(events) for category, events in EVENT_CATEGORIES.items()}


def _format_timestamp(value: datetime) -> str:
    """Format a timestamp as UTC ISO-8601 with millisecond precision."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class WebhookEvent(BaseModel):
    """A domain event raised for one tenant.

    Events are immutable once created and are delivered independently to
    every active endpoint of the tenant subscribed to the event type.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique event identifier",
    )
    type: WebhookEventType = Field(
        ..., description="Event type"
    )
    tenant_id: str = Field(
        ..., description="Tenant (firm) the event belongs to", min_length=1
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the event occurred",
    )
    data: dict[str, Any] = Field(
        default_factory=dict,
        description="Event-specific data",
    )

    def to_payload(self) -> dict[str, Any]:
        """Build the canonical delivery payload.

        Returns:
            Dictionary with keys id, event, timestamp, firmId, data.
        """
        return {
            "id": self.id,
            "event": self.type.value,
            "timestamp": _format_timestamp(self.timestamp),
            "firmId": self.tenant_id,
            "data": self.data,
        }


def serialize_payload(payload: dict[str, Any]) -> bytes:
    """Serialize a payload to the exact bytes that are signed and sent.

    Args:
        payload: Canonical delivery payload.

    Returns:
        Compact UTF-8 JSON bytes.
    """
    return json.dumps(payload, separators=(",", ":"), default=str).encode("utf-8")


def create_webhook_event(
    event_type: WebhookEventType,
    tenant_id: str,
    data: dict[str, Any],
    *,
    event_id: str | None = None,
    timestamp: datetime | None = None,
) -> WebhookEvent:
    """Create a webhook event.

    Args:
        event_type: Type of event.
        tenant_id: Tenant the event belongs to.
        data: Event-specific data.
        event_id: Optional custom event ID.
        timestamp: Optional custom timestamp.

    Returns:
        WebhookEvent ready for dispatch.
    """
    fields: dict[str, Any] = {"type": event_type, "tenant_id": tenant_id, "data": data}
    if event_id:
        fields["id"] = event_id
    if timestamp:
        fields["timestamp"] = timestamp
    return WebhookEvent(**fields)

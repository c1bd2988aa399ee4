"""Webhook management API endpoints.

Provides REST API for managing a tenant's webhook endpoints and
viewing delivery history.
"""

from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from src.api.dependencies import ErrorResponse, get_gateway, validation_failed
from src.gateway import Gateway
from src.webhooks.events import WebhookEventType, get_events_by_category
from src.webhooks.manager import (
    DeliveryState,
    RetryPolicy,
    WebhookDelivery,
    WebhookEndpoint,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


# ============================================================================
# Request Models
# ============================================================================


class WebhookCreateRequest(BaseModel):
    """Request to register a new webhook endpoint."""

    tenant_id: str = Field(..., description="Owning tenant", min_length=1)
    url: str = Field(..., description="Webhook endpoint URL")
    description: str = Field(default="", description="Human-readable description")
    events: list[WebhookEventType] = Field(
        default_factory=list,
        description="Event types to subscribe to (at least one)",
    )
    retry_policy: RetryPolicy | None = Field(
        default=None,
        description="Backoff policy (defaults apply when omitted)",
    )


class WebhookUpdateRequest(BaseModel):
    """Request to update a webhook endpoint. The secret cannot be changed."""

    url: str | None = Field(default=None, description="New URL")
    description: str | None = Field(default=None, description="New description")
    events: list[WebhookEventType] | None = Field(default=None, description="New event subscriptions")
    retry_policy: RetryPolicy | None = Field(default=None, description="New backoff policy")
    is_active: bool | None = Field(default=None, description="Enable/disable the endpoint")


# ============================================================================
# Response Models
# ============================================================================


class WebhookResponse(BaseModel):
    """Webhook details response. Only the secret prefix is shown."""

    id: str
    url: str
    description: str
    events: list[WebhookEventType]
    secret_prefix: str
    retry_policy: RetryPolicy
    is_active: bool
    created_at: str
    updated_at: str
    total_deliveries: int
    successful_deliveries: int
    failed_deliveries: int
    last_delivery_at: str | None

    @classmethod
    def from_endpoint(cls, endpoint: WebhookEndpoint) -> "WebhookResponse":
        """Create response from WebhookEndpoint model."""
        return cls(
            id=endpoint.id,
            url=endpoint.url,
            description=endpoint.description,
            events=endpoint.events,
            secret_prefix=endpoint.secret_prefix,
            retry_policy=endpoint.retry_policy,
            is_active=endpoint.is_active,
            created_at=endpoint.created_at.isoformat(),
            updated_at=endpoint.updated_at.isoformat(),
            total_deliveries=endpoint.total_deliveries,
            successful_deliveries=endpoint.successful_deliveries,
            failed_deliveries=endpoint.failed_deliveries,
            last_delivery_at=endpoint.last_delivery_at.isoformat() if endpoint.last_delivery_at else None,
        )


class WebhookCreatedResponse(WebhookResponse):
    """Creation response. The only response that includes the secret."""

    secret: str


class WebhookDeliveryResponse(BaseModel):
    """Webhook delivery details response."""

    id: str
    endpoint_id: str
    event_id: str
    event_type: WebhookEventType
    state: DeliveryState
    attempt_count: int
    max_attempts: int
    response_status: int | None
    error_message: str | None
    next_attempt_at: str | None
    created_at: str
    completed_at: str | None

    @classmethod
    def from_delivery(cls, delivery: WebhookDelivery) -> "WebhookDeliveryResponse":
        """Create response from WebhookDelivery model."""
        last = delivery.last_result
        return cls(
            id=delivery.id,
            endpoint_id=delivery.endpoint_id,
            event_id=delivery.event_id,
            event_type=delivery.event_type,
            state=delivery.state,
            attempt_count=delivery.attempt_count,
            max_attempts=delivery.max_attempts,
            response_status=last.status_code if last else None,
            error_message=last.error_message if last else None,
            next_attempt_at=delivery.next_attempt_at.isoformat() if delivery.next_attempt_at else None,
            created_at=delivery.created_at.isoformat(),
            completed_at=delivery.completed_at.isoformat() if delivery.completed_at else None,
        )


class TestWebhookResponse(BaseModel):
    """Response from test webhook endpoint."""

    success: bool
    delivery_id: str
    state: DeliveryState
    response_status: int | None
    error_message: str | None


# ============================================================================
# Endpoints
# ============================================================================


@router.get("/events")
async def list_event_types() -> dict[str, Any]:
    """List available event types, grouped by category."""
    return {
        "events": [event.value for event in WebhookEventType],
        "categories": {
            category: [event.value for event in events]
            for category, events in get_events_by_category().items()
        },
    }


@router.post(
    "",
    response_model=WebhookCreatedResponse,
    responses={
        201: {"description": "Webhook created"},
        400: {"description": "Invalid URL or subscriptions", "model": ErrorResponse},
    },
    status_code=201,
)
async def create_webhook(
    request: WebhookCreateRequest,
    gateway: Gateway = Depends(get_gateway),
) -> WebhookCreatedResponse:
    """Register a new webhook endpoint.

    A secret is generated for HMAC signature verification. It is returned
    in this response only.
    """
    registration = gateway.webhooks.register(
        request.tenant_id,
        request.url,
        request.events,
        description=request.description,
        retry_policy=request.retry_policy,
    )
    if registration.endpoint is None:
        raise validation_failed(registration.validation)

    endpoint = registration.endpoint
    return WebhookCreatedResponse(
        **WebhookResponse.from_endpoint(endpoint).model_dump(),
        secret=registration.secret,
    )


@router.get("", response_model=list[WebhookResponse])
async def list_webhooks(
    tenant_id: str,
    active_only: bool = False,
    event_type: WebhookEventType | None = None,
    gateway: Gateway = Depends(get_gateway),
) -> list[WebhookResponse]:
    """List a tenant's webhooks.

    Optionally filter by active status or event type subscription.
    """
    endpoints = gateway.webhooks.list_for_tenant(
        tenant_id, active_only=active_only, event_type=event_type
    )
    return [WebhookResponse.from_endpoint(e) for e in endpoints]


@router.get(
    "/{webhook_id}",
    response_model=WebhookResponse,
    responses={404: {"description": "Webhook not found", "model": ErrorResponse}},
)
async def get_webhook(
    webhook_id: str,
    tenant_id: str,
    gateway: Gateway = Depends(get_gateway),
) -> WebhookResponse:
    """Get webhook details by ID."""
    endpoint = gateway.webhooks.get(tenant_id, webhook_id)
    if endpoint is None:
        raise HTTPException(status_code=404, detail=f"Webhook {webhook_id} not found")
    return WebhookResponse.from_endpoint(endpoint)


@router.put(
    "/{webhook_id}",
    response_model=WebhookResponse,
    responses={
        400: {"description": "Invalid URL or subscriptions", "model": ErrorResponse},
        404: {"description": "Webhook not found", "model": ErrorResponse},
    },
)
async def update_webhook(
    webhook_id: str,
    tenant_id: str,
    request: WebhookUpdateRequest,
    gateway: Gateway = Depends(get_gateway),
) -> WebhookResponse:
    """Update a webhook. Deactivating it drops its pending retries."""
    validation = gateway.webhooks.update(
        tenant_id,
        webhook_id,
        url=request.url,
        description=request.description,
        events=request.events,
        retry_policy=request.retry_policy,
        is_active=request.is_active,
    )
    if not validation.valid:
        raise validation_failed(validation)

    return WebhookResponse.from_endpoint(gateway.webhooks.get(tenant_id, webhook_id))


@router.delete(
    "/{webhook_id}",
    responses={
        204: {"description": "Webhook deleted"},
        404: {"description": "Webhook not found", "model": ErrorResponse},
    },
    status_code=204,
)
async def delete_webhook(
    webhook_id: str,
    tenant_id: str,
    gateway: Gateway = Depends(get_gateway),
) -> None:
    """Delete a webhook and drop its pending retries."""
    if not gateway.webhooks.delete(tenant_id, webhook_id):
        raise HTTPException(status_code=404, detail=f"Webhook {webhook_id} not found")


@router.post(
    "/{webhook_id}/test",
    response_model=TestWebhookResponse,
    responses={404: {"description": "Webhook not found", "model": ErrorResponse}},
)
async def test_webhook(
    webhook_id: str,
    tenant_id: str,
    gateway: Gateway = Depends(get_gateway),
) -> TestWebhookResponse:
    """Send a single test event to a webhook, without retries."""
    delivery = await gateway.dispatcher.send_test_event(tenant_id, webhook_id)
    if delivery is None:
        raise HTTPException(status_code=404, detail=f"Webhook {webhook_id} not found")

    logger.info(
        "webhook_tested",
        webhook_id=webhook_id,
        delivery_id=delivery.id,
        state=delivery.state.value,
    )

    last = delivery.last_result
    return TestWebhookResponse(
        success=delivery.state == DeliveryState.DELIVERED,
        delivery_id=delivery.id,
        state=delivery.state,
        response_status=last.status_code if last else None,
        error_message=last.error_message if last else None,
    )


@router.get(
    "/{webhook_id}/deliveries",
    response_model=list[WebhookDeliveryResponse],
    responses={404: {"description": "Webhook not found", "model": ErrorResponse}},
)
async def list_webhook_deliveries(
    webhook_id: str,
    tenant_id: str,
    limit: int = 50,
    state: DeliveryState | None = None,
    gateway: Gateway = Depends(get_gateway),
) -> list[WebhookDeliveryResponse]:
    """List recent deliveries for a webhook."""
    if gateway.webhooks.get(tenant_id, webhook_id) is None:
        raise HTTPException(status_code=404, detail=f"Webhook {webhook_id} not found")

    deliveries = gateway.webhooks.list_deliveries(webhook_id, limit=limit, state=state)
    return [WebhookDeliveryResponse.from_delivery(d) for d in deliveries]

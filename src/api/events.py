"""Endpoints for API key clients.

These routes are authenticated by the X-API-Key header and scoped to the
key's tenant.
"""

from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from src.analytics.usage import aggregate_by_endpoint, get_usage_summary
from src.api.dependencies import ErrorResponse, RequirePermission, get_gateway
from src.api_keys.authorizer import AuthorizedKey
from src.gateway import Gateway
from src.webhooks.events import WebhookEventType, create_webhook_event

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["Events"])


class EventCreateRequest(BaseModel):
    """A domain event raised by an API client."""

    type: WebhookEventType = Field(..., description="Event type")
    data: dict[str, Any] = Field(default_factory=dict, description="Event-specific data")


class EventCreatedResponse(BaseModel):
    """Accepted event and the deliveries it started."""

    event_id: str
    type: WebhookEventType
    delivery_ids: list[str]


@router.post(
    "/events",
    response_model=EventCreatedResponse,
    responses={
        202: {"description": "Event accepted for delivery"},
        401: {"description": "Invalid or unauthorized API key", "model": ErrorResponse},
    },
    status_code=202,
)
async def create_event(
    request: EventCreateRequest,
    key: AuthorizedKey = Depends(RequirePermission("events:create")),
    gateway: Gateway = Depends(get_gateway),
) -> EventCreatedResponse:
    """Raise an event for the key's tenant.

    Delivery happens in the background; retries follow each endpoint's
    retry policy.
    """
    event = create_webhook_event(request.type, key.tenant_id, request.data)
    deliveries = await gateway.dispatcher.dispatch(event)

    logger.info(
        "event_accepted",
        event_id=event.id,
        event_type=event.type.value,
        tenant_id=key.tenant_id,
        api_key_id=key.api_key.id,
        delivery_count=len(deliveries),
    )

    return EventCreatedResponse(
        event_id=event.id,
        type=event.type,
        delivery_ids=[d.id for d in deliveries],
    )


@router.get(
    "/usage/summary",
    tags=["Usage"],
    responses={401: {"description": "Invalid or unauthorized API key", "model": ErrorResponse}},
)
async def usage_summary(
    days: int = Query(default=30, ge=1, le=365, description="Number of days to look back"),
    key: AuthorizedKey = Depends(RequirePermission("usage:read")),
    gateway: Gateway = Depends(get_gateway),
) -> dict[str, Any]:
    """Summarize the tenant's API usage over a period."""
    since = datetime.now(UTC) - timedelta(days=days)
    logs = await gateway.request_logs.list_for_tenant(key.tenant_id, since=since)

    return {
        "period_days": days,
        "summary": get_usage_summary(logs).to_dict(),
        "by_endpoint": {
            name: usage.to_dict() for name, usage in aggregate_by_endpoint(logs).items()
        },
    }

"""Shared request dependencies and error models for the HTTP API."""

from fastapi import Depends, HTTPException, Request
from pydantic import BaseModel, Field

from src.api_keys.authorizer import AuthorizedKey
from src.errors import ValidationResult
from src.gateway import Gateway

API_KEY_HEADER = "X-API-Key"


class ErrorResponse(BaseModel):
    """Error response model."""

    error: str = Field(..., description="Error message")
    details: list[str] | None = Field(default=None, description="Validation messages")


def get_gateway(request: Request) -> Gateway:
    """Resolve the gateway attached to the application."""
    return request.app.state.gateway


def validation_failed(result: ValidationResult) -> HTTPException:
    """Build a 400 error carrying every validation message."""
    return HTTPException(status_code=400, detail=list(result.errors))


class RequirePermission:
    """Dependency that authorizes the X-API-Key header for one permission.

    The authorized key is also stored on request.state so the request can
    be attributed to its tenant in usage analytics.

    Example:
        @router.post("/events")
        async def create_event(key: AuthorizedKey = Depends(RequirePermission("events:create"))):
            ...
    """

    def __init__(self, permission: str) -> None:
        self.permission = permission

    async def __call__(
        self,
        request: Request,
        gateway: Gateway = Depends(get_gateway),
    ) -> AuthorizedKey:
        authorized = await gateway.authorizer.authorize(
            request.headers.get(API_KEY_HEADER),
            self.permission,
        )
        request.state.tenant_id = authorized.tenant_id
        request.state.api_key_id = authorized.api_key.id
        return authorized

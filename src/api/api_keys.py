"""API key management endpoints.

The full key is returned once, in the creation response. Listings only
show the key prefix.
"""

from datetime import datetime

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, field_validator

from src.api.dependencies import ErrorResponse, get_gateway
from src.api_keys.keys import parse_permission
from src.api_keys.store import ApiKey
from src.gateway import Gateway

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api-keys", tags=["API Keys"])


class ApiKeyCreateRequest(BaseModel):
    """Request to create an API key."""

    tenant_id: str = Field(..., description="Owning tenant", min_length=1)
    name: str = Field(..., description="Display name", min_length=1, max_length=100)
    permissions: list[str] = Field(
        default_factory=list,
        description='Permissions as "resource:action", "*" wildcards allowed',
    )
    rate_limit: int | None = Field(default=None, description="Requests per window", gt=0)
    expires_at: datetime | None = Field(default=None, description="Optional expiry")

    @field_validator("permissions")
    @classmethod
    def _check_permissions(cls, permissions: list[str]) -> list[str]:
        for permission in permissions:
            resource, action = parse_permission(permission)
            if permission != "*" and (not resource or not action):
                raise ValueError(f'Permission "{permission}" must be "resource:action" or "*"')
        return permissions


class ApiKeyResponse(BaseModel):
    """API key details. Never includes the key or its hash."""

    id: str
    name: str
    key_prefix: str
    permissions: list[str]
    rate_limit: int
    usage_count: int
    is_active: bool
    expires_at: str | None
    last_used_at: str | None
    created_at: str

    @classmethod
    def from_api_key(cls, api_key: ApiKey) -> "ApiKeyResponse":
        return cls(
            id=api_key.id,
            name=api_key.name,
            key_prefix=api_key.key_prefix,
            permissions=api_key.permissions,
            rate_limit=api_key.rate_limit,
            usage_count=api_key.usage_count,
            is_active=api_key.is_active,
            expires_at=api_key.expires_at.isoformat() if api_key.expires_at else None,
            last_used_at=api_key.last_used_at.isoformat() if api_key.last_used_at else None,
            created_at=api_key.created_at.isoformat(),
        )


class ApiKeyCreatedResponse(ApiKeyResponse):
    """Creation response carrying the full key, shown only here."""

    key: str


@router.post(
    "",
    response_model=ApiKeyCreatedResponse,
    responses={201: {"description": "API key created"}},
    status_code=201,
)
async def create_api_key(
    request: ApiKeyCreateRequest,
    gateway: Gateway = Depends(get_gateway),
) -> ApiKeyCreatedResponse:
    """Create an API key. Store the returned key: it cannot be shown again."""
    api_key, full_key = await gateway.api_keys.create(
        request.tenant_id,
        request.name,
        request.permissions,
        rate_limit=request.rate_limit,
        expires_at=request.expires_at,
    )
    return ApiKeyCreatedResponse(
        **ApiKeyResponse.from_api_key(api_key).model_dump(),
        key=full_key,
    )


@router.get("", response_model=list[ApiKeyResponse])
async def list_api_keys(
    tenant_id: str,
    gateway: Gateway = Depends(get_gateway),
) -> list[ApiKeyResponse]:
    """List a tenant's API keys."""
    keys = await gateway.api_keys.list_for_tenant(tenant_id)
    return [ApiKeyResponse.from_api_key(k) for k in keys]


@router.delete(
    "/{key_id}",
    response_model=ApiKeyResponse,
    responses={404: {"description": "API key not found", "model": ErrorResponse}},
)
async def revoke_api_key(
    key_id: str,
    tenant_id: str,
    gateway: Gateway = Depends(get_gateway),
) -> ApiKeyResponse:
    """Revoke an API key. Revoked keys are rejected immediately."""
    api_key = await gateway.api_keys.revoke(tenant_id, key_id)
    return ApiKeyResponse.from_api_key(api_key)

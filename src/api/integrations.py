"""Integration catalog and onboarding endpoints."""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from src.api.dependencies import ErrorResponse, get_gateway, validation_failed
from src.gateway import Gateway
from src.integrations.service import IntegrationStatus, TenantIntegration
from src.integrations.templates import IntegrationCategory, IntegrationTemplate

router = APIRouter(prefix="/integrations", tags=["Integrations"])


class IntegrationCreateRequest(BaseModel):
    """Request to activate an integration template for a tenant."""

    tenant_id: str = Field(..., description="Owning tenant", min_length=1)
    template_id: str = Field(..., description="Catalog template id")
    config: dict[str, Any] = Field(default_factory=dict, description="Template configuration")
    credentials: dict[str, Any] | None = Field(
        default=None,
        description="Provider credentials, stored encrypted and never returned",
    )


class IntegrationResponse(BaseModel):
    """Tenant integration details. Credentials are never included."""

    id: str
    template_id: str
    template_name: str | None
    config: dict[str, Any]
    status: IntegrationStatus
    is_active: bool
    has_credentials: bool
    created_at: str
    updated_at: str

    @classmethod
    def from_integration(
        cls,
        integration: TenantIntegration,
        template: IntegrationTemplate | None,
    ) -> "IntegrationResponse":
        return cls(
            id=integration.id,
            template_id=integration.template_id,
            template_name=template.name if template else None,
            config=integration.config,
            status=integration.status,
            is_active=integration.is_active,
            has_credentials=integration.has_credentials,
            created_at=integration.created_at.isoformat(),
            updated_at=integration.updated_at.isoformat(),
        )


@router.get("/templates")
async def list_templates(
    category: IntegrationCategory | None = None,
    gateway: Gateway = Depends(get_gateway),
) -> dict[str, Any]:
    """List catalog templates sorted by name, with a per-category grouping."""
    templates = gateway.templates.list_templates(category)
    return {
        "templates": [t.model_dump(mode="json") for t in templates],
        "by_category": {
            name: [t.id for t in group]
            for name, group in gateway.templates.group_by_category(category).items()
        },
    }


@router.get(
    "/templates/{template_id}",
    response_model=IntegrationTemplate,
    responses={404: {"description": "Template not found", "model": ErrorResponse}},
)
async def get_template(
    template_id: str,
    gateway: Gateway = Depends(get_gateway),
) -> IntegrationTemplate:
    """Get one template, including its config schema."""
    template = gateway.templates.get(template_id)
    if template is None:
        raise HTTPException(status_code=404, detail=f"Template {template_id} not found")
    return template


@router.post(
    "",
    response_model=IntegrationResponse,
    responses={
        201: {"description": "Integration activated"},
        400: {"description": "Invalid configuration", "model": ErrorResponse},
        404: {"description": "Template not found", "model": ErrorResponse},
        409: {"description": "Already activated", "model": ErrorResponse},
    },
    status_code=201,
)
async def activate_integration(
    request: IntegrationCreateRequest,
    gateway: Gateway = Depends(get_gateway),
) -> IntegrationResponse:
    """Activate a template for a tenant.

    The configuration is validated against the template schema and every
    problem is reported at once.
    """
    result = gateway.integrations.activate(
        request.tenant_id,
        request.template_id,
        request.config,
        request.credentials,
    )
    if result.integration is None:
        raise validation_failed(result.validation)

    integration = result.integration
    return IntegrationResponse.from_integration(
        integration, gateway.integrations.template_for(integration)
    )


@router.get("", response_model=list[IntegrationResponse])
async def list_integrations(
    tenant_id: str,
    gateway: Gateway = Depends(get_gateway),
) -> list[IntegrationResponse]:
    """List a tenant's integrations, newest first."""
    return [
        IntegrationResponse.from_integration(i, gateway.integrations.template_for(i))
        for i in gateway.integrations.list_for_tenant(tenant_id)
    ]

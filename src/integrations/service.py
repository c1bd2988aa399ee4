"""Tenant integration onboarding.

Onboarding flow: the tenant picks a template, the submitted config is
validated against the template schema, credentials are encrypted by the
vault, and only then is a PENDING integration record stored.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import structlog
from pydantic import BaseModel, Field

from src.errors import ConflictError, NotFoundError, ValidationResult
from src.integrations.templates import IntegrationTemplate, TemplateCatalog
from src.integrations.validation import validate_config
from src.integrations.vault import CredentialVault

logger = structlog.get_logger(__name__)


class IntegrationStatus(str, Enum):
    """Lifecycle status of a tenant integration."""

    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    ERROR = "ERROR"


class TenantIntegration(BaseModel):
    """A template activated by a tenant.

    Credentials are only held in encrypted form.
    """

    id: str = Field(default_factory=lambda: f"int_{uuid.uuid4().hex[:12]}")
    tenant_id: str
    template_id: str
    config: dict[str, Any] = Field(default_factory=dict)
    encrypted_credentials: str | None = Field(default=None, repr=False, exclude=True)
    status: IntegrationStatus = IntegrationStatus.PENDING
    is_active: bool = True
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def has_credentials(self) -> bool:
        return self.encrypted_credentials is not None


@dataclass
class ActivationResult:
    """Outcome of activating an integration.

    Attributes:
        integration: The stored integration, None when validation failed.
        validation: Config validation result.
    """

    integration: TenantIntegration | None = None
    validation: ValidationResult = field(default_factory=ValidationResult)


class IntegrationService:
    """Onboards and manages tenant integrations."""

    def __init__(self, catalog: TemplateCatalog, vault: CredentialVault) -> None:
        self._catalog = catalog
        self._vault = vault
        self._integrations: dict[str, TenantIntegration] = {}
        self._logger = logger.bind(component="integration_service")

    @property
    def catalog(self) -> TemplateCatalog:
        return self._catalog

    def _find(self, tenant_id: str, template_id: str) -> TenantIntegration | None:
        for integration in self._integrations.values():
            if integration.tenant_id == tenant_id and integration.template_id == template_id:
                return integration
        return None

    def activate(
        self,
        tenant_id: str,
        template_id: str,
        config: dict[str, Any],
        credentials: dict[str, Any] | None = None,
    ) -> ActivationResult:
        """Activate a template for a tenant.

        Args:
            tenant_id: Owning tenant.
            template_id: Catalog template id.
            config: Submitted configuration.
            credentials: Plaintext credentials, encrypted before storage.

        Returns:
            The stored integration, or the collected validation errors.

        Raises:
            NotFoundError: If the template does not exist.
            ConflictError: If the tenant already activated this template.
        """
        template = self._catalog.get(template_id)
        if template is None:
            raise NotFoundError(f"Template {template_id} not found")

        validation = validate_config(config, template.config_schema)
        if not validation.valid:
            self._logger.info(
                "integration_config_invalid",
                tenant_id=tenant_id,
                template_id=template_id,
                error_count=len(validation.errors),
            )
            return ActivationResult(validation=validation)

        if self._find(tenant_id, template_id) is not None:
            raise ConflictError("Integration already exists. Update the existing one.")

        encrypted = self._vault.encrypt_credentials(credentials) if credentials else None

        integration = TenantIntegration(
            tenant_id=tenant_id,
            template_id=template_id,
            config=dict(config),
            encrypted_credentials=encrypted,
        )
        self._integrations[integration.id] = integration

        self._logger.info(
            "integration_activated",
            tenant_id=tenant_id,
            template_id=template_id,
            integration_id=integration.id,
            has_credentials=encrypted is not None,
        )
        return ActivationResult(integration=integration, validation=validation)

    def get(self, tenant_id: str, integration_id: str) -> TenantIntegration | None:
        integration = self._integrations.get(integration_id)
        if integration is None or integration.tenant_id != tenant_id:
            return None
        return integration

    def _require(self, tenant_id: str, integration_id: str) -> TenantIntegration:
        integration = self.get(tenant_id, integration_id)
        if integration is None:
            raise NotFoundError(f"Integration {integration_id} not found")
        return integration

    def list_for_tenant(self, tenant_id: str) -> list[TenantIntegration]:
        """List a tenant's integrations, newest first."""
        integrations = [i for i in self._integrations.values() if i.tenant_id == tenant_id]
        integrations.sort(key=lambda i: i.created_at, reverse=True)
        return integrations

    def template_for(self, integration: TenantIntegration) -> IntegrationTemplate | None:
        return self._catalog.get(integration.template_id)

    def update_status(
        self,
        tenant_id: str,
        integration_id: str,
        status: IntegrationStatus,
    ) -> TenantIntegration:
        """Set the lifecycle status of an integration."""
        integration = self._require(tenant_id, integration_id)
        integration.status = status
        integration.updated_at = datetime.now(UTC)
        self._logger.info(
            "integration_status_changed",
            integration_id=integration_id,
            status=status.value,
        )
        return integration

    def deactivate(self, tenant_id: str, integration_id: str) -> TenantIntegration:
        integration = self._require(tenant_id, integration_id)
        integration.is_active = False
        integration.updated_at = datetime.now(UTC)
        self._logger.info("integration_deactivated", integration_id=integration_id)
        return integration

    def get_credentials(self, tenant_id: str, integration_id: str) -> dict[str, Any]:
        """Decrypt an integration's credentials for immediate use.

        Raises:
            NotFoundError: If the integration does not exist.
            CredentialDecryptionError: If the stored envelope fails
                authentication.
        """
        integration = self._require(tenant_id, integration_id)
        if integration.encrypted_credentials is None:
            return {}
        return self._vault.decrypt_credentials(integration.encrypted_credentials)

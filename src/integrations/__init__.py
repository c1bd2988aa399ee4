"""Third-party integration onboarding.

This module contains:
- The read-only integration template catalog
- Config validation against a template's schema
- AES-256-GCM credential vault
- The onboarding service that ties them together
"""

from src.integrations.service import (
    ActivationResult,
    IntegrationService,
    IntegrationStatus,
    TenantIntegration,
)
from src.integrations.templates import (
    BUILT_IN_TEMPLATES,
    AuthType,
    ConfigProperty,
    ConfigSchema,
    IntegrationCategory,
    IntegrationEndpoint,
    IntegrationTemplate,
    TemplateCatalog,
)
from src.integrations.validation import validate_config
from src.integrations.vault import (
    CredentialVault,
    decrypt_credentials,
    encrypt_credentials,
    generate_encryption_key,
)

__all__ = [
    "ActivationResult",
    "AuthType",
    "BUILT_IN_TEMPLATES",
    "ConfigProperty",
    "ConfigSchema",
    "CredentialVault",
    "IntegrationCategory",
    "IntegrationEndpoint",
    "IntegrationService",
    "IntegrationStatus",
    "IntegrationTemplate",
    "TemplateCatalog",
    "TenantIntegration",
    "decrypt_credentials",
    "encrypt_credentials",
    "generate_encryption_key",
    "validate_config",
]

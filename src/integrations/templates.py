"""Integration template catalog.

Templates describe how a third-party service is onboarded: its auth
type, the config schema used both to render the onboarding form and to
validate submissions, and the remote operations it exposes.
"""

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class IntegrationCategory(str, Enum):
    """Marketplace categories."""

    ACCOUNTING = "ACCOUNTING"
    CRM = "CRM"
    COMMUNICATION = "COMMUNICATION"
    STORAGE = "STORAGE"
    PAYMENT = "PAYMENT"
    TAX = "TAX"


class AuthType(str, Enum):
    """How the gateway authenticates against the provider."""

    OAUTH2 = "OAUTH2"
    API_KEY = "API_KEY"
    BASIC = "BASIC"
    BEARER = "BEARER"


class ConfigProperty(BaseModel):
    """A single field of a config schema."""

    model_config = ConfigDict(frozen=True)

    type: Literal["string", "number", "boolean"]
    title: str
    description: str | None = None
    enum: list[str] | None = None
    default: Any = None


class ConfigSchema(BaseModel):
    """Object schema for an integration's configuration."""

    model_config = ConfigDict(frozen=True)

    type: Literal["object"] = "object"
    required: list[str] = Field(default_factory=list)
    properties: dict[str, ConfigProperty] = Field(default_factory=dict)


class IntegrationEndpoint(BaseModel):
    """A remote operation offered by a provider."""

    model_config = ConfigDict(frozen=True)

    name: str
    method: Literal["GET", "POST", "PUT", "DELETE", "PATCH"]
    path: str
    description: str
    request_schema: ConfigSchema | None = None
    response_mapping: dict[str, str] | None = None


class IntegrationTemplate(BaseModel):
    """Read-only catalog entry for a provider."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    provider: str
    category: IntegrationCategory
    description: str
    logo_url: str | None = None
    auth_type: AuthType
    config_schema: ConfigSchema
    endpoints: list[IntegrationEndpoint] = Field(default_factory=list)


def _template(
    provider: str,
    name: str,
    category: IntegrationCategory,
    description: str,
    auth_type: AuthType,
    required: list[str],
    properties: dict[str, dict[str, Any]],
    endpoints: list[tuple[str, str, str, str]],
) -> IntegrationTemplate:
    return IntegrationTemplate(
        id=provider.lower(),
        name=name,
        provider=provider,
        category=category,
        description=description,
        auth_type=auth_type,
        config_schema=ConfigSchema(
            required=required,
            properties={key: ConfigProperty(**value) for key, value in properties.items()},
        ),
        endpoints=[
            IntegrationEndpoint(name=op, method=method, path=path, description=text)  # type: ignore[arg-type]
            for op, method, path, text in endpoints
        ],
    )


BUILT_IN_TEMPLATES: tuple[IntegrationTemplate, ...] = (
    _template(
        "TALLY",
        "Tally Prime",
        IntegrationCategory.ACCOUNTING,
        "Sync financial data from Tally Prime accounting software",
        AuthType.API_KEY,
        ["serverUrl", "companyName"],
        {
            "serverUrl": {
                "type": "string",
                "title": "Tally Server URL",
                "description": "URL of your Tally server (e.g., http://localhost:9000)",
            },
            "companyName": {
                "type": "string",
                "title": "Company Name",
                "description": "Name of the company in Tally",
            },
        },
        [
            ("getLedgers", "POST", "/", "Fetch all ledgers from Tally"),
            ("getVouchers", "POST", "/", "Fetch vouchers/transactions from Tally"),
        ],
    ),
    _template(
        "ZOHO_BOOKS",
        "Zoho Books",
        IntegrationCategory.ACCOUNTING,
        "Sync invoices, payments, and financial data from Zoho Books",
        AuthType.OAUTH2,
        ["organizationId"],
        {
            "organizationId": {
                "type": "string",
                "title": "Organization ID",
                "description": "Your Zoho Books organization ID",
            },
        },
        [
            ("getInvoices", "GET", "/invoices", "Fetch invoices from Zoho Books"),
            ("getPayments", "GET", "/customerpayments", "Fetch payments from Zoho Books"),
        ],
    ),
    _template(
        "GOOGLE_DRIVE",
        "Google Drive",
        IntegrationCategory.STORAGE,
        "Store and sync documents with Google Drive",
        AuthType.OAUTH2,
        ["folderId"],
        {
            "folderId": {
                "type": "string",
                "title": "Root Folder ID",
                "description": "Google Drive folder ID to sync documents to",
            },
            "autoSync": {
                "type": "boolean",
                "title": "Auto Sync",
                "description": "Automatically sync new documents",
                "default": True,
            },
        },
        [
            ("uploadFile", "POST", "/upload", "Upload file to Google Drive"),
            ("listFiles", "GET", "/files", "List files in folder"),
        ],
    ),
    _template(
        "SLACK",
        "Slack",
        IntegrationCategory.COMMUNICATION,
        "Send notifications to Slack channels",
        AuthType.OAUTH2,
        ["defaultChannel"],
        {
            "defaultChannel": {
                "type": "string",
                "title": "Default Channel",
                "description": "Default Slack channel for notifications",
            },
            "botName": {
                "type": "string",
                "title": "Bot Name",
                "description": "Name displayed for bot messages",
                "default": "DigiComply",
            },
        },
        [
            ("sendMessage", "POST", "/chat.postMessage", "Send message to Slack channel"),
        ],
    ),
    _template(
        "RAZORPAY",
        "Razorpay",
        IntegrationCategory.PAYMENT,
        "Accept payments and track transactions via Razorpay",
        AuthType.API_KEY,
        ["keyId"],
        {
            "keyId": {
                "type": "string",
                "title": "Key ID",
                "description": "Your Razorpay Key ID",
            },
            "webhookSecret": {
                "type": "string",
                "title": "Webhook Secret",
                "description": "Secret for verifying webhook signatures",
            },
        },
        [
            ("createPaymentLink", "POST", "/payment_links", "Create a payment link"),
            ("getPayment", "GET", "/payments/{id}", "Get payment details"),
        ],
    ),
)


class TemplateCatalog:
    """Read-only registry of integration templates keyed by id."""

    def __init__(self, templates: tuple[IntegrationTemplate, ...] | list[IntegrationTemplate] = BUILT_IN_TEMPLATES) -> None:
        self._templates = {template.id: template for template in templates}

    def get(self, template_id: str) -> IntegrationTemplate | None:
        return self._templates.get(template_id)

    def list_templates(
        self,
        category: IntegrationCategory | None = None,
    ) -> list[IntegrationTemplate]:
        """List templates sorted by name.

        Args:
            category: Only return templates of this category.
        """
        templates = [
            t for t in self._templates.values() if category is None or t.category == category
        ]
        return sorted(templates, key=lambda t: t.name)

    def group_by_category(
        self,
        category: IntegrationCategory | None = None,
    ) -> dict[str, list[IntegrationTemplate]]:
        """Group templates by category value, keeping name order."""
        grouped: dict[str, list[IntegrationTemplate]] = {}
        for template in self.list_templates(category):
            grouped.setdefault(template.category.value, []).append(template)
        return grouped

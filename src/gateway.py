"""Service container for the integration gateway.

Every stateful service is constructed here and passed explicitly to the
HTTP layer and to tests. There are no module-level singletons.
"""

from dataclasses import dataclass

import httpx
import structlog

from src.analytics.usage import RequestLogStore
from src.api_keys.authorizer import ApiKeyAuthorizer
from src.api_keys.store import ApiKeyStore
from src.config import Settings
from src.integrations.service import IntegrationService
from src.integrations.templates import TemplateCatalog
from src.integrations.vault import CredentialVault, generate_encryption_key
from src.webhooks.dispatcher import WebhookDispatcher
from src.webhooks.manager import WebhookRegistry
from src.webhooks.retry import RetryScheduler

logger = structlog.get_logger(__name__)


@dataclass
class Gateway:
    """All services of one gateway instance.

    Attributes:
        settings: Settings the services were built from.
        webhooks: Webhook endpoint registry.
        dispatcher: Event dispatcher with its retry scheduler.
        api_keys: API key store.
        authorizer: Inbound API key checks.
        templates: Integration template catalog.
        integrations: Integration onboarding service.
        request_logs: Request logs for usage analytics.
    """

    settings: Settings
    webhooks: WebhookRegistry
    dispatcher: WebhookDispatcher
    api_keys: ApiKeyStore
    authorizer: ApiKeyAuthorizer
    templates: TemplateCatalog
    integrations: IntegrationService
    request_logs: RequestLogStore

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> "Gateway":
        """Build a gateway from settings.

        Args:
            settings: Gateway settings.
            http_client: Shared client for outbound webhook requests.

        Returns:
            A fully wired gateway.

        Raises:
            ValueError: If no encryption key is configured in production,
                or the configured key is invalid.
        """
        key_hex = settings.CREDENTIAL_ENCRYPTION_KEY
        if not key_hex:
            if settings.is_production:
                raise ValueError("CREDENTIAL_ENCRYPTION_KEY is required in production")
            logger.warning(
                "ephemeral_encryption_key",
                environment=settings.ENVIRONMENT,
                message="Stored credentials will not survive a restart",
            )
            key_hex = generate_encryption_key()

        registry = WebhookRegistry()
        dispatcher = WebhookDispatcher(
            registry,
            scheduler=RetryScheduler(),
            http_client=http_client,
            delivery_timeout=settings.WEBHOOK_TIMEOUT_SECONDS,
            max_concurrent_deliveries=settings.WEBHOOK_MAX_CONCURRENT_DELIVERIES,
        )
        api_keys = ApiKeyStore(
            default_rate_limit=settings.API_KEY_DEFAULT_RATE_LIMIT,
            window_minutes=settings.API_KEY_RATE_LIMIT_WINDOW_MINUTES,
        )
        templates = TemplateCatalog()

        return cls(
            settings=settings,
            webhooks=registry,
            dispatcher=dispatcher,
            api_keys=api_keys,
            authorizer=ApiKeyAuthorizer(api_keys),
            templates=templates,
            integrations=IntegrationService(templates, CredentialVault(key_hex)),
            request_logs=RequestLogStore(),
        )

    async def shutdown(self) -> None:
        """Stop background delivery work."""
        await self.dispatcher.shutdown()

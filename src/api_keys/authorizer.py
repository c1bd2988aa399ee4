"""Authorization of inbound requests by API key.

Checks run in a fixed order: format, hash lookup, expiry, rate limit,
permission. The first failure rejects the request with a generic
AuthorizationError; which check failed is logged but never disclosed.
"""

from dataclasses import dataclass

import structlog

from src.api_keys.keys import (
    RateLimitStatus,
    has_permission,
    hash_key,
    is_expired,
    validate_key_format,
)
from src.api_keys.store import ApiKey, ApiKeyStore
from src.errors import AuthorizationError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AuthorizedKey:
    """An API key that passed every check.

    Attributes:
        api_key: The stored key.
        rate_limit: Rate limit status after counting this request.
    """

    api_key: ApiKey
    rate_limit: RateLimitStatus

    @property
    def tenant_id(self) -> str:
        return self.api_key.tenant_id


class ApiKeyAuthorizer:
    """Runs the ordered API key checks against an ApiKeyStore."""

    def __init__(self, store: ApiKeyStore) -> None:
        self._store = store
        self._logger = logger.bind(component="api_key_authorizer")

    def _reject(self, reason: str, **context: object) -> AuthorizationError:
        self._logger.warning("api_key_rejected", reason=reason, **context)
        return AuthorizationError()

    async def authorize(self, raw_key: str | None, required_permission: str) -> AuthorizedKey:
        """Authorize a request.

        Args:
            raw_key: Key presented by the caller.
            required_permission: "resource:action" needed by the handler.

        Returns:
            The authorized key and its rate limit status.

        Raises:
            AuthorizationError: On the first failing check.
        """
        if raw_key is None or not validate_key_format(raw_key):
            raise self._reject("format")

        api_key = await self._store.get_by_hash(hash_key(raw_key))
        if api_key is None or not api_key.is_active:
            raise self._reject("unknown_key")

        if is_expired(api_key.expires_at):
            raise self._reject("expired", key_id=api_key.id)

        status = await self._store.consume(api_key.id)
        if not status.allowed:
            raise self._reject("rate_limited", key_id=api_key.id)

        if not has_permission(api_key.permissions, required_permission):
            raise self._reject(
                "permission_denied",
                key_id=api_key.id,
                required_permission=required_permission,
            )

        return AuthorizedKey(api_key=api_key, rate_limit=status)

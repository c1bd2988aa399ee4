"""API key storage with windowed usage counters.

Usage counters are shared mutable state: the window reset, the
allow/deny decision and the increment happen in one critical section so
concurrent requests can never push a key past its rate limit.
"""

import asyncio
import uuid
from datetime import UTC, datetime, timedelta

import structlog
from pydantic import BaseModel, Field

from src.api_keys.keys import (
    RateLimitStatus,
    check_rate_limit,
    generate_api_key,
)
from src.errors import NotFoundError

logger = structlog.get_logger(__name__)

DEFAULT_RATE_LIMIT = 1000
DEFAULT_WINDOW_MINUTES = 60


class ApiKey(BaseModel):
    """A stored API key. Never holds the plaintext key."""

    id: str = Field(default_factory=lambda: f"key_{uuid.uuid4().hex[:12]}")
    tenant_id: str
    name: str
    key_hash: str = Field(..., repr=False)
    key_prefix: str
    permissions: list[str] = Field(default_factory=list)
    rate_limit: int = Field(default=DEFAULT_RATE_LIMIT, gt=0)
    expires_at: datetime | None = None
    usage_count: int = 0
    window_started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    last_used_at: datetime | None = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class ApiKeyStore:
    """In-memory, lock-protected API key store.

    Example:
        store = ApiKeyStore()
        api_key, full_key = await store.create("firm_1", "CI", ["clients:read"])
        # full_key is shown to the caller once and never stored
    """

    def __init__(
        self,
        *,
        default_rate_limit: int = DEFAULT_RATE_LIMIT,
        window_minutes: int = DEFAULT_WINDOW_MINUTES,
    ) -> None:
        """Initialize the store.

        Args:
            default_rate_limit: Rate limit for keys created without one.
            window_minutes: Length of the usage window.
        """
        self._keys: dict[str, ApiKey] = {}
        self._by_hash: dict[str, str] = {}
        self._lock = asyncio.Lock()
        self.default_rate_limit = default_rate_limit
        self.window_minutes = window_minutes
        self._logger = logger.bind(component="api_key_store")

    async def create(
        self,
        tenant_id: str,
        name: str,
        permissions: list[str],
        *,
        rate_limit: int | None = None,
        expires_at: datetime | None = None,
    ) -> tuple[ApiKey, str]:
        """Create a key for a tenant.

        Args:
            tenant_id: Owning tenant.
            name: Display name.
            permissions: "resource:action" permissions.
            rate_limit: Requests per window (store default if omitted).
            expires_at: Optional expiry.

        Returns:
            The stored key and the plaintext key. The plaintext is not
            retained anywhere.
        """
        generated = generate_api_key()
        api_key = ApiKey(
            tenant_id=tenant_id,
            name=name,
            key_hash=generated.key_hash,
            key_prefix=generated.key_prefix,
            permissions=list(dict.fromkeys(permissions)),
            rate_limit=rate_limit or self.default_rate_limit,
            expires_at=expires_at,
        )

        async with self._lock:
            self._keys[api_key.id] = api_key
            self._by_hash[api_key.key_hash] = api_key.id

        self._logger.info(
            "api_key_created",
            tenant_id=tenant_id,
            key_id=api_key.id,
            key_prefix=api_key.key_prefix,
            permission_count=len(api_key.permissions),
        )
        return api_key, generated.full_key

    async def get_by_hash(self, key_hash: str) -> ApiKey | None:
        async with self._lock:
            key_id = self._by_hash.get(key_hash)
            return self._keys.get(key_id) if key_id else None

    async def get(self, tenant_id: str, key_id: str) -> ApiKey | None:
        async with self._lock:
            api_key = self._keys.get(key_id)
        if api_key is None or api_key.tenant_id != tenant_id:
            return None
        return api_key

    async def list_for_tenant(self, tenant_id: str) -> list[ApiKey]:
        """List a tenant's keys, newest first."""
        async with self._lock:
            keys = [k for k in self._keys.values() if k.tenant_id == tenant_id]
        keys.sort(key=lambda k: k.created_at, reverse=True)
        return keys

    async def revoke(self, tenant_id: str, key_id: str) -> ApiKey:
        """Deactivate a key. Revoked keys fail lookup.

        Raises:
            NotFoundError: If the key does not exist for this tenant.
        """
        async with self._lock:
            api_key = self._keys.get(key_id)
            if api_key is None or api_key.tenant_id != tenant_id:
                raise NotFoundError(f"API key {key_id} not found")
            api_key.is_active = False

        self._logger.info("api_key_revoked", tenant_id=tenant_id, key_id=key_id)
        return api_key

    def _roll_window(self, api_key: ApiKey, now: datetime) -> None:
        if now - api_key.window_started_at >= timedelta(minutes=self.window_minutes):
            api_key.usage_count = 0
            api_key.window_started_at = now

    async def consume(self, key_id: str) -> RateLimitStatus:
        """Atomically check the rate limit and count one request.

        The counter is only incremented when the request is allowed.

        Returns:
            Status computed from the usage before this request.

        Raises:
            NotFoundError: If the key does not exist.
        """
        async with self._lock:
            api_key = self._keys.get(key_id)
            if api_key is None:
                raise NotFoundError(f"API key {key_id} not found")

            now = datetime.now(UTC)
            self._roll_window(api_key, now)

            status = check_rate_limit(api_key.usage_count, api_key.rate_limit, self.window_minutes)
            status = RateLimitStatus(
                allowed=status.allowed,
                remaining=max(0, status.remaining - 1) if status.allowed else 0,
                reset_at=api_key.window_started_at + timedelta(minutes=self.window_minutes),
            )
            if status.allowed:
                api_key.usage_count += 1
                api_key.last_used_at = now

        return status

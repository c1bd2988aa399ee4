"""API key generation, hashing and policy checks.

Keys look like ``dc_<64 hex chars>``. Only the SHA-256 hash and the
11-character prefix are ever stored; the full key exists only in the
creation response.
"""

import hashlib
import re
import secrets
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

KEY_PREFIX = "dc_"
KEY_RANDOM_BYTES = 32
# "dc_" plus the first 8 hex characters
PREFIX_LENGTH = 11
KEY_PATTERN = re.compile(r"^dc_[a-f0-9]{64}$")

WILDCARD_PERMISSIONS = ("*", "*:*")


@dataclass(frozen=True)
class ApiKeyResult:
    """A freshly generated key.

    Attributes:
        key_prefix: Display/lookup prefix.
        full_key: Plaintext key, to be shown exactly once.
        key_hash: SHA-256 hex digest, the only form persisted.
    """

    key_prefix: str
    full_key: str = field(repr=False)
    key_hash: str


@dataclass(frozen=True)
class RateLimitStatus:
    """Result of a rate limit check.

    Attributes:
        allowed: Whether the request may proceed.
        remaining: Requests left in the window.
        reset_at: When the window resets.
    """

    allowed: bool
    remaining: int
    reset_at: datetime


def hash_key(key: str) -> str:
    """Hash an API key for storage and lookup."""
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def generate_api_key() -> ApiKeyResult:
    """Generate a new API key.

    Returns:
        The prefix, the full key and its hash.
    """
    full_key = f"{KEY_PREFIX}{secrets.token_hex(KEY_RANDOM_BYTES)}"
    return ApiKeyResult(
        key_prefix=extract_prefix(full_key),
        full_key=full_key,
        key_hash=hash_key(full_key),
    )


def validate_key_format(key: str) -> bool:
    """Check that a key matches ``^dc_[a-f0-9]{64}$``."""
    return isinstance(key, str) and KEY_PATTERN.fullmatch(key) is not None


def extract_prefix(key: str) -> str:
    return key[:PREFIX_LENGTH]


def is_expired(expires_at: datetime | None, *, now: datetime | None = None) -> bool:
    """Check if a key is expired.

    Args:
        expires_at: Expiry timestamp, None for keys that never expire.
        now: Reference time (defaults to the current UTC time).

    Returns:
        True iff expires_at is set and in the past.
    """
    if expires_at is None:
        return False
    now = now or datetime.now(UTC)
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=UTC)
    return expires_at < now


def check_rate_limit(
    usage_count: int,
    rate_limit: int,
    window_minutes: int = 60,
) -> RateLimitStatus:
    """Check a usage count against a rate limit.

    Args:
        usage_count: Requests already made in the window.
        rate_limit: Requests allowed per window.
        window_minutes: Window length.

    Returns:
        Whether the request is allowed, what remains, and the reset time.
    """
    return RateLimitStatus(
        allowed=usage_count < rate_limit,
        remaining=max(0, rate_limit - usage_count),
        reset_at=datetime.now(UTC) + timedelta(minutes=window_minutes),
    )


def parse_permission(permission: str) -> tuple[str, str]:
    """Split a "resource:action" permission string.

    Returns:
        (resource, action); action is "" when there is no colon.
    """
    resource, _, action = permission.partition(":")
    return resource, action


def has_permission(key_permissions: list[str] | set[str], required_permission: str) -> bool:
    """Check if a key's permissions grant a required permission.

    Granted by ``*``, ``*:*``, the exact string, or ``resource:*``.
    """
    granted = set(key_permissions)

    if granted.intersection(WILDCARD_PERMISSIONS):
        return True

    if required_permission in granted:
        return True

    resource, _ = parse_permission(required_permission)
    return f"{resource}:*" in granted

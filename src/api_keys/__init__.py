"""API keys for inbound programmatic access.

This module contains:
- Key generation, hashing, format and expiry checks
- Rate limit and permission checks
- A lock-protected key store with windowed usage counters
- The ordered authorization check used by the HTTP layer
"""

from src.api_keys.authorizer import ApiKeyAuthorizer, AuthorizedKey
from src.api_keys.keys import (
    ApiKeyResult,
    RateLimitStatus,
    check_rate_limit,
    extract_prefix,
    generate_api_key,
    has_permission,
    hash_key,
    is_expired,
    parse_permission,
    validate_key_format,
)
from src.api_keys.store import ApiKey, ApiKeyStore

__all__ = [
    "ApiKey",
    "ApiKeyAuthorizer",
    "ApiKeyResult",
    "ApiKeyStore",
    "AuthorizedKey",
    "RateLimitStatus",
    "check_rate_limit",
    "extract_prefix",
    "generate_api_key",
    "has_permission",
    "hash_key",
    "is_expired",
    "parse_permission",
    "validate_key_format",
]

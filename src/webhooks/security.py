"""Webhook security utilities.

Provides HMAC-SHA256 signing of outbound webhook bodies and constant-time
verification for receivers. The signature always covers the exact raw body
bytes that were sent.
"""

import hashlib
import hmac
import secrets

import structlog

from src.errors import SignatureVerificationError

logger = structlog.get_logger(__name__)

# Signature header name
SIGNATURE_HEADER = "X-Webhook-Signature"

# Bytes of randomness in a generated endpoint secret
SECRET_BYTES = 32


def _to_bytes(value: bytes | str) -> bytes:
    if isinstance(value, bytes):
        return value
    return value.encode("utf-8")


def generate_secret() -> str:
    """Generate a new webhook endpoint secret.

    Returns:
        64 hex characters of cryptographically secure randomness.
    """
    return secrets.token_hex(SECRET_BYTES)


def sign(payload: bytes | str, secret: str) -> str:
    """Compute the HMAC-SHA256 signature of a payload.

    Args:
        payload: Raw body bytes (or a string, encoded as UTF-8).
        secret: Endpoint secret.

    Returns:
        Hex digest of HMAC-SHA256(secret, payload).
    """
    return hmac.new(
        secret.encode("utf-8"),
        _to_bytes(payload),
        hashlib.sha256,
    ).hexdigest()


def verify(payload: bytes | str, signature: str, secret: str) -> bool:
    """Verify a payload signature in constant time.

    Any length mismatch or differing byte fails. Malformed signatures
    (e.g. non-ASCII text) fail rather than raise.

    Args:
        payload: Raw body bytes that were signed.
        signature: Claimed hex signature.
        secret: Endpoint secret.

    Returns:
        True if the signature matches, False otherwise.
    """
    expected = sign(payload, secret).encode("ascii")
    try:
        claimed = signature.encode("ascii")
    except (AttributeError, UnicodeEncodeError):
        return False

    is_valid = hmac.compare_digest(expected, claimed)
    if not is_valid:
        logger.warning("webhook_signature_invalid", payload_length=len(_to_bytes(payload)))
    return is_valid


def create_signature_headers(body: bytes | str, secret: str) -> dict[str, str]:
    """Create HTTP headers carrying the signature of a body.

    Args:
        body: Exact body that will be sent.
        secret: Endpoint secret.

    Returns:
        Dictionary of headers to include in the request.
    """
    return {SIGNATURE_HEADER: sign(body, secret)}


def verify_from_headers(
    body: bytes | str,
    headers: dict[str, str],
    secret: str,
) -> bool:
    """Verify a received webhook from its raw body and headers.

    Header lookup is case-insensitive.

    Args:
        body: Raw received body.
        headers: Request headers.
        secret: Endpoint secret.

    Returns:
        True when the signature is valid.

    Raises:
        SignatureVerificationError: If the header is missing or the
            signature does not match.
    """
    lowered = {name.lower(): value for name, value in headers.items()}
    signature = lowered.get(SIGNATURE_HEADER.lower())

    if not signature:
        raise SignatureVerificationError(f"Missing {SIGNATURE_HEADER} header")

    if not verify(body, signature, secret):
        raise SignatureVerificationError("Webhook signature does not match")

    return True

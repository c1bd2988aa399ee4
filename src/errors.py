"""Error types for the integration gateway.

Exception Hierarchy:
    GatewayError (base)
    ├── AuthorizationError - API key rejected (bad/expired/limited/forbidden)
    ├── CryptographicError - Integrity checks that must fail closed
    │   ├── SignatureVerificationError - Webhook signature mismatch
    │   └── CredentialDecryptionError - Auth tag mismatch, wrong key
    ├── DeliveryError - A single webhook attempt failed
    ├── NotFoundError - Unknown tenant-scoped resource
    └── ConflictError - Resource already exists

Validation problems (bad URL, bad integration config) are not exceptions:
they are returned as ValidationResult values so every message can be shown.
"""

from dataclasses import dataclass, field
from typing import Any


class GatewayError(Exception):
    """Base exception for all gateway errors.

    Attributes:
        message: Human-readable error message.
        details: Additional error details.
    """

    def __init__(
        self,
        message: str,
        *,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging/API responses."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class AuthorizationError(GatewayError):
    """An inbound API key was rejected.

    The message is always generic: callers never learn which check failed.
    """

    GENERIC_MESSAGE = "Invalid or unauthorized API key"

    def __init__(self, message: str = GENERIC_MESSAGE) -> None:
        super().__init__(message)


class CryptographicError(GatewayError):
    """An integrity or authenticity check failed."""


class SignatureVerificationError(CryptographicError):
    """A webhook signature was missing or did not match."""


class CredentialDecryptionError(CryptographicError):
    """Stored credentials could not be authenticated and decrypted."""


class DeliveryError(GatewayError):
    """A single webhook delivery attempt failed.

    Attributes:
        status_code: HTTP status code, if a response was received.
        response_body: Response body, if a response was received.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        response_body: str | None = None,
    ) -> None:
        super().__init__(message, details={"status_code": status_code})
        self.status_code = status_code
        self.response_body = response_body


class NotFoundError(GatewayError):
    """A tenant-scoped resource does not exist."""


class ConflictError(GatewayError):
    """A resource already exists."""


@dataclass
class ValidationResult:
    """Outcome of a validation that collects every problem.

    Attributes:
        errors: Human-readable messages, empty when valid.
    """

    errors: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        """True when no errors were collected."""
        return len(self.errors) == 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {"valid": self.valid, "errors": list(self.errors)}

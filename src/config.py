"""Application configuration settings.

This module provides centralized configuration management using environment
variables with sensible defaults.
"""

import os
from dataclasses import dataclass


def _get_bool_env(name: str, default: bool = False) -> bool:
    """Get a boolean value from environment variable.

    Args:
        name: Environment variable name.
        default: Default value if not set.

    Returns:
        Boolean value from environment.
    """
    value = os.getenv(name, "").lower()
    if value in ("true", "1", "yes", "on"):
        return True
    if value in ("false", "0", "no", "off"):
        return False
    return default


def _get_int_env(name: str, default: int) -> int:
    """Get an integer value from environment variable.

    Args:
        name: Environment variable name.
        default: Default value if not set or not an integer.

    Returns:
        Integer value from environment.
    """
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_float_env(name: str, default: float) -> float:
    """Get a float value from environment variable."""
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        return default


@dataclass
class Settings:
    """Gateway settings loaded from environment variables.

    Attributes:
        ENVIRONMENT: Deployment environment (development, staging, production).
        DEBUG: Expose error details in HTTP responses.
        LOG_LEVEL: Logging level.
        LOG_FORMAT: "json" for production output, "text" for console output.
        CREDENTIAL_ENCRYPTION_KEY: 64 hex chars (AES-256 key) for the vault.
        WEBHOOK_TIMEOUT_SECONDS: Outbound webhook request timeout.
        WEBHOOK_MAX_CONCURRENT_DELIVERIES: Max in-flight delivery attempts.
        API_KEY_DEFAULT_RATE_LIMIT: Requests per window for new API keys.
        API_KEY_RATE_LIMIT_WINDOW_MINUTES: Length of the rate limit window.
    """

    ENVIRONMENT: str = "development"
    DEBUG: bool = False

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"

    # Credential vault
    CREDENTIAL_ENCRYPTION_KEY: str | None = None

    # Webhook delivery
    WEBHOOK_TIMEOUT_SECONDS: float = 30.0
    WEBHOOK_MAX_CONCURRENT_DELIVERIES: int = 10

    # API keys
    API_KEY_DEFAULT_RATE_LIMIT: int = 1000
    API_KEY_RATE_LIMIT_WINDOW_MINUTES: int = 60

    @property
    def is_production(self) -> bool:
        """Whether the gateway runs in production."""
        return self.ENVIRONMENT.lower() == "production"

    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings from environment variables.

        Returns:
            Settings instance populated from environment.
        """
        return cls(
            ENVIRONMENT=os.getenv("ENVIRONMENT", "development"),
            DEBUG=_get_bool_env("DEBUG", default=False),
            LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO"),
            LOG_FORMAT=os.getenv("LOG_FORMAT", "json"),
            CREDENTIAL_ENCRYPTION_KEY=os.getenv("CREDENTIAL_ENCRYPTION_KEY"),
            WEBHOOK_TIMEOUT_SECONDS=_get_float_env("WEBHOOK_TIMEOUT_SECONDS", 30.0),
            WEBHOOK_MAX_CONCURRENT_DELIVERIES=_get_int_env(
                "WEBHOOK_MAX_CONCURRENT_DELIVERIES", 10
            ),
            API_KEY_DEFAULT_RATE_LIMIT=_get_int_env("API_KEY_DEFAULT_RATE_LIMIT", 1000),
            API_KEY_RATE_LIMIT_WINDOW_MINUTES=_get_int_env(
                "API_KEY_RATE_LIMIT_WINDOW_MINUTES", 60
            ),
        )


# Global settings instance
settings = Settings.from_env()

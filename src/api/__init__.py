"""HTTP API for the Integration Gateway.

This module contains:
- The application factory
- Webhook, API key and integration management routes
- API-key authenticated event and usage routes
"""

from src.api.dependencies import ErrorResponse, RequirePermission, get_gateway
from src.api.routes import create_app

__all__ = [
    "ErrorResponse",
    "RequirePermission",
    "create_app",
    "get_gateway",
]

"""Run the Integration Gateway API server.

Usage:
    python -m src.main

Or with uvicorn directly:
    uvicorn src.api.routes:create_app --factory
"""

import os

import uvicorn

from src.api.routes import create_app
from src.config import settings
from src.gateway import Gateway
from src.logging_config import configure_logging


def main() -> None:
    """Configure logging, build the gateway and serve it."""
    configure_logging(level=settings.LOG_LEVEL, format=settings.LOG_FORMAT)
    app = create_app(Gateway.from_settings(settings))
    uvicorn.run(
        app,
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()

"""
RetailHub ECA Server - Main entry point.

This module starts the HTTP server (FastAPI under uvicorn) with:
- Store opened from configuration (degraded fallback only when allowed)
- Engine wired on top of the store (state machine, actions, rules)
- Webhook, read and analytics routes

Usage:
    python -m retailhub.eca_server.main
    retailhub-eca

Configuration is entirely via environment variables.
See config.py (ECA_*, SQLITE_*, LOG_*) and api/settings.py (ECA_API_*).

Invariants:
    - Configuration is validated before anything starts
    - The store is closed on shutdown

How to change safely:
    - Keep logging setup before any component logs
    - Keep uvicorn's own logging config disabled so records use our handler
"""

from __future__ import annotations

import logging
import sys

import json_log_formatter
import uvicorn

from .api.app import create_app
from .api.settings import Settings
from .config import ServerConfig

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def main() -> None:
    """Main entry point."""
    try:
        config = ServerConfig.from_env()
        settings = Settings()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)
    config.log_config()

    app = create_app(config=config, settings=settings)
    logger.info(f"Starting RetailHub ECA server on {settings.host}:{settings.port}")
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()

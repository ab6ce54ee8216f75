"""
FastAPI application factory for the ECA server.

This module creates the FastAPI app with:
- Store lifecycle (open on startup, close on shutdown)
- Engine wiring (state machine, action table, rules, processor)
- CORS configuration
- EcaError -> error envelope mapping for the read routes
- /health reporting flows, rules, store status and the degraded flag
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..config import ServerConfig
from ..engine import build_engine
from ..errors import EcaError, is_business_error
from ..store.base import StoreBackend
from ..store.factory import open_store
from .auth import WebhookAuthenticator
from .routes import router
from .settings import Settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage store and engine lifecycle."""
    config: ServerConfig = app.state.config
    store: StoreBackend | None = app.state.injected_store

    if store is None:
        store, degraded = await open_store(config)
    else:
        await store.connect()
        degraded = False

    app.state.engine = build_engine(config, store, degraded=degraded)

    yield

    await store.close()


def create_app(
    config: ServerConfig | None = None,
    settings: Settings | None = None,
    store: StoreBackend | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        config: Server configuration (loaded from env if not provided)
        settings: HTTP settings (loaded from env if not provided)
        store: Store to use instead of the configured SQLite store
            (tests inject InMemoryStore here)
    """
    config = config or ServerConfig.from_env()
    settings = settings or Settings()

    app = FastAPI(
        title="RetailHub ECA Server",
        description=(
            "Webhook ingestion for retail flows (sales, purchase, inventory, "
            "transfer, returns) over an entity-relationship-transaction graph."
        ),
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.settings = settings
    app.state.injected_store = store
    app.state.authenticator = WebhookAuthenticator.from_settings(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.exception_handler(EcaError)
    async def eca_error_handler(request: Request, exc: EcaError) -> JSONResponse:
        if is_business_error(exc):
            logger.warning(f"Request rejected: {exc.message}", extra={"path": request.url.path})
        else:
            logger.error(
                f"Request failed: {exc.message}",
                extra={"path": request.url.path},
                exc_info=exc.__cause__ or exc,
            )
        error = exc.to_dict()
        error["details"]["timestamp"] = datetime.now(timezone.utc).isoformat()
        return JSONResponse(
            status_code=exc.http_status,
            content={"success": False, "error": error},
        )

    app.include_router(router, prefix="/api/v1")

    @app.get("/health")
    async def health():
        engine = app.state.engine
        store_ok = await engine.store.ping()
        if not store_ok:
            status = "unhealthy"
        elif engine.degraded:
            status = "degraded"
        else:
            status = "healthy"
        return {
            "status": status,
            "service": "retailhub-eca",
            "version": __version__,
            "flows": {
                flow.value: engine.action_table.actions_for(flow)
                for flow in engine.action_table.flows()
            },
            "rules": engine.rules.stats(),
            "store": "ok" if store_ok else "unavailable",
            "degraded": engine.degraded,
            "state_machine": engine.state_machine.fingerprint,
        }

    return app

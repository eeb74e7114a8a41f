"""
Broker CRM connector service — application entry point.
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.middleware import register_middleware
from config.settings import Settings, config
from connectors.dispatcher import ConnectorDispatcher
from connectors.encryption import TokenCipher
from connectors.oauth_state import StateSigner
from connectors.registry import ConnectorRegistry
from connectors.routes import register_error_handlers
from connectors.routes import router as connectors_router
from connectors.token_store import DatabaseTokenStore, InMemoryTokenStore, TokenStore
from database.session import create_tables, dispose_engine, get_engine, get_session_factory

logging.basicConfig(
    level=logging.DEBUG if config.debug else logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
    stream=sys.stdout,
)
for _noisy in ("httpcore", "httpx", "urllib3", "hpack"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


def build_store(settings: Settings) -> TokenStore:
    """Token store selected by ``TOKEN_STORE_BACKEND``."""
    backend = settings.token_store_backend.lower()
    if backend == "memory":
        return InMemoryTokenStore()
    if backend == "database":
        return DatabaseTokenStore(
            get_session_factory(settings.database_url),
            cipher=TokenCipher(settings.token_encryption_key or None),
        )
    raise ValueError(f"Unknown token store backend '{settings.token_store_backend}'")


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[TokenStore] = None,
    registry: Optional[ConnectorRegistry] = None,
) -> FastAPI:
    settings = settings or config
    store = store or build_store(settings)
    registry = registry or ConnectorRegistry.from_settings(settings)
    dispatcher = ConnectorDispatcher(
        registry,
        store,
        StateSigner(settings.oauth_state_secret, settings.oauth_state_ttl_seconds),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if isinstance(store, DatabaseTokenStore):
            await create_tables(get_engine(settings.database_url))
        configured = [p.value for p in registry.list_configured()]
        logger.info("Connectors configured: %s", ", ".join(configured) or "none")
        logger.info("Application ready to accept requests.")
        yield
        await dispatcher.close()
        if isinstance(store, DatabaseTokenStore):
            await dispose_engine(settings.database_url)
        logger.info("Connector dispatcher closed.")

    app = FastAPI(
        title="Broker CRM Connectors",
        version="1.0.0",
        description="OAuth2 connectors for Salesforce, Microsoft 365, Google Workspace and HubSpot.",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.dispatcher = dispatcher

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_middleware(app)
    register_error_handlers(app)

    # Routes
    app.include_router(connectors_router, prefix="/api/v1/connectors")

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=config.host,
        port=config.port,
        reload=config.debug,
        log_level="debug" if config.debug else "info",
    )

import logging

from core.config import settings
from core.logging_setup import setup_logging

setup_logging(settings.LOGGING_LEVEL)

logger = logging.getLogger(__name__)

logger.info(f"Configuration loaded. Log level set to: {settings.LOGGING_LEVEL}")

import httpx
from api.auth import create_auth_router
from api.diagnostics import create_diagnostics_router
from api.integrations import create_integrations_router
from auth.encryption import TokenCipher
from core import db
from core.config import Settings
from core.errors import StoreError
from core.http_client import close_http_client, get_http_client
from core.orm import create_engine, create_session_factory
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from integrations.salesforce import SalesforceOAuth
from services.credential_store import CredentialStore
from services.diagnostics import DiagnosticsService
from sqlalchemy.ext.asyncio import AsyncEngine


def create_app(
    app_settings: Settings,
    engine: AsyncEngine | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> FastAPI:
    """
    Builds the application from explicit settings. Tests pass their own
    engine and HTTP client; production uses the configured database and the
    shared client.
    """
    owns_engine = engine is None
    engine = engine or create_engine(app_settings.DATABASE_URL)
    owns_http_client = http_client is None
    http_client = http_client or get_http_client()

    session_factory = create_session_factory(engine)
    store = CredentialStore(session_factory, TokenCipher(app_settings.ENCRYPTION_KEY))
    diagnostics = DiagnosticsService(store)
    oauth = SalesforceOAuth(app_settings, http_client)

    app = FastAPI(
        title="Friction Intelligence Integrations API",
        description="Salesforce and Jira connections, credential storage and diagnostics.",
    )
    app.state.settings = app_settings
    app.state.store = store

    @app.on_event("startup")
    async def startup_event():
        """
        On application startup, initialize the database.
        This ensures the tables are ready before handling requests.
        """
        await db.init_db(engine)

    @app.on_event("shutdown")
    async def shutdown_event():
        if owns_http_client:
            await close_http_client()
        if owns_engine:
            await engine.dispose()

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError):
        logger.error(f"Unhandled store error on {request.url.path}: {exc}")
        return JSONResponse(
            status_code=500, content={"detail": "An internal server error occurred."}
        )

    app.include_router(create_auth_router(app_settings, oauth, store))
    app.include_router(
        create_integrations_router(
            app_settings, store, diagnostics, oauth, http_client
        )
    )
    app.include_router(create_diagnostics_router(diagnostics))

    return app


app = create_app(settings)

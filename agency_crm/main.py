"""
FastAPI application factory.

Assembles the app, registers all routers, and wires up lifecycle
events.  Database schema is managed by Alembic — NOT create_all.

The session registry is built here and hung on `app.state`; routes
reach it through the `get_session_registry` dependency.
"""

import logging

from fastapi import FastAPI

from agency_crm.controllers.admin_controller import router as admin_router
from agency_crm.controllers.auth_controller import router as auth_router
from agency_crm.core.config import settings
from agency_crm.core.database import async_session_factory, engine
# Importing the models registers every table on Base.metadata.
from agency_crm.models import Base  # noqa: F401
from agency_crm.services.activity_service import DatabaseActivityRecorder
from agency_crm.services.session_registry import SessionRegistry
from agency_crm.services.session_store import InMemorySessionStore

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(session_registry: SessionRegistry | None = None) -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.state.session_registry = session_registry or SessionRegistry(
        InMemorySessionStore(),
        activity_recorder=DatabaseActivityRecorder(async_session_factory),
    )

    # ── Register routers ─────────────────────────────────────────────
    app.include_router(auth_router)
    app.include_router(admin_router)

    # ── Startup / Shutdown ───────────────────────────────────────────
    @app.on_event("startup")
    async def on_startup() -> None:
        """Start the periodic expired-session sweep.

        NOTE: Database schema is managed by Alembic migrations.
        Run `alembic upgrade head` before starting the app.
        """
        app.state.session_registry.start_cleanup()

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        await app.state.session_registry.stop_cleanup()
        await engine.dispose()
        logger.info("Session sweep stopped, database engine disposed.")

    # ── Health check ─────────────────────────────────────────────────
    @app.get("/health", tags=["Health"])
    async def health():
        return {"status": "ok"}

    return app


app = create_app()

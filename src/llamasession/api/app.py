"""FastAPI application with lifespan, error mapping, and router mounting."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from llamasession.api.routes import health, session
from llamasession.core.config import AppSettings
from llamasession.core.exceptions import ErrorKind, LlamaSessionError
from llamasession.core.logging import configure_logging
from llamasession.model_providers import create_manager
from llamasession.session.manager import SessionLifecycleManager

log = structlog.get_logger(__name__)

CONFLICT_KINDS = {ErrorKind.PRECONDITION, ErrorKind.HISTORY_GUARD}


async def session_error_handler(request: Request, exc: LlamaSessionError) -> JSONResponse:
    status_code = 409 if exc.kind in CONFLICT_KINDS else 500
    return JSONResponse(status_code=status_code, content=exc.to_dict())


def create_app(
    settings: AppSettings | None = None,
    manager: SessionLifecycleManager | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    ``manager`` overrides the one built from settings, mainly for tests.
    """
    settings = settings or AppSettings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Initialize and tear down the session manager."""
        configure_logging(settings.log_level, json=settings.log_json)
        app.state.settings = settings
        app.state.manager = manager or create_manager(settings)
        if settings.api.autoload:
            try:
                await app.state.manager.load()
            except LlamaSessionError as exc:
                # keep serving so /status and /info can explain the failure
                log.error("api.autoload_failed", error=str(exc), kind=str(exc.kind))
        yield
        if app.state.manager.has_session:
            try:
                app.state.manager.dispose_session()
            except LlamaSessionError as exc:
                log.error("api.shutdown_dispose_failed", error=str(exc))

    app = FastAPI(
        title=settings.api.title,
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_exception_handler(LlamaSessionError, session_error_handler)
    app.include_router(health.router)
    app.include_router(session.router, prefix="/session")
    return app

"""Health, readiness, and diagnostic endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from llamasession.models.session import SessionInfo

router = APIRouter(tags=["health"])


@router.get("/health")
async def health() -> dict[str, str]:
    return {"status": "healthy"}


@router.get("/ready")
async def ready(request: Request) -> Any:
    manager = request.app.state.manager
    if manager.is_ready():
        return {"status": "ready"}
    status = manager.get_status()
    return JSONResponse(
        status_code=503,
        content={"status": "not_ready", "phase": str(status.phase), "message": status.message},
    )


@router.get("/status")
async def status(request: Request) -> dict[str, str]:
    """Return the manager's current phase and diagnostic message."""
    manager = request.app.state.manager
    current = manager.get_status()
    return {"id": manager.get_id(), "phase": str(current.phase), "message": current.message}


@router.get("/info", response_model=SessionInfo, response_model_exclude_none=True)
async def info(request: Request) -> SessionInfo:
    return request.app.state.manager.get_info()

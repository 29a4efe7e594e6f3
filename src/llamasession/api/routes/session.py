"""Chat session endpoints: load, prompt, history, dispose."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Request, Response
from pydantic import BaseModel

from llamasession.core.types import Gpu
from llamasession.models.session import ChatHistoryItem

router = APIRouter(tags=["session"])


class LoadRequest(BaseModel):
    model_path: Optional[str] = None
    system_prompt: Optional[str] = None
    gpu: Gpu = None
    history: Optional[list[ChatHistoryItem]] = None


class PromptRequest(BaseModel):
    text: str


class PromptResponse(BaseModel):
    response: str


@router.post("/load")
async def load(request: Request, body: LoadRequest) -> dict[str, str]:
    """Run the module, engine, model, and session stages in order.

    ``history`` optionally seeds the new session.
    """
    manager = request.app.state.manager
    status = await manager.load(body.model_path, body.system_prompt, body.gpu, body.history)
    return {"phase": str(status.phase), "message": status.message}


@router.post("/prompt", response_model=PromptResponse)
async def prompt(request: Request, body: PromptRequest) -> PromptResponse:
    answer = await request.app.state.manager.prompt(body.text)
    return PromptResponse(response=answer)


@router.get("/history", response_model=list[ChatHistoryItem])
async def get_history(request: Request) -> list[ChatHistoryItem]:
    return await request.app.state.manager.get_history()


@router.put("/history", status_code=204)
async def set_history(request: Request, items: list[ChatHistoryItem]) -> Response:
    await request.app.state.manager.set_history(items)
    return Response(status_code=204)


@router.delete("/history", status_code=204)
async def clear_history(request: Request) -> Response:
    request.app.state.manager.clear_history()
    return Response(status_code=204)


@router.delete("", status_code=204)
async def dispose(request: Request) -> Response:
    request.app.state.manager.dispose_session()
    return Response(status_code=204)

"""Session status, chat history, and diagnostic snapshot models."""

from __future__ import annotations

from enum import StrEnum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from llamasession.core.types import Gpu


class SessionPhase(StrEnum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    GENERATING = "generating"
    ERROR = "error"


DEFAULT_PHASE_MESSAGES: dict[SessionPhase, str] = {
    SessionPhase.UNINITIALIZED: "Provider uninitialized",
    SessionPhase.LOADING: "Model loading",
    SessionPhase.READY: "Model ready",
    SessionPhase.GENERATING: "Generating",
    SessionPhase.ERROR: "Provider encountered an error",
}


class SessionStatus(BaseModel):
    """Current coarse lifecycle phase plus a human-readable diagnostic."""

    model_config = {"frozen": True}

    phase: SessionPhase = SessionPhase.UNINITIALIZED
    message: str = DEFAULT_PHASE_MESSAGES[SessionPhase.UNINITIALIZED]


# ---------------------------------------------------------------------------
# Chat history
# ---------------------------------------------------------------------------

class SystemChatItem(BaseModel):
    type: Literal["system"] = "system"
    text: str


class UserChatItem(BaseModel):
    type: Literal["user"] = "user"
    text: str


class ModelChatItem(BaseModel):
    type: Literal["model"] = "model"
    response: list[str] = Field(default_factory=list)

    @property
    def text(self) -> str:
        return "".join(self.response)


ChatHistoryItem = Annotated[
    Union[SystemChatItem, UserChatItem, ModelChatItem],
    Field(discriminator="type"),
]

ChatHistory = TypeAdapter(list[ChatHistoryItem])


def parse_history(raw: object) -> list[SystemChatItem | UserChatItem | ModelChatItem]:
    """Validate a list of dicts (or models) into typed chat history items."""
    return ChatHistory.validate_python(raw)


# ---------------------------------------------------------------------------
# Provider options
# ---------------------------------------------------------------------------

class EngineOptions(BaseModel):
    """Options passed when configuring the inference engine."""

    log_level: str = "warn"
    build: str = "never"
    gpu: Gpu = "auto"
    progress_logs: bool = False
    n_gpu_layers: int = -1


class ContextOptions(BaseModel):
    """Fixed context configuration used when opening a session."""

    threads: int = 4
    seed: int = 1234
    sequences: int = 1


# ---------------------------------------------------------------------------
# Diagnostics
# ---------------------------------------------------------------------------

class DeviceMemoryState(BaseModel):
    total: int = 0
    used: int = 0
    free: int = 0


class ModelInfo(BaseModel):
    file_name: Optional[str] = None
    train_context_size: int = 0


class ContextInfo(BaseModel):
    batch_size: int = 0
    context_size: int = 0
    sequences_remaining: int = 0
    state_size_bytes: int = 0
    total_sequences: int = 0


class SessionInfo(BaseModel):
    """Best-effort diagnostic snapshot; absent sources leave fields unset."""

    id: str
    model: Optional[ModelInfo] = None
    context: Optional[ContextInfo] = None
    device_memory: Optional[DeviceMemoryState] = None
    devices: Optional[list[str]] = None

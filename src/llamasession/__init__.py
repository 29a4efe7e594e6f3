"""Lifecycle manager for a locally hosted LLM chat session."""

from __future__ import annotations

from llamasession.core.exceptions import (
    EngineLoadError,
    ErrorKind,
    HistoryGuardError,
    LlamaSessionError,
    ModelLoadError,
    ModuleLoadError,
    OperationError,
    PreconditionError,
    SessionInitError,
)
from llamasession.models.session import (
    ChatHistoryItem,
    ModelChatItem,
    SessionInfo,
    SessionPhase,
    SessionStatus,
    SystemChatItem,
    UserChatItem,
)
from llamasession.session.manager import SessionLifecycleManager

__version__ = "0.1.0"

__all__ = [
    "ChatHistoryItem",
    "EngineLoadError",
    "ErrorKind",
    "HistoryGuardError",
    "LlamaSessionError",
    "ModelChatItem",
    "ModelLoadError",
    "ModuleLoadError",
    "OperationError",
    "PreconditionError",
    "SessionInfo",
    "SessionInitError",
    "SessionLifecycleManager",
    "SessionPhase",
    "SessionStatus",
    "SystemChatItem",
    "UserChatItem",
]

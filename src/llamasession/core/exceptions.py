"""llama-session exception hierarchy.

Every error carries a structured ``kind`` and the ``stage`` it originated
from, so callers can branch on the kind instead of parsing the message. The
string form keeps the ``<stage>:<detail>`` shape that also lands in the
manager status message.
"""

from __future__ import annotations

from enum import StrEnum


class ErrorKind(StrEnum):
    MODULE_LOAD = "module_load"
    ENGINE_LOAD = "engine_load"
    MODEL_LOAD = "model_load"
    SESSION_INIT = "session_init"
    PRECONDITION = "precondition"
    OPERATION = "operation"
    HISTORY_GUARD = "history_guard"


class LlamaSessionError(Exception):
    """Base exception for all llama-session errors."""

    kind: ErrorKind = ErrorKind.OPERATION

    def __init__(self, stage: str, detail: str) -> None:
        self.stage = stage
        self.detail = detail
        super().__init__(f"{stage}:{detail}")

    def to_dict(self) -> dict[str, str]:
        return {"kind": str(self.kind), "stage": self.stage, "detail": self.detail}


class ModuleLoadError(LlamaSessionError):
    """The inference runtime module could not be acquired."""

    kind = ErrorKind.MODULE_LOAD


class EngineLoadError(LlamaSessionError):
    """The inference engine could not be configured."""

    kind = ErrorKind.ENGINE_LOAD


class ModelLoadError(LlamaSessionError):
    """Model weights could not be loaded."""

    kind = ErrorKind.MODEL_LOAD


class SessionInitError(LlamaSessionError):
    """Context or chat session could not be created."""

    kind = ErrorKind.SESSION_INIT


class PreconditionError(LlamaSessionError):
    """An operation was called before its dependencies were satisfied.

    Always raised before the engine is touched.
    """

    kind = ErrorKind.PRECONDITION


class OperationError(LlamaSessionError):
    """The engine failed during prompt or history handling on a live session."""

    kind = ErrorKind.OPERATION


class HistoryGuardError(LlamaSessionError):
    """Dispose or clear was requested without a session or sequence."""

    kind = ErrorKind.HISTORY_GUARD

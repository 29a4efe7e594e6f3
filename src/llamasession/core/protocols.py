"""Protocol interfaces for the inference engine collaborator.

The lifecycle manager only ever talks to the engine through these Protocols:
structural typing, no inheritance required, easy to fake in tests.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Protocol, runtime_checkable

from llamasession.core.types import TokenChunkCallback, TokenIds
from llamasession.models.session import (
    ChatHistoryItem,
    ContextOptions,
    DeviceMemoryState,
    EngineOptions,
)


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

@runtime_checkable
class ICancellationToken(Protocol):
    """Signal polled by the engine to abort an in-flight generation."""

    @property
    def cancelled(self) -> bool: ...

    def cancel(self) -> None: ...


# ---------------------------------------------------------------------------
# Handles
# ---------------------------------------------------------------------------

@runtime_checkable
class IModuleHandle(Protocol):
    """Runtime access point for the inference library."""

    @property
    def name(self) -> str: ...


@runtime_checkable
class IEngineHandle(Protocol):
    """A configured engine instance bound to a device."""

    def device_memory_state(self) -> DeviceMemoryState: ...

    def device_names(self) -> list[str]: ...


@runtime_checkable
class IModelHandle(Protocol):
    """Loaded weights bound to a file path. Metadata is read-only."""

    @property
    def file_name(self) -> str | None: ...

    @property
    def train_context_size(self) -> int: ...


@runtime_checkable
class IContextHandle(Protocol):
    """Evaluation context created from a model."""

    @property
    def batch_size(self) -> int: ...

    @property
    def context_size(self) -> int: ...

    @property
    def sequences_remaining(self) -> int: ...

    @property
    def state_size_bytes(self) -> int: ...

    @property
    def total_sequences(self) -> int: ...

    def dispose(self) -> None: ...


@runtime_checkable
class ISessionHandle(Protocol):
    """Conversation bound to one context sequence, holding the chat history."""

    @property
    def sequence(self) -> Any | None: ...

    @property
    def disposed(self) -> bool: ...

    async def generate(
        self,
        text: str,
        *,
        on_token_chunk: TokenChunkCallback | None = None,
        cancellation: ICancellationToken | None = None,
    ) -> str: ...

    def detokenize(self, tokens: TokenIds) -> str: ...

    async def export_history(self) -> list[ChatHistoryItem]: ...

    async def import_history(self, items: Sequence[ChatHistoryItem]) -> None: ...

    def clear_sequence_history(self) -> None: ...

    def dispose(self) -> None: ...


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------

@runtime_checkable
class IInferenceEngineProvider(Protocol):
    """Factory for the module → engine → model → context → session chain."""

    async def acquire_module(self) -> IModuleHandle: ...

    async def configure_engine(
        self, module: IModuleHandle, options: EngineOptions
    ) -> IEngineHandle: ...

    async def load_model(self, engine: IEngineHandle, path: str) -> IModelHandle: ...

    async def create_context(
        self, model: IModelHandle, options: ContextOptions
    ) -> IContextHandle: ...

    async def open_session(
        self, context: IContextHandle, system_prompt: str
    ) -> ISessionHandle: ...

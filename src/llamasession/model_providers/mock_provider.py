"""Mock inference provider for local development and testing.

Returns canned responses streamed word by word. No real model is loaded.
Every provider call is recorded in ``calls`` and any of them can be made to
fail with ``fail()``.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Sequence
from pathlib import Path

from llamasession.core.protocols import ICancellationToken
from llamasession.core.types import TokenChunkCallback, TokenIds
from llamasession.models.session import (
    ChatHistoryItem,
    ContextOptions,
    DeviceMemoryState,
    EngineOptions,
    ModelChatItem,
    SystemChatItem,
    UserChatItem,
)

_CHUNK_RE = re.compile(r"\S+\s*|\s+")

MOCK_TRAIN_CONTEXT_SIZE = 4096
MOCK_BATCH_SIZE = 512
MOCK_VRAM_TOTAL = 8 * 1024**3
MOCK_MODEL_BYTES = 512 * 1024**2


class MockModule:
    name = "mock"


class MockEngine:
    def __init__(self, options: EngineOptions) -> None:
        self.options = options
        self.used = 0

    def device_memory_state(self) -> DeviceMemoryState:
        total = MOCK_VRAM_TOTAL if self.options.gpu else 0
        used = min(self.used, total)
        return DeviceMemoryState(total=total, used=used, free=total - used)

    def device_names(self) -> list[str]:
        if not self.options.gpu:
            return []
        return [f"Mock {self.options.gpu} device"]


class MockModel:
    """Holds a growing word-level vocabulary so chunks round-trip through ids."""

    def __init__(self, engine: MockEngine, path: str) -> None:
        self.engine = engine
        self.path = path
        self._vocab: list[str] = []
        self._index: dict[str, int] = {}

    @property
    def file_name(self) -> str | None:
        return Path(self.path).name

    @property
    def train_context_size(self) -> int:
        return MOCK_TRAIN_CONTEXT_SIZE

    def tokenize(self, text: str) -> list[int]:
        ids = []
        for piece in _CHUNK_RE.findall(text):
            if piece not in self._index:
                self._index[piece] = len(self._vocab)
                self._vocab.append(piece)
            ids.append(self._index[piece])
        return ids

    def detokenize(self, tokens: TokenIds) -> str:
        return "".join(self._vocab[t] for t in tokens)


class MockSequence:
    def __init__(self) -> None:
        self.tokens: list[int] = []


class MockContext:
    def __init__(self, model: MockModel, options: ContextOptions) -> None:
        self.model = model
        self.options = options
        self._sequences: list[MockSequence] = []
        self.disposed = False

    def get_sequence(self) -> MockSequence:
        if self.disposed:
            raise RuntimeError("Context is disposed")
        if self.sequences_remaining <= 0:
            raise RuntimeError("No sequences left")
        sequence = MockSequence()
        self._sequences.append(sequence)
        return sequence

    def release_sequence(self, sequence: MockSequence) -> None:
        if sequence in self._sequences:
            self._sequences.remove(sequence)

    @property
    def batch_size(self) -> int:
        return MOCK_BATCH_SIZE

    @property
    def context_size(self) -> int:
        return self.model.train_context_size

    @property
    def sequences_remaining(self) -> int:
        return self.total_sequences - len(self._sequences)

    @property
    def state_size_bytes(self) -> int:
        return 4 * sum(len(s.tokens) for s in self._sequences)

    @property
    def total_sequences(self) -> int:
        return self.options.sequences

    def dispose(self) -> None:
        self._sequences.clear()
        self.disposed = True


class MockChatSession:
    def __init__(
        self,
        provider: MockInferenceProvider,
        context: MockContext,
        system_prompt: str,
    ) -> None:
        self._provider = provider
        self._context = context
        self._system_prompt = system_prompt
        self._sequence: MockSequence | None = context.get_sequence()
        self._history: list[ChatHistoryItem] = [SystemChatItem(text=system_prompt)]

    @property
    def sequence(self) -> MockSequence | None:
        return self._sequence

    @property
    def disposed(self) -> bool:
        return self._sequence is None

    def _ensure_live(self) -> MockSequence:
        if self._sequence is None:
            raise RuntimeError("Chat session is disposed")
        return self._sequence

    async def generate(
        self,
        text: str,
        *,
        on_token_chunk: TokenChunkCallback | None = None,
        cancellation: ICancellationToken | None = None,
    ) -> str:
        self._provider._record("generate")
        sequence = self._ensure_live()
        model = self._context.model
        response = self._provider.response_for(text)

        chunks: list[str] = []
        for index, piece in enumerate(_CHUNK_RE.findall(response)):
            if cancellation is not None and cancellation.cancelled:
                raise RuntimeError("Generation aborted")
            self._provider._raise_if_failing("generate", chunk_index=index)
            tokens = model.tokenize(piece)
            sequence.tokens.extend(tokens)
            chunks.append(piece)
            if on_token_chunk is not None:
                on_token_chunk(tokens)
            await asyncio.sleep(0)
        self._provider._raise_if_failing("generate", chunk_index=len(chunks))

        answer = "".join(chunks)
        self._history.append(UserChatItem(text=text))
        self._history.append(ModelChatItem(response=[answer]))
        return answer

    def detokenize(self, tokens: TokenIds) -> str:
        return self._context.model.detokenize(tokens)

    async def export_history(self) -> list[ChatHistoryItem]:
        self._provider._record("export_history")
        self._ensure_live()
        self._provider._raise_if_failing("export_history")
        return [item.model_copy(deep=True) for item in self._history]

    async def import_history(self, items: Sequence[ChatHistoryItem]) -> None:
        self._provider._record("import_history")
        self._ensure_live()
        self._provider._raise_if_failing("import_history")
        self._history = [item.model_copy(deep=True) for item in items]

    def clear_sequence_history(self) -> None:
        self._provider._record("clear_sequence_history")
        sequence = self._ensure_live()
        sequence.tokens.clear()
        self._history = [SystemChatItem(text=self._system_prompt)]

    def dispose(self) -> None:
        self._provider._record("dispose")
        if self._sequence is not None:
            self._context.release_sequence(self._sequence)
            self._sequence = None


class MockInferenceProvider:
    """IInferenceEngineProvider that streams deterministic mock responses."""

    def __init__(
        self,
        default_response: str = "Mock LLM response",
        *,
        require_existing_files: bool = False,
    ) -> None:
        self._default_response = default_response
        self._canned_responses: dict[str, str] = {}
        self._require_existing_files = require_existing_files
        self._failures: dict[str, tuple[str, int]] = {}
        self.calls: list[str] = []
        self.contexts: list[MockContext] = []

    def set_response(self, prompt_contains: str, response: str) -> None:
        """Register a canned response for prompts containing a keyword."""
        self._canned_responses[prompt_contains] = response

    def response_for(self, text: str) -> str:
        for keyword, response in self._canned_responses.items():
            if keyword in text:
                return response
        return self._default_response

    def fail(self, operation: str, message: str = "mock failure", *, after_chunks: int = 0) -> None:
        """Make ``operation`` raise ``RuntimeError(message)``.

        For ``generate`` the failure fires once ``after_chunks`` chunks have
        been streamed.
        """
        self._failures[operation] = (message, after_chunks)

    def clear_failures(self) -> None:
        self._failures.clear()

    def _record(self, operation: str) -> None:
        self.calls.append(operation)

    def _raise_if_failing(self, operation: str, chunk_index: int = 0) -> None:
        failure = self._failures.get(operation)
        if failure is None:
            return
        message, after_chunks = failure
        if chunk_index >= after_chunks:
            raise RuntimeError(message)

    async def acquire_module(self) -> MockModule:
        self._record("acquire_module")
        self._raise_if_failing("acquire_module")
        return MockModule()

    async def configure_engine(self, module: MockModule, options: EngineOptions) -> MockEngine:
        self._record("configure_engine")
        self._raise_if_failing("configure_engine")
        return MockEngine(options)

    async def load_model(self, engine: MockEngine, path: str) -> MockModel:
        self._record("load_model")
        self._raise_if_failing("load_model")
        if self._require_existing_files and not Path(path).is_file():
            raise FileNotFoundError(f"Model file not found: {path}")
        engine.used += MOCK_MODEL_BYTES
        return MockModel(engine, path)

    async def create_context(self, model: MockModel, options: ContextOptions) -> MockContext:
        self._record("create_context")
        self._raise_if_failing("create_context")
        context = MockContext(model, options)
        self.contexts.append(context)
        return context

    async def open_session(self, context: MockContext, system_prompt: str) -> MockChatSession:
        self._record("open_session")
        self._raise_if_failing("open_session")
        return MockChatSession(self, context, system_prompt)

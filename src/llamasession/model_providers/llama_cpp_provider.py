"""In-process inference provider via llama-cpp-python.

Loads GGUF weights directly into the process. ``llama_cpp`` is imported by
the module stage, not at import time, so the rest of the package works
without the native extension installed.

Blocking llama.cpp calls run in a worker thread; streamed token chunks are
handed back to the event loop so token callbacks run on the caller's loop,
in order.
"""

from __future__ import annotations

import asyncio
import contextlib
import importlib
import os
import threading
from collections.abc import Callable, Sequence
from pathlib import Path
from types import ModuleType
from typing import Any

import structlog

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

log = structlog.get_logger(__name__)

# Used when the GGUF file ships without ``tokenizer.chat_template``.
CHATML_TEMPLATE = (
    "{% for message in messages %}"
    "{{ '<|im_start|>' + message['role'] + '\n' + message['content'] + '<|im_end|>\n' }}"
    "{% endfor %}"
    "{% if add_generation_prompt %}{{ '<|im_start|>assistant\n' }}{% endif %}"
)
CHATML_STOP = "<|im_end|>"

VERBOSE_LOG_LEVELS = {"info", "log", "debug"}


def _history_to_messages(history: Sequence[ChatHistoryItem]) -> list[dict[str, str]]:
    messages = []
    for item in history:
        if isinstance(item, SystemChatItem):
            messages.append({"role": "system", "content": item.text})
        elif isinstance(item, UserChatItem):
            messages.append({"role": "user", "content": item.text})
        else:
            messages.append({"role": "assistant", "content": item.text})
    return messages


def _host_memory() -> DeviceMemoryState:
    """Physical memory of the host, as reported by sysconf (zeros if unavailable)."""
    try:
        page = os.sysconf("SC_PAGE_SIZE")
        total = os.sysconf("SC_PHYS_PAGES") * page
        free = os.sysconf("SC_AVPHYS_PAGES") * page
    except (AttributeError, ValueError, OSError):
        return DeviceMemoryState()
    return DeviceMemoryState(total=total, used=total - free, free=free)


class LlamaCppModule:
    def __init__(self, module: ModuleType) -> None:
        self.module = module

    @property
    def name(self) -> str:
        return f"llama_cpp {getattr(self.module, '__version__', 'unknown')}"


class LlamaCppEngine:
    """Engine settings shared by every model loaded through it."""

    def __init__(self, module: LlamaCppModule, options: EngineOptions) -> None:
        self.module = module
        self.options = options

    @property
    def verbose(self) -> bool:
        return self.options.log_level in VERBOSE_LOG_LEVELS

    @property
    def gpu_offload(self) -> bool:
        if self.options.gpu is False:
            return False
        return bool(self.module.module.llama_supports_gpu_offload())

    @property
    def n_gpu_layers(self) -> int:
        return self.options.n_gpu_layers if self.gpu_offload else 0

    def device_memory_state(self) -> DeviceMemoryState:
        # llama.cpp exposes no VRAM query through the Python bindings.
        return _host_memory()

    def device_names(self) -> list[str]:
        names = ["CPU"]
        if self.gpu_offload:
            names.insert(0, f"GPU ({self.options.gpu})")
        return names


class LlamaCppModel:
    """Vocabulary-only load of a GGUF file, enough to read its metadata."""

    def __init__(self, engine: LlamaCppEngine, path: str, vocab: Any) -> None:
        self.engine = engine
        self.path = path
        self.metadata: dict[str, str] = dict(getattr(vocab, "metadata", {}) or {})

    @property
    def file_name(self) -> str | None:
        return Path(self.path).name

    @property
    def train_context_size(self) -> int:
        arch = self.metadata.get("general.architecture", "llama")
        return int(self.metadata.get(f"{arch}.context_length", 0))


class LlamaCppContext:
    """A full ``llama_cpp.Llama`` instance. llama-cpp-python serves one sequence."""

    def __init__(self, model: LlamaCppModel, options: ContextOptions, llm: Any) -> None:
        self.model = model
        self.options = options
        self.llm = llm
        self.in_use = 0

    @property
    def batch_size(self) -> int:
        return int(self.llm.n_batch)

    @property
    def context_size(self) -> int:
        return int(self.llm.n_ctx())

    @property
    def total_sequences(self) -> int:
        return 1

    @property
    def sequences_remaining(self) -> int:
        return self.total_sequences - self.in_use

    @property
    def state_size_bytes(self) -> int:
        lib = self.model.engine.module.module
        get_size = getattr(lib, "llama_state_get_size", None) or lib.llama_get_state_size
        return int(get_size(self.llm.ctx))

    def dispose(self) -> None:
        close = getattr(self.llm, "close", None)
        if close is not None:
            close()


class LlamaCppChatSession:
    def __init__(self, context: LlamaCppContext, system_prompt: str) -> None:
        if context.sequences_remaining <= 0:
            raise RuntimeError("No context sequence available")
        context.in_use += 1
        self._context = context
        self._system_prompt = system_prompt
        self._sequence: Any | None = context.llm
        self._history: list[ChatHistoryItem] = [SystemChatItem(text=system_prompt)]
        self._formatter = self._build_formatter()
        self._stop = threading.Event()
        self._generating = False
        self._reset_pending = False

    def _build_formatter(self) -> Callable[..., Any]:
        lib = self._context.model.engine.module.module
        llm = self._context.llm
        template = self._context.model.metadata.get("tokenizer.chat_template", CHATML_TEMPLATE)
        eos = llm.detokenize([llm.token_eos()], special=True).decode("utf-8", errors="ignore")
        bos = llm.detokenize([llm.token_bos()], special=True).decode("utf-8", errors="ignore")
        chat_format = importlib.import_module(f"{lib.__name__}.llama_chat_format")
        return chat_format.Jinja2ChatFormatter(template=template, eos_token=eos, bos_token=bos)

    @property
    def sequence(self) -> Any | None:
        return self._sequence

    @property
    def disposed(self) -> bool:
        return self._sequence is None

    def _ensure_live(self) -> Any:
        if self._sequence is None:
            raise RuntimeError("Chat session is disposed")
        return self._sequence

    def detokenize(self, tokens: TokenIds) -> str:
        return self._context.llm.detokenize(list(tokens)).decode("utf-8", errors="replace")

    def _stop_token_ids(self, llm: Any, stops: Sequence[str]) -> set[int]:
        ids = {llm.token_eos()}
        for stop in stops:
            tokens = llm.tokenize(stop.encode("utf-8"), add_bos=False, special=True)
            if len(tokens) == 1:
                ids.add(tokens[0])
        return ids

    def _generate_blocking(
        self,
        messages: list[dict[str, str]],
        emit: Callable[[list[int]], None],
        cancellation: ICancellationToken | None,
    ) -> str:
        """Run generation to completion, emitting token chunks as they decode.

        The returned text is always the concatenation of the emitted chunks.
        """
        llm = self._ensure_live()
        formatted = self._formatter(messages=messages)
        declared = formatted.stop if isinstance(formatted.stop, list) else [formatted.stop]
        stops = [s for s in declared if s] + [CHATML_STOP]
        stop_ids = self._stop_token_ids(llm, stops)
        prompt_tokens = llm.tokenize(formatted.prompt.encode("utf-8"), add_bos=False, special=True)
        budget = llm.n_ctx() - len(prompt_tokens)
        if budget <= 0:
            raise RuntimeError(f"Prompt of {len(prompt_tokens)} tokens exceeds context size {llm.n_ctx()}")

        produced = 0
        pending: list[int] = []
        text = ""
        for token in llm.generate(prompt_tokens, reset=True):
            if self._stop.is_set() or (cancellation is not None and cancellation.cancelled):
                raise RuntimeError("Generation aborted")
            if token in stop_ids:
                break
            pending.append(token)
            try:
                piece = llm.detokenize(pending).decode("utf-8")
            except UnicodeDecodeError:
                continue  # partial multi-byte character
            if any(stop and stop in text + piece for stop in stops):
                break
            emit(pending)
            text += piece
            produced += len(pending)
            pending = []
            if produced >= budget:
                break
        return text

    async def generate(
        self,
        text: str,
        *,
        on_token_chunk: TokenChunkCallback | None = None,
        cancellation: ICancellationToken | None = None,
    ) -> str:
        self._ensure_live()
        messages = _history_to_messages(self._history) + [{"role": "user", "content": text}]

        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[object] = asyncio.Queue()
        finished = object()

        def emit(tokens: list[int]) -> None:
            loop.call_soon_threadsafe(queue.put_nowait, list(tokens))

        def run() -> str:
            try:
                return self._generate_blocking(messages, emit, cancellation)
            finally:
                loop.call_soon_threadsafe(queue.put_nowait, finished)

        self._stop.clear()
        self._generating = True
        worker = asyncio.ensure_future(asyncio.to_thread(run))
        try:
            try:
                while (item := await queue.get()) is not finished:
                    if on_token_chunk is not None:
                        on_token_chunk(item)  # type: ignore[arg-type]
            except BaseException:
                if cancellation is not None:
                    cancellation.cancel()
                self._stop.set()
                # the worker owns the llama context until it returns
                with contextlib.suppress(BaseException):
                    await asyncio.shield(worker)
                raise
            answer = await worker
        finally:
            self._generating = False
            if self._reset_pending:
                self._reset_pending = False
                self._context.llm.reset()

        self._history.append(UserChatItem(text=text))
        self._history.append(ModelChatItem(response=[answer]))
        return answer

    async def export_history(self) -> list[ChatHistoryItem]:
        self._ensure_live()
        return [item.model_copy(deep=True) for item in self._history]

    async def import_history(self, items: Sequence[ChatHistoryItem]) -> None:
        llm = self._ensure_live()
        await asyncio.to_thread(llm.reset)
        self._history = [item.model_copy(deep=True) for item in items]

    def clear_sequence_history(self) -> None:
        llm = self._ensure_live()
        llm.reset()
        self._history = [SystemChatItem(text=self._system_prompt)]

    def dispose(self) -> None:
        """Release the sequence. A running generation is stopped and the
        llama context is reset once its worker thread has returned."""
        if self._sequence is None:
            return
        llm, self._sequence = self._sequence, None
        self._context.in_use -= 1
        if self._generating:
            self._stop.set()
            self._reset_pending = True
        else:
            llm.reset()


class LlamaCppProvider:
    """IInferenceEngineProvider backed by llama-cpp-python."""

    def __init__(self, module_name: str = "llama_cpp") -> None:
        self._module_name = module_name

    async def acquire_module(self) -> LlamaCppModule:
        module = await asyncio.to_thread(importlib.import_module, self._module_name)
        log.info("llama_cpp.module_acquired", version=getattr(module, "__version__", None))
        return LlamaCppModule(module)

    async def configure_engine(self, module: LlamaCppModule, options: EngineOptions) -> LlamaCppEngine:
        if options.build != "never":
            log.warning("llama_cpp.build_policy_ignored", build=options.build)
        engine = LlamaCppEngine(module, options)
        log.info("llama_cpp.engine_configured", gpu_offload=engine.gpu_offload, verbose=engine.verbose)
        return engine

    async def load_model(self, engine: LlamaCppEngine, path: str) -> LlamaCppModel:
        if not Path(path).is_file():
            raise FileNotFoundError(f"Model file not found: {path}")
        vocab = await asyncio.to_thread(
            engine.module.module.Llama,
            model_path=path,
            vocab_only=True,
            verbose=engine.verbose,
        )
        return LlamaCppModel(engine, path, vocab)

    async def create_context(self, model: LlamaCppModel, options: ContextOptions) -> LlamaCppContext:
        engine = model.engine
        llm = await asyncio.to_thread(
            engine.module.module.Llama,
            model_path=model.path,
            n_ctx=0,  # trained context size
            n_threads=options.threads,
            n_threads_batch=options.threads,
            seed=options.seed,
            n_gpu_layers=engine.n_gpu_layers,
            verbose=engine.verbose,
        )
        return LlamaCppContext(model, options, llm)

    async def open_session(self, context: LlamaCppContext, system_prompt: str) -> LlamaCppChatSession:
        return LlamaCppChatSession(context, system_prompt)

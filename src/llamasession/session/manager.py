"""SessionLifecycleManager — sequences engine setup and mediates a chat session.

Lifecycle::

    uninitialized → loading → ready ⇄ generating
                        ↘      ↘        ↘
                              error

Setup runs in four dependent stages (module → engine → model → session).
Each stage checks that the previous handle exists before the provider is
touched; a guard failure is a ``PreconditionError`` and never reaches the
engine. Status is always updated before an error is raised.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable, Mapping
from typing import Any, TypeVar

import structlog
from pydantic import ValidationError

from llamasession.core.config import EngineConfig
from llamasession.core.exceptions import (
    EngineLoadError,
    HistoryGuardError,
    LlamaSessionError,
    ModelLoadError,
    ModuleLoadError,
    OperationError,
    PreconditionError,
    SessionInitError,
)
from llamasession.core.protocols import (
    IContextHandle,
    IEngineHandle,
    IInferenceEngineProvider,
    IModelHandle,
    IModuleHandle,
    ISessionHandle,
)
from llamasession.core.types import Gpu, ManagerId, TokenCallback, TokenIds
from llamasession.models.session import (
    DEFAULT_PHASE_MESSAGES,
    ChatHistoryItem,
    ContextInfo,
    ContextOptions,
    EngineOptions,
    ModelInfo,
    SessionInfo,
    SessionPhase,
    SessionStatus,
    parse_history,
)
from llamasession.session.cancellation import CancellationToken

log = structlog.get_logger(__name__)

H = TypeVar("H")


class SessionLifecycleManager:
    """Owns one engine/model/session chain and its lifecycle state.

    Calls on a single instance must be serialized by the caller; nothing here
    locks.
    """

    def __init__(
        self,
        provider: IInferenceEngineProvider,
        *,
        config: EngineConfig | None = None,
    ) -> None:
        self._config = config or EngineConfig()
        self._provider = provider
        self._id: ManagerId = str(uuid.uuid4())
        self._log = log.bind(manager_id=self._id)
        self._cancellation = CancellationToken()
        self._rearm_cancellation = self._config.rearm_cancellation

        self._module: IModuleHandle | None = None
        self._engine: IEngineHandle | None = None
        self._model: IModelHandle | None = None
        self._context: IContextHandle | None = None
        self._session: ISessionHandle | None = None

        self._status = SessionStatus()
        self._set_status(SessionPhase.UNINITIALIZED, "Provider not initialized")
        self._log.info("session_manager.created", provider=type(provider).__name__)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def _set_status(self, phase: SessionPhase, message: str | None = None) -> None:
        if message is None:
            message = DEFAULT_PHASE_MESSAGES[phase]
        self._status = SessionStatus(phase=phase, message=message)

    def get_status(self) -> SessionStatus:
        return self._status

    def is_ready(self) -> bool:
        return self._status.phase == SessionPhase.READY

    def get_id(self) -> ManagerId:
        return self._id

    @property
    def cancellation(self) -> CancellationToken:
        return self._cancellation

    @property
    def has_session(self) -> bool:
        return self._session is not None

    # ------------------------------------------------------------------
    # Failure helpers
    # ------------------------------------------------------------------

    def _fail(
        self,
        error_cls: type[LlamaSessionError],
        stage: str,
        cause: BaseException | str,
    ) -> LlamaSessionError:
        """Move to the error phase and build the matching exception."""
        detail = str(cause) or type(cause).__name__
        self._set_status(SessionPhase.ERROR, f"{stage}:{detail}")
        return error_cls(stage, detail)

    def _guard(
        self,
        stage: str,
        satisfied: bool,
        reason: str,
        error_cls: type[LlamaSessionError] = PreconditionError,
    ) -> None:
        if not satisfied:
            self._log.warning("session_manager.guard_failed", stage=stage, reason=reason)
            raise self._fail(error_cls, stage, reason)

    def _require(
        self,
        stage: str,
        handle: H | None,
        reason: str,
        error_cls: type[LlamaSessionError] = PreconditionError,
    ) -> H:
        self._guard(stage, handle is not None, reason, error_cls)
        return handle  # type: ignore[return-value]

    def abort_active_operation(self) -> None:
        """Signal cancellation and tear down the session, if any.

        Partial generation state is not resumable, so any data-operation
        failure drops the whole session.
        """
        self._cancellation.cancel()
        session, self._session = self._session, None
        if session is None:
            return
        try:
            session.dispose()
        except Exception:
            # the caller sees the failure that triggered the abort
            self._log.exception("session_manager.abort_dispose_failed")

    # ------------------------------------------------------------------
    # Setup stages
    # ------------------------------------------------------------------

    async def load_module(self) -> IModuleHandle:
        """Stage 1: acquire the inference runtime module."""
        stage = "loadModule"
        self._set_status(SessionPhase.LOADING, "Loading inference module")
        try:
            module = await self._provider.acquire_module()
        except Exception as exc:
            self._log.exception("session_manager.stage_failed", stage=stage)
            raise self._fail(ModuleLoadError, stage, exc) from exc

        self._module = module
        self._set_status(SessionPhase.READY, "Inference module loaded")
        self._log.info("session_manager.module_loaded", module=module.name)
        return module

    async def load_engine(self, gpu: Gpu = None) -> IEngineHandle:
        """Stage 2: configure the engine. ``gpu=None`` falls back to config, then "auto"."""
        stage = "loadLlama"
        module = self._require(stage, self._module, "Inference module not loaded")

        preference = gpu if gpu is not None else self._config.gpu
        options = EngineOptions(
            log_level=self._config.log_level,
            build=self._config.build,
            gpu=preference if preference is not None else "auto",
            n_gpu_layers=self._config.n_gpu_layers,
        )
        self._set_status(SessionPhase.LOADING, f"Loading engine (gpu={options.gpu})")
        try:
            engine = await self._provider.configure_engine(module, options)
        except Exception as exc:
            self._log.exception("session_manager.stage_failed", stage=stage)
            raise self._fail(EngineLoadError, stage, exc) from exc

        if self._engine is not None:
            self._log.warning("session_manager.engine_replaced")
        self._engine = engine
        self._set_status(SessionPhase.READY, "Engine loaded")
        self._log.info("session_manager.engine_loaded", gpu=options.gpu)
        return engine

    load_llama = load_engine

    async def load_model(self, path: str) -> IModelHandle:
        """Stage 3: load weights from ``path``."""
        stage = "loadModel"
        self._guard(stage, bool(path and path.strip()), "No model path provided")
        engine = self._require(stage, self._engine, "Engine not loaded")

        self._set_status(SessionPhase.LOADING, f"Loading model from {path}")
        try:
            model = await self._provider.load_model(engine, path)
        except Exception as exc:
            self._log.exception("session_manager.stage_failed", stage=stage, path=path)
            raise self._fail(ModelLoadError, stage, exc) from exc

        self._model = model
        self._set_status(SessionPhase.READY, f"Model loaded from {path}")
        self._log.info(
            "session_manager.model_loaded",
            file_name=model.file_name,
            train_context_size=model.train_context_size,
        )
        return model

    async def init_session(
        self,
        system_prompt: str | None = None,
        history: Iterable[ChatHistoryItem | Mapping[str, Any]] | None = None,
    ) -> ISessionHandle:
        """Stage 4: create a context from the model and open a chat session on it.

        ``history`` seeds the new session. A previous session and its context
        are released once the new pair is up; if opening fails, the new
        context is released and the previous pair is left untouched.
        """
        stage = "initSession"
        model = self._require(stage, self._model, "Model not loaded")
        seed = self._parse_history(stage, history) if history is not None else None

        prompt = self._config.system_prompt if system_prompt is None else system_prompt
        options = ContextOptions(
            threads=self._config.context_threads,
            seed=self._config.context_seed,
            sequences=self._config.context_sequences,
        )
        self._set_status(SessionPhase.LOADING, "Instantiating chat session")
        try:
            context = await self._provider.create_context(model, options)
        except Exception as exc:
            self._log.exception("session_manager.stage_failed", stage=stage)
            raise self._fail(SessionInitError, stage, exc) from exc

        session: ISessionHandle | None = None
        try:
            session = await self._provider.open_session(context, prompt)
            if seed is not None:
                await session.import_history(seed)
        except Exception as exc:
            self._log.exception("session_manager.stage_failed", stage=stage)
            self._release(session, context)
            raise self._fail(SessionInitError, stage, exc) from exc

        if self._session is not None or self._context is not None:
            self._log.info("session_manager.session_replaced")
            self._release(self._session, self._context)
        self._context = context
        self._session = session
        self._set_status(SessionPhase.READY)
        self._log.info(
            "session_manager.session_ready",
            context_size=context.context_size,
            threads=options.threads,
            seed=options.seed,
            history_items=len(seed) if seed is not None else 0,
        )
        return session

    def _release(self, session: ISessionHandle | None, context: IContextHandle | None) -> None:
        """Dispose a session/context pair that is being dropped. Errors are logged."""
        for handle in (session, context):
            if handle is None:
                continue
            try:
                handle.dispose()
            except Exception:
                self._log.exception("session_manager.release_failed", handle=type(handle).__name__)

    async def load(
        self,
        model_path: str | None = None,
        system_prompt: str | None = None,
        gpu: Gpu = None,
        history: Iterable[ChatHistoryItem | Mapping[str, Any]] | None = None,
    ) -> SessionStatus:
        """Run all four stages in order, stopping at the first failure."""
        await self.load_module()
        await self.load_engine(gpu)
        await self.load_model(model_path if model_path is not None else self._config.model_path)
        await self.init_session(system_prompt, history)
        return self._status

    # ------------------------------------------------------------------
    # Session operations
    # ------------------------------------------------------------------

    async def prompt(self, text: str, on_token: TokenCallback | None = None) -> str:
        """Send ``text`` to the session and return the full response.

        ``on_token`` receives each decoded chunk in generation order. On
        failure the session is aborted and the partial text is discarded.
        """
        stage = "prompt"
        session = self._require(stage, self._session, "No chat session loaded")

        if self._rearm_cancellation and self._cancellation.cancelled:
            self._cancellation.reset()

        def on_chunk(tokens: TokenIds) -> None:
            if on_token is None:
                return
            if self._session is not session or session.disposed:
                return
            on_token(session.detokenize(tokens))

        self._set_status(SessionPhase.GENERATING)
        try:
            answer = await session.generate(
                text, on_token_chunk=on_chunk, cancellation=self._cancellation
            )
        except Exception as exc:
            self._log.exception("session_manager.operation_failed", stage=stage)
            self.abort_active_operation()
            raise self._fail(OperationError, stage, exc) from exc

        self._set_status(SessionPhase.READY)
        return answer

    async def get_history(self) -> list[ChatHistoryItem]:
        stage = "getHistory"
        session = self._require(stage, self._session, "No chat session loaded")

        self._set_status(SessionPhase.GENERATING)
        try:
            history = await session.export_history()
        except Exception as exc:
            self._log.exception("session_manager.operation_failed", stage=stage)
            self.abort_active_operation()
            raise self._fail(OperationError, stage, exc) from exc

        self._set_status(SessionPhase.READY, "History retrieved")
        return list(history)

    def _parse_history(
        self, stage: str, items: Iterable[ChatHistoryItem | Mapping[str, Any]]
    ) -> list[ChatHistoryItem]:
        try:
            return parse_history(list(items))
        except ValidationError as exc:
            reason = f"Invalid chat history ({exc.error_count()} errors)"
            self._log.warning("session_manager.guard_failed", stage=stage, reason=reason)
            raise self._fail(PreconditionError, stage, reason) from exc

    async def set_history(self, items: Iterable[ChatHistoryItem | Mapping[str, Any]]) -> None:
        """Replace the session's chat history wholesale.

        Items may be history models or plain dicts tagged with ``type``.
        Malformed items are a guard failure and leave the session intact.
        """
        stage = "setHistory"
        session = self._require(stage, self._session, "No chat session loaded")
        history = self._parse_history(stage, items)

        self._set_status(SessionPhase.LOADING, "Loading chat history")
        try:
            await session.import_history(history)
        except Exception as exc:
            self._log.exception("session_manager.operation_failed", stage=stage)
            self.abort_active_operation()
            raise self._fail(OperationError, stage, exc) from exc

        self._set_status(SessionPhase.READY, "Chat history loaded")
        self._log.info("session_manager.history_loaded", items=len(history))

    def dispose_session(self) -> None:
        """Release the session; engine, model and context stay loaded.

        The session is detached even when the engine fails to release it.
        """
        stage = "disposeSession"
        session = self._require(stage, self._session, "No chat session to dispose", HistoryGuardError)
        self._session = None
        try:
            session.dispose()
        except Exception as exc:
            self._log.exception("session_manager.operation_failed", stage=stage)
            raise self._fail(OperationError, stage, exc) from exc
        self._log.info("session_manager.session_disposed")

    def clear_history(self) -> None:
        stage = "clearHistory"
        session = self._require(stage, self._session, "No chat session loaded", HistoryGuardError)
        self._require(stage, session.sequence, "Chat session has no context sequence", HistoryGuardError)
        try:
            session.clear_sequence_history()
        except Exception as exc:
            self._log.exception("session_manager.operation_failed", stage=stage)
            self.abort_active_operation()
            raise self._fail(OperationError, stage, exc) from exc
        self._log.info("session_manager.history_cleared")

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def get_info(self) -> SessionInfo:
        """Snapshot of whatever handles currently exist. Never raises."""
        info = SessionInfo(id=self._id)

        if self._model is not None:
            try:
                info.model = ModelInfo(
                    file_name=self._model.file_name,
                    train_context_size=self._model.train_context_size,
                )
            except Exception:
                self._log.warning("session_manager.info_unavailable", source="model", exc_info=True)

        if self._context is not None:
            try:
                info.context = ContextInfo(
                    batch_size=self._context.batch_size,
                    context_size=self._context.context_size,
                    sequences_remaining=self._context.sequences_remaining,
                    state_size_bytes=self._context.state_size_bytes,
                    total_sequences=self._context.total_sequences,
                )
            except Exception:
                self._log.warning("session_manager.info_unavailable", source="context", exc_info=True)

        if self._engine is not None:
            try:
                info.device_memory = self._engine.device_memory_state()
                info.devices = list(self._engine.device_names())
            except Exception:
                self._log.warning("session_manager.info_unavailable", source="engine", exc_info=True)

        return info

"""Tests for SessionLifecycleManager setup stages and their guards."""

from __future__ import annotations

import uuid

import pytest

from llamasession.core.exceptions import (
    EngineLoadError,
    ErrorKind,
    ModelLoadError,
    ModuleLoadError,
    PreconditionError,
    SessionInitError,
)
from llamasession.models.session import SessionPhase, SystemChatItem, UserChatItem
from llamasession.session.manager import SessionLifecycleManager
from tests.fakes import MODEL_PATH, SYSTEM_PROMPT, MockInferenceProvider


class TestConstruction:
    def test_starts_uninitialized(self, manager):
        status = manager.get_status()
        assert status.phase == SessionPhase.UNINITIALIZED
        assert status.message == "Provider not initialized"
        assert not manager.is_ready()

    def test_id_is_stable_uuid(self, manager):
        assert manager.get_id() == manager.get_id()
        uuid.UUID(manager.get_id())

    def test_ids_differ_between_instances(self, provider):
        a = SessionLifecycleManager(provider)
        b = SessionLifecycleManager(provider)
        assert a.get_id() != b.get_id()

    def test_construction_makes_no_provider_calls(self, provider, manager):
        assert provider.calls == []


class TestLoadModule:
    @pytest.mark.asyncio
    async def test_success_sets_ready(self, manager):
        module = await manager.load_module()
        assert module.name == "mock"
        assert manager.is_ready()

    @pytest.mark.asyncio
    async def test_failure_sets_error_with_tag(self, provider, manager):
        provider.fail("acquire_module", "native library missing")
        with pytest.raises(ModuleLoadError) as exc_info:
            await manager.load_module()
        assert exc_info.value.kind == ErrorKind.MODULE_LOAD
        assert manager.get_status().phase == SessionPhase.ERROR
        assert manager.get_status().message == "loadModule:native library missing"

    @pytest.mark.asyncio
    async def test_recovers_on_retry(self, provider, manager):
        provider.fail("acquire_module")
        with pytest.raises(ModuleLoadError):
            await manager.load_module()
        provider.clear_failures()
        await manager.load_module()
        assert manager.is_ready()


class TestLoadEngine:
    @pytest.mark.asyncio
    async def test_requires_module(self, provider, manager):
        with pytest.raises(PreconditionError) as exc_info:
            await manager.load_engine()
        assert str(exc_info.value).startswith("loadLlama:")
        assert manager.get_status().phase == SessionPhase.ERROR
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_load_llama_alias(self, manager):
        await manager.load_module()
        await manager.load_llama()
        assert manager.is_ready()

    @pytest.mark.asyncio
    async def test_defaults_to_auto_gpu(self, manager):
        await manager.load_module()
        engine = await manager.load_engine()
        assert engine.options.gpu == "auto"
        assert engine.options.log_level == "warn"
        assert engine.options.build == "never"

    @pytest.mark.asyncio
    async def test_explicit_gpu_preference(self, manager):
        await manager.load_module()
        engine = await manager.load_engine(False)
        assert engine.options.gpu is False

    @pytest.mark.asyncio
    async def test_failure_sets_error(self, provider, manager):
        await manager.load_module()
        provider.fail("configure_engine", "no device")
        with pytest.raises(EngineLoadError):
            await manager.load_engine()
        assert manager.get_status().message == "loadLlama:no device"


class TestLoadModel:
    @pytest.mark.asyncio
    async def test_before_engine_is_precondition_error(self, provider, manager):
        await manager.load_module()
        provider.calls.clear()
        with pytest.raises(PreconditionError):
            await manager.load_model(MODEL_PATH)
        assert manager.get_status().phase == SessionPhase.ERROR
        assert manager.get_status().message.startswith("loadModel:")
        assert provider.calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", ["", "   "])
    async def test_empty_path_checked_first(self, provider, manager, path):
        # no engine either: the path guard must be the one reported
        with pytest.raises(PreconditionError) as exc_info:
            await manager.load_model(path)
        assert exc_info.value.detail == "No model path provided"
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_success_exposes_metadata(self, manager):
        await manager.load_module()
        await manager.load_engine()
        model = await manager.load_model(MODEL_PATH)
        assert model.file_name == "mock-7b.Q4_K_M.gguf"
        assert model.train_context_size > 0
        assert manager.is_ready()

    @pytest.mark.asyncio
    async def test_missing_file(self, config):
        manager = SessionLifecycleManager(
            MockInferenceProvider(require_existing_files=True), config=config
        )
        await manager.load_module()
        await manager.load_llama()
        with pytest.raises(ModelLoadError):
            await manager.load_model("nonexistent/path")
        assert manager.get_status().phase == SessionPhase.ERROR
        assert manager.get_status().message.startswith("loadModel:")


class TestInitSession:
    @pytest.mark.asyncio
    async def test_requires_model(self, provider, manager):
        await manager.load_module()
        await manager.load_engine()
        provider.calls.clear()
        with pytest.raises(PreconditionError):
            await manager.init_session()
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_uses_fixed_context_options(self, ready_manager, config):
        context = ready_manager._context
        assert context.options.threads == config.context_threads
        assert context.options.seed == config.context_seed
        assert context.options.sequences == 1

    @pytest.mark.asyncio
    async def test_system_prompt_from_config(self, ready_manager):
        history = await ready_manager.get_history()
        assert history[0].type == "system"
        assert history[0].text == SYSTEM_PROMPT

    @pytest.mark.asyncio
    async def test_failure_sets_error(self, provider, manager):
        await manager.load_module()
        await manager.load_engine()
        await manager.load_model(MODEL_PATH)
        provider.fail("create_context", "out of memory")
        with pytest.raises(SessionInitError):
            await manager.init_session("hi")
        assert manager.get_status().message == "initSession:out of memory"
        assert not manager.has_session

    @pytest.mark.asyncio
    async def test_failed_open_releases_new_context(self, provider, manager):
        await manager.load_module()
        await manager.load_engine()
        await manager.load_model(MODEL_PATH)
        provider.fail("open_session", "no sequence")
        with pytest.raises(SessionInitError):
            await manager.init_session()
        assert provider.contexts[-1].disposed
        assert manager.get_info().context is None

    @pytest.mark.asyncio
    async def test_failed_reopen_keeps_previous_pair(self, provider, ready_manager):
        previous = ready_manager._session
        provider.fail("open_session")
        with pytest.raises(SessionInitError):
            await ready_manager.init_session()
        assert ready_manager._session is previous
        assert not previous.disposed
        assert not provider.contexts[0].disposed
        assert provider.contexts[1].disposed

    @pytest.mark.asyncio
    async def test_reinit_releases_previous_pair(self, provider, ready_manager):
        previous = ready_manager._session
        await ready_manager.init_session("Second")
        assert previous.disposed
        assert provider.contexts[0].disposed
        assert ready_manager.get_info().context.sequences_remaining == 0

    @pytest.mark.asyncio
    async def test_seeds_history(self, manager):
        await manager.load_module()
        await manager.load_engine()
        await manager.load_model(MODEL_PATH)
        await manager.init_session(
            "Be terse.",
            history=[
                {"type": "system", "text": "Be terse."},
                {"type": "user", "text": "2+2?"},
                {"type": "model", "response": ["4"]},
            ],
        )
        history = await manager.get_history()
        assert history[:2] == [SystemChatItem(text="Be terse."), UserChatItem(text="2+2?")]
        assert history[2].text == "4"
        assert manager.is_ready()

    @pytest.mark.asyncio
    async def test_malformed_seed_history_checked_first(self, provider, manager):
        await manager.load_module()
        await manager.load_engine()
        await manager.load_model(MODEL_PATH)
        provider.calls.clear()
        with pytest.raises(PreconditionError):
            await manager.init_session(history=[{"type": "tool"}])
        assert provider.calls == []
        assert manager.get_status().message.startswith("initSession:Invalid chat history")

    @pytest.mark.asyncio
    async def test_seed_import_failure_releases_pair(self, provider, manager):
        await manager.load_module()
        await manager.load_engine()
        await manager.load_model(MODEL_PATH)
        provider.fail("import_history", "state mismatch")
        with pytest.raises(SessionInitError):
            await manager.init_session(history=[{"type": "system", "text": "x"}])
        assert "dispose" in provider.calls
        assert provider.contexts[-1].disposed
        assert not manager.has_session


class TestFullLoad:
    @pytest.mark.asyncio
    async def test_load_runs_stages_in_order(self, provider, manager):
        status = await manager.load()
        assert status.phase == SessionPhase.READY
        assert provider.calls == [
            "acquire_module",
            "configure_engine",
            "load_model",
            "create_context",
            "open_session",
        ]

    @pytest.mark.asyncio
    async def test_load_stops_at_first_failure(self, provider, manager):
        provider.fail("load_model", "bad magic")
        with pytest.raises(ModelLoadError):
            await manager.load()
        assert "create_context" not in provider.calls
        assert manager.get_status().phase == SessionPhase.ERROR

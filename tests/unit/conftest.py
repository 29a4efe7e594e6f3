"""Unit test fixtures — mock provider and managers at various setup stages."""

from __future__ import annotations

import pytest
import pytest_asyncio

from llamasession.core.config import EngineConfig
from llamasession.session.manager import SessionLifecycleManager
from tests.fakes import MODEL_PATH, SYSTEM_PROMPT, MockInferenceProvider


@pytest.fixture
def provider():
    return MockInferenceProvider()


@pytest.fixture
def config():
    return EngineConfig(model_path=MODEL_PATH, system_prompt=SYSTEM_PROMPT)


@pytest.fixture
def manager(provider, config):
    return SessionLifecycleManager(provider, config=config)


@pytest_asyncio.fixture
async def ready_manager(manager):
    """Manager that has completed all four setup stages."""
    await manager.load_module()
    await manager.load_engine()
    await manager.load_model(MODEL_PATH)
    await manager.init_session()
    return manager

"""Pluggable inference providers behind the IInferenceEngineProvider Protocol."""

from __future__ import annotations

from llamasession.core.config import AppSettings
from llamasession.core.protocols import IInferenceEngineProvider
from llamasession.model_providers.llama_cpp_provider import LlamaCppProvider
from llamasession.model_providers.mock_provider import MockInferenceProvider
from llamasession.session.manager import SessionLifecycleManager


def create_provider(settings: AppSettings | None = None) -> IInferenceEngineProvider:
    """Create the inference provider selected by ``settings.engine.provider``."""
    if settings is None:
        settings = AppSettings()

    if settings.engine.provider == "llama_cpp":
        return LlamaCppProvider()
    return MockInferenceProvider()


def create_manager(settings: AppSettings | None = None) -> SessionLifecycleManager:
    """Create a lifecycle manager wired to the configured provider."""
    if settings is None:
        settings = AppSettings()
    return SessionLifecycleManager(create_provider(settings), config=settings.engine)


__all__ = [
    "LlamaCppProvider",
    "MockInferenceProvider",
    "create_manager",
    "create_provider",
]

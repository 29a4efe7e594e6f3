"""Shared test doubles — re-export the mock inference provider."""

from __future__ import annotations

from llamasession.model_providers.mock_provider import (
    MockChatSession,
    MockContext,
    MockEngine,
    MockInferenceProvider,
    MockModel,
)

MODEL_PATH = "models/mock-7b.Q4_K_M.gguf"
SYSTEM_PROMPT = "You are an assistant, be helpful and concise, you speak in english."

__all__ = [
    "MODEL_PATH",
    "SYSTEM_PROMPT",
    "MockChatSession",
    "MockContext",
    "MockEngine",
    "MockInferenceProvider",
    "MockModel",
]

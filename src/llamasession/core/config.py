"""Application configuration using pydantic-settings with grouped env prefixes."""

from __future__ import annotations

from typing import Literal

from pydantic_settings import BaseSettings

from llamasession.core.types import Gpu


class EngineConfig(BaseSettings):
    """Inference engine and chat session configuration."""

    model_config = {"env_prefix": "LLAMASESSION_ENGINE_"}

    provider: Literal["mock", "llama_cpp"] = "mock"
    model_path: str = ""
    system_prompt: str = "You are an assistant, be helpful and concise."
    gpu: Gpu = None  # None resolves to "auto"
    n_gpu_layers: int = -1  # layers to offload when a GPU is in use
    log_level: Literal["disabled", "fatal", "error", "warn", "info", "log", "debug"] = "warn"
    build: Literal["auto", "never", "forceRebuild"] = "never"
    context_threads: int = 4
    context_seed: int = 1234
    context_sequences: int = 1
    rearm_cancellation: bool = True


class ApiConfig(BaseSettings):
    """HTTP control surface configuration."""

    model_config = {"env_prefix": "LLAMASESSION_API_"}

    title: str = "llama-session"
    autoload: bool = False  # run all four setup stages during app startup


class AppSettings(BaseSettings):
    """Root application settings aggregating all sub-configs."""

    model_config = {"env_prefix": "LLAMASESSION_"}

    environment: Literal["dev", "test", "prod"] = "dev"
    log_level: str = "INFO"
    log_json: bool = False

    engine: EngineConfig = EngineConfig()
    api: ApiConfig = ApiConfig()

"""Application configuration handling."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, Mapping

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

ENV_PREFIX = "RAGF_"
DEFAULT_CONFIG_PATH = Path("~/.config/ragforge/config.yaml")

_YAML_KEY_MAP: Mapping[tuple[str, ...], str] = {
    ("storage", "db_path"): "db_path",
    ("storage", "root"): "storage_root",
    ("embeddings", "provider"): "embedding_provider",
    ("embeddings", "model"): "embedding_model",
    ("embeddings", "dim"): "embedding_dim",
    ("embeddings", "timeout"): "embedding_timeout",
    ("chunking", "size"): "chunk_size",
    ("chunking", "overlap"): "chunk_overlap",
    ("retrieval", "top_k"): "top_k",
    ("retrieval", "similarity_threshold"): "similarity_threshold",
    ("retrieval", "history_turns"): "history_turns",
    ("generation", "deployment_mode"): "deployment_mode",
    ("generation", "cloud_provider"): "cloud_provider",
    ("generation", "temperature"): "temperature",
    ("generation", "max_tokens"): "max_tokens",
    ("generation", "timeout"): "generation_timeout",
    ("ollama", "base_url"): "ollama_base_url",
    ("ollama", "chat_model"): "ollama_chat_model",
    ("openai", "api_key"): "openai_api_key",
    ("openai", "base_url"): "openai_base_url",
    ("openai", "model"): "openai_model",
    ("openrouter", "api_key"): "openrouter_api_key",
    ("openrouter", "base_url"): "openrouter_base_url",
    ("openrouter", "model"): "openrouter_model",
    ("jobs", "max_attempts"): "job_max_attempts",
    ("jobs", "backoff_base"): "job_backoff_base",
    ("jobs", "backoff_max"): "job_backoff_max",
    ("jobs", "retention_days"): "job_retention_days",
    ("jobs", "timeout_seconds"): "job_timeout_seconds",
    ("worker", "poll_interval"): "worker_poll_interval",
    ("worker", "concurrency"): "worker_concurrency",
}


class Settings(BaseModel):
    """Runtime configuration loaded from YAML file and environment variables."""

    db_path: Path = Field(default=Path.home() / ".ragforge" / "ragforge.db")
    storage_root: Path = Field(default=Path.home() / ".ragforge" / "uploads")

    embedding_provider: Literal["hashed", "ollama", "openai"] = "hashed"
    embedding_model: str = "nomic-embed-text"
    embedding_dim: int = Field(default=384, gt=0)
    embedding_timeout: float = 60.0

    chunk_size: int = Field(default=1000, gt=0)
    chunk_overlap: int = Field(default=200, ge=0)

    top_k: int = Field(default=5, ge=1, le=50)
    similarity_threshold: float = Field(default=0.4, ge=-1.0, le=1.0)
    history_turns: int = Field(default=10, ge=0)

    deployment_mode: Literal["local", "cloud"] = "local"
    cloud_provider: Literal["openai", "openrouter"] = "openai"
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=2000, gt=0)
    generation_timeout: float = 600.0

    ollama_base_url: str = "http://localhost:11434"
    ollama_chat_model: str = "mistral:7b"
    openai_api_key: str | None = None
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4o-mini"
    openrouter_api_key: str | None = None
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    openrouter_model: str = "mistralai/mistral-7b-instruct:free"

    job_max_attempts: int = Field(default=3, ge=1)
    job_backoff_base: float = Field(default=30.0, ge=0.0)
    job_backoff_max: float = Field(default=3600.0, ge=0.0)
    job_retention_days: float = Field(default=7.0, ge=0.0)
    job_timeout_seconds: float = Field(default=300.0, gt=0.0)

    worker_poll_interval: float = Field(default=5.0, gt=0.0)
    worker_concurrency: int = Field(default=1, ge=1)

    model_config = {
        "validate_assignment": True,
        "extra": "ignore",
    }

    @field_validator("db_path", "storage_root", mode="before")
    @classmethod
    def _expand_path(cls, value: Any) -> Path:
        if isinstance(value, Path):
            return value.expanduser()
        if isinstance(value, str):
            return Path(value).expanduser()
        raise TypeError("paths must be a path or string")

    @field_validator("openai_api_key", "openrouter_api_key", mode="before")
    @classmethod
    def _blank_key_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _check_chunking(self) -> "Settings":
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunk_overlap must be smaller than chunk_size")
        return self

    def cloud_api_key(self, provider: str | None = None) -> str | None:
        """Return the API key for a cloud provider, defaulting to the configured one."""
        name = provider or self.cloud_provider
        if name == "openrouter":
            return self.openrouter_api_key
        if name == "openai":
            return self.openai_api_key
        return None

    @classmethod
    def from_yaml(cls, path: Path | None = None) -> "Settings":
        """Load YAML config and overlay env vars; fall back to defaults."""
        config_path = cls._resolve_config_path(path)
        data: dict[str, Any] = {}
        if config_path and config_path.exists():
            with config_path.open("r", encoding="utf-8") as fh:
                raw = yaml.safe_load(fh) or {}
            data.update(_flatten_yaml(raw))
        data.update(_load_env_overrides())
        return cls(**data)

    @staticmethod
    def _resolve_config_path(path: Path | None) -> Path | None:
        if path is not None:
            return path.expanduser()
        env_path = os.environ.get(f"{ENV_PREFIX}CONFIG")
        if env_path:
            return Path(env_path).expanduser()
        resolved_default = DEFAULT_CONFIG_PATH.expanduser()
        return resolved_default if resolved_default.exists() else None


def _flatten_yaml(raw: Mapping[str, Any], prefix: tuple[str, ...] = ()) -> dict[str, Any]:
    """Flatten nested YAML configuration to Settings field names."""
    flat: dict[str, Any] = {}
    for key, value in raw.items():
        next_prefix = prefix + (key,)
        if isinstance(value, Mapping):
            flat.update(_flatten_yaml(value, prefix=next_prefix))
        else:
            mapped_key = _YAML_KEY_MAP.get(next_prefix)
            if mapped_key:
                flat[mapped_key] = value
            elif key in Settings.model_fields:
                flat[key] = value
    return flat


def _load_env_overrides() -> dict[str, Any]:
    """Map environment variables with RAGF_ prefix into Settings fields."""
    overrides: dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        field_name = key[len(ENV_PREFIX) :].lower()
        if field_name in Settings.model_fields:
            overrides[field_name] = value
    return overrides


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Cached settings accessor for dependency injection."""
    return Settings.from_yaml()


__all__ = ["Settings", "get_settings"]

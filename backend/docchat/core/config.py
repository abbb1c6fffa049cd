"""Application configuration handling."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, Mapping

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

ENV_PREFIX = "DOCCHAT_"
DEFAULT_CONFIG_PATH = Path("~/.config/docchat/config.yaml")

_YAML_KEY_MAP: Mapping[tuple[str, ...], str] = {
    ("storage", "db_path"): "db_path",
    ("storage", "files_dir"): "files_dir",
    ("provider", "base_url"): "provider_base_url",
    ("provider", "api_key"): "provider_api_key",
    ("provider", "chat_model"): "chat_model",
    ("provider", "transcription_model"): "transcription_model",
    ("embeddings", "model"): "embedding_model",
    ("embeddings", "default_type"): "default_embedding_type",
    ("embeddings", "batch_size"): "embedding_batch_size",
    ("embeddings", "concurrency"): "embedding_concurrency",
    ("chunking", "chunk_size"): "chunk_size",
    ("chunking", "overlap"): "chunk_overlap",
    ("retry", "max_attempts"): "retry_max_attempts",
    ("retry", "initial_delay"): "retry_initial_delay",
    ("retry", "max_delay"): "retry_max_delay",
    ("retry", "multiplier"): "retry_multiplier",
    ("retry", "jitter"): "retry_jitter",
    ("timeouts", "embedding"): "embedding_timeout",
    ("timeouts", "chat"): "chat_timeout",
    ("timeouts", "transcription"): "transcription_timeout",
    ("timeouts", "fetch"): "fetch_timeout",
    ("timeouts", "stage"): "stage_timeout",
    ("timeouts", "pipeline"): "pipeline_timeout",
    ("retrieval", "similarity_floors"): "similarity_floors",
    ("retrieval", "default_chunk_limit"): "default_chunk_limit",
    ("retrieval", "max_history_messages"): "max_history_messages",
    ("rate_limit", "per_minute"): "rate_limit_per_minute",
    ("rate_limit", "burst"): "rate_limit_burst",
    ("rate_limit", "window_seconds"): "rate_limit_window_seconds",
    ("rate_limit", "burst_window_seconds"): "rate_limit_burst_window_seconds",
    ("rate_limit", "sweep_interval_seconds"): "rate_limit_sweep_interval_seconds",
    ("quiz", "batch_size"): "quiz_batch_size",
    ("quiz", "max_concurrency"): "quiz_max_concurrency",
    ("quiz", "regeneration_days"): "quiz_regeneration_days",
    ("ingest", "max_concurrent_jobs"): "max_concurrent_jobs",
    ("ingest", "generate_abstracts"): "generate_abstracts",
    ("ingest", "stale_after_seconds"): "stale_after_seconds",
    ("logging", "level"): "log_level",
    ("logging", "format"): "log_format",
}

# Keys whose YAML value is itself a mapping and must not be flattened further.
_MAPPING_FIELDS = {("retrieval", "similarity_floors")}


class Settings(BaseModel):
    """Runtime configuration loaded from YAML file and environment variables."""

    db_path: Path = Field(default=Path.home() / ".docchat" / "docchat.db")
    files_dir: Path = Field(default=Path.home() / ".docchat" / "files")

    provider_base_url: str = "https://api.openai.com/v1"
    provider_api_key: str | None = None
    chat_model: str = "gpt-4o-mini"
    transcription_model: str = "whisper-1"
    embedding_model: str = "text-embedding-3-small"
    default_embedding_type: str = "openai"
    embedding_batch_size: int = Field(default=200, ge=1)
    embedding_concurrency: int = Field(default=2, ge=1)

    chunk_size: int = Field(default=500, ge=1)
    chunk_overlap: int = Field(default=100, ge=0)

    retry_max_attempts: int = Field(default=3, ge=1)
    retry_initial_delay: float = 1.0
    retry_max_delay: float = 10.0
    retry_multiplier: float = 2.0
    retry_jitter: bool = True

    embedding_timeout: float = 30.0
    chat_timeout: float = 60.0
    transcription_timeout: float = 120.0
    fetch_timeout: float = 30.0
    stage_timeout: float = 300.0
    pipeline_timeout: float = 900.0

    similarity_floors: dict[str, float] = Field(
        default_factory=lambda: {"openai": 0.3, "local": 0.05}
    )
    default_chunk_limit: int = Field(default=5, ge=1)
    max_history_messages: int = Field(default=10, ge=0)

    rate_limit_per_minute: int = 10
    rate_limit_burst: int = 3
    rate_limit_window_seconds: float = 60.0
    rate_limit_burst_window_seconds: float = 10.0
    rate_limit_sweep_interval_seconds: float = 300.0

    quiz_batch_size: int = Field(default=20, ge=1)
    quiz_max_concurrency: int = Field(default=3, ge=1)
    quiz_regeneration_days: int = 7

    max_concurrent_jobs: int = Field(default=5, ge=1)
    generate_abstracts: bool = True
    stale_after_seconds: int = 300

    log_level: str = "INFO"
    log_format: Literal["json", "text"] = "json"

    model_config = {
        "validate_assignment": True,
        "extra": "ignore",
    }

    @field_validator("db_path", "files_dir", mode="before")
    @classmethod
    def _expand_path(cls, value: Any) -> Path:
        if isinstance(value, Path):
            return value.expanduser()
        if isinstance(value, str):
            return Path(value).expanduser()
        raise TypeError("paths must be a path or string")

    @model_validator(mode="after")
    def _check_limits(self) -> "Settings":
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunk_overlap must be smaller than chunk_size")
        if self.rate_limit_per_minute <= self.rate_limit_burst:
            raise ValueError("rate_limit_per_minute must be greater than rate_limit_burst")
        return self

    def similarity_floor(self, embedding_type: str) -> float:
        """Minimum similarity for the given embedding space, defaulting to the strictest."""
        if embedding_type in self.similarity_floors:
            return self.similarity_floors[embedding_type]
        return max(self.similarity_floors.values(), default=0.0)

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
        if isinstance(value, Mapping) and next_prefix not in _MAPPING_FIELDS:
            flat.update(_flatten_yaml(value, prefix=next_prefix))
        else:
            mapped_key = _YAML_KEY_MAP.get(next_prefix)
            if mapped_key:
                flat[mapped_key] = value
            elif key in Settings.model_fields:
                flat[key] = value
    return flat


def _load_env_overrides() -> dict[str, Any]:
    """Map environment variables with DOCCHAT_ prefix into Settings fields."""
    overrides: dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        field_name = key[len(ENV_PREFIX) :].lower()
        if field_name in Settings.model_fields and field_name != "similarity_floors":
            overrides[field_name] = value
    return overrides


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Cached settings accessor for dependency injection."""
    return Settings.from_yaml()


__all__ = ["Settings", "get_settings"]

"""Configuration management for the embedding engine.

This module centralizes environment-driven configuration for the embedder
backends and the queue worker. It builds on ``pydantic_settings.BaseSettings``
so configuration can be provided via environment variables, ``.env`` files,
or defaults.

Highlights
- Strongly-typed settings with sensible defaults
- One place to discover commonly used environment variables
- Field names match environment variable names (case-insensitive)

Usage
- Inject the config in your entrypoint: ``config = EmbedderConfig()`` or
  ``WorkerConfig()`` for the queue worker
"""

from pathlib import Path
from typing import Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration shared by every engine component.

    Parameters are read from the process environment with the upper-cased
    field names. Defaults keep local development convenient while still
    being explicit.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    ml_env: str = Field(default="local")

    # Logging
    ml_log_level: str = Field(default="INFO")
    ml_log_format: str = Field(default="json")

    # Performance
    ml_gpu_preference: Literal["auto", "cpu", "gpu"] = Field(default="auto")

    # Vector shape
    ml_vector_dimension: int = Field(default=384, gt=0)


class EmbedderConfig(BaseConfig):
    """Configuration for the embedding backends.

    Includes the model directory, the CPU thread count, the evaluation token
    limit, the NaN policy, and the bounded-retry knobs used when the session
    pool scan finds no free session.
    """

    ml_embedder_model_dir: Path = Field(default=Path("models/all-MiniLM-L6-v2"))
    num_omp_threads: int = Field(default=1, ge=1)
    ml_embedder_max_tokens: int = Field(default=512, gt=0)
    # "warn" logs and counts every NaN embedding. The DataQualityWarning itself
    # follows the ``warnings`` filters, which by default show it once per call
    # site; use ``warnings.simplefilter("always", DataQualityWarning)`` to see all.
    ml_embedder_nan_policy: Literal["warn", "raise"] = Field(default="warn")
    ml_embedder_pool_retry_attempts: int = Field(default=5, ge=1)
    ml_embedder_pool_retry_delay: float = Field(default=0.01, ge=0.0)

    @field_validator("ml_embedder_nan_policy", mode="before")
    @classmethod
    def _normalize_policy(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value


class WorkerConfig(EmbedderConfig):
    """Configuration for the queue-draining embed worker.

    Keeps batch sizing and polling knobs together.
    """

    ml_worker_batch_size: int = Field(default=32, gt=0)
    ml_worker_poll_interval: float = Field(default=0.1, ge=0.0)
    ml_worker_retry_attempts: int = Field(default=3, ge=1)

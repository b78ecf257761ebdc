"""Embedder factory for creating backend implementations.

Centralizes creation of concrete ``Embedder`` backends so callers don't
depend on implementation details. Both backends can live in one process; the
choice is made from configuration at startup.
"""

from enum import Enum
from typing import Optional

import structlog

from semantic.common.config import EmbedderConfig
from semantic.common.metrics import MetricsCollector

from .accelerated import AcceleratedEmbedder
from .base import Embedder
from .cpu import CpuEmbedder
from .devices import get_provider_detector
from .errors import ModelLoadError

logger = structlog.get_logger("embedder.factory")


class BackendType(Enum):
    """Supported embedder backends."""
    CPU = "cpu"
    ACCELERATED = "accelerated"


class EmbedderFactory:
    """Factory for creating embedder instances."""

    @staticmethod
    def create(
        backend_type: BackendType,
        config: EmbedderConfig,
        metrics: Optional[MetricsCollector] = None,
    ) -> Embedder:
        """Create an embedder.

        Raises ``ModelLoadError`` if the model directory or its files are
        missing or unloadable; the engine must not enter service then.
        """
        model_dir = config.ml_embedder_model_dir
        if not model_dir.is_dir():
            raise ModelLoadError(f"model directory not found: {model_dir}")

        if backend_type == BackendType.CPU:
            return CpuEmbedder.from_model_dir(model_dir, config, metrics=metrics)

        elif backend_type == BackendType.ACCELERATED:
            return AcceleratedEmbedder.from_model_dir(
                model_dir,
                config,
                providers=get_provider_detector().session_providers(),
                metrics=metrics,
            )

        else:
            raise ValueError(f"Unsupported embedder backend: {backend_type}")


def create_embedder(
    config: Optional[EmbedderConfig] = None,
    metrics: Optional[MetricsCollector] = None,
) -> Embedder:
    """Create the embedder selected by ``ML_GPU_PREFERENCE``."""
    config = config or EmbedderConfig()
    backend = get_provider_detector().select_backend(config.ml_gpu_preference)

    try:
        return EmbedderFactory.create(BackendType(backend), config, metrics=metrics)
    except ModelLoadError as e:
        logger.error(
            "Failed to load embedder",
            backend=backend,
            model_dir=str(config.ml_embedder_model_dir),
            error=str(e),
        )
        raise

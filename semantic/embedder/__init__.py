"""Embedding engine.

Exports the queue, capability, and error types. Backend modules (``cpu``,
``accelerated``) pull in onnxruntime; import them, or use
``semantic.embedder.factory.create_embedder``, only where inference runs.
"""

from .base import Embedder, Embedding
from .errors import (
    DataQualityError,
    DataQualityWarning,
    EmbedderError,
    InferenceError,
    ModelLoadError,
    PoolExhaustionFault,
    TensorShapeError,
    TokenizationError,
)
from .queue import EmbedChunk, EmbedQueue

__all__ = [
    "DataQualityError",
    "DataQualityWarning",
    "EmbedChunk",
    "EmbedQueue",
    "Embedder",
    "EmbedderError",
    "Embedding",
    "InferenceError",
    "ModelLoadError",
    "PoolExhaustionFault",
    "TensorShapeError",
    "TokenizationError",
]

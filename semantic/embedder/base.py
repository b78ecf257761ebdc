"""Embedder capability.

Defines the contract every inference backend implements. Callers (document
indexing, query-time search) depend on ``Embedder`` only, never on a
concrete backend.

All embedding methods are asynchronous; native work is handed off to worker
threads by the implementations so the event loop is never stalled.
"""

import time
import warnings
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Iterator, List, Optional, Sequence

import numpy as np
import structlog

from semantic.common.metrics import MetricsCollector, get_metrics_collector

from .errors import DataQualityError, DataQualityWarning, InferenceError, TensorShapeError
from .tokenizer import TokenizerAdapter

logger = structlog.get_logger("embedder")

Embedding = List[float]

NAN_POLICIES = ("warn", "raise")


class Embedder(ABC):
    """Abstract base class for embedding backends.

    Implementations must return vectors of exactly ``dimension`` floats, keep
    batch output aligned with batch input, and apply the configured NaN
    policy uniformly to single and batch calls.
    """

    backend = "base"

    def __init__(
        self,
        tokenizer: TokenizerAdapter,
        dimension: int,
        nan_policy: str = "warn",
        metrics: Optional[MetricsCollector] = None,
    ):
        if nan_policy not in NAN_POLICIES:
            raise ValueError(f"unknown NaN policy: {nan_policy}")

        self._tokenizer = tokenizer
        self._dimension = dimension
        self.nan_policy = nan_policy
        self.metrics = metrics or get_metrics_collector()

    @property
    def tokenizer(self) -> TokenizerAdapter:
        """Tokenizer for counting and chunking text to model limits."""
        return self._tokenizer

    @property
    def dimension(self) -> int:
        return self._dimension

    @abstractmethod
    async def embed(self, text: str) -> Embedding:
        """Embed one text.

        Raises
        - ``TokenizationError`` for text that cannot be tokenized
        - ``TensorShapeError`` when tensors do not fit the model
        - ``InferenceError`` when the native call fails
        """
        pass

    @abstractmethod
    async def batch_embed(self, texts: Sequence[str]) -> List[Embedding]:
        """Embed many texts; element ``i`` corresponds to ``texts[i]``."""
        pass

    def close(self) -> None:
        """Release native resources; the embedder cannot be used afterwards."""

    @contextmanager
    def _instrument(self, operation: str, count: int = 1) -> Iterator[None]:
        """Time an operation and count failures by error type."""
        start_time = time.time()
        try:
            yield
        except InferenceError as e:
            self.metrics.record_error(self.backend, type(e).__name__)
            logger.error(
                "Embedding failed",
                backend=self.backend,
                operation=operation,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise
        self.metrics.record_embedding(self.backend, operation, time.time() - start_time, count)

    def _finalize(self, vector: np.ndarray, index: int = 0) -> Embedding:
        """Check shape and NaN policy, then convert to a plain float list."""
        if vector.shape != (self._dimension,):
            raise TensorShapeError(
                f"embedding {index} has shape {vector.shape}, expected ({self._dimension},)"
            )

        if np.isnan(vector).any():
            self.metrics.record_nan(self.backend)
            logger.error("found nan in sequence", backend=self.backend, index=index)
            if self.nan_policy == "raise":
                raise DataQualityError(f"embedding {index} contains NaN values")
            # Default filters show this once per call site; the metric counts every NaN.
            warnings.warn(
                f"embedding {index} contains NaN values",
                DataQualityWarning,
                stacklevel=3,
            )

        return vector.astype(np.float32).tolist()

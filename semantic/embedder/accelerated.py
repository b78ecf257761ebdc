"""Accelerated embedding backend.

Loads the model weights once and builds a fixed number of independent
inference sessions from them, pooled behind an admission gate
(``SessionPool``). The pool size is a policy constant: a few sessions when
an accelerator provider is active (each holds device memory), many on the
lighter CPU execution path.

Two tokenizers are kept:
- the evaluation vocabulary (``updated_tokenizers.json`` when shipped,
  otherwise ``tokenizer.json``), truncated to the model limit
- a chunking tokenizer from ``tokenizer.json`` with padding and truncation
  disabled, exposed through ``tokenizer`` for callers that count tokens
"""

from pathlib import Path
from typing import List, Optional, Sequence

import structlog

from semantic.common.config import EmbedderConfig
from semantic.common.metrics import MetricsCollector

from .base import Embedder, Embedding
from .devices import CPU_PROVIDER
from .errors import TensorShapeError
from .pool import SessionPool
from .session import ModelSession, create_inference_session, read_model_bytes
from .tokenizer import TokenizerAdapter

logger = structlog.get_logger("embedder.accelerated")

MODEL_FILE = "model.onnx"
TOKENIZER_FILE = "tokenizer.json"
EVAL_TOKENIZER_FILE = "updated_tokenizers.json"

ACCELERATED_SESSION_COUNT = 3
LIGHT_SESSION_COUNT = 25


def session_count_for(providers: Sequence[str]) -> int:
    """Pool size policy for the given provider list."""
    if any(provider != CPU_PROVIDER for provider in providers):
        return ACCELERATED_SESSION_COUNT
    return LIGHT_SESSION_COUNT


class AcceleratedEmbedder(Embedder):
    """Embedder that spreads concurrent requests over a session pool."""

    backend = "accelerated"

    def __init__(
        self,
        pool: SessionPool[ModelSession],
        model_tokenizer: TokenizerAdapter,
        chunk_tokenizer: TokenizerAdapter,
        dimension: int,
        nan_policy: str = "warn",
        metrics: Optional[MetricsCollector] = None,
    ):
        super().__init__(chunk_tokenizer, dimension, nan_policy=nan_policy, metrics=metrics)
        self._model_tokenizer = model_tokenizer
        self._pool = pool

    @classmethod
    def from_model_dir(
        cls,
        model_dir: Path,
        config: EmbedderConfig,
        providers: Optional[List[str]] = None,
        metrics: Optional[MetricsCollector] = None,
    ) -> "AcceleratedEmbedder":
        """Load the model once and spawn the pooled sessions."""
        model_dir = Path(model_dir)
        providers = providers or [CPU_PROVIDER]

        eval_vocab = model_dir / EVAL_TOKENIZER_FILE
        if not eval_vocab.is_file():
            eval_vocab = model_dir / TOKENIZER_FILE

        model_tokenizer = TokenizerAdapter.from_file(
            eval_vocab,
            truncate=True,
            max_length=config.ml_embedder_max_tokens,
        )
        # Used for chunking only: counts must cover the whole text.
        chunk_tokenizer = TokenizerAdapter.from_file(
            model_dir / TOKENIZER_FILE,
            truncate=False,
        )

        model_bytes = read_model_bytes(model_dir / MODEL_FILE)
        session_count = session_count_for(providers)
        sessions = [
            ModelSession(create_inference_session(model_bytes, threads=1, providers=providers))
            for _ in range(session_count)
        ]
        dimension = sessions[0].output_dimension or config.ml_vector_dimension

        logger.info(
            "spawned inference sessions",
            session_count=session_count,
            providers=sessions[0].providers,
            dimension=dimension,
        )

        pool = SessionPool(
            sessions,
            backend=cls.backend,
            retry_attempts=config.ml_embedder_pool_retry_attempts,
            retry_delay=config.ml_embedder_pool_retry_delay,
            metrics=metrics,
        )
        return cls(
            pool,
            model_tokenizer,
            chunk_tokenizer,
            dimension,
            nan_policy=config.ml_embedder_nan_policy,
            metrics=metrics,
        )

    @property
    def pool(self) -> SessionPool[ModelSession]:
        return self._pool

    def close(self) -> None:
        self._pool.close(lambda session: session.close())

    async def embed(self, text: str) -> Embedding:
        with self._instrument("embed"):
            encoding = self._model_tokenizer.encode(text)
            vector = await self._pool.run(lambda session: session.evaluate(encoding))
            return self._finalize(vector)

    async def batch_embed(self, texts: Sequence[str]) -> List[Embedding]:
        if not texts:
            return []

        with self._instrument("batch_embed", count=len(texts)):
            encodings = self._model_tokenizer.encode_batch(texts)
            flat = await self._pool.run(lambda session: session.batch_evaluate(encodings))

            width = self.dimension
            if flat.size != len(encodings) * width:
                raise TensorShapeError(
                    f"batch output has {flat.size} values, expected {len(encodings)} x {width}"
                )

            return [
                self._finalize(flat[index * width:(index + 1) * width], index)
                for index in range(len(encodings))
            ]

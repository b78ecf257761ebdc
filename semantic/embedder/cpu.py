"""CPU embedding backend.

A single ONNX Runtime session, graph-optimized and limited to
``NUM_OMP_THREADS`` intra-op threads. Every native call is handed to a
worker thread with ``asyncio.to_thread`` so concurrent coroutines keep
running while the model evaluates.

Batch requests are embedded one text at a time, in order. This keeps the
event loop responsive at the cost of batch throughput.
"""

import asyncio
from pathlib import Path
from typing import List, Optional, Sequence

import structlog

from semantic.common.config import EmbedderConfig
from semantic.common.metrics import MetricsCollector

from .base import Embedder, Embedding
from .session import ModelSession, create_inference_session
from .tokenizer import TokenizerAdapter

logger = structlog.get_logger("embedder.cpu")

MODEL_FILE = "model.onnx"
TOKENIZER_FILE = "tokenizer.json"


class CpuEmbedder(Embedder):
    """Embedder running one shared inference session on the CPU."""

    backend = "cpu"

    def __init__(
        self,
        session: ModelSession,
        tokenizer: TokenizerAdapter,
        dimension: int,
        nan_policy: str = "warn",
        metrics: Optional[MetricsCollector] = None,
    ):
        super().__init__(tokenizer, dimension, nan_policy=nan_policy, metrics=metrics)
        self._session = session

    @classmethod
    def from_model_dir(
        cls,
        model_dir: Path,
        config: EmbedderConfig,
        metrics: Optional[MetricsCollector] = None,
    ) -> "CpuEmbedder":
        """Load ``model.onnx`` and ``tokenizer.json`` from ``model_dir``."""
        model_dir = Path(model_dir)

        tokenizer = TokenizerAdapter.from_file(
            model_dir / TOKENIZER_FILE,
            truncate=True,
            max_length=config.ml_embedder_max_tokens,
        )
        session = ModelSession(
            create_inference_session(
                model_dir / MODEL_FILE,
                threads=config.num_omp_threads,
                providers=["CPUExecutionProvider"],
            )
        )
        dimension = session.output_dimension or config.ml_vector_dimension

        logger.info(
            "CPU embedder ready",
            model_dir=str(model_dir),
            threads=config.num_omp_threads,
            dimension=dimension,
        )
        return cls(
            session,
            tokenizer,
            dimension,
            nan_policy=config.ml_embedder_nan_policy,
            metrics=metrics,
        )

    async def embed(self, text: str) -> Embedding:
        with self._instrument("embed"):
            return await self._embed_one(text)

    async def batch_embed(self, texts: Sequence[str]) -> List[Embedding]:
        if not texts:
            return []

        # TODO: feed the whole batch to one session.run call once padding
        # cost is measured against the sequential path.
        with self._instrument("batch_embed", count=len(texts)):
            embeddings = []
            for index, text in enumerate(texts):
                embeddings.append(await self._embed_one(text, index))
            return embeddings

    def close(self) -> None:
        self._session.close()
        logger.info("CPU embedder closed")

    async def _embed_one(self, text: str, index: int = 0) -> Embedding:
        encoding = self._tokenizer.encode(text)
        logger.debug("embedding tokens", tokens=len(encoding), index=index)
        vector = await asyncio.to_thread(self._session.evaluate, encoding)
        return self._finalize(vector, index)

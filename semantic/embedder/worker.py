"""Embed worker draining an ``EmbedQueue``.

Pops chunks in batches, embeds them through any ``Embedder`` and hands the
results to a sink (sync or async callable). The sink is where an indexing
pipeline would persist vectors; the worker itself stores nothing.

Failure handling
- Retryable failures (native errors, pool faults) are retried with backoff
  and, if they persist, the whole batch is reported as failed
- Input failures fall back to per-chunk embedding so one bad chunk does not
  sink its neighbours
- A sink failure reports the undelivered chunks as failed; the run loop
  keeps draining
"""

import asyncio
import inspect
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog

from semantic.common.config import WorkerConfig
from semantic.common.logging import log_performance
from semantic.common.metrics import MetricsCollector, get_metrics_collector, measure_time

from .base import Embedder, Embedding
from .errors import InferenceError
from .queue import EmbedChunk, EmbedQueue
from .retry import RetryHandler, create_embedding_retry_handler

logger = structlog.get_logger("embedder.worker")


@dataclass
class EmbeddedChunk:
    """A chunk's id and payload together with its vector."""
    id: str
    vector: Embedding
    payload: Dict[str, Any] = field(default_factory=dict)


class EmbedWorker:
    """Drains an ``EmbedQueue`` in batches.

    Parameters
    - embedder: Backend used for ``batch_embed``/``embed``
    - queue: Queue to drain
    - sink: Called with each list of ``EmbeddedChunk`` (may be async)
    - config: ``WorkerConfig`` (batch size, poll interval, retries)
    - on_error: Optional ``(chunk, error)`` callback for failed chunks
    """

    def __init__(
        self,
        embedder: Embedder,
        queue: EmbedQueue,
        sink: Callable[[List[EmbeddedChunk]], Any],
        config: Optional[WorkerConfig] = None,
        on_error: Optional[Callable[[EmbedChunk, Exception], None]] = None,
        metrics: Optional[MetricsCollector] = None,
        retry_handler: Optional[RetryHandler] = None,
    ):
        config = config or WorkerConfig()
        self.embedder = embedder
        self.queue = queue
        self.sink = sink
        self.on_error = on_error
        self.batch_size = config.ml_worker_batch_size
        self.poll_interval = config.ml_worker_poll_interval
        self.metrics = metrics or get_metrics_collector()
        self.retry_handler = retry_handler or create_embedding_retry_handler(
            max_attempts=config.ml_worker_retry_attempts
        )

    async def run_once(self) -> int:
        """Embed one batch from the queue; returns the number delivered."""
        chunks = self.queue.drain(self.batch_size)
        self.metrics.set_queue_depth(len(self.queue))
        if not chunks:
            return 0

        start_time = time.time()
        try:
            vectors = await self.retry_handler.execute_with_retry(
                self.embedder.batch_embed,
                [chunk.text for chunk in chunks],
                operation_name="batch_embed",
            )
            embedded = list(zip(chunks, vectors))
        except InferenceError as e:
            if e.retryable:
                self._fail(chunks, e)
                return 0

            logger.warning(
                "Batch rejected, embedding chunks individually",
                batch_size=len(chunks),
                error=str(e),
            )
            embedded = await self._embed_individually(chunks)
        except Exception as e:
            self._fail(chunks, e)
            return 0

        delivered = 0
        if embedded:
            try:
                await self._deliver([
                    EmbeddedChunk(id=chunk.id, vector=vector, payload=chunk.payload)
                    for chunk, vector in embedded
                ])
            except Exception as e:
                self._fail([chunk for chunk, _ in embedded], e)
            else:
                delivered = len(embedded)
                self.metrics.record_worker_chunks("embedded", delivered)

        log_performance(
            "embed_worker_batch",
            (time.time() - start_time) * 1000,
            backend=self.embedder.backend,
            chunks=len(chunks),
            embedded=delivered,
        )
        return delivered

    async def run(self, stop_event: asyncio.Event) -> None:
        """Drain until ``stop_event`` is set, polling when the queue is empty.

        Failures of a single iteration are logged and the loop continues;
        only cancellation stops it early.
        """
        logger.info("Embed worker started", backend=self.embedder.backend, batch_size=self.batch_size)
        while not stop_event.is_set():
            try:
                handled = await self.run_once()
            except Exception as e:
                logger.error("Embed worker iteration failed", error_type=type(e).__name__, error=str(e))
                handled = 0

            if handled == 0:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
        logger.info("Embed worker stopped", remaining=len(self.queue))

    async def _embed_individually(
        self, chunks: List[EmbedChunk]
    ) -> List[Tuple[EmbedChunk, Embedding]]:
        embedded = []
        for chunk in chunks:
            try:
                vector = await self.retry_handler.execute_with_retry(
                    self.embedder.embed,
                    chunk.text,
                    operation_name="embed",
                )
            except InferenceError as e:
                self._fail([chunk], e)
                continue
            embedded.append((chunk, vector))
        return embedded

    @measure_time("embed_worker_delivery")
    async def _deliver(self, embedded: List[EmbeddedChunk]) -> None:
        result = self.sink(embedded)
        if inspect.isawaitable(result):
            await result

    def _fail(self, chunks: List[EmbedChunk], error: Exception) -> None:
        self.metrics.record_worker_chunks("failed", len(chunks))
        logger.error(
            "Failed to embed chunks",
            chunk_ids=[chunk.id for chunk in chunks],
            error_type=type(error).__name__,
            retryable=getattr(error, "retryable", False),
            error=str(error),
        )
        if self.on_error:
            for chunk in chunks:
                self.on_error(chunk, error)

"""Tests for the embed worker."""

import asyncio

import pytest

from semantic.common.config import WorkerConfig
from semantic.embedder.base import Embedder
from semantic.embedder.errors import InferenceError, TokenizationError
from semantic.embedder.queue import EmbedChunk, EmbedQueue
from semantic.embedder.retry import RetryConfig, RetryHandler
from semantic.embedder.worker import EmbedWorker

from tests.conftest import DIM


class StubEmbedder(Embedder):
    """Embeds text as its length; fails on scripted texts."""

    backend = "stub"

    def __init__(self, tokenizer, metrics, transient_failures=0, rejected=()):
        super().__init__(tokenizer, DIM, metrics=metrics)
        self.transient_failures = transient_failures
        self.rejected = set(rejected)
        self.batch_calls = 0
        self.embed_calls = 0

    async def embed(self, text):
        self.embed_calls += 1
        if text in self.rejected:
            raise TokenizationError(f"cannot tokenize {text!r}")
        return [float(len(text))] * DIM

    async def batch_embed(self, texts):
        self.batch_calls += 1
        if self.transient_failures:
            self.transient_failures -= 1
            raise InferenceError("device lost")
        if self.rejected.intersection(texts):
            raise TokenizationError("batch contains an untokenizable text")
        return [[float(len(text))] * DIM for text in texts]


@pytest.fixture
def fast_retry():
    return RetryHandler(RetryConfig(max_attempts=3, base_delay=0.001, min_delay=0.0, jitter=False))


@pytest.fixture
def make_worker(tokenizer, metrics, fast_retry):
    def make(embedder=None, sink=None, on_error=None, batch_size=32, **stub_kwargs):
        embedder = embedder or StubEmbedder(tokenizer, metrics, **stub_kwargs)
        queue = EmbedQueue()
        delivered = []
        worker = EmbedWorker(
            embedder,
            queue,
            sink or delivered.extend,
            config=WorkerConfig(ml_worker_batch_size=batch_size, ml_worker_poll_interval=0.01),
            on_error=on_error,
            metrics=metrics,
            retry_handler=fast_retry,
        )
        return worker, queue, delivered
    return make


def fill(queue, texts):
    for index, text in enumerate(texts):
        queue.push(EmbedChunk(id=f"c{index}", text=text, payload={"index": index}))


@pytest.mark.asyncio
async def test_run_once_delivers_in_queue_order(make_worker):
    worker, queue, delivered = make_worker()
    fill(queue, ["a", "bb", "ccc"])

    handled = await worker.run_once()

    assert handled == 3
    assert [chunk.id for chunk in delivered] == ["c0", "c1", "c2"]
    assert [chunk.vector[0] for chunk in delivered] == [1.0, 2.0, 3.0]
    assert [chunk.payload["index"] for chunk in delivered] == [0, 1, 2]
    assert queue.is_empty()


@pytest.mark.asyncio
async def test_run_once_respects_batch_size(make_worker, metrics):
    worker, queue, delivered = make_worker(batch_size=2)
    fill(queue, ["a", "b", "c"])

    assert await worker.run_once() == 2
    assert len(queue) == 1
    assert "ml_embed_queue_depth 1.0" in metrics.get_metrics()
    assert await worker.run_once() == 1
    assert await worker.run_once() == 0


@pytest.mark.asyncio
async def test_async_sink_is_awaited(make_worker):
    received = []

    async def sink(chunks):
        await asyncio.sleep(0)
        received.extend(chunks)

    worker, queue, _ = make_worker(sink=sink)
    fill(queue, ["hello"])

    await worker.run_once()

    assert [chunk.id for chunk in received] == ["c0"]


@pytest.mark.asyncio
async def test_bad_chunk_is_isolated(make_worker, metrics):
    failures = []
    worker, queue, delivered = make_worker(
        on_error=lambda chunk, error: failures.append((chunk.id, error)),
        rejected={"bad"},
    )
    fill(queue, ["good", "bad", "fine"])

    handled = await worker.run_once()

    assert handled == 2
    assert [chunk.id for chunk in delivered] == ["c0", "c2"]
    assert len(failures) == 1
    assert failures[0][0] == "c1"
    assert isinstance(failures[0][1], TokenizationError)

    exposition = metrics.get_metrics()
    assert 'ml_embed_worker_chunks_total{status="embedded"} 2.0' in exposition
    assert 'ml_embed_worker_chunks_total{status="failed"} 1.0' in exposition


@pytest.mark.asyncio
async def test_transient_failure_is_retried(make_worker, tokenizer, metrics):
    embedder = StubEmbedder(tokenizer, metrics, transient_failures=2)
    worker, queue, delivered = make_worker(embedder=embedder)
    fill(queue, ["a", "b"])

    assert await worker.run_once() == 2
    assert embedder.batch_calls == 3
    assert len(delivered) == 2


@pytest.mark.asyncio
async def test_persistent_failure_fails_whole_batch(make_worker, tokenizer, metrics):
    failures = []
    embedder = StubEmbedder(tokenizer, metrics, transient_failures=10)
    worker, queue, delivered = make_worker(
        embedder=embedder,
        on_error=lambda chunk, error: failures.append(chunk.id),
    )
    fill(queue, ["a", "b"])

    assert await worker.run_once() == 0
    assert delivered == []
    assert failures == ["c0", "c1"]
    assert embedder.embed_calls == 0


@pytest.mark.asyncio
async def test_run_drains_until_stopped(make_worker):
    worker, queue, delivered = make_worker(batch_size=4)
    fill(queue, [f"text {index}" for index in range(10)])
    stop_event = asyncio.Event()

    task = asyncio.create_task(worker.run(stop_event))
    for _ in range(200):
        if len(delivered) == 10:
            break
        await asyncio.sleep(0.005)

    stop_event.set()
    await asyncio.wait_for(task, timeout=1)

    assert [chunk.id for chunk in delivered] == [f"c{index}" for index in range(10)]


@pytest.mark.asyncio
async def test_sink_failure_reports_chunks_and_worker_keeps_running(make_worker, metrics):
    """A sink that fails once loses no chunks silently and does not stop ``run``."""
    failures = []
    calls = []
    delivered = []

    def sink(chunks):
        calls.append([chunk.id for chunk in chunks])
        if len(calls) == 1:
            raise ConnectionError("store down")
        delivered.extend(chunks)

    worker, queue, _ = make_worker(
        sink=sink,
        batch_size=2,
        on_error=lambda chunk, error: failures.append((chunk.id, type(error).__name__)),
    )
    fill(queue, ["a", "b", "c", "d"])
    stop_event = asyncio.Event()

    task = asyncio.create_task(worker.run(stop_event))
    for _ in range(200):
        if len(delivered) == 2:
            break
        await asyncio.sleep(0.005)

    stop_event.set()
    await asyncio.wait_for(task, timeout=1)

    assert task.exception() is None
    assert failures == [("c0", "ConnectionError"), ("c1", "ConnectionError")]
    assert [chunk.id for chunk in delivered] == ["c2", "c3"]
    assert queue.is_empty()

    exposition = metrics.get_metrics()
    assert 'ml_embed_worker_chunks_total{status="failed"} 2.0' in exposition
    assert 'ml_embed_worker_chunks_total{status="embedded"} 2.0' in exposition


@pytest.mark.asyncio
async def test_unexpected_embedder_error_is_reported(make_worker, tokenizer, metrics):
    class BrokenEmbedder(StubEmbedder):
        async def batch_embed(self, texts):
            raise RuntimeError("unexpected")

    failures = []
    worker, queue, delivered = make_worker(
        embedder=BrokenEmbedder(tokenizer, metrics),
        on_error=lambda chunk, error: failures.append((chunk.id, type(error).__name__)),
    )
    fill(queue, ["a"])

    assert await worker.run_once() == 0
    assert failures == [("c0", "RuntimeError")]
    assert delivered == []


@pytest.mark.asyncio
async def test_run_survives_failing_error_callback(make_worker):
    """An iteration that raises is logged and the loop keeps draining."""
    calls = []

    def on_error(chunk, error):
        calls.append(chunk.id)
        raise ValueError("callback broke")

    worker, queue, delivered = make_worker(on_error=on_error, rejected={"bad"})
    queue.push(EmbedChunk(id="first", text="bad"))
    stop_event = asyncio.Event()

    task = asyncio.create_task(worker.run(stop_event))
    for _ in range(200):
        if calls:
            break
        await asyncio.sleep(0.005)

    queue.push(EmbedChunk(id="second", text="good"))
    for _ in range(200):
        if delivered:
            break
        await asyncio.sleep(0.005)

    stop_event.set()
    await asyncio.wait_for(task, timeout=1)

    assert calls == ["first"]
    assert [chunk.id for chunk in delivered] == ["second"]


def test_default_retry_handler_follows_config(tokenizer, metrics):
    worker = EmbedWorker(
        StubEmbedder(tokenizer, metrics),
        EmbedQueue(),
        lambda chunks: None,
        config=WorkerConfig(ml_worker_retry_attempts=5),
        metrics=metrics,
    )

    assert worker.retry_handler.config.max_attempts == 5
    assert worker.retry_handler.config.retryable_exceptions == (InferenceError,)

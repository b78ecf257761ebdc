"""Shared fixtures and fakes for embedder tests.

Tests never download a model: a word-level tokenizer is built in memory with
the ``tokenizers`` library, and ``FakeInferenceSession`` mimics the parts of
``onnxruntime.InferenceSession`` the engine touches. Its hidden states are a
fixed lookup table indexed by token id, so pooled vectors are deterministic
and a dedicated token id yields NaN.
"""

import threading
import time

import numpy as np
import pytest
from prometheus_client import CollectorRegistry
from tokenizers import Tokenizer, normalizers, pre_tokenizers
from tokenizers.models import WordLevel
from tokenizers.processors import TemplateProcessing
from transformers import PreTrainedTokenizerFast

from semantic.common.metrics import MetricsCollector
from semantic.embedder.accelerated import AcceleratedEmbedder
from semantic.embedder.cpu import CpuEmbedder
from semantic.embedder.pool import SessionPool
from semantic.embedder import session as session_module
from semantic.embedder.session import ModelSession
from semantic.embedder.tokenizer import TokenizerAdapter

DIM = 8
NAN_TOKEN = 10

VOCAB = {
    "[PAD]": 0,
    "[UNK]": 1,
    "[CLS]": 2,
    "[SEP]": 3,
    "hello": 4,
    "world": 5,
    "the": 6,
    "quick": 7,
    "brown": 8,
    "fox": 9,
    "nan": NAN_TOKEN,
    "search": 11,
    "query": 12,
}


def build_word_tokenizer() -> Tokenizer:
    tokenizer = Tokenizer(WordLevel(vocab=VOCAB, unk_token="[UNK]"))
    tokenizer.normalizer = normalizers.Lowercase()
    tokenizer.pre_tokenizer = pre_tokenizers.Whitespace()
    tokenizer.post_processor = TemplateProcessing(
        single="[CLS] $A [SEP]",
        pair="[CLS] $A [SEP] $B:1 [SEP]:1",
        special_tokens=[("[CLS]", VOCAB["[CLS]"]), ("[SEP]", VOCAB["[SEP]"])],
    )
    return tokenizer


def build_fast_tokenizer() -> PreTrainedTokenizerFast:
    return PreTrainedTokenizerFast(
        tokenizer_object=build_word_tokenizer(),
        unk_token="[UNK]",
        pad_token="[PAD]",
        cls_token="[CLS]",
        sep_token="[SEP]",
    )


def hidden_table() -> np.ndarray:
    table = np.random.default_rng(0).standard_normal((64, DIM)).astype(np.float32)
    table[NAN_TOKEN] = np.nan
    return table


class FakeNode:
    """Stand-in for ``onnxruntime.NodeArg``."""

    def __init__(self, name, shape):
        self.name = name
        self.shape = shape


class ConcurrencyTracker:
    """Counts overlapping ``run`` calls across one or more fake sessions."""

    def __init__(self):
        self.active = 0
        self.peak = 0
        self.calls = 0
        self._lock = threading.Lock()

    def enter(self):
        with self._lock:
            self.active += 1
            self.calls += 1
            self.peak = max(self.peak, self.active)

    def exit(self):
        with self._lock:
            self.active -= 1


class FakeInferenceSession:
    """Deterministic stand-in for ``onnxruntime.InferenceSession``."""

    def __init__(
        self,
        inputs=("input_ids", "attention_mask", "token_type_ids"),
        delay=0.0,
        fail=False,
        output_rank=3,
        tracker=None,
    ):
        self.input_names = list(inputs)
        self.delay = delay
        self.fail = fail
        self.output_rank = output_rank
        self.tracker = tracker or ConcurrencyTracker()
        self.own = ConcurrencyTracker()
        self.table = hidden_table()
        self.feeds = []

    def get_inputs(self):
        return [FakeNode(name, ["batch", "sequence"]) for name in self.input_names]

    def get_outputs(self):
        return [FakeNode("last_hidden_state", ["batch", "sequence", DIM])]

    def get_providers(self):
        return ["CPUExecutionProvider"]

    def run(self, output_names, feeds):
        self.tracker.enter()
        self.own.enter()
        try:
            self.feeds.append(feeds)
            if self.delay:
                time.sleep(self.delay)
            if self.fail:
                raise RuntimeError("CUDA error: out of memory")

            hidden = self.table[feeds["input_ids"]]
            if self.output_rank == 2:
                hidden = hidden[:, 0, :]
            return [hidden]
        finally:
            self.own.exit()
            self.tracker.exit()


def expected_vector(token_ids) -> np.ndarray:
    """Mean of the lookup-table rows for ``token_ids``."""
    return hidden_table()[list(token_ids)].mean(axis=0)


@pytest.fixture
def fast_tokenizer():
    return build_fast_tokenizer()


@pytest.fixture
def tokenizer(fast_tokenizer):
    return TokenizerAdapter(fast_tokenizer, truncate=True, max_length=16)


@pytest.fixture
def chunk_tokenizer(fast_tokenizer):
    return TokenizerAdapter(fast_tokenizer, truncate=False)


@pytest.fixture
def metrics():
    return MetricsCollector("test-embedder", registry=CollectorRegistry())


@pytest.fixture
def model_dir(tmp_path):
    """A model directory with a real tokenizer file and placeholder weights."""
    build_word_tokenizer().save(str(tmp_path / "tokenizer.json"))
    (tmp_path / "model.onnx").write_bytes(b"onnx-weights")
    return tmp_path


@pytest.fixture
def fake_ort(monkeypatch):
    """Route ``onnxruntime.InferenceSession`` construction to the fake."""
    created = []

    def factory(model, sess_options=None, providers=None):
        session = FakeInferenceSession()
        session.model = model
        session.requested_providers = providers
        created.append(session)
        return session

    monkeypatch.setattr(session_module.ort, "InferenceSession", factory)
    return created


@pytest.fixture
def make_cpu_embedder(tokenizer, metrics):
    def make(session=None, nan_policy="warn"):
        return CpuEmbedder(
            ModelSession(session or FakeInferenceSession()),
            tokenizer,
            DIM,
            nan_policy=nan_policy,
            metrics=metrics,
        )
    return make


@pytest.fixture
def make_accelerated_embedder(tokenizer, chunk_tokenizer, metrics):
    def make(
        pool_size=3,
        delay=0.0,
        tracker=None,
        nan_policy="warn",
        retry_attempts=3,
        retry_delay=0.001,
    ):
        tracker = tracker or ConcurrencyTracker()
        sessions = [
            ModelSession(FakeInferenceSession(delay=delay, tracker=tracker))
            for _ in range(pool_size)
        ]
        pool = SessionPool(
            sessions,
            retry_attempts=retry_attempts,
            retry_delay=retry_delay,
            metrics=metrics,
        )
        return AcceleratedEmbedder(
            pool,
            tokenizer,
            chunk_tokenizer,
            DIM,
            nan_policy=nan_policy,
            metrics=metrics,
        )
    return make

"""ONNX Runtime session plumbing shared by both backends.

``ModelSession`` owns one ``onnxruntime.InferenceSession`` and turns token
encodings into pooled sentence vectors:

1. ``build_input_tensors`` packs encodings into ``int64`` arrays of shape
   ``(batch, length)``, right-padding shorter rows with a zero mask
2. the session produces per-token hidden states ``(batch, length, D)``
3. ``mean_pool`` averages the unmasked token vectors into ``(batch, D)``
"""

from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import onnxruntime as ort
import structlog

from .errors import InferenceError, ModelLoadError, TensorShapeError
from .tokenizer import Encoding

logger = structlog.get_logger("embedder.session")

# Tensor names understood by BERT-style feature extraction graphs.
SUPPORTED_INPUTS = ("input_ids", "attention_mask", "token_type_ids")


def build_session_options(threads: int = 1) -> ort.SessionOptions:
    """Session options with full graph optimization and a fixed thread count."""
    options = ort.SessionOptions()
    options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
    options.intra_op_num_threads = threads
    options.inter_op_num_threads = 1
    options.log_severity_level = 2
    return options


def read_model_bytes(path: Path) -> bytes:
    """Read model weights once so several sessions can share them."""
    path = Path(path)
    if not path.is_file():
        raise ModelLoadError(f"model file not found: {path}")
    return path.read_bytes()


def create_inference_session(
    model: Union[bytes, Path],
    threads: int = 1,
    providers: Optional[List[str]] = None,
) -> ort.InferenceSession:
    """Build an ``InferenceSession`` or raise ``ModelLoadError``."""
    if isinstance(model, Path):
        model = read_model_bytes(model)

    try:
        return ort.InferenceSession(
            model,
            sess_options=build_session_options(threads),
            providers=providers or ["CPUExecutionProvider"],
        )
    except Exception as e:
        logger.error("Failed to create inference session", providers=providers, error=str(e))
        raise ModelLoadError(f"cannot create inference session: {e}") from e


def build_input_tensors(
    encodings: Sequence[Encoding],
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Pack encodings into ``(input_ids, attention_mask, token_type_ids)``."""
    if not encodings:
        raise TensorShapeError("cannot build tensors for an empty batch")

    length = max(len(encoding) for encoding in encodings)
    if length == 0:
        raise TensorShapeError("cannot build tensors for zero-length sequences")

    shape = (len(encodings), length)
    input_ids = np.zeros(shape, dtype=np.int64)
    attention_mask = np.zeros(shape, dtype=np.int64)
    token_type_ids = np.zeros(shape, dtype=np.int64)

    for row, encoding in enumerate(encodings):
        size = len(encoding.ids)
        if len(encoding.attention_mask) != size or len(encoding.type_ids) != size:
            raise TensorShapeError(
                f"encoding {row} has mismatched ids/mask/type lengths"
            )
        input_ids[row, :size] = encoding.ids
        attention_mask[row, :size] = encoding.attention_mask
        token_type_ids[row, :size] = encoding.type_ids

    return input_ids, attention_mask, token_type_ids


def mean_pool(hidden: np.ndarray, attention_mask: np.ndarray) -> np.ndarray:
    """Average token vectors along the token axis, ignoring padding."""
    if hidden.ndim != 3:
        raise TensorShapeError(f"expected rank-3 model output, got rank {hidden.ndim}")
    if hidden.shape[:2] != attention_mask.shape:
        raise TensorShapeError(
            f"output shape {hidden.shape} does not match mask shape {attention_mask.shape}"
        )

    mask = attention_mask[..., np.newaxis] > 0
    summed = np.where(mask, hidden, 0.0).sum(axis=1)
    counts = np.clip(mask.sum(axis=1), 1, None)
    return (summed / counts).astype(np.float32)


class ModelSession:
    """One native inference session and the tensors it expects.

    Not safe for concurrent use by the accelerated pool; callers there only
    reach a ``ModelSession`` while holding its slot lock.
    """

    def __init__(self, session: ort.InferenceSession):
        self._session = session
        inputs = session.get_inputs()
        self._input_ranks: Dict[str, int] = {node.name: len(node.shape) for node in inputs}
        self._output = session.get_outputs()[0]

        unsupported = [name for name in self._input_ranks if name not in SUPPORTED_INPUTS]
        if unsupported:
            raise ModelLoadError(f"model expects unsupported inputs: {unsupported}")

    @property
    def providers(self) -> List[str]:
        if self._session is None:
            return []
        return list(self._session.get_providers())

    @property
    def closed(self) -> bool:
        return self._session is None

    def close(self) -> None:
        """Drop the native session; later runs raise ``InferenceError``."""
        self._session = None

    @property
    def output_dimension(self) -> Optional[int]:
        """Embedding width declared by the graph, if static."""
        shape = self._output.shape
        if shape and isinstance(shape[-1], int):
            return shape[-1]
        return None

    def run(
        self,
        input_ids: np.ndarray,
        attention_mask: np.ndarray,
        token_type_ids: np.ndarray,
    ) -> np.ndarray:
        """Run the graph and return its first output (token hidden states)."""
        tensors = {
            "input_ids": input_ids,
            "attention_mask": attention_mask,
            "token_type_ids": token_type_ids,
        }

        if self._session is None:
            raise InferenceError("inference session is closed")

        feeds = {}
        for name, rank in self._input_ranks.items():
            tensor = tensors[name]
            if tensor.ndim != rank:
                raise TensorShapeError(
                    f"input {name} has rank {tensor.ndim}, model expects {rank}"
                )
            feeds[name] = tensor

        try:
            outputs = self._session.run([self._output.name], feeds)
        except Exception as e:
            raise InferenceError(f"inference failed: {e}") from e

        return np.asarray(outputs[0])

    def embed_encodings(self, encodings: Sequence[Encoding]) -> np.ndarray:
        """Pooled vectors of shape ``(len(encodings), D)``."""
        input_ids, attention_mask, token_type_ids = build_input_tensors(encodings)
        hidden = self.run(input_ids, attention_mask, token_type_ids)
        return mean_pool(hidden, attention_mask)

    def evaluate(self, encoding: Encoding) -> np.ndarray:
        """Single-sequence evaluation; returns one ``D``-length vector."""
        return self.embed_encodings([encoding])[0]

    def batch_evaluate(self, encodings: Sequence[Encoding]) -> np.ndarray:
        """Batch evaluation; returns one flat buffer of ``len * D`` floats."""
        return self.embed_encodings(encodings).reshape(-1)

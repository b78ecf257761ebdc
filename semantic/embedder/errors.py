"""Error taxonomy for the embedding engine.

Every failure of ``embed``/``batch_embed`` is an ``InferenceError`` so callers
can catch one type. The ``retryable`` flag separates input problems (retrying
the same text is futile) from transient resource problems (a retry may
succeed). ``ModelLoadError`` is raised only at construction and is fatal.
"""


class EmbedderError(Exception):
    """Base class for all embedder errors."""

    retryable = False


class ModelLoadError(EmbedderError):
    """Model weights or tokenizer files are missing or cannot be loaded."""


class InferenceError(EmbedderError):
    """The native evaluation call failed (resource exhaustion, bad session)."""

    retryable = True


class TokenizationError(InferenceError):
    """Input text cannot be tokenized."""

    retryable = False


class TensorShapeError(InferenceError):
    """Input tensors or model outputs do not have the expected rank/shape."""

    retryable = False


class PoolExhaustionFault(InferenceError):
    """A caller holds an admission permit but no session could be locked."""

    retryable = True


class DataQualityError(InferenceError):
    """An embedding contains NaN values and the policy is to fail closed."""

    retryable = False


class DataQualityWarning(UserWarning):
    """An embedding contains NaN values and was returned anyway."""

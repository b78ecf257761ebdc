"""Local semantic embedding engine.

Subpackages:
- ``semantic.common``: configuration, logging, and metrics.
- ``semantic.embedder``: the embedding queue, the ``Embedder`` capability,
  and its CPU and accelerated backends.

Usage:
- Build an embedder from the environment with
  ``semantic.embedder.factory.create_embedder``.

Notes:
- Heavy imports (transformers, onnxruntime) live under ``semantic.embedder``
  so importing ``semantic.common`` stays cheap.
"""

__version__ = "0.1.0"

"""Execution provider detection and backend selection.

Asks onnxruntime which execution providers this build supports and picks
the embedder backend from the ``ML_GPU_PREFERENCE`` setting.
"""

from typing import List, Optional

import onnxruntime as ort
import structlog

logger = structlog.get_logger("embedder.devices")

CPU_PROVIDER = "CPUExecutionProvider"

# Ordered by preference.
ACCELERATOR_PROVIDERS = (
    "CUDAExecutionProvider",
    "ROCMExecutionProvider",
    "CoreMLExecutionProvider",
    "DmlExecutionProvider",
)


class ProviderDetector:
    """Detects and caches the available onnxruntime execution providers."""

    def __init__(self):
        self.available_providers: List[str] = []
        self._detection_complete = False

    def detect_providers(self) -> List[str]:
        """Detect available execution providers."""
        if self._detection_complete:
            return self.available_providers

        try:
            providers = list(ort.get_available_providers())
        except Exception as e:
            logger.error("Execution provider detection failed", error=str(e))
            providers = [CPU_PROVIDER]

        self.available_providers = providers
        self._detection_complete = True

        logger.info(
            "Execution provider detection completed",
            providers=providers,
            accelerators=self.accelerator_providers(),
        )
        return providers

    def accelerator_providers(self) -> List[str]:
        """Accelerator providers present in this build, best first."""
        available = self.detect_providers()
        return [provider for provider in ACCELERATOR_PROVIDERS if provider in available]

    def has_accelerator(self) -> bool:
        return bool(self.accelerator_providers())

    def session_providers(self) -> List[str]:
        """Provider list for a session: accelerators first, CPU as fallback."""
        return self.accelerator_providers() + [CPU_PROVIDER]

    def select_backend(self, preference: str = "auto") -> str:
        """Select ``accelerated`` or ``cpu`` for the given preference."""
        if preference == "cpu":
            backend = "cpu"
        elif preference == "gpu":
            if self.has_accelerator():
                backend = "accelerated"
            else:
                logger.warning("GPU requested but not available, falling back to CPU")
                backend = "cpu"
        else:  # auto
            backend = "accelerated" if self.has_accelerator() else "cpu"

        logger.info("Embedder backend selected", backend=backend, preference=preference)
        return backend


# Global provider detector instance
_provider_detector: Optional[ProviderDetector] = None


def get_provider_detector() -> ProviderDetector:
    """Get or create the provider detector instance."""
    global _provider_detector
    if _provider_detector is None:
        _provider_detector = ProviderDetector()
    return _provider_detector

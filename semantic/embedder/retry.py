"""Retry handler with exponential backoff for embedding operations.

Only errors flagged ``retryable`` are retried. Input problems
(``TokenizationError``, ``TensorShapeError``, ``DataQualityError``) fail on
the first attempt because the same text against the same model fails the
same way.
"""

import asyncio
import inspect
import random
from typing import Any, Callable, Optional, Tuple, Type

import structlog

from .errors import InferenceError

logger = structlog.get_logger("retry_handler")


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        min_delay: float = 0.1,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Tuple[Type[BaseException], ...] = (InferenceError,)
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.min_delay = min_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions


class RetryHandler:
    """Handles retry logic with exponential backoff."""

    def __init__(self, config: Optional[RetryConfig] = None):
        self.config = config or RetryConfig()

    def is_retryable(self, error: BaseException) -> bool:
        return isinstance(error, self.config.retryable_exceptions) and getattr(
            error, "retryable", True
        )

    async def execute_with_retry(
        self,
        func: Callable,
        *args,
        operation_name: str = "unknown",
        **kwargs
    ) -> Any:
        """Execute ``func`` (sync or async), retrying retryable failures."""
        for attempt in range(self.config.max_attempts):
            try:
                result = func(*args, **kwargs)
                if inspect.isawaitable(result):
                    result = await result

                if attempt > 0:
                    logger.info(
                        "Operation succeeded after retry",
                        operation=operation_name,
                        attempt=attempt + 1,
                        total_attempts=self.config.max_attempts
                    )

                return result

            except Exception as e:
                if not self.is_retryable(e):
                    raise

                if attempt == self.config.max_attempts - 1:
                    logger.error(
                        "Operation failed after all retries",
                        operation=operation_name,
                        attempts=self.config.max_attempts,
                        error=str(e)
                    )
                    raise

                delay = self._calculate_delay(attempt)

                logger.warning(
                    "Operation failed, retrying",
                    operation=operation_name,
                    attempt=attempt + 1,
                    total_attempts=self.config.max_attempts,
                    delay_seconds=delay,
                    error=str(e)
                )

                await asyncio.sleep(delay)

        raise RuntimeError("Retry logic error")

    def _calculate_delay(self, attempt: int) -> float:
        """Calculate delay for the given attempt."""
        delay = self.config.base_delay * (self.config.exponential_base ** attempt)
        delay = min(delay, self.config.max_delay)

        if self.config.jitter:
            jitter_range = delay * 0.1
            delay += random.uniform(-jitter_range, jitter_range)

        return max(delay, self.config.min_delay)


def create_embedding_retry_handler(max_attempts: int = 3, base_delay: float = 0.5) -> RetryHandler:
    """Retry handler tuned for transient inference failures."""
    return RetryHandler(
        RetryConfig(
            max_attempts=max_attempts,
            base_delay=base_delay,
            max_delay=30.0,
            exponential_base=2.0,
            jitter=True,
        )
    )

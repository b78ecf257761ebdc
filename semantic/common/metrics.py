"""Metrics collection for the embedding engine.

Provides a thin convenience wrapper around ``prometheus_client`` so backends,
the session pool, and the queue worker record activity consistently.

Design notes
- Metrics and labels are predeclared to avoid cardinality explosions
- A single registry is kept per collector (can be injected for testing)
- Decorators are provided for quick timing instrumentation
"""

import time
from functools import wraps
from typing import Any, Callable, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest
import structlog

logger = structlog.get_logger("metrics")


class MetricsCollector:
    """Centralized metrics collection for the embedder.

    Parameters
    - service_name: Logical name used for scoping
    - registry: Optional custom ``CollectorRegistry`` (e.g. for testing)
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry or CollectorRegistry()

        self.embedding_requests = Counter(
            'ml_embedding_requests_total',
            'Total embedding requests',
            ['backend', 'operation'],
            registry=self.registry
        )

        self.embedding_duration = Histogram(
            'ml_embedding_duration_seconds',
            'Embedding generation duration',
            ['backend', 'operation'],
            registry=self.registry
        )

        self.embedding_errors = Counter(
            'ml_embedding_errors_total',
            'Embedding failures by error type',
            ['backend', 'error_type'],
            registry=self.registry
        )

        self.embedding_nan = Counter(
            'ml_embedding_nan_total',
            'Embeddings containing NaN values',
            ['backend'],
            registry=self.registry
        )

        self.pool_permits_in_use = Gauge(
            'ml_session_pool_permits_in_use',
            'Admission permits currently held',
            ['backend'],
            registry=self.registry
        )

        self.pool_scan_retries = Counter(
            'ml_session_pool_scan_retries_total',
            'Pool scans that found no free session while holding a permit',
            ['backend'],
            registry=self.registry
        )

        self.pool_exhaustion = Counter(
            'ml_session_pool_exhaustion_total',
            'Pool exhaustion faults raised after bounded retry',
            ['backend'],
            registry=self.registry
        )

        self.queue_depth = Gauge(
            'ml_embed_queue_depth',
            'Chunks waiting in the embed queue',
            registry=self.registry
        )

        self.worker_chunks = Counter(
            'ml_embed_worker_chunks_total',
            'Chunks handled by the embed worker partitioned by status',
            ['status'],
            registry=self.registry
        )

    def record_embedding(
        self,
        backend: str,
        operation: str,
        duration: float,
        count: int = 1
    ) -> None:
        """Record embedding metrics.

        duration is expected in seconds to match Prometheus histogram units.
        """
        self.embedding_requests.labels(backend=backend, operation=operation).inc(count)
        self.embedding_duration.labels(backend=backend, operation=operation).observe(duration)

    def record_error(self, backend: str, error_type: str) -> None:
        """Record an embedding failure."""
        self.embedding_errors.labels(backend=backend, error_type=error_type).inc()

    def record_nan(self, backend: str) -> None:
        """Record a NaN-contaminated embedding."""
        self.embedding_nan.labels(backend=backend).inc()

    def set_permits_in_use(self, backend: str, count: int) -> None:
        """Set the number of admission permits currently held."""
        self.pool_permits_in_use.labels(backend=backend).set(count)

    def record_pool_scan_retry(self, backend: str) -> None:
        """Record a pool scan that found every session locked."""
        self.pool_scan_retries.labels(backend=backend).inc()

    def record_pool_exhaustion(self, backend: str) -> None:
        """Record a pool exhaustion fault."""
        self.pool_exhaustion.labels(backend=backend).inc()

    def set_queue_depth(self, depth: int) -> None:
        """Set the embed queue depth."""
        self.queue_depth.set(depth)

    def record_worker_chunks(self, status: str, count: int = 1) -> None:
        """Record chunks handled by the worker (``embedded`` or ``failed``)."""
        self.worker_chunks.labels(status=status).inc(count)

    def get_metrics(self) -> str:
        """Get metrics in Prometheus exposition format for scraping."""
        return generate_latest(self.registry).decode('utf-8')


# Global metrics collector instance
_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector(service_name: str = "semantic-embedder") -> MetricsCollector:
    """Get or create the metrics collector.

    Returns a process-wide singleton to avoid duplicate collectors/labels.
    """
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector(service_name)
    return _metrics_collector


def measure_time(operation: str, **labels: Any) -> Callable:
    """Decorator to measure coroutine execution time.

    Example
    >>> @measure_time("model_load", backend="cpu")
    ... async def load():
    ...     ...
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            start_time = time.time()
            try:
                result = await func(*args, **kwargs)
                duration = time.time() - start_time
                logger.debug(
                    f"Operation {operation} completed",
                    operation=operation,
                    duration_ms=duration * 1000,
                    **labels
                )
                return result
            except Exception as e:
                duration = time.time() - start_time
                logger.error(
                    f"Operation {operation} failed",
                    operation=operation,
                    duration_ms=duration * 1000,
                    error=str(e),
                    **labels
                )
                raise
        return wrapper
    return decorator

"""Fixed-size pool of inference sessions behind an admission gate.

The pool bounds concurrent evaluations with an ``asyncio.Semaphore`` of ``N``
permits and guards each of its ``N`` sessions with its own lock. A caller:

1. acquires a permit (an explicit suspension point; a cancelled wait takes
   no permit with it)
2. takes the first session whose lock is free, retrying the scan with
   bounded exponential backoff if none is
3. runs its evaluation in a worker thread while holding both
4. returns the session and the permit

Sessions are never handed out except to the callable passed to ``run``, so
a native handle is only touched by the one caller holding its lock.
"""

import asyncio
import functools
import threading
from typing import Callable, Generic, List, Optional, Sequence, TypeVar

import structlog

from semantic.common.metrics import MetricsCollector, get_metrics_collector

from .errors import InferenceError, PoolExhaustionFault

logger = structlog.get_logger("embedder.pool")

S = TypeVar("S")
T = TypeVar("T")


class SessionSlot(Generic[S]):
    """One pooled session and the lock that owns it."""

    def __init__(self, index: int, session: S):
        self.index = index
        self.session = session
        self.lock = threading.Lock()


class SessionPool(Generic[S]):
    """Admission-controlled pool of independently lockable sessions.

    Parameters
    - sessions: The sessions to pool; the pool size is fixed to their count
    - backend: Label used in logs and metrics
    - retry_attempts: Pool scans attempted while holding a permit
    - retry_delay: Base backoff in seconds between scans (doubles each time)
    - metrics: Optional ``MetricsCollector``
    """

    def __init__(
        self,
        sessions: Sequence[S],
        backend: str = "accelerated",
        retry_attempts: int = 5,
        retry_delay: float = 0.01,
        metrics: Optional[MetricsCollector] = None,
    ):
        if not sessions:
            raise ValueError("session pool needs at least one session")
        if retry_attempts < 1:
            raise ValueError("retry_attempts must be at least 1")

        self._slots: List[SessionSlot[S]] = [
            SessionSlot(index, session) for index, session in enumerate(sessions)
        ]
        self.backend = backend
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self.metrics = metrics or get_metrics_collector()

        self._permits_in_use = 0
        self._in_flight = 0
        self._closed = False
        self._gate: Optional[asyncio.Semaphore] = None
        self._gate_loop: Optional[asyncio.AbstractEventLoop] = None
        self.peak_in_flight = 0

    @property
    def size(self) -> int:
        return len(self._slots)

    @property
    def permits_in_use(self) -> int:
        return self._permits_in_use

    @property
    def available_permits(self) -> int:
        return self.size - self._permits_in_use

    @property
    def in_flight(self) -> int:
        """Evaluations currently running on a locked session."""
        return self._in_flight

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self, release: Callable[[S], None]) -> None:
        """Stop admitting callers and ``release`` every idle session.

        A session still evaluating for a cancelled caller is left to the
        garbage collector once its native call returns.
        """
        self._closed = True
        for slot in self._slots:
            if not slot.lock.acquire(blocking=False):
                logger.warning("Session busy at close", backend=self.backend, session=slot.index)
                continue
            try:
                release(slot.session)
            finally:
                slot.lock.release()
        logger.info("Session pool closed", backend=self.backend, pool_size=self.size)

    async def run(self, evaluate: Callable[[S], T]) -> T:
        """Run ``evaluate(session)`` on a free session in a worker thread."""
        if self._closed:
            raise InferenceError("session pool is closed")

        await self._admission_gate().acquire()
        self._set_permits(self._permits_in_use + 1)

        try:
            slot = await self._checkout()
        except BaseException:
            self._release_permit()
            raise

        self._in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self._in_flight)

        deferred = False
        try:
            future = asyncio.get_running_loop().run_in_executor(None, evaluate, slot.session)
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            if not future.done():
                # The native call still owns the session; hand it back when it returns.
                future.add_done_callback(functools.partial(self._checkin_when_done, slot))
                deferred = True
            raise
        finally:
            if not deferred:
                self._checkin(slot)

    def _admission_gate(self) -> asyncio.Semaphore:
        """The semaphore for the running loop.

        Created on first use so a pool built outside any loop (before
        ``asyncio.run``) binds to the loop that actually runs it. An idle
        pool moving to a new loop gets a fresh gate.
        """
        loop = asyncio.get_running_loop()
        if self._gate is None or (self._gate_loop is not loop and self._permits_in_use == 0):
            self._gate = asyncio.Semaphore(self.size)
            self._gate_loop = loop
        return self._gate

    async def _checkout(self) -> SessionSlot[S]:
        for attempt in range(self.retry_attempts):
            for slot in self._slots:
                if slot.lock.acquire(blocking=False):
                    return slot

            self.metrics.record_pool_scan_retry(self.backend)
            if attempt == self.retry_attempts - 1:
                break

            delay = self.retry_delay * (2 ** attempt)
            logger.warning(
                "No free session while holding a permit, retrying",
                backend=self.backend,
                attempt=attempt + 1,
                total_attempts=self.retry_attempts,
                delay_seconds=delay,
                permits_in_use=self._permits_in_use,
            )
            await asyncio.sleep(delay)

        self.metrics.record_pool_exhaustion(self.backend)
        logger.error(
            "Session pool exhausted",
            backend=self.backend,
            pool_size=self.size,
            permits_in_use=self._permits_in_use,
            attempts=self.retry_attempts,
        )
        raise PoolExhaustionFault(
            f"no lockable session after {self.retry_attempts} scans "
            f"with {self._permits_in_use}/{self.size} permits issued"
        )

    def _checkin(self, slot: SessionSlot[S]) -> None:
        self._in_flight -= 1
        slot.lock.release()
        self._release_permit()

    def _checkin_when_done(self, slot: SessionSlot[S], future: "asyncio.Future[T]") -> None:
        if not future.cancelled() and future.exception() is not None:
            logger.warning(
                "Abandoned evaluation failed",
                backend=self.backend,
                session=slot.index,
                error=str(future.exception()),
            )
        self._checkin(slot)

    def _release_permit(self) -> None:
        self._set_permits(self._permits_in_use - 1)
        self._gate.release()

    def _set_permits(self, count: int) -> None:
        self._permits_in_use = count
        self.metrics.set_permits_in_use(self.backend, count)

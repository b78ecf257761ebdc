"""Work queue of pending embedding chunks.

``EmbedQueue`` is a multi-producer/multi-consumer queue backed by a
``collections.deque`` (whose ``append``/``popleft`` are atomic) plus a
lock-guarded length counter. Reading the length never touches the storage,
so it is cheap to poll from metrics and schedulers.

Counter discipline
- ``push`` increments before appending and ``pop`` decrements after a
  successful removal, so the counter may briefly exceed the true size but
  never drops below zero.
"""

import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional


@dataclass
class EmbedChunk:
    """A piece of text waiting to be embedded.

    ``payload`` is carried through untouched so the consumer can store it
    next to the resulting vector.
    """
    id: str
    text: str
    payload: Dict[str, Any] = field(default_factory=dict)


class EmbedQueue:
    """Concurrent queue of ``EmbedChunk`` records.

    Each pushed chunk is returned by exactly one ``pop`` and never twice.
    Strict FIFO is not guaranteed across concurrent producers and consumers.
    """

    def __init__(self):
        self._log: Deque[EmbedChunk] = deque()
        self._len = 0
        self._len_lock = threading.Lock()

    def push(self, chunk: EmbedChunk) -> None:
        """Add a chunk to the queue."""
        with self._len_lock:
            self._len += 1
        self._log.append(chunk)

    def pop(self) -> Optional[EmbedChunk]:
        """Remove and return one chunk, or ``None`` if the queue is empty."""
        try:
            chunk = self._log.popleft()
        except IndexError:
            return None

        with self._len_lock:
            self._len -= 1
        return chunk

    def drain(self, limit: int) -> List[EmbedChunk]:
        """Pop up to ``limit`` chunks."""
        chunks = []
        while len(chunks) < limit:
            chunk = self.pop()
            if chunk is None:
                break
            chunks.append(chunk)
        return chunks

    def __len__(self) -> int:
        return self._len

    def is_empty(self) -> bool:
        return self._len == 0

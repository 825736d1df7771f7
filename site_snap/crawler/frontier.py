"""
Crawl frontier: visited / in-flight / pending bookkeeping for one crawl.
"""
from __future__ import annotations

import threading
from collections import deque
from typing import Deque, Optional, Set


class Frontier:
    """Mutable crawl state shared by all workers of a session.

    ``visited`` means "ever admitted" and only grows, so a URL that finished
    long ago is still never queued again. ``in_flight`` is always a subset of
    ``visited``. Every mutation happens under one lock.
    """

    def __init__(self, seed: Optional[str] = None) -> None:
        self._lock = threading.Lock()
        self._visited: Set[str] = set()
        self._in_flight: Set[str] = set()
        self._pending: Deque[str] = deque()
        self.dispatched_count = 0
        self.completed_count = 0
        if seed is not None:
            self.try_admit(seed)

    def try_admit(self, url: str) -> bool:
        """Queue *url* unless it was seen before; True if it was queued."""
        with self._lock:
            if url in self._visited:
                return False
            self._visited.add(url)
            self._pending.append(url)
            return True

    def dispatch(self) -> Optional[str]:
        """Pop the oldest pending URL and mark it in flight, ``None`` if idle."""
        with self._lock:
            if not self._pending:
                return None
            url = self._pending.popleft()
            self._in_flight.add(url)
            self.dispatched_count += 1
            return url

    def complete(self, url: str) -> None:
        """Release *url* from the in-flight set whatever the fetch outcome was."""
        with self._lock:
            if url in self._in_flight:
                self._in_flight.remove(url)
                self.completed_count += 1

    def is_quiescent(self) -> bool:
        with self._lock:
            return not self._pending and not self._in_flight

    @property
    def visited(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._visited)

    @property
    def in_flight(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._in_flight)

    @property
    def pending(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(self._pending)

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def __repr__(self) -> str:
        with self._lock:
            return (
                f"Frontier(visited={len(self._visited)}, "
                f"in_flight={len(self._in_flight)}, pending={len(self._pending)})"
            )

import heapq
import itertools
import threading
import time
from typing import Dict, List, Optional, Tuple


class WorkQueue:
    """
    Delayed, de-duplicating queue of node names.

    A key is held at most once: adding a key that is already queued keeps the
    earlier of the two due times. Meant to be drained by a single worker, which
    is what guarantees a node is never reconciled twice at the same time.
    """

    def __init__(self):
        self._cond = threading.Condition()
        self._heap: List[Tuple[float, int, str]] = []
        self._due: Dict[str, float] = {}
        self._seq = itertools.count()
        self._shutdown = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._due)

    def add(self, key: str) -> None:
        self.add_after(key, 0)

    def add_after(self, key: str, delay: float) -> None:
        due = time.monotonic() + max(delay, 0)
        with self._cond:
            if self._shutdown:
                return
            current = self._due.get(key)
            if current is not None and current <= due:
                return
            self._due[key] = due
            heapq.heappush(self._heap, (due, next(self._seq), key))
            self._cond.notify()

    def _drop_stale(self) -> None:
        # Entries superseded by an earlier add_after of the same key
        while self._heap and self._due.get(self._heap[0][2]) != self._heap[0][0]:
            heapq.heappop(self._heap)

    def get(self, timeout: Optional[float] = None) -> Optional[str]:
        """Next due key, or None on timeout or shutdown."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while not self._shutdown:
                self._drop_stale()
                now = time.monotonic()
                if self._heap and self._heap[0][0] <= now:
                    _, _, key = heapq.heappop(self._heap)
                    del self._due[key]
                    return key
                wait = self._heap[0][0] - now if self._heap else None
                if deadline is not None:
                    remaining = deadline - now
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)
            return None

    def shutdown(self) -> None:
        with self._cond:
            self._shutdown = True
            self._cond.notify_all()

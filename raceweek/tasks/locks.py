"""Process-scoped named locks for critical jobs.

Acquire-or-skip: a job finding its lock held is skipped, never queued.
Thread-safe because worker tasks run on a thread pool, each with its own
event loop.
"""

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class LockRegistry:
    """
    Named non-blocking locks.

    hold() is the only way in: the lock is released by the run that took it.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def _lock(self, name: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(name, threading.Lock())

    def is_held(self, name: str) -> bool:
        return self._lock(name).locked()

    @contextmanager
    def hold(self, name: str) -> Iterator[bool]:
        """Yield True with the lock held, or False if another run holds it."""
        lock = self._lock(name)
        acquired = lock.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                lock.release()


# Shared by every orchestrator in the worker process
registry = LockRegistry()

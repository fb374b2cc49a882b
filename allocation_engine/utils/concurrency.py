# allocation_engine/utils/concurrency.py

"""
Concurrency helpers: cooperative cancellation, keyed mutexes and pool sizing.
"""

import threading
import time
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

import psutil

from ..core.exceptions import ConvergenceTimeout


class CancellationToken:
    """Cooperative cancellation with an optional wall-clock deadline.

    Long-running loops call :meth:`raise_if_expired` once per generation or
    rollout step; the token itself never interrupts anything.
    """

    def __init__(self, timeout_seconds: Optional[float] = None):
        self._event = threading.Event()
        self._deadline = (
            time.monotonic() + timeout_seconds if timeout_seconds is not None else None
        )

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def deadline_passed(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    @property
    def expired(self) -> bool:
        return self.cancelled or self.deadline_passed

    @property
    def remaining_seconds(self) -> Optional[float]:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def raise_if_expired(self) -> None:
        if self.cancelled:
            raise ConvergenceTimeout("Operation cancelled", context={"cancelled": True})
        if self.deadline_passed:
            raise ConvergenceTimeout("Deadline reached", context={"cancelled": False})


class KeyedLock:
    """One mutex per key, created on first use and dropped once unused"""

    def __init__(self):
        self._guard = threading.Lock()
        # key -> [lock, holders plus waiters]
        self._entries: Dict[str, list] = {}

    def _checkout(self, key: str) -> threading.Lock:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._entries[key] = entry
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: str) -> None:
        with self._guard:
            entry = self._entries[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._entries[key]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self._checkout(key)
        try:
            with lock:
                yield
        finally:
            self._checkin(key)

    def locked(self, key: str) -> bool:
        with self._guard:
            entry = self._entries.get(key)
        return entry is not None and entry[0].locked()

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


def default_worker_count(requested: Optional[int] = None) -> int:
    """Size a CPU-bound pool: explicit request, else physical cores."""
    if requested is not None:
        return max(1, int(requested))
    cores = psutil.cpu_count(logical=False) or psutil.cpu_count() or 1
    return max(1, cores)

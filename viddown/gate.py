"""Global admission control for extraction and transfer work."""
from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator

from .errors import ServerBusy


class ConcurrencyGate:
    """Fixed number of download slots; callers are rejected, never queued.

    Every successful ``try_acquire`` must be paired with exactly one
    ``release``.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._slots = threading.BoundedSemaphore(value=capacity)
        self._lock = threading.Lock()
        self._in_use = 0

    def try_acquire(self) -> bool:
        if not self._slots.acquire(blocking=False):
            return False
        with self._lock:
            self._in_use += 1
        return True

    def release(self) -> None:
        with self._lock:
            if self._in_use == 0:
                raise RuntimeError("release() called without a matching acquire")
            self._in_use -= 1
        self._slots.release()

    def available(self) -> int:
        """Advisory count of free slots."""
        with self._lock:
            return self.capacity - self._in_use

    @contextmanager
    def slot(self) -> Iterator[None]:
        """Hold one slot for the duration of the block or raise ``ServerBusy``."""
        if not self.try_acquire():
            raise ServerBusy()
        try:
            yield
        finally:
            self.release()

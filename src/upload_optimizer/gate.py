"""Process-wide cap on simultaneously running external commands."""

from __future__ import annotations

from contextlib import contextmanager
from threading import BoundedSemaphore, Lock
from typing import Iterator


class ConcurrencyGate:
    """
    Counting permit pool shared by every pipeline run.

    One gate is built at startup and handed to the HTTP and filesystem
    ingestion paths alike. Acquisition order is not FIFO.

    Attributes:
        limit: Maximum number of permits held at once
        active: Permits currently held
        peak: Highest number of permits held at the same time so far
    """

    def __init__(self, limit: int) -> None:
        if limit < 1:
            raise ValueError("concurrency limit must be at least 1")
        self.limit = limit
        self._semaphore = BoundedSemaphore(limit)
        self._lock = Lock()
        self.active = 0
        self.peak = 0

    @contextmanager
    def permit(self) -> Iterator[None]:
        self._semaphore.acquire()
        with self._lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            yield
        finally:
            with self._lock:
                self.active -= 1
            self._semaphore.release()

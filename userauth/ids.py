from __future__ import annotations

import threading
from typing import Protocol


class IdGenerator(Protocol):
    def next(self) -> int:
        """Return a new id: monotonically increasing, never reused."""
        ...


class CounterIdGenerator:
    """Process-local counter. Fine for dev/tests; not shared across instances."""

    def __init__(self, start: int = 0):
        self._lock = threading.Lock()
        self._last = int(start)

    def next(self) -> int:
        with self._lock:
            self._last += 1
            return self._last

"""Thread-safe in-process sequence numbers for generated identifiers."""
from __future__ import annotations

from threading import Lock
from typing import Dict


class SequenceCounter:
    """Monotonic counters keyed by name (``"log"``, ``"alert"``, ...)."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._values: Dict[str, int] = {}

    def next_sequence(self, key: str) -> int:
        with self._lock:
            current = self._values.get(key, 1)
            self._values[key] = current + 1
            return current

    def next_id(self, key: str, prefix: str, width: int = 6) -> str:
        return f"{prefix}-{self.next_sequence(key):0{width}d}"

"""
Human-readable sequential identifiers.

Ids look like ``sync-000042``: a prefix and a counter zero-padded to a
nominal width. The padding is a minimum only. Once the counter needs more
digits than the width, the id simply grows longer (``sync-1000000``) and is
never truncated or wrapped, so ids stay unique for the life of the process.
"""

import itertools
import threading


class SequenceGenerator:
    """Thread-safe generator of ``<prefix>-<zero padded counter>`` ids."""

    def __init__(self, prefix: str, width: int = 6, start: int = 1) -> None:
        if not prefix:
            raise ValueError("prefix cannot be empty")
        if width < 1:
            raise ValueError(f"width must be >= 1, got {width}")
        if start < 0:
            raise ValueError(f"start cannot be negative, got {start}")
        self._prefix = prefix
        self._width = width
        self._counter = itertools.count(start)
        self._lock = threading.Lock()

    def next_id(self) -> str:
        with self._lock:
            value = next(self._counter)
        return f"{self._prefix}-{value:0{self._width}d}"

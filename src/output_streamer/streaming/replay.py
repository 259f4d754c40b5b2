"""Fixed-capacity replay history for late-joining viewers."""

from __future__ import annotations

from collections import deque

from .lines import TaggedLine

__all__ = ["ReplayBuffer"]


class ReplayBuffer:
    """Most recent ``capacity`` lines, oldest evicted first.

    Only the engine's coordinating task appends, so no locking is needed;
    ``snapshot()`` hands out an immutable tuple that later appends cannot
    touch. ``capacity=0`` keeps nothing (live-only viewing).
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 0:
            raise ValueError(f"capacity must be >= 0, got {capacity}")
        self._capacity = capacity
        self._lines: deque[TaggedLine] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def last_sequence(self) -> int | None:
        """Sequence of the newest retained line, or None when empty."""
        return self._lines[-1].sequence if self._lines else None

    def append(self, line: TaggedLine) -> None:
        # deque(maxlen=...) drops the head itself
        self._lines.append(line)

    def snapshot(self) -> tuple[TaggedLine, ...]:
        return tuple(self._lines)

    def __len__(self) -> int:
        return len(self._lines)

    def __repr__(self) -> str:
        return f"ReplayBuffer(len={len(self._lines)}, capacity={self._capacity})"

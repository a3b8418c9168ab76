from __future__ import annotations
from collections import deque
from typing import Iterator, Sequence

from ..domain.errors import WindowOrderError
from ..domain.models import Cursor


class CursorWindow:
    """Bounded, strictly increasing buffer of recently seen block cursors.

    Owned by the consumption loop; nothing else mutates it.
    """

    def __init__(self, capacity: int = 64) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self._buf: deque[Cursor] = deque(maxlen=capacity)

    def push(self, cursor: Cursor) -> None:
        if self._buf and cursor.number <= self._buf[-1].number:
            raise WindowOrderError(
                f"cursor {cursor} pushed after {self._buf[-1]}; window numbers must strictly increase")
        self._buf.append(cursor)  # deque(maxlen) drops the oldest

    def check_extend(self, cursors: Sequence[Cursor]) -> None:
        """Raise WindowOrderError unless `push`ing every cursor in order would succeed."""
        prev = self.last
        for c in cursors:
            if prev is not None and c.number <= prev.number:
                raise WindowOrderError(f"cursor {c} would follow {prev}; window numbers must strictly increase")
            prev = c

    def prune(self, finalized: Cursor) -> int:
        dropped = 0
        while self._buf and self._buf[0].number < finalized.number:
            self._buf.popleft()
            dropped += 1
        return dropped

    def truncate(self, index: int) -> None:
        """Keep entries [0..index]; drop everything after."""
        if not 0 <= index < len(self._buf):
            raise IndexError(f"index {index} outside window of {len(self._buf)}")
        for _ in range(len(self._buf) - index - 1):
            self._buf.pop()

    def clear(self) -> None:
        self._buf.clear()

    def snapshot(self) -> tuple[Cursor, ...]:
        return tuple(self._buf)

    @property
    def last(self) -> Cursor | None:
        return self._buf[-1] if self._buf else None

    def __len__(self) -> int:
        return len(self._buf)

    def __iter__(self) -> Iterator[Cursor]:
        return iter(self.snapshot())

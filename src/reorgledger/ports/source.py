# reorgledger/ports/source.py
from __future__ import annotations

from typing import AsyncGenerator, Protocol
from ..domain.models import Batch, Cursor, ForkSignal


class EventSource(Protocol):
    """Port for the upstream block/event stream."""

    def read(self, resume: Cursor | None) -> AsyncGenerator[Batch | ForkSignal, None]:
        """Yield batches strictly after `resume`, in block order.

        A ForkSignal is the last item of an iteration: the caller reconciles,
        then calls `read` again with the resume cursor it settled on.
        """

# reorgledger/ports/storage.py
from __future__ import annotations

from contextlib import AbstractContextManager
from typing import Iterator, Protocol
from ..domain.models import Cursor, DeltaRecord, ManifestRec
from ..domain.value_types import Key


class LedgerStore(Protocol):
    """Port for the ledger's own persisted state (balances, delta log, processed marker).

    Every mutating call must happen inside `transaction()`; the scope commits on
    normal exit and rolls back on any exception.
    """

    def open(self) -> None: ...

    def close(self) -> None: ...

    def transaction(self) -> AbstractContextManager[None]:
        """All-or-nothing scope for writes."""

    def get_balance(self, key: Key) -> int | None: ...

    def put_balance(self, key: Key, balance: int) -> None: ...

    def iter_balances(self) -> Iterator[tuple[Key, int]]: ...

    def count_balances(self) -> int: ...

    def put_delta(self, rec: DeltaRecord) -> None:
        """Insert or replace the record for (rec.key, rec.block_number)."""

    def scan_deltas_after(self, block_number: int) -> Iterator[DeltaRecord]:
        """Delta records with block_number strictly greater than `block_number`."""

    def delete_deltas_after(self, block_number: int) -> int: ...

    def delete_deltas_before(self, block_number: int) -> int: ...

    def last_processed(self) -> Cursor | None: ...

    def mark_processed(self, cursor: Cursor) -> None: ...

    def delete_processed_after(self, block_number: int) -> int: ...

    def delete_processed_before(self, block_number: int) -> int: ...

    def prune_horizon(self) -> int | None:
        """Lowest block still rollback-safe after pruning; None if nothing was pruned."""

    def set_prune_horizon(self, block_number: int) -> None: ...


class ManifestSink(Protocol):
    """Port for appending run records (e.g., JSONL manifest)."""

    async def append(self, rec: ManifestRec) -> None:
        """Append a manifest record atomically (callers handle ordering)."""

    def last_committed(self) -> Cursor | None:
        """Cursor of the most recent completed record, i.e. what downstream last saw committed."""

    def pending(self) -> ManifestRec | None:
        """The last record if it marks a step that never completed."""

from __future__ import annotations
import logging
from collections import Counter
from typing import Sequence

from ..domain.errors import CompensationFailure, SinkWriteFailure
from ..domain.models import Cursor, OutputRow, RowFilter, SinkRow, TableSpec
from ..domain.value_types import SinkStrategy
from ..ports.sink import AnalyticalStore

log = logging.getLogger(__name__)


class SinkReconciler:
    """Mirrors ledger output and ledger rollbacks into an analytical store.

    Two rollback strategies:
      - range_delete: `delete_where(block_number > n)`, for stores with cheap deletes;
      - compensate: append sign-flipped copies of every live row past `n`, so the
        signed sum per row collapses to zero without removing anything.
    """

    def __init__(self, store: AnalyticalStore, *, table: str = "balances",
                 strategy: SinkStrategy = "auto") -> None:
        self.store = store
        self.table = table
        if strategy == "auto":
            strategy = "range_delete" if store.supports_delete else "compensate"
        elif strategy == "range_delete" and not store.supports_delete:
            raise ValueError(f"range_delete needs a store with deletes; {type(store).__name__} is append-only")
        self.strategy = strategy

    async def setup(self) -> None:
        await self.store.execute(TableSpec(name=self.table))

    async def write(self, rows: Sequence[OutputRow]) -> int:
        if not rows:
            return 0
        try:
            await self.store.insert(self.table, [SinkRow.from_output(r) for r in rows])
        except Exception as e:
            raise SinkWriteFailure(self.table, max(r.block_number for r in rows),
                                   f"{type(e).__name__}: {e}") from e
        return len(rows)

    async def rollback(self, safe: Cursor | None) -> int:
        """Make the sink forget every block after `safe` (all of them, for None). Returns rows compensated."""
        after = safe.number if safe is not None else -1
        try:
            if self.strategy == "range_delete":
                await self.store.delete_where(self.table, RowFilter(block_after=after))
                log.info("sink %s: deleted rows after block %d", self.table, after)
                return 0
            return await self._compensate(after)
        except Exception as e:
            raise CompensationFailure(self.table, after, f"{type(e).__name__}: {e}") from e

    async def _compensate(self, after: int) -> int:
        live = await self.store.query(self.table, RowFilter(block_after=after))
        # net sign per identical row; rows cancelled by an earlier pass net to 0
        net: Counter[tuple[str, int, int, int, str]] = Counter()
        for row in live:
            ident = row.identity()
            net[ident] += row.sign

        # collapsing engines only accept sign = +1/-1, so emit one row per unit of net
        cancels = [SinkRow(*ident, sign=-1 if n > 0 else 1)
                   for ident, n in net.items() for _ in range(abs(n))]
        if cancels:
            cancels.sort(key=lambda r: (r.block_number, r.transaction_index, r.log_index, r.key))
            await self.store.insert(self.table, cancels)
        log.info("sink %s: cancelled %d row(s) after block %d", self.table, len(cancels), after)
        return len(cancels)

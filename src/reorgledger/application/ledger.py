from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Iterator, Sequence

from ..domain.errors import ConsistencyFault, ContractViolation, ForkDepthExceeded, MissingOrderingField
from ..domain.models import Cursor, DeltaRecord, OutputRow, RollbackResult, Transfer
from ..domain.value_types import Key, ZERO_ADDRESS
from ..ports.storage import LedgerStore

log = logging.getLogger(__name__)


@dataclass(slots=True)
class _BlockAcc:
    delta: int
    tx_index: int
    log_index: int


class DeltaLedger:
    """Reorg-safe balance aggregator.

    Keeps running balances per key plus a per-(key, block) net delta log, so that
    any suffix of blocks can be subtracted back out. The store handle belongs to
    this instance: opened by `initialize`, released by `shutdown` (or `with`).
    Each `apply` and `rollback` is one store transaction.
    """

    def __init__(self, store: LedgerStore, *, null_key: Key = ZERO_ADDRESS) -> None:
        self.store = store
        self.null_key = null_key
        self._open = False
        self._marker: Cursor | None = None

    def __enter__(self) -> DeltaLedger:
        return self

    def __exit__(self, *exc: object) -> None:
        self.shutdown()

    @property
    def marker(self) -> Cursor | None:
        """Highest durably committed block."""
        return self._marker

    # ---------------------------- lifecycle -----------------------------------

    def initialize(self, last_committed: Cursor | None, *,
                   in_flight: Sequence[Cursor | None] = ()) -> Cursor | None:
        """Open the store and check its marker against the upstream's view.

        `in_flight` lists positions a step recorded as started but not finished
        may have left the ledger at; matching one of them is also consistent.
        """
        self.store.open()
        try:
            marker = self.store.last_processed()
            _check_consistent(marker, (last_committed, *in_flight))
        except BaseException:
            self.store.close()
            raise
        self._open = True
        self._marker = marker
        if marker is None:
            log.info("ledger initialized empty")
        else:
            log.info("ledger resuming after block %s (%d balances)", marker, self.store.count_balances())
        return marker

    def shutdown(self) -> None:
        if self._open:
            self.store.close()
            self._open = False
            log.info("ledger closed")

    # ---------------------------- mutations -----------------------------------

    def apply(self, events: Sequence[Transfer], up_to: Cursor) -> list[OutputRow]:
        """Apply a batch ending at `up_to`; returns one row per (key, block) touched."""
        self._require_open("apply")
        floor = self._marker.number if self._marker is not None else None
        if floor is not None and up_to.number <= floor:
            raise ContractViolation(f"apply up to {up_to} but block {floor} is already committed")

        per_block = self._aggregate(events, floor, up_to)

        rows: list[OutputRow] = []
        running: dict[Key, int] = {}
        with self.store.transaction():
            for block in sorted(per_block):
                for key, acc in per_block[block].items():
                    prev = running[key] if key in running else (self.store.get_balance(key) or 0)
                    running[key] = prev + acc.delta
                    self.store.put_delta(DeltaRecord(key, block, acc.delta))
                    rows.append(OutputRow(key, block, acc.tx_index, acc.log_index, running[key]))
            for key, balance in running.items():
                self.store.put_balance(key, balance)
            self.store.mark_processed(up_to)
        self._marker = up_to

        rows.sort(key=OutputRow.order)
        log.debug("applied %d transfer(s) up to %s -> %d row(s)", len(events), up_to, len(rows))
        return rows

    def rollback(self, cursor: Cursor | None) -> RollbackResult:
        """Undo every block after `cursor` (everything, for None). No-op if nothing was committed past it."""
        self.ensure_reachable(cursor)
        prev = self._marker
        after = cursor.number if cursor is not None else -1
        with self.store.transaction():
            records = list(self.store.scan_deltas_after(after))
            # single pass: per-block deltas sum linearly
            undo: dict[Key, int] = {}
            for rec in records:
                undo[rec.key] = undo.get(rec.key, 0) + rec.delta
            for key, total in undo.items():
                balance = self.store.get_balance(key)
                if balance is None:
                    raise ConsistencyFault(f"delta recorded for {key} after block {after} "
                                           f"but no balance row exists")
                self.store.put_balance(key, balance - total)
            self.store.delete_deltas_after(after)
            self.store.delete_processed_after(after)
            if cursor is not None and prev is not None and prev.number > cursor.number:
                self.store.mark_processed(cursor)
        self._marker = self.store.last_processed()

        result = RollbackResult(cursor=cursor, keys_reverted=len(undo), records_removed=len(records),
                                previous_marker=prev.number if prev is not None else None)
        if result.noop:
            log.debug("rollback to %s: nothing to undo", cursor)
        else:
            log.info("rolled back %d delta(s) over %d key(s): %s -> %s",
                     len(records), len(undo), prev, cursor or "genesis")
        return result

    def ensure_reachable(self, cursor: Cursor | None) -> None:
        """Raise ForkDepthExceeded if pruning already dropped the deltas a rollback to `cursor` needs."""
        self._require_open("rollback")
        horizon = self.store.prune_horizon()
        if horizon is not None and (cursor is None or cursor.number < horizon):
            raise ForkDepthExceeded(f"cannot roll back to {cursor or 'genesis'}: "
                                    f"deltas below block {horizon} were pruned as final")

    def prune(self, finalized: Cursor) -> int:
        """Drop rollback data no fork can reach any more (strictly below finality)."""
        self._require_open("prune")
        if self._marker is None:
            return 0
        horizon = min(finalized.number, self._marker.number)
        with self.store.transaction():
            n = self.store.delete_deltas_before(horizon)
            self.store.delete_processed_before(horizon)
            if horizon > (self.store.prune_horizon() or 0):
                self.store.set_prune_horizon(horizon)
        if n:
            log.debug("pruned %d delta record(s) below block %d", n, horizon)
        return n

    # ---------------------------- reads ---------------------------------------

    def balance(self, key: Key) -> int:
        self._require_open("balance")
        return self.store.get_balance(key) or 0

    def balances(self) -> Iterator[tuple[Key, int]]:
        self._require_open("balances")
        return self.store.iter_balances()

    # ---------------------------- helpers -------------------------------------

    def contributions(self, t: Transfer) -> Iterator[tuple[Key, int]]:
        if t.sender != self.null_key:
            yield t.sender, -t.value
        if t.receiver != self.null_key:
            yield t.receiver, t.value

    def _aggregate(self, events: Sequence[Transfer], floor: int | None,
                   up_to: Cursor) -> dict[int, dict[Key, _BlockAcc]]:
        out: dict[int, dict[Key, _BlockAcc]] = {}
        for t in events:
            if t.transaction_index is None:
                raise MissingOrderingField(t.block_number, "transaction_index", t.tx_hash)
            if t.log_index is None:
                raise MissingOrderingField(t.block_number, "log_index", t.tx_hash)
            if floor is not None and t.block_number <= floor:
                raise ContractViolation(f"event in block {t.block_number} replays committed block {floor}")
            if t.block_number > up_to.number:
                raise ContractViolation(f"event in block {t.block_number} is past batch cursor {up_to}")
            block = out.setdefault(t.block_number, {})
            for key, delta in self.contributions(t):
                acc = block.get(key)
                if acc is None:
                    block[key] = _BlockAcc(delta, t.transaction_index, t.log_index)
                    continue
                acc.delta += delta
                if (t.transaction_index, t.log_index) > (acc.tx_index, acc.log_index):
                    acc.tx_index, acc.log_index = t.transaction_index, t.log_index
        return out

    def _require_open(self, op: str) -> None:
        if not self._open:
            raise ContractViolation(f"DeltaLedger.{op}: ledger not initialized")


def _mismatch(marker: Cursor | None, upstream: Cursor | None) -> str | None:
    m = marker.number if marker is not None else None
    u = upstream.number if upstream is not None else None
    if m != u:
        return (f"ledger has last processed block {m}, but upstream reports {u}; "
                f"state was changed outside the ledger")
    if marker is not None and upstream is not None and marker.hash and upstream.hash \
            and marker.hash != upstream.hash:
        return f"block {m} hash mismatch: ledger {marker.hash}, upstream {upstream.hash}"
    return None


def _check_consistent(marker: Cursor | None, candidates: Sequence[Cursor | None]) -> None:
    problems = [_mismatch(marker, c) for c in candidates]
    if all(problems):
        raise ConsistencyFault(problems[0])

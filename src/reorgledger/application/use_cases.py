from __future__ import annotations
import logging
import time
from contextlib import aclosing

from ..domain.errors import ConsistencyFault, ContractViolation, ForkDepthExceeded
from ..domain.models import Batch, Cursor, ForkSignal, ManifestRec, RollbackResult
from ..domain.value_types import RecordKind
from ..ports.source import EventSource
from ..ports.storage import ManifestSink
from .forks import ForkReconciler
from .ledger import DeltaLedger
from .sink_reconciler import SinkReconciler
from .window import CursorWindow

log = logging.getLogger(__name__)


def _number(c: Cursor | None) -> int | None:
    return c.number if c is not None else None


async def _record(manifest: ManifestSink | None, rec: ManifestRec) -> None:
    if manifest is not None:
        await manifest.append(rec)


def open_ledger(ledger: DeltaLedger, manifest: ManifestSink) -> ManifestRec | None:
    """Initialize `ledger` against the manifest; returns the interrupted step, if any."""
    pending = manifest.pending()
    ledger.initialize(manifest.last_committed(), in_flight=(pending.cursor,) if pending else ())
    return pending


async def startup(
    *,
    ledger: DeltaLedger,
    sink: SinkReconciler,
    manifest: ManifestSink,
    resolve_halt: bool = False,
) -> Cursor | None:
    """Open ledger and sink, and finish whatever step the previous run left pending.

    An interrupted apply is undone in ledger and sink (the source replays it); an
    interrupted rollback or reset is carried through. A halt left by an unresolved
    fork refuses to start unless `resolve_halt` is set by a caller about to roll back.
    """
    pending = open_ledger(ledger, manifest)
    await sink.setup()
    if pending is None:
        return ledger.marker
    if pending.kind == "halt":
        if not resolve_halt:
            raise ConsistencyFault(
                f"unresolved fork at block {pending.block_number}: no common ancestor in the window "
                f"and no finalized block; roll back to a finalized block "
                f"(`reorgledger rollback --to-block N`) before running again")
        return ledger.marker

    log.warning("previous run stopped inside %s at block %s; finishing it", pending.kind, pending.block_number)
    if pending.kind == "apply":
        safe = Cursor(pending.prev_block) if pending.prev_block is not None else None
        await roll_back(safe, ledger=ledger, sink=sink, manifest=manifest)
    else:
        await roll_back(pending.cursor, ledger=ledger, sink=sink, manifest=manifest, kind=pending.kind)
    return ledger.marker


async def roll_back(
    target: Cursor | None,
    *,
    ledger: DeltaLedger,
    sink: SinkReconciler,
    manifest: ManifestSink | None = None,
    kind: RecordKind = "rollback",
) -> tuple[RollbackResult, int]:
    """Undo every block after `target` in ledger, then sink.

    The pending record goes out before the ledger commits, so a failure anywhere
    after it is finished by `startup` on the next run.
    """
    ledger.ensure_reachable(target)
    prev = ledger.marker
    await _record(manifest, ManifestRec(kind, _number(target), target.hash if target else None, pending=True,
                                        prev_block=_number(prev), updated_at=time.time()))
    result = ledger.rollback(target)
    compensated = await sink.rollback(target)
    marker = ledger.marker
    await _record(manifest, ManifestRec(kind, _number(marker), marker.hash if marker else None,
                                        rows=compensated, updated_at=time.time(),
                                        extra={"keys_reverted": result.keys_reverted,
                                               "records_removed": result.records_removed}))
    return result, compensated


async def consume(
    *,
    source: EventSource,
    ledger: DeltaLedger,
    sink: SinkReconciler,
    window: CursorWindow,
    manifest: ManifestSink | None = None,
    reconciler: ForkReconciler | None = None,
    prune_finalized: bool = True,
) -> dict[str, int]:
    """Single consumption loop: read -> apply -> write, with fork handling.

    `ledger` must already be initialized. A fork ends the current read; after
    ledger and sink are rolled back the source is read again from the resume cursor.
    """
    reconciler = reconciler or ForkReconciler()
    stats = {"batches": 0, "transfers": 0, "rows_written": 0, "forks": 0,
             "resyncs": 0, "keys_reverted": 0, "rows_compensated": 0}

    resume = ledger.marker
    if resume is not None and window.last is None:
        window.push(resume)

    while True:
        fork: ForkSignal | None = None
        async with aclosing(source.read(resume)) as items:
            async for item in items:
                if isinstance(item, ForkSignal):
                    fork = item
                    break
                await _apply_batch(item, ledger=ledger, sink=sink, window=window,
                                   manifest=manifest, prune_finalized=prune_finalized, stats=stats)
                resume = item.cursor
        if fork is None:
            return stats
        resume = await _handle_fork(fork, ledger=ledger, sink=sink, window=window,
                                    manifest=manifest, reconciler=reconciler, stats=stats)


async def _apply_batch(
    batch: Batch,
    *,
    ledger: DeltaLedger,
    sink: SinkReconciler,
    window: CursorWindow,
    manifest: ManifestSink | None,
    prune_finalized: bool,
    stats: dict[str, int],
) -> None:
    chain = batch.rollback_chain or (batch.cursor,)
    if chain[-1].number > batch.cursor.number:
        raise ContractViolation(f"rollback chain of batch {batch.cursor} runs to {chain[-1]}")
    window.check_extend(chain)

    prev = ledger.marker
    await _record(manifest, ManifestRec("apply", batch.cursor.number, batch.cursor.hash, pending=True,
                                        prev_block=_number(prev), updated_at=time.time()))
    rows = ledger.apply(batch.transfers, batch.cursor)
    written = await sink.write(rows)
    await _record(manifest, ManifestRec("apply", batch.cursor.number, batch.cursor.hash,
                                        rows=written, updated_at=time.time()))

    for c in chain:
        window.push(c)
    # pruning waits for the completed record: an unfinished apply is undone back to `prev`
    if batch.finalized is not None:
        window.prune(batch.finalized)
        if prune_finalized:
            ledger.prune(batch.finalized)
    stats["batches"] += 1
    stats["transfers"] += len(batch.transfers)
    stats["rows_written"] += written


async def _handle_fork(
    fork: ForkSignal,
    *,
    ledger: DeltaLedger,
    sink: SinkReconciler,
    window: CursorWindow,
    manifest: ManifestSink | None,
    reconciler: ForkReconciler,
    stats: dict[str, int],
) -> Cursor:
    stats["forks"] += 1
    kind: RecordKind = "rollback"
    try:
        ancestor = reconciler.reconcile(window, fork.branch)
        ledger.ensure_reachable(ancestor)
    except ForkDepthExceeded:
        marker = ledger.marker
        if fork.finalized is None:
            await _record(manifest, ManifestRec("halt", _number(marker), marker.hash if marker else None,
                                                pending=True, prev_block=_number(marker),
                                                updated_at=time.time()))
            raise
        if marker is None or fork.finalized.number > marker.number:
            raise ContractViolation(
                f"resync point {fork.finalized} is past the ledger marker {marker or 'genesis'}; "
                f"the blocks in between were never applied")
        log.warning("fork deeper than the window; resyncing from finalized block %s", fork.finalized)
        ancestor = fork.finalized
        window.clear()
        window.push(ancestor)
        stats["resyncs"] += 1
        kind = "reset"

    result, compensated = await roll_back(ancestor, ledger=ledger, sink=sink, manifest=manifest, kind=kind)
    stats["keys_reverted"] += result.keys_reverted
    stats["rows_compensated"] += compensated
    return ancestor

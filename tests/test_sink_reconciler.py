from __future__ import annotations

from collections import Counter
from typing import Sequence

import pytest

from reorgledger.adapters.parquet_sink import ParquetAnalyticalStore
from reorgledger.application.sink_reconciler import SinkReconciler
from reorgledger.domain.errors import CompensationFailure, SinkWriteFailure
from reorgledger.domain.models import OutputRow, RowFilter, SinkRow

from factories import ALICE, BOB, MemoryStore, cur


def _net(rows: Sequence[SinkRow]) -> Counter:
    net: Counter = Counter()
    for r in rows:
        net[r.identity()] += r.sign
    return +net   # drop zero entries


ROWS = [
    OutputRow(ALICE, 10, 0, 0, 100),
    OutputRow(ALICE, 11, 2, 1, 60),
    OutputRow(BOB, 11, 2, 1, 40),
    OutputRow(BOB, 12, 0, 3, 10),
]


@pytest.mark.parametrize("supports_delete,expected", [(True, "range_delete"), (False, "compensate")])
def test_auto_strategy_follows_store_capability(supports_delete: bool, expected: str) -> None:
    assert SinkReconciler(MemoryStore(supports_delete)).strategy == expected


def test_explicit_strategy_wins_over_capability() -> None:
    assert SinkReconciler(MemoryStore(True), strategy="compensate").strategy == "compensate"


async def test_write_converts_rows_to_positive_sign() -> None:
    store = MemoryStore()
    rec = SinkReconciler(store)
    await rec.setup()
    assert await rec.write(ROWS) == 4
    assert await rec.write([]) == 0
    assert [r.sign for r in store.tables["balances"]] == [1, 1, 1, 1]
    assert store.tables["balances"][0].balance == "100"


async def test_range_delete_removes_rows_after_cursor() -> None:
    store = MemoryStore()
    rec = SinkReconciler(store, strategy="range_delete")
    await rec.setup()
    await rec.write(ROWS)
    assert await rec.rollback(cur(10)) == 0
    assert [r.block_number for r in store.tables["balances"]] == [10]


async def test_compensation_nets_every_row_after_cursor_to_zero() -> None:
    store = MemoryStore(supports_delete=False)
    rec = SinkReconciler(store)
    await rec.setup()
    await rec.write(ROWS)
    assert await rec.rollback(cur(10)) == 3
    rows = store.tables["balances"]
    assert len(rows) == 7
    assert all(r.sign in (1, -1) for r in rows)
    assert set(_net(rows)) == {(ALICE, 10, 0, 0, "100")}


async def test_compensation_retry_is_idempotent() -> None:
    store = MemoryStore(supports_delete=False)
    rec = SinkReconciler(store)
    await rec.setup()
    await rec.write(ROWS)
    await rec.rollback(cur(10))
    assert await rec.rollback(cur(10)) == 0
    assert len(store.tables["balances"]) == 7


async def test_compensation_after_replay_cancels_only_live_rows() -> None:
    store = MemoryStore(supports_delete=False)
    rec = SinkReconciler(store)
    await rec.setup()
    await rec.write(ROWS)
    await rec.rollback(cur(10))
    # same rows rewritten on the new branch, then reorged away again
    await rec.write(ROWS[1:])
    assert await rec.rollback(cur(10)) == 3
    assert len(_net(store.tables["balances"])) == 1


async def test_duplicate_live_rows_get_one_cancel_each() -> None:
    store = MemoryStore(supports_delete=False)
    rec = SinkReconciler(store)
    await rec.setup()
    await rec.write([ROWS[3], ROWS[3]])
    assert await rec.rollback(cur(11)) == 2
    assert [r.sign for r in store.tables["balances"]] == [1, 1, -1, -1]


async def test_sink_error_becomes_compensation_failure() -> None:
    store = MemoryStore(supports_delete=False)
    rec = SinkReconciler(store)
    await rec.setup()
    await rec.write(ROWS)
    store.fail_on = lambda rows: True
    with pytest.raises(CompensationFailure) as exc:
        await rec.rollback(cur(10))
    assert exc.value.recoverable
    assert exc.value.block_number == 10
    assert isinstance(exc.value.__cause__, ConnectionError)


def test_range_delete_on_append_only_store_is_rejected_up_front() -> None:
    with pytest.raises(ValueError, match="append-only"):
        SinkReconciler(MemoryStore(supports_delete=False), strategy="range_delete")


async def test_sink_write_error_becomes_sink_write_failure() -> None:
    store = MemoryStore()
    rec = SinkReconciler(store)
    await rec.setup()
    store.fail_on = lambda rows: True
    with pytest.raises(SinkWriteFailure) as exc:
        await rec.write(ROWS)
    assert exc.value.recoverable
    assert exc.value.block_number == 12
    assert store.tables["balances"] == []


async def test_rollback_to_genesis_clears_every_row() -> None:
    store = MemoryStore(supports_delete=False)
    rec = SinkReconciler(store)
    await rec.setup()
    await rec.write(ROWS)
    assert await rec.rollback(None) == 4
    assert _net(store.tables["balances"]) == Counter()


async def test_parquet_store_compensates(tmp_path) -> None:
    store = ParquetAnalyticalStore(str(tmp_path / "sink"))
    rec = SinkReconciler(store)
    assert rec.strategy == "compensate"
    await rec.setup()
    await rec.write(ROWS)
    assert await rec.rollback(cur(11)) == 1
    table = store.read_all("balances")
    assert table.num_rows == 5
    assert table.column("sign").to_pylist() == [1, 1, 1, 1, -1]
    assert await rec.rollback(cur(11)) == 0
    live = _net(await store.query("balances", RowFilter(block_after=0)))
    assert sorted(k[1] for k in live) == [10, 11, 11]


async def test_parquet_store_refuses_delete_and_unknown_table(tmp_path) -> None:
    store = ParquetAnalyticalStore(str(tmp_path / "sink"))
    assert not store.supports_delete
    with pytest.raises(NotImplementedError):
        await store.delete_where("balances", RowFilter(block_after=0))
    with pytest.raises(FileNotFoundError):
        await store.insert("missing", [SinkRow.from_output(ROWS[0])])

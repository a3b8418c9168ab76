from __future__ import annotations

import pytest

from reorgledger.application.window import CursorWindow
from reorgledger.domain.errors import ContractViolation, WindowOrderError

from factories import cur


def test_push_past_capacity_evicts_oldest_first() -> None:
    w = CursorWindow(capacity=4)
    for n in range(10, 15):
        w.push(cur(n))
    assert [c.number for c in w.snapshot()] == [11, 12, 13, 14]
    assert len(w) == 4
    assert w.last == cur(14)


@pytest.mark.parametrize("k", [1, 3, 64])
def test_k_plus_one_pushes_keep_k_most_recent(k: int) -> None:
    w = CursorWindow(capacity=k)
    for n in range(k + 1):
        w.push(cur(n))
    assert w.snapshot() == tuple(cur(n) for n in range(1, k + 1))


def test_out_of_order_push_fails_loudly() -> None:
    w = CursorWindow()
    w.push(cur(5))
    with pytest.raises(WindowOrderError):
        w.push(cur(5, fork="x"))
    with pytest.raises(ContractViolation):
        w.push(cur(4))
    assert w.snapshot() == (cur(5),)


def test_prune_drops_entries_below_finalized() -> None:
    w = CursorWindow()
    for n in (1, 2, 4, 7):
        w.push(cur(n))
    assert w.prune(cur(4)) == 2
    assert [c.number for c in w] == [4, 7]
    assert w.prune(cur(100)) == 2
    assert w.last is None


def test_truncate_keeps_prefix() -> None:
    w = CursorWindow()
    for n in range(5):
        w.push(cur(n))
    w.truncate(2)
    assert [c.number for c in w] == [0, 1, 2]
    w.push(cur(3, fork="b"))
    assert w.last == cur(3, fork="b")
    with pytest.raises(IndexError):
        w.truncate(10)


def test_snapshot_is_detached_from_later_pushes() -> None:
    w = CursorWindow()
    w.push(cur(1))
    snap = w.snapshot()
    w.push(cur(2))
    assert snap == (cur(1),)


def test_capacity_must_be_positive() -> None:
    with pytest.raises(ValueError):
        CursorWindow(capacity=0)


def test_check_extend_validates_without_pushing() -> None:
    w = CursorWindow(capacity=3)
    w.check_extend([cur(1), cur(2)])
    assert len(w) == 0
    w.push(cur(2))
    w.check_extend([cur(3), cur(9)])
    for chain in ([cur(2)], [cur(3), cur(3, fork="b")], [cur(5), cur(4)]):
        with pytest.raises(WindowOrderError):
            w.check_extend(chain)
    assert w.snapshot() == (cur(2),)

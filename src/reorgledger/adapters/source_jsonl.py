# reorgledger/adapters/source_jsonl.py
from __future__ import annotations

import json
import logging
from typing import Any, AsyncGenerator

from ..domain.errors import ConsistencyFault
from ..domain.models import Batch, Cursor, ForkSignal, Transfer
from ..domain.value_types import BlockHash, normalize_hash, normalize_key
from ..ports.source import EventSource

log = logging.getLogger(__name__)


def _to_int(v: Any) -> int:
    """0x-hex strings, decimal strings and native ints."""
    if isinstance(v, int):
        return v
    s = str(v).strip().lower()
    return int(s, 16) if s.startswith("0x") else int(s)

def _opt_int(v: Any) -> int | None:
    return None if v is None else _to_int(v)

def _cursor(d: dict[str, Any]) -> Cursor:
    h = d.get("hash")
    return Cursor(_to_int(d["number"]), normalize_hash(h) if h else None)

def _opt_cursor(d: dict[str, Any] | None) -> Cursor | None:
    return _cursor(d) if d else None

def _transfer(d: dict[str, Any]) -> Transfer:
    return Transfer(
        sender=normalize_key(d["from"]),
        receiver=normalize_key(d["to"]),
        value=_to_int(d["value"]),
        block_number=_to_int(d["block_number"]),
        transaction_index=_opt_int(d.get("transaction_index")),
        log_index=_opt_int(d.get("log_index")),
        tx_hash=(d.get("tx_hash") or "").lower() or None,
    )

def parse_record(d: dict[str, Any]) -> Batch | ForkSignal:
    kind = d.get("type")
    if kind == "batch":
        return Batch(
            cursor=_cursor(d["cursor"]),
            transfers=tuple(_transfer(t) for t in d.get("transfers", [])),
            rollback_chain=tuple(_cursor(c) for c in d.get("rollback_chain", [])),
            finalized=_opt_cursor(d.get("finalized")),
        )
    if kind == "fork":
        return ForkSignal(branch=tuple(_cursor(c) for c in d["branch"]),
                          finalized=_opt_cursor(d.get("finalized")))
    raise ValueError(f"unknown record type {kind!r}")

def _hash_at(batch: Batch, number: int) -> BlockHash | None:
    for c in (*batch.rollback_chain, batch.cursor):
        if c.number == number and c.hash:
            return c.hash
    return None

def _trim(batch: Batch, floor: int) -> Batch | None:
    """Drop everything at or below `floor`; None if nothing is left."""
    if batch.cursor.number <= floor:
        return None
    return Batch(
        cursor=batch.cursor,
        transfers=tuple(t for t in batch.transfers if t.block_number > floor),
        rollback_chain=tuple(c for c in batch.rollback_chain if c.number > floor),
        finalized=batch.finalized,
    )


class JSONLEventSource(EventSource):
    """
    Replays a recorded stream: one JSON object per line, either
      {"type": "batch", "cursor": {...}, "transfers": [...], "rollback_chain": [...], "finalized": {...}}
    or
      {"type": "fork", "branch": [{"number": ..., "hash": ...}, ...], "finalized": {...}}.
    Reading position survives across `read` calls, so after a fork the next
    read continues with the records that follow it. Fork records seen before
    any batch has been emitted describe history already reconciled, and are skipped;
    the stream's final word on the resume block must then match the resume hash.
    """
    def __init__(self, path: str) -> None:
        self.path = path
        self._items: list[Batch | ForkSignal] = []
        with open(path, "r") as f:
            for n, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    self._items.append(parse_record(json.loads(line)))
                except (ValueError, KeyError, TypeError) as e:
                    raise ValueError(f"{path}:{n}: {e}") from e
        self._pos = 0
        self._emitted = False

    def __len__(self) -> int:
        return len(self._items)

    async def read(self, resume: Cursor | None) -> AsyncGenerator[Batch | ForkSignal, None]:
        floor = resume.number if resume is not None else None
        seen: BlockHash | None = None
        while self._pos < len(self._items):
            item = self._items[self._pos]
            self._pos += 1
            if isinstance(item, ForkSignal):
                if not self._emitted:
                    log.debug("skipping stale fork record before resume point")
                    continue
                yield item
                return
            if floor is None:
                batch = item
            else:
                seen = _hash_at(item, floor) or seen
                batch = _trim(item, floor)
            if batch is None:
                continue
            if not self._emitted:
                self._check_resume(resume, seen)
            self._emitted = True
            yield batch
        if not self._emitted:
            self._check_resume(resume, seen)

    def _check_resume(self, resume: Cursor | None, seen: BlockHash | None) -> None:
        if resume is not None and resume.hash and seen and seen != resume.hash:
            raise ConsistencyFault(
                f"{self.path}: block {resume.number} is {seen} in the stream but {resume.hash} in the "
                f"ledger; the stream diverges below the resume point")

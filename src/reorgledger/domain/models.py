from __future__ import annotations
from dataclasses import dataclass, field
from .value_types import BlockHash, Key, RecordKind

@dataclass(slots=True, frozen=True)
class Cursor:
    number: int
    hash: BlockHash | None = None

    def __str__(self) -> str:
        return f"#{self.number}" + (f" ({self.hash[:10]}…)" if self.hash else "")

@dataclass(slots=True, frozen=True)
class Transfer:
    sender: Key
    receiver: Key
    value: int
    block_number: int
    transaction_index: int | None
    log_index: int | None
    tx_hash: str | None = None

@dataclass(slots=True, frozen=True)
class Batch:
    cursor: Cursor                                  # last block of the batch
    transfers: tuple[Transfer, ...] = ()
    rollback_chain: tuple[Cursor, ...] = ()         # unfinalized blocks covered by the batch
    finalized: Cursor | None = None

@dataclass(slots=True, frozen=True)
class ForkSignal:
    branch: tuple[Cursor, ...]                      # new consensus, ascending
    finalized: Cursor | None = None

@dataclass(slots=True, frozen=True)
class DeltaRecord:
    key: Key
    block_number: int
    delta: int

@dataclass(slots=True, frozen=True)
class OutputRow:
    key: Key
    block_number: int
    transaction_index: int
    log_index: int
    balance: int

    def order(self) -> tuple[int, int, int, str]:
        return (self.block_number, self.transaction_index, self.log_index, self.key)

@dataclass(slots=True, frozen=True)
class SinkRow:
    key: Key
    block_number: int
    transaction_index: int
    log_index: int
    balance: str        # big ints as strings
    sign: int = 1

    @classmethod
    def from_output(cls, row: OutputRow, sign: int = 1) -> SinkRow:
        return cls(row.key, row.block_number, row.transaction_index, row.log_index, str(row.balance), sign)

    def identity(self) -> tuple[str, int, int, int, str]:
        return (self.key, self.block_number, self.transaction_index, self.log_index, self.balance)

@dataclass(slots=True, frozen=True)
class RowFilter:
    block_after: int

@dataclass(slots=True, frozen=True)
class TableSpec:
    name: str
    order_by: tuple[str, ...] = ("block_number", "transaction_index", "log_index", "address")
    sign_column: str = "sign"

@dataclass(slots=True, frozen=True)
class RollbackResult:
    cursor: Cursor | None                           # None = rolled back to genesis
    keys_reverted: int = 0
    records_removed: int = 0
    previous_marker: int | None = None

    @property
    def noop(self) -> bool:
        floor = self.cursor.number if self.cursor is not None else -1
        return self.records_removed == 0 and (self.previous_marker is None or self.previous_marker <= floor)

@dataclass(slots=True, frozen=True)
class ManifestRec:
    kind: RecordKind
    block_number: int | None                        # None = genesis (empty ledger)
    block_hash: str | None = None
    rows: int = 0
    updated_at: float = 0.0
    pending: bool = False                           # written before the step, superseded once it completes
    prev_block: int | None = None                   # ledger marker when a pending step started
    extra: dict[str, int] = field(default_factory=dict)

    @property
    def cursor(self) -> Cursor | None:
        if self.block_number is None:
            return None
        return Cursor(self.block_number, BlockHash(self.block_hash) if self.block_hash else None)

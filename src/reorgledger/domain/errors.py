from __future__ import annotations
from typing import ClassVar


class ReorgLedgerError(Exception):
    """Base error. `recoverable` tells the caller whether a retry/resync can help."""
    recoverable: ClassVar[bool] = False


class ConsistencyFault(ReorgLedgerError):
    """Persisted state disagrees with the upstream's last committed cursor."""


class ContractViolation(ReorgLedgerError):
    """A caller broke an ordering contract (replay, out-of-range block, ...)."""


class WindowOrderError(ContractViolation):
    """Cursor pushed into the window out of block order."""


class MissingOrderingField(ReorgLedgerError):
    """An event lacks the ordering data needed for replace-not-accumulate deltas."""

    def __init__(self, block_number: int, field: str, tx_hash: str | None = None) -> None:
        where = f" (tx {tx_hash})" if tx_hash else ""
        super().__init__(f"event in block {block_number}{where} has no {field}")
        self.block_number = block_number
        self.field = field


class ForkDepthExceeded(ReorgLedgerError):
    """No common ancestor within the retained window; resync from a safe point."""
    recoverable = True


class StorageFailure(ReorgLedgerError):
    """The ledger store failed; nothing was committed and the call may be retried."""
    recoverable = True


class CompensationFailure(ReorgLedgerError):
    """Downstream sink could not mirror a committed ledger rollback."""
    recoverable = True

    def __init__(self, table: str, block_number: int, reason: str) -> None:
        super().__init__(f"sink table {table!r} not reconciled past block {block_number}: {reason}")
        self.table = table
        self.block_number = block_number


class SinkWriteFailure(ReorgLedgerError):
    """Downstream sink rejected the rows of a committed ledger apply."""
    recoverable = True

    def __init__(self, table: str, block_number: int, reason: str) -> None:
        super().__init__(f"sink table {table!r} missing rows up to block {block_number}: {reason}")
        self.table = table
        self.block_number = block_number

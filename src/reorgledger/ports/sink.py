# reorgledger/ports/sink.py
from __future__ import annotations

from typing import Protocol, Sequence
from ..domain.models import RowFilter, SinkRow, TableSpec


class AnalyticalStore(Protocol):
    """Port for a downstream, insert-oriented analytical store (ClickHouse, Parquet, ...)."""

    @property
    def supports_delete(self) -> bool:
        """True if `delete_where` is efficient enough to use for rollbacks."""

    async def execute(self, spec: TableSpec) -> None:
        """Create the table if needed (one-time setup)."""

    async def insert(self, table: str, rows: Sequence[SinkRow]) -> None: ...

    async def query(self, table: str, flt: RowFilter) -> list[SinkRow]: ...

    async def delete_where(self, table: str, flt: RowFilter) -> None: ...

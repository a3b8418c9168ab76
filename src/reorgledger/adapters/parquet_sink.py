from __future__ import annotations
import glob
import os
from typing import Sequence

import pyarrow as pa
import pyarrow.compute as pc
import pyarrow.parquet as pq

from ..domain.models import RowFilter, SinkRow, TableSpec
from ..domain.value_types import Key
from ..ports.sink import AnalyticalStore

SINK_SCHEMA = pa.schema([
    pa.field("address",           pa.large_string()),
    pa.field("block_number",      pa.int64()),
    pa.field("transaction_index", pa.int32()),
    pa.field("log_index",         pa.int32()),
    pa.field("balance",           pa.large_string()),   # big ints as strings
    pa.field("sign",              pa.int8()),
])

def _rows_to_table(rows: Sequence[SinkRow]) -> pa.Table:
    return pa.Table.from_pydict({
        "address":           [r.key for r in rows],
        "block_number":      [r.block_number for r in rows],
        "transaction_index": [r.transaction_index for r in rows],
        "log_index":         [r.log_index for r in rows],
        "balance":           [r.balance for r in rows],
        "sign":              [r.sign for r in rows],
    }, schema=SINK_SCHEMA)

def _table_to_rows(table: pa.Table) -> list[SinkRow]:
    return [
        SinkRow(Key(d["address"]), d["block_number"], d["transaction_index"], d["log_index"],
                d["balance"], d["sign"])
        for d in table.to_pylist()
    ]


class ParquetAnalyticalStore(AnalyticalStore):
    """
    Append-only table = directory of immutable Parquet segments.
    Rows are never rewritten, so rollbacks go through compensation rows.
    """
    def __init__(self, root_dir: str, codec: str = "zstd") -> None:
        self.root = root_dir
        self.codec = codec
        os.makedirs(self.root, exist_ok=True)

    @property
    def supports_delete(self) -> bool:
        return False

    def _table_dir(self, table: str) -> str:
        return os.path.join(self.root, table)

    def _segments(self, table: str) -> list[str]:
        return sorted(glob.glob(os.path.join(self._table_dir(table), "part_*.parquet")))

    def _next_segment_index(self, table: str) -> int:
        existing = self._segments(table)
        if not existing:
            return 1
        return int(os.path.basename(existing[-1]).split("_")[1].split(".")[0]) + 1

    async def execute(self, spec: TableSpec) -> None:
        os.makedirs(self._table_dir(spec.name), exist_ok=True)

    async def insert(self, table: str, rows: Sequence[SinkRow]) -> None:
        if not rows:
            return
        tdir = self._table_dir(table)
        if not os.path.isdir(tdir):
            raise FileNotFoundError(f"sink table {table!r} not set up under {self.root}")
        arrow = _rows_to_table(rows).sort_by([("block_number", "ascending"),
                                              ("transaction_index", "ascending"),
                                              ("log_index", "ascending"),
                                              ("address", "ascending")])
        path = os.path.join(tdir, f"part_{self._next_segment_index(table):06d}.parquet")
        tmp = path + ".tmp"
        pq.write_table(arrow, tmp, compression=self.codec)
        os.replace(tmp, path)

    async def query(self, table: str, flt: RowFilter) -> list[SinkRow]:
        out: list[SinkRow] = []
        for path in self._segments(table):
            seg = pq.read_table(path)
            seg = seg.filter(pc.greater(seg["block_number"], flt.block_after))
            out.extend(_table_to_rows(seg))
        return out

    async def delete_where(self, table: str, flt: RowFilter) -> None:
        raise NotImplementedError("parquet segments are append-only; use the compensate strategy")

    def read_all(self, table: str) -> pa.Table:
        """Every row of `table` (signs included), in write order."""
        parts = [pq.read_table(p) for p in self._segments(table)]
        if not parts:
            return SINK_SCHEMA.empty_table()
        return pa.concat_tables(parts)

from __future__ import annotations
import asyncio, json, logging, re
from typing import Sequence

import httpx

from ..domain.models import RowFilter, SinkRow, TableSpec
from ..domain.value_types import Key
from ..ports.sink import AnalyticalStore

log = logging.getLogger(__name__)

_IDENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_COLUMNS = "address, block_number, transaction_index, log_index, balance, sign"

def _ident(name: str) -> str:
    if not _IDENT.match(name):
        raise ValueError(f"invalid ClickHouse identifier: {name!r}")
    return name

def _ddl(spec: TableSpec) -> str:
    order_by = ", ".join(_ident(c) for c in spec.order_by)
    sign = _ident(spec.sign_column)
    return f"""
        CREATE TABLE IF NOT EXISTS {_ident(spec.name)} (
          address           LowCardinality(String),
          block_number      UInt64 CODEC (DoubleDelta, ZSTD),
          transaction_index UInt32,
          log_index         UInt32,
          balance           String,
          {sign}            Int8 DEFAULT 1
        )
        ENGINE = CollapsingMergeTree({sign})
        ORDER BY ({order_by})
    """

def _row_json(r: SinkRow) -> str:
    return json.dumps({"address": r.key, "block_number": r.block_number,
                       "transaction_index": r.transaction_index, "log_index": r.log_index,
                       "balance": r.balance, "sign": r.sign}, separators=(",", ":"))


class ClickHouseStore(AnalyticalStore):
    """ClickHouse through its HTTP interface (JSONEachRow in and out)."""

    def __init__(
        self,
        url: str,
        *,
        database: str = "default",
        user: str = "default",
        password: str = "",
        timeout_s: int = 20,
        allow_delete: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.database = database
        self.allow_delete = allow_delete
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_s),
            headers={"X-ClickHouse-User": user, "X-ClickHouse-Key": password},
            transport=transport,
        )

    async def __aenter__(self) -> ClickHouseStore:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    @property
    def supports_delete(self) -> bool:
        return self.allow_delete

    async def _post(self, query: str, body: str | None = None, **settings: int) -> str:
        params: dict[str, str | int] = {"database": self.database, **settings}
        if body is None:
            content = query.encode()
        else:
            params["query"] = query
            content = body.encode()
        # retry on 429/503 with simple backoff
        for attempt in range(3):
            r = await self.client.post(self.url, params=params, content=content)
            if r.status_code in (429, 503):
                ra = r.headers.get("Retry-After")
                delay = max(1.0, float(ra)) if ra and ra.isdigit() else (1.0 * (2**attempt))
                log.debug("clickhouse %d, retrying in %.1fs", r.status_code, delay)
                await asyncio.sleep(delay); continue
            if r.status_code >= 400:
                raise RuntimeError(f"ClickHouse error {r.status_code}: {r.text.strip()[:500]}")
            return r.text
        raise RuntimeError("Retries exhausted for ClickHouse request")

    async def execute(self, spec: TableSpec) -> None:
        await self._post(_ddl(spec))

    async def insert(self, table: str, rows: Sequence[SinkRow]) -> None:
        if not rows:
            return
        body = "\n".join(_row_json(r) for r in rows) + "\n"
        await self._post(f"INSERT INTO {_ident(table)} ({_COLUMNS}) FORMAT JSONEachRow", body)

    async def query(self, table: str, flt: RowFilter) -> list[SinkRow]:
        text = await self._post(
            f"SELECT {_COLUMNS} FROM {_ident(table)} "
            f"WHERE block_number > {int(flt.block_after)} FORMAT JSONEachRow")
        out: list[SinkRow] = []
        for line in text.splitlines():
            if not line.strip():
                continue
            d = json.loads(line)
            out.append(SinkRow(Key(d["address"]), int(d["block_number"]), int(d["transaction_index"]),
                               int(d["log_index"]), str(d["balance"]), int(d["sign"])))
        return out

    async def delete_where(self, table: str, flt: RowFilter) -> None:
        if not self.allow_delete:
            raise NotImplementedError("deletes disabled for this ClickHouse store")
        # mutations_sync=1: return only once the mutation has been applied
        await self._post(f"ALTER TABLE {_ident(table)} DELETE WHERE block_number > {int(flt.block_after)}",
                         mutations_sync=1)

# reorgledger/adapters/sqlite_store.py
from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from typing import Iterator

from ..domain.errors import ContractViolation, StorageFailure
from ..domain.models import Cursor, DeltaRecord
from ..domain.value_types import BlockHash, Key
from ..ports.storage import LedgerStore

# amounts are TEXT: sqlite INTEGER stops at 2**63-1, token balances don't
_SCHEMA = """
CREATE TABLE IF NOT EXISTS balances (
    address TEXT NOT NULL PRIMARY KEY,
    balance TEXT NOT NULL DEFAULT '0'
);
CREATE TABLE IF NOT EXISTS balance_deltas (
    address      TEXT    NOT NULL,
    block_number INTEGER NOT NULL,
    delta        TEXT    NOT NULL,
    PRIMARY KEY (address, block_number)
);
CREATE INDEX IF NOT EXISTS balance_deltas_block ON balance_deltas(block_number);
CREATE TABLE IF NOT EXISTS processed_blocks (
    block_number INTEGER NOT NULL PRIMARY KEY,
    block_hash   TEXT
);
CREATE TABLE IF NOT EXISTS ledger_meta (
    name  TEXT NOT NULL PRIMARY KEY,
    value TEXT NOT NULL
);
"""


class SQLiteLedgerStore(LedgerStore):
    """LedgerStore on a single SQLite file, with explicit BEGIN/COMMIT/ROLLBACK."""

    def __init__(self, path: str) -> None:
        self.path = path
        self._conn: sqlite3.Connection | None = None
        self._in_tx = False

    # ---------------------------- lifecycle -----------------------------------

    def open(self) -> None:
        if self._conn is not None:
            return
        if self.path != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(self.path)), exist_ok=True)
        try:
            # isolation_level=None: the module never opens implicit transactions
            conn = sqlite3.connect(self.path, isolation_level=None)
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=FULL")
            conn.executescript(_SCHEMA)
        except sqlite3.Error as e:
            raise StorageFailure(f"cannot open ledger db {self.path}: {e}") from e
        self._conn = conn

    def close(self) -> None:
        if self._conn is None:
            return
        if self._in_tx:
            self._conn.execute("ROLLBACK")
            self._in_tx = False
        self._conn.close()
        self._conn = None

    @contextmanager
    def transaction(self) -> Iterator[None]:
        conn = self._db()
        if self._in_tx:
            raise ContractViolation("nested ledger transactions are not supported")
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            raise StorageFailure(f"cannot begin transaction: {e}") from e
        self._in_tx = True
        try:
            yield
        except BaseException:
            self._in_tx = False
            try:
                conn.execute("ROLLBACK")
            except sqlite3.Error as e:
                raise StorageFailure(f"rollback failed: {e}") from e
            raise
        self._in_tx = False
        try:
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise StorageFailure(f"commit failed: {e}") from e

    # ---------------------------- balances ------------------------------------

    def get_balance(self, key: Key) -> int | None:
        row = self._read("SELECT balance FROM balances WHERE address = ?", (key,)).fetchone()
        return int(row[0]) if row else None

    def put_balance(self, key: Key, balance: int) -> None:
        self._write("INSERT INTO balances (address, balance) VALUES (?, ?) "
                    "ON CONFLICT(address) DO UPDATE SET balance = excluded.balance", (key, str(balance)))

    def iter_balances(self) -> Iterator[tuple[Key, int]]:
        for address, balance in self._read("SELECT address, balance FROM balances ORDER BY address"):
            yield Key(address), int(balance)

    def count_balances(self) -> int:
        return int(self._read("SELECT COUNT(*) FROM balances").fetchone()[0])

    # ---------------------------- deltas --------------------------------------

    def put_delta(self, rec: DeltaRecord) -> None:
        self._write("INSERT OR REPLACE INTO balance_deltas (address, block_number, delta) VALUES (?, ?, ?)",
                    (rec.key, rec.block_number, str(rec.delta)))

    def scan_deltas_after(self, block_number: int) -> Iterator[DeltaRecord]:
        cur = self._read("SELECT address, block_number, delta FROM balance_deltas "
                         "WHERE block_number > ? ORDER BY block_number, address", (block_number,))
        for address, bn, delta in cur.fetchall():
            yield DeltaRecord(Key(address), int(bn), int(delta))

    def delete_deltas_after(self, block_number: int) -> int:
        return self._write("DELETE FROM balance_deltas WHERE block_number > ?", (block_number,))

    def delete_deltas_before(self, block_number: int) -> int:
        return self._write("DELETE FROM balance_deltas WHERE block_number < ?", (block_number,))

    # ---------------------------- processed marker ----------------------------

    def last_processed(self) -> Cursor | None:
        row = self._read("SELECT block_number, block_hash FROM processed_blocks "
                         "ORDER BY block_number DESC LIMIT 1").fetchone()
        if row is None:
            return None
        return Cursor(int(row[0]), BlockHash(row[1]) if row[1] else None)

    def mark_processed(self, cursor: Cursor) -> None:
        self._write("INSERT INTO processed_blocks (block_number, block_hash) VALUES (?, ?) "
                    "ON CONFLICT(block_number) DO UPDATE SET "
                    "block_hash = COALESCE(excluded.block_hash, processed_blocks.block_hash)",
                    (cursor.number, cursor.hash))

    def delete_processed_after(self, block_number: int) -> int:
        return self._write("DELETE FROM processed_blocks WHERE block_number > ?", (block_number,))

    def delete_processed_before(self, block_number: int) -> int:
        return self._write("DELETE FROM processed_blocks WHERE block_number < ?", (block_number,))

    def prune_horizon(self) -> int | None:
        row = self._read("SELECT value FROM ledger_meta WHERE name = 'prune_horizon'").fetchone()
        return int(row[0]) if row else None

    def set_prune_horizon(self, block_number: int) -> None:
        self._write("INSERT INTO ledger_meta (name, value) VALUES ('prune_horizon', ?) "
                    "ON CONFLICT(name) DO UPDATE SET value = excluded.value", (str(block_number),))

    # ---------------------------- helpers -------------------------------------

    def _db(self) -> sqlite3.Connection:
        if self._conn is None:
            raise ContractViolation(f"ledger store {self.path} is not open")
        return self._conn

    def _read(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            return self._db().execute(sql, params)
        except sqlite3.Error as e:
            raise StorageFailure(f"read failed: {e}") from e

    def _write(self, sql: str, params: tuple = ()) -> int:
        if not self._in_tx:
            raise ContractViolation("ledger writes must run inside store.transaction()")
        try:
            return self._db().execute(sql, params).rowcount
        except sqlite3.Error as e:
            raise StorageFailure(f"write failed: {e}") from e

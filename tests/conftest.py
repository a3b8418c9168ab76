from __future__ import annotations

from typing import Iterator

import pytest

from reorgledger.adapters.sqlite_store import SQLiteLedgerStore
from reorgledger.application.ledger import DeltaLedger


@pytest.fixture
def db_path(tmp_path) -> str:
    return str(tmp_path / "ledger.sqlite")


@pytest.fixture
def store(db_path) -> SQLiteLedgerStore:
    return SQLiteLedgerStore(db_path)


@pytest.fixture
def ledger(store) -> Iterator[DeltaLedger]:
    with DeltaLedger(store) as led:
        led.initialize(None)
        yield led

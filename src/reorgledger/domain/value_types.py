from __future__ import annotations
from typing import NewType, Literal

from eth_utils import is_hex_address, to_normalized_address

Key = NewType("Key", str)          # lowercase 0x address, or any opaque ledger key
BlockHash = NewType("BlockHash", str)  # 0x-prefixed lowercase hex
SinkStrategy = Literal["auto", "range_delete", "compensate"]
RecordKind = Literal["apply", "rollback", "reset", "halt"]

ZERO_ADDRESS = Key("0x" + "00" * 20)


def normalize_key(raw: str) -> Key:
    """Lowercase 0x form for addresses; other keys pass through untouched."""
    if is_hex_address(raw):
        return Key(to_normalized_address(raw))
    return Key(raw)


def normalize_hash(raw: str | bytes) -> BlockHash:
    if isinstance(raw, bytes):
        return BlockHash("0x" + raw.hex())
    s = raw.strip().lower()
    return BlockHash(s if s.startswith("0x") else "0x" + s)

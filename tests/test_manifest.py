from __future__ import annotations

import pytest

from reorgledger.adapters.manifest_jsonl import JSONLManifest
from reorgledger.domain.models import Cursor, ManifestRec

from factories import h


async def test_last_committed_tracks_latest_record(tmp_path) -> None:
    m = JSONLManifest(str(tmp_path / "state" / "manifest.jsonl"))
    assert m.last_committed() is None
    await m.append(ManifestRec("apply", 5, h(5), rows=3))
    await m.append(ManifestRec("rollback", 3, h(3), extra={"keys_reverted": 2}))
    assert m.last_committed() == Cursor(3, h(3))
    recs = m.records()
    assert [r.kind for r in recs] == ["apply", "rollback"]
    assert recs[1].extra == {"keys_reverted": 2}


async def test_torn_last_line_is_ignored(tmp_path) -> None:
    path = tmp_path / "manifest.jsonl"
    m = JSONLManifest(str(path))
    await m.append(ManifestRec("apply", 1, h(1)))
    with open(path, "a") as f:
        f.write('{"kind": "apply", "block_nu')
    assert m.last_committed() == Cursor(1, h(1))


async def test_corruption_before_last_line_is_an_error(tmp_path) -> None:
    path = tmp_path / "manifest.jsonl"
    m = JSONLManifest(str(path))
    with open(path, "w") as f:
        f.write("garbage\n")
    await m.append(ManifestRec("apply", 1))
    with pytest.raises(ValueError, match="bad manifest record"):
        m.records()


async def test_hashless_record_gives_hashless_cursor(tmp_path) -> None:
    m = JSONLManifest(str(tmp_path / "manifest.jsonl"))
    await m.append(ManifestRec("reset", 7))
    assert m.last_committed() == Cursor(7)


async def test_pending_record_is_not_committed(tmp_path) -> None:
    m = JSONLManifest(str(tmp_path / "manifest.jsonl"))
    await m.append(ManifestRec("apply", 4, h(4)))
    await m.append(ManifestRec("rollback", 2, h(2), pending=True, prev_block=4))
    assert m.last_committed() == Cursor(4, h(4))
    assert m.pending() == ManifestRec("rollback", 2, h(2), pending=True, prev_block=4)

    await m.append(ManifestRec("rollback", 2, h(2), rows=3))
    assert m.pending() is None
    assert m.last_committed() == Cursor(2, h(2))


async def test_genesis_record_gives_no_cursor(tmp_path) -> None:
    m = JSONLManifest(str(tmp_path / "manifest.jsonl"))
    await m.append(ManifestRec("apply", 1, h(1)))
    await m.append(ManifestRec("reset", None))
    assert m.last_committed() is None
    assert m.records()[-1].cursor is None

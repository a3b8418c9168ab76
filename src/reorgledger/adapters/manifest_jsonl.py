from __future__ import annotations
import os, json, asyncio
from dataclasses import asdict
from ..ports.storage import ManifestSink
from ..domain.models import Cursor, ManifestRec

class JSONLManifest(ManifestSink):
    def __init__(self, path: str) -> None:
        self.path = path
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        self._lock = asyncio.Lock()

    async def append(self, rec: ManifestRec) -> None:
        line = json.dumps(asdict(rec), separators=(",", ":")) + "\n"
        async with self._lock:
            with open(self.path, "a") as f:
                f.write(line); f.flush(); os.fsync(f.fileno())

    def records(self) -> list[ManifestRec]:
        if not os.path.exists(self.path):
            return []
        with open(self.path, "r") as f:
            lines = [ln.strip() for ln in f]
        out: list[ManifestRec] = []
        for n, line in enumerate(lines, 1):
            if not line:
                continue
            try:
                out.append(ManifestRec(**json.loads(line)))
            except (json.JSONDecodeError, TypeError) as e:
                # torn last line = crash mid-append; anything earlier is corruption
                if n == len(lines):
                    break
                raise ValueError(f"{self.path}:{n}: bad manifest record: {e}") from e
        return out

    def last_committed(self) -> Cursor | None:
        for rec in reversed(self.records()):
            if not rec.pending:
                return rec.cursor
        return None

    def pending(self) -> ManifestRec | None:
        recs = self.records()
        return recs[-1] if recs and recs[-1].pending else None

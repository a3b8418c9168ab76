from __future__ import annotations
from typing import Iterable

from ..domain.models import Cursor


def fmt_cursors(cursors: Iterable[Cursor]) -> str:
    return "[" + ", ".join(str(c) for c in cursors) + "]"

from __future__ import annotations
import logging
from typing import Sequence

from ..domain.errors import ForkDepthExceeded
from ..domain.models import Cursor
from .utils import fmt_cursors
from .window import CursorWindow

log = logging.getLogger(__name__)


def find_common_ancestor(local: Sequence[Cursor], branch: Sequence[Cursor]) -> int | None:
    """Index in `local` of the deepest block shared (number and hash) with `branch`.

    Both inputs ascend by number. The walk stops at the first height where the
    hashes differ: chain branches never re-merge once split, so nothing past
    that height can be common.
    """
    i = j = 0
    best: int | None = None
    while i < len(local) and j < len(branch):
        a, b = local[i], branch[j]
        if a.number < b.number:
            i += 1
        elif a.number > b.number:
            j += 1
        elif a.hash != b.hash:
            return best
        else:
            best = i
            i += 1; j += 1
    return best


class ForkReconciler:
    """Turns a fork signal into a resume cursor, trimming the window to match."""

    def reconcile(self, window: CursorWindow, branch: Sequence[Cursor]) -> Cursor:
        local = window.snapshot()
        log.debug("fork: local=%s branch=%s", fmt_cursors(local), fmt_cursors(branch))
        idx = find_common_ancestor(local, branch)
        if idx is None:
            window.clear()
            lo = f"{local[0].number}..{local[-1].number}" if local else "empty"
            raise ForkDepthExceeded(
                f"no common ancestor between window ({lo}) and {len(branch)} branch cursors")
        window.truncate(idx)
        ancestor = local[idx]
        log.info("fork resolved at %s, dropped %d cursor(s)", ancestor, len(local) - idx - 1)
        return ancestor

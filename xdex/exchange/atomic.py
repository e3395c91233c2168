"""
All-or-nothing execution for exchange operations.

Every participant (pool, token, order store, oracle) exposes
``snapshot() -> dict`` and ``restore(dict)``. ``atomic`` captures them all
before the block runs and restores every one of them if the block raises,
then re-raises. Nothing is written back on success.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Protocol, Tuple


class Snapshotable(Protocol):
    def snapshot(self) -> Dict[str, Any]: ...

    def restore(self, snapshot: Dict[str, Any]) -> None: ...


@contextmanager
def atomic(*participants: Snapshotable) -> Iterator[None]:
    """
    Run the enclosed block as one state transition.

    Duplicate participants are snapshotted once.
    """
    seen = set()
    saved: List[Tuple[Snapshotable, Dict[str, Any]]] = []
    for p in participants:
        if p is None or id(p) in seen:
            continue
        seen.add(id(p))
        saved.append((p, p.snapshot()))

    try:
        yield
    except BaseException:
        for p, snap in reversed(saved):
            p.restore(snap)
        raise

"""
XDEX Exchange Events

Immutable records of every state change the factory commits, kept in an
append-only log. Events become visible only when their operation commits.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Iterator, List, Tuple, Union


@dataclass(frozen=True)
class PairCreated:
    pair: str
    pool: str
    token_x: str
    token_y: str
    fee_bps: int
    timestamp: int

    def to_dict(self) -> Dict[str, Any]:
        return {"event": "PairCreated", **asdict(self)}


@dataclass(frozen=True)
class OrderPlaced:
    pair: str
    side: str
    index: int
    trader: str
    token_in: str
    amount_in: int
    timestamp: int

    def to_dict(self) -> Dict[str, Any]:
        return {"event": "OrderPlaced", **asdict(self)}


@dataclass(frozen=True)
class OrderMatched:
    """Taker settlement. Only the taker swaps; the maker order records consumption."""
    pair: str
    taker_side: str
    taker_index: int
    maker_index: int
    fill: int
    amount_out: int
    timestamp: int

    def to_dict(self) -> Dict[str, Any]:
        return {"event": "OrderMatched", **asdict(self)}


@dataclass(frozen=True)
class OrderCancelled:
    pair: str
    side: str
    index: int
    trader: str
    timestamp: int

    def to_dict(self) -> Dict[str, Any]:
        return {"event": "OrderCancelled", **asdict(self)}


@dataclass(frozen=True)
class BatchExecuted:
    trader: str
    pairs: Tuple[str, ...]
    amounts_out: Tuple[int, ...]
    timestamp: int

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["pairs"] = list(self.pairs)
        d["amounts_out"] = list(self.amounts_out)
        return {"event": "BatchExecuted", **d}


ExchangeEvent = Union[PairCreated, OrderPlaced, OrderMatched, OrderCancelled, BatchExecuted]


class EventLog:
    """
    Append-only event list.

    Operations stage their events; staged events are published only if
    the operation commits.
    """

    def __init__(self) -> None:
        self._events: List[ExchangeEvent] = []
        self._lock = threading.Lock()

    def emit(self, event: ExchangeEvent) -> None:
        with self._lock:
            self._events.append(event)

    @contextmanager
    def staged(self) -> Iterator[Callable[[ExchangeEvent], None]]:
        """Yield an emitter whose events are published when the block exits cleanly."""
        buffer: List[ExchangeEvent] = []
        yield buffer.append
        with self._lock:
            self._events.extend(buffer)

    def all(self) -> List[ExchangeEvent]:
        with self._lock:
            return list(self._events)

    def of_type(self, event_type: type) -> List[ExchangeEvent]:
        return [e for e in self.all() if isinstance(e, event_type)]

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self) -> Iterator[ExchangeEvent]:
        return iter(self.all())

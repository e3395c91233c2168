"""
XDEX Conditional Orders

Orders are kept in append-only arenas, one per (pair, side):
  - An order's index is its position in the arena and never changes
  - Orders are never removed; closing one clears ``is_active`` and
    records why (filled or cancelled)
  - Expiry is data, evaluated against the caller's clock at read time
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ..exceptions import InvalidAmount, OrderNotFound

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class OrderSide(str, Enum):
    BUY = "buy"
    SELL = "sell"

    @classmethod
    def from_is_buy(cls, is_buy: bool) -> "OrderSide":
        return cls.BUY if is_buy else cls.SELL

    @property
    def opposite(self) -> "OrderSide":
        return OrderSide.SELL if self is OrderSide.BUY else OrderSide.BUY


class OrderState(str, Enum):
    ACTIVE = "active"
    FILLED = "filled"
    CANCELLED = "cancelled"
    EXPIRED = "expired"  # derived, never stored


class CloseReason(str, Enum):
    FILLED = "filled"
    CANCELLED = "cancelled"


def pair_key(token_a: str, token_b: str) -> str:
    """Canonical, order-independent key of a trading pair."""
    x, y = sorted((token_a, token_b))
    return f"{x}:{y}"


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------

@dataclass
class ConditionalOrder:
    """A resting order with price, expiry, time-lock and volume conditions."""
    trader: str
    token_in: str
    token_out: str
    amount_in: int
    min_amount_out: int
    is_buy: bool
    price_condition: Optional[int] = None  # None: no pool-price condition
    expiration_time: int = 0               # 0: never expires
    time_locked: bool = False
    lock_boundary: int = 0
    volume_condition: int = 0              # 0: no volume condition
    is_active: bool = True
    filled: int = 0
    close_reason: Optional[CloseReason] = None
    created_at: int = 0
    index: int = -1

    def __post_init__(self) -> None:
        if self.amount_in <= 0:
            raise InvalidAmount("Order amount_in must be positive")
        if self.min_amount_out < 0:
            raise InvalidAmount("Order min_amount_out cannot be negative")
        if self.volume_condition < 0:
            raise InvalidAmount("Order volume_condition cannot be negative")

    @property
    def side(self) -> OrderSide:
        return OrderSide.from_is_buy(self.is_buy)

    @property
    def remaining(self) -> int:
        return self.amount_in - self.filled

    def is_expired(self, now: int) -> bool:
        return self.expiration_time != 0 and now >= self.expiration_time

    def is_unlocked(self, now: int) -> bool:
        return not self.time_locked or now >= self.lock_boundary

    def state(self, now: int) -> OrderState:
        if not self.is_active:
            if self.close_reason == CloseReason.CANCELLED:
                return OrderState.CANCELLED
            return OrderState.FILLED
        if self.is_expired(now):
            return OrderState.EXPIRED
        return OrderState.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "trader": self.trader,
            "tokenIn": self.token_in,
            "tokenOut": self.token_out,
            "amountIn": self.amount_in,
            "minAmountOut": self.min_amount_out,
            "isBuy": self.is_buy,
            "priceCondition": self.price_condition,
            "expirationTime": self.expiration_time,
            "timeLocked": self.time_locked,
            "lockBoundary": self.lock_boundary,
            "volumeCondition": self.volume_condition,
            "isActive": self.is_active,
            "filled": self.filled,
            "closeReason": self.close_reason.value if self.close_reason else None,
            "createdAt": self.created_at,
        }


# ---------------------------------------------------------------------------
# Order store
# ---------------------------------------------------------------------------

class OrderStore:
    """Per-(pair, side) arenas of conditional orders."""

    def __init__(self) -> None:
        self._books: Dict[Tuple[str, OrderSide], List[ConditionalOrder]] = {}
        self._lock = threading.RLock()

    def _book(self, pair: str, side: OrderSide) -> List[ConditionalOrder]:
        with self._lock:
            return self._books.setdefault((pair, OrderSide(side)), [])

    def place(self, pair: str, side: OrderSide, order: ConditionalOrder) -> int:
        """Append *order* and return its stable index."""
        with self._lock:
            book = self._book(pair, side)
            order.index = len(book)
            book.append(order)
        logger.info(
            "Order %s#%d placed on %s by %s: %d in",
            OrderSide(side).value, order.index, pair, order.trader, order.amount_in,
        )
        return order.index

    def get(self, pair: str, side: OrderSide, index: int) -> ConditionalOrder:
        book = self._books.get((pair, OrderSide(side)), [])
        if index < 0 or index >= len(book):
            raise OrderNotFound(f"No {OrderSide(side).value} order #{index} on {pair}")
        return book[index]

    def deactivate(self, pair: str, side: OrderSide, index: int, reason: CloseReason) -> bool:
        """
        Close an order. Closing an already inactive order is a no-op.

        Returns:
            True if the order was active before the call
        """
        order = self.get(pair, side, index)
        if not order.is_active:
            return False
        order.is_active = False
        order.close_reason = CloseReason(reason)
        logger.info("Order %s#%d on %s closed: %s", OrderSide(side).value, index, pair, order.close_reason.value)
        return True

    def orders(self, pair: str, side: OrderSide) -> List[ConditionalOrder]:
        """Insertion-ordered view; the list is a copy, the orders are live."""
        return list(self._books.get((pair, OrderSide(side)), []))

    def count(self, pair: str, side: OrderSide) -> int:
        return len(self._books.get((pair, OrderSide(side)), []))

    # -- Snapshot / restore -------------------------------------------------

    def snapshot(self, *pairs: str) -> Dict[str, Any]:
        """
        Capture the mutable fields of every order on *pairs* (all pairs if
        none are given). Restore writes them back onto the same objects.
        """
        with self._lock:
            if pairs:
                keys = [(p, s) for p in pairs for s in OrderSide]
            else:
                keys = list(self._books)
            books = {
                key: [(o.is_active, o.filled, o.close_reason) for o in self._books.get(key, [])]
                for key in keys
            }
        return {"scoped": bool(pairs), "books": books}

    def restore(self, snapshot: Dict[str, Any]) -> None:
        with self._lock:
            saved = snapshot["books"]
            if not snapshot["scoped"]:
                for key in [k for k in self._books if k not in saved]:
                    del self._books[key]
            for key, fields in saved.items():
                book = self._books.get(key)
                if book is None:
                    continue
                del book[len(fields):]
                for order, (is_active, filled, close_reason) in zip(book, fields):
                    order.is_active = is_active
                    order.filled = filled
                    order.close_reason = close_reason

    def scoped(self, *pairs: str) -> "ScopedBooks":
        """Rollback participant covering only the books of *pairs*."""
        return ScopedBooks(self, pairs)


class ScopedBooks:
    """Snapshot/restore adapter over a subset of an OrderStore's pairs."""

    def __init__(self, store: OrderStore, pairs: Tuple[str, ...]):
        self.store = store
        self.pairs = tuple(sorted(set(pairs)))

    def snapshot(self) -> Dict[str, Any]:
        return self.store.snapshot(*self.pairs)

    def restore(self, snapshot: Dict[str, Any]) -> None:
        self.store.restore(snapshot)

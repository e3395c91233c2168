"""
XDEX Conditional Order Matching

Eligibility rules and fill bookkeeping for conditional orders:
  - Price condition against the pool's spot price
    (buy: price <= condition, sell: price >= condition)
  - Expiration, time lock and counterparty volume conditions
  - Partial-fill policy applied after each settlement

Settlement itself (the pool swap) is driven by AMMFactory.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Sequence

from ..exceptions import VolumeConditionNotMet
from .orders import CloseReason, ConditionalOrder, OrderSide

logger = logging.getLogger(__name__)


class PartialFillPolicy(str, Enum):
    """What happens to an order that is only partly consumed by a match."""
    KEEP_REMAINDER = "keep_remainder"      # stays active until remaining == 0
    CONSUME_ON_MATCH = "consume_on_match"  # closed after its first match


@dataclass(frozen=True)
class MatchResult:
    """
    One settled taker/maker pair.

    Only the taker pays: *fill* of token_in is swapped through the pool
    for *amount_out*. The maker order is marked consumed by *fill*, but
    none of the maker's funds move.
    """
    pair: str
    taker_side: OrderSide
    taker_index: int
    maker_index: int
    taker: str
    maker: str
    token_in: str
    token_out: str
    fill: int
    amount_out: int

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["taker_side"] = self.taker_side.value
        return d


class ConditionEvaluator:
    """
    Evaluates order conditions at a fixed time and pool price.

    A fresh evaluator is built per taker so each decision sees the pool
    price left by the previous settlement.
    """

    def __init__(self, now: int, pool_price: int):
        self.now = now
        self.pool_price = pool_price

    def price_ok(self, order: ConditionalOrder) -> bool:
        if order.price_condition is None:
            return True
        if order.is_buy:
            return self.pool_price <= order.price_condition
        return self.pool_price >= order.price_condition

    def is_live(self, order: ConditionalOrder) -> bool:
        """Active, unexpired and unlocked."""
        return order.is_active and not order.is_expired(self.now) and order.is_unlocked(self.now)

    def is_price_eligible(self, order: ConditionalOrder) -> bool:
        return self.is_live(order) and self.price_ok(order)

    @staticmethod
    def compatible(taker: ConditionalOrder, maker: ConditionalOrder) -> bool:
        return maker.token_in == taker.token_out and maker.token_out == taker.token_in

    def counterparty_volume(self, order: ConditionalOrder, opposite: Iterable[ConditionalOrder]) -> int:
        """Remaining size of every opposite order that could trade with *order* now."""
        return sum(
            m.remaining for m in opposite
            if self.is_price_eligible(m) and self.compatible(order, m)
        )

    def volume_ok(self, order: ConditionalOrder, opposite: Sequence[ConditionalOrder]) -> bool:
        if order.volume_condition == 0:
            return True
        return self.counterparty_volume(order, opposite) >= order.volume_condition

    def require_volume(self, order: ConditionalOrder, opposite: Sequence[ConditionalOrder]) -> None:
        if not self.volume_ok(order, opposite):
            raise VolumeConditionNotMet(
                f"Order {order.side.value}#{order.index}: counterparty volume "
                f"{self.counterparty_volume(order, opposite)} below {order.volume_condition}"
            )

    def find_counterparty(
        self,
        taker: ConditionalOrder,
        makers: Sequence[ConditionalOrder],
        takers: Sequence[ConditionalOrder],
    ) -> Optional[ConditionalOrder]:
        """
        Earliest price-eligible compatible maker for *taker*.

        The chosen maker's own volume condition is measured against the
        taker side; an unmet one raises VolumeConditionNotMet.
        """
        for maker in makers:
            if self.is_price_eligible(maker) and self.compatible(taker, maker):
                self.require_volume(maker, takers)
                return maker
        return None


def min_output_for_fill(order: ConditionalOrder, fill: int) -> int:
    """Pro-rata share of the order's minimum output, rounded up."""
    return -(-order.min_amount_out * fill // order.amount_in)


def apply_fill(order: ConditionalOrder, fill: int, policy: PartialFillPolicy) -> bool:
    """
    Consume *fill* units of *order*.

    Returns:
        True if the order was closed by this fill
    """
    order.filled += fill
    if order.remaining == 0 or PartialFillPolicy(policy) == PartialFillPolicy.CONSUME_ON_MATCH:
        order.is_active = False
        order.close_reason = CloseReason.FILLED
        return True
    return False

"""
XDEX Exchange Engine

Components:
  - Constant-product liquidity pool (x * y = k, fee in basis points)
  - Conditional order book (price, expiry, time-lock, volume conditions)
  - Matching engine settling matched volume through the pool
  - Pair registry / factory with batch execution
  - Price oracles (external feed interface, pool TWAP)
  - Atomic execution (snapshot / restore on failure)
"""

from .atomic import atomic
from .events import (
    BatchExecuted,
    EventLog,
    OrderCancelled,
    OrderMatched,
    OrderPlaced,
    PairCreated,
)
from .factory import AMMFactory
from .matching import ConditionEvaluator, MatchResult, PartialFillPolicy
from .oracle import FeedPriceOracle, PriceOracle, ReferencePrice, TWAPOracle
from .orders import CloseReason, ConditionalOrder, OrderSide, OrderState, OrderStore, pair_key
from .pool import LiquidityPool, LiquidityRatioPolicy, PoolState, ShareLedger, get_amount_out

__all__ = [
    # Pool
    "LiquidityPool",
    "LiquidityRatioPolicy",
    "PoolState",
    "ShareLedger",
    "get_amount_out",
    # Orders
    "CloseReason",
    "ConditionalOrder",
    "OrderSide",
    "OrderState",
    "OrderStore",
    "pair_key",
    # Matching
    "ConditionEvaluator",
    "MatchResult",
    "PartialFillPolicy",
    # Oracle
    "FeedPriceOracle",
    "PriceOracle",
    "ReferencePrice",
    "TWAPOracle",
    # Factory
    "AMMFactory",
    "atomic",
    # Events
    "BatchExecuted",
    "EventLog",
    "OrderCancelled",
    "OrderMatched",
    "OrderPlaced",
    "PairCreated",
]

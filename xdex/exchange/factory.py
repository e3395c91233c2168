"""
XDEX AMM Factory

Owns every exchange engine instance and is the entry point for all
mutations:
  - Pair registry: one constant-product pool per unordered token pair
  - Liquidity and swap pass-throughs (each records a TWAP observation)
  - Conditional order placement, matching, cancellation
  - Batch swaps across pairs
  - External-price gated order placement

Security:
  - Per-token RLocks around every operation, acquired in sorted order;
    operations that share a token are serialized
  - Every operation is all-or-nothing across its pools, tokens, order
    books and TWAP oracles; events are published on commit
  - Failures are logged and re-raised, never swallowed
  - State root is blake2b of sorted pool/order/oracle hashes
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from contextlib import ExitStack, contextmanager
from decimal import Decimal
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from ..config import ExchangeConfig, OracleConfig
from ..exceptions import (
    BatchLengthMismatch,
    InvalidToken,
    OracleError,
    PairExists,
    PairNotFound,
    PriceConditionNotMet,
    Unauthorized,
    XDEXException,
)
from ..tokens import TokenRegistry
from .atomic import atomic
from .events import (
    BatchExecuted,
    EventLog,
    OrderCancelled,
    OrderMatched,
    OrderPlaced,
    PairCreated,
)
from .matching import (
    ConditionEvaluator,
    MatchResult,
    PartialFillPolicy,
    apply_fill,
    min_output_for_fill,
)
from .oracle import PriceOracle, TWAPOracle
from .orders import CloseReason, ConditionalOrder, OrderSide, OrderStore, pair_key
from .pool import LiquidityPool, LiquidityRatioPolicy

logger = logging.getLogger(__name__)


def _system_clock() -> int:
    return int(time.time())


class AMMFactory:
    """
    Pair registry and conditional order engine.

    Usage:

        tokens = TokenRegistry()
        factory = AMMFactory(tokens)
        pool = factory.create_pair(token_a.address, token_b.address)
        factory.add_liquidity(token_a.address, token_b.address, "alice", 1_000, 1_000)
        factory.place_conditional_order(token_a.address, token_b.address,
                                        100, 50, True, 100, trader="alice")
        factory.match_conditional_orders(token_a.address, token_b.address, True)
    """

    def __init__(
        self,
        tokens: TokenRegistry,
        config: Optional[ExchangeConfig] = None,
        oracle_config: Optional[OracleConfig] = None,
        price_oracle: Optional[PriceOracle] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.tokens = tokens
        self.config = config or ExchangeConfig()
        self.config.validate()
        self.oracle_config = oracle_config or OracleConfig()
        self.oracle_config.validate()
        self.price_oracle = price_oracle
        self.partial_fill_policy = PartialFillPolicy(self.config.partial_fill_policy)
        self._clock = clock or _system_clock

        # pair_key → pool, in creation order
        self._pairs: Dict[str, LiquidityPool] = {}
        # pair_key → TWAP oracle fed by the pool
        self._twaps: Dict[str, TWAPOracle] = {}
        self._locks: Dict[str, threading.RLock] = {}
        self._registry_lock = threading.RLock()

        self.orders = OrderStore()
        self.events = EventLog()

    # =====================================================================
    #  Internals
    # =====================================================================

    def now(self) -> int:
        return int(self._clock())

    def set_price_oracle(self, oracle: Optional[PriceOracle]) -> None:
        self.price_oracle = oracle

    def _lock_for(self, token: str) -> threading.RLock:
        with self._registry_lock:
            return self._locks.setdefault(token, threading.RLock())

    @contextmanager
    def _guard(self, op: str, *tokens: str) -> Iterator[None]:
        """Hold the locks of *tokens* (sorted) and log failures."""
        with ExitStack() as stack:
            for token in sorted(set(tokens)):
                stack.enter_context(self._lock_for(token))
            try:
                yield
            except XDEXException as e:
                logger.warning("%s failed: %s: %s", op, type(e).__name__, e)
                raise

    def _participants(self, key: str) -> Tuple[Any, ...]:
        pool = self._pairs[key]
        return (pool, pool.token_x, pool.token_y, self._twaps[key], self.orders.scoped(key))

    def _record_observation(self, key: str) -> None:
        pool = self._pairs[key]
        reserve_x, reserve_y = pool.get_reserves()
        if reserve_x == 0 or reserve_y == 0:
            return
        twap = self._twaps[key]
        now = self.now()
        latest = twap.latest
        if latest is not None and now < latest.timestamp:
            logger.debug("Clock behind last %s observation (%d < %d), reusing it", key, now, latest.timestamp)
            now = latest.timestamp
        price = Decimal(reserve_y) * self.config.price_precision / Decimal(reserve_x)
        twap.record(price, now)

    # =====================================================================
    #  Pair registry
    # =====================================================================

    def create_pair(self, token_a: str, token_b: str, fee_bps: Optional[int] = None) -> LiquidityPool:
        """
        Create the pool for an unordered token pair.

        Raises:
            InvalidToken: identical or unregistered tokens
            PairExists: a pool already exists for the pair (either order)
        """
        key = pair_key(token_a, token_b)
        with self._guard("create_pair", token_a, token_b):
            if token_a == token_b:
                raise InvalidToken("Identical token addresses")
            for t in (token_a, token_b):
                if not self.tokens.exists(t):
                    raise InvalidToken(f"Token {t} is not registered")
            with self._registry_lock:
                if key in self._pairs:
                    raise PairExists(f"Pair {key} already exists")

                tx, ty = sorted((token_a, token_b))
                pool = LiquidityPool(
                    self.tokens.get_or_raise(tx),
                    self.tokens.get_or_raise(ty),
                    fee_bps=self.config.fee_bps if fee_bps is None else fee_bps,
                    ratio_policy=LiquidityRatioPolicy(self.config.liquidity_ratio_policy),
                    ratio_tolerance_bps=self.config.ratio_tolerance_bps,
                )
                self._pairs[key] = pool
                self._twaps[key] = TWAPOracle(
                    pool_id=key,
                    window_seconds=self.oracle_config.twap_window_seconds,
                    max_observations=self.oracle_config.max_observations,
                )

            self.events.emit(PairCreated(key, pool.address, tx, ty, pool.fee_bps, self.now()))
            logger.info("Pair created: %s → pool %s (fee %d bps)", key, pool.address, pool.fee_bps)
            return pool

    def get_pair(self, token_a: str, token_b: str) -> LiquidityPool:
        try:
            return self._pairs[pair_key(token_a, token_b)]
        except KeyError:
            raise PairNotFound(f"No pair for {token_a}/{token_b}") from None

    def get_pair_address(self, token_a: str, token_b: str) -> str:
        return self.get_pair(token_a, token_b).address

    def has_pair(self, token_a: str, token_b: str) -> bool:
        return pair_key(token_a, token_b) in self._pairs

    def all_pairs_length(self) -> int:
        return len(self._pairs)

    def all_pairs(self) -> List[LiquidityPool]:
        return list(self._pairs.values())

    def twap_oracle(self, token_a: str, token_b: str) -> TWAPOracle:
        self.get_pair(token_a, token_b)
        return self._twaps[pair_key(token_a, token_b)]

    def buy_orders(self, token_a: str, token_b: str) -> List[ConditionalOrder]:
        return self.orders.orders(pair_key(token_a, token_b), OrderSide.BUY)

    def sell_orders(self, token_a: str, token_b: str) -> List[ConditionalOrder]:
        return self.orders.orders(pair_key(token_a, token_b), OrderSide.SELL)

    # =====================================================================
    #  Pool pass-throughs
    # =====================================================================

    def add_liquidity(self, token_a: str, token_b: str, provider: str, amount_a: int, amount_b: int) -> int:
        """Deposit into the pair's pool; amounts follow the argument order."""
        pool = self.get_pair(token_a, token_b)
        key = pair_key(token_a, token_b)
        amount_x, amount_y = (amount_a, amount_b) if token_a == pool.state.token_x else (amount_b, amount_a)
        with self._guard("add_liquidity", token_a, token_b):
            with atomic(*self._participants(key)):
                shares = pool.add_liquidity(provider, amount_x, amount_y)
                self._record_observation(key)
            return shares

    def remove_liquidity(self, token_a: str, token_b: str, provider: str, share_amount: int) -> Tuple[int, int]:
        """Withdraw from the pair's pool; returned amounts follow the argument order."""
        pool = self.get_pair(token_a, token_b)
        key = pair_key(token_a, token_b)
        with self._guard("remove_liquidity", token_a, token_b):
            with atomic(*self._participants(key)):
                amount_x, amount_y = pool.remove_liquidity(provider, share_amount)
                self._record_observation(key)
        if token_a == pool.state.token_x:
            return amount_x, amount_y
        return amount_y, amount_x

    def swap(
        self,
        token_in: str,
        token_out: str,
        trader: str,
        amount_in: int,
        min_amount_out: int = 0,
        recipient: Optional[str] = None,
    ) -> int:
        pool = self.get_pair(token_in, token_out)
        key = pair_key(token_in, token_out)
        with self._guard("swap", token_in, token_out):
            with atomic(*self._participants(key)):
                out = pool.swap(trader, token_in, amount_in, min_amount_out, recipient)
                self._record_observation(key)
            return out

    # =====================================================================
    #  Conditional orders
    # =====================================================================

    def place_conditional_order(
        self,
        token_a: str,
        token_b: str,
        amount_in: int,
        min_amount_out: int,
        is_buy: bool,
        price_condition: Optional[int],
        expiration_time: int = 0,
        time_locked: bool = False,
        volume_condition: int = 0,
        *,
        trader: str,
    ) -> int:
        """
        Place a conditional order selling *amount_in* of token_a for token_b.

        A time-locked order cannot match before
        ``now + time_lock_seconds``.

        Returns:
            the order's index on its (pair, side)
        """
        key = pair_key(token_a, token_b)
        with self._guard("place_conditional_order", token_a, token_b):
            return self._place(
                key, token_a, token_b, amount_in, min_amount_out, is_buy,
                price_condition, expiration_time, time_locked, volume_condition, trader,
            )

    def _place(
        self,
        key: str,
        token_a: str,
        token_b: str,
        amount_in: int,
        min_amount_out: int,
        is_buy: bool,
        price_condition: Optional[int],
        expiration_time: int,
        time_locked: bool,
        volume_condition: int,
        trader: str,
    ) -> int:
        self.get_pair(token_a, token_b)
        if token_a == token_b:
            raise InvalidToken("Order tokens must differ")

        now = self.now()
        order = ConditionalOrder(
            trader=trader,
            token_in=token_a,
            token_out=token_b,
            amount_in=amount_in,
            min_amount_out=min_amount_out,
            is_buy=is_buy,
            price_condition=price_condition,
            expiration_time=expiration_time,
            time_locked=time_locked,
            lock_boundary=now + self.config.time_lock_seconds if time_locked else 0,
            volume_condition=volume_condition,
            created_at=now,
        )
        side = order.side
        with self.events.staged() as emit, atomic(self.orders.scoped(key)):
            index = self.orders.place(key, side, order)
            emit(OrderPlaced(key, side.value, index, trader, token_a, amount_in, now))
        return index

    def place_order_with_external_price_condition(
        self,
        token_a: str,
        token_b: str,
        amount_in: int,
        min_amount_out: int,
        is_buy: bool,
        price_condition: int,
        trader: str,
        asset_pair: Optional[str] = None,
    ) -> int:
        """
        Place an order only if the external reference price satisfies
        *price_condition* right now (buy: ref <= condition, sell: ref >= condition).

        The gate is checked once at submission; the stored order has no
        pool price condition.

        Raises:
            PriceConditionNotMet: no oracle, oracle failure, stale answer
                or unmet condition
        """
        key = pair_key(token_a, token_b)
        with self._guard("place_order_with_external_price_condition", token_a, token_b):
            if self.price_oracle is None:
                raise PriceConditionNotMet("No price oracle configured")
            feed = asset_pair or key
            try:
                ref = self.price_oracle.get_reference_price(feed)
            except OracleError as e:
                raise PriceConditionNotMet(f"Oracle unavailable for {feed}: {e}") from e

            age = self.now() - ref.timestamp
            if age > self.oracle_config.max_staleness_seconds:
                raise PriceConditionNotMet(
                    f"Oracle answer for {feed} is stale ({age}s > {self.oracle_config.max_staleness_seconds}s)"
                )
            met = ref.price <= price_condition if is_buy else ref.price >= price_condition
            if not met:
                raise PriceConditionNotMet(
                    f"Price Condition Not Met: reference {ref.price}, condition {price_condition}"
                )

            return self._place(
                key, token_a, token_b, amount_in, min_amount_out, is_buy,
                None, 0, False, 0, trader,
            )

    def cancel_order(self, token_a: str, token_b: str, index: int, is_buy: bool, caller: str) -> bool:
        """
        Cancel an order. Cancelling an inactive order is a no-op.

        Returns:
            True if the order was active and is now cancelled

        Raises:
            OrderNotFound, Unauthorized
        """
        key = pair_key(token_a, token_b)
        side = OrderSide.from_is_buy(is_buy)
        with self._guard("cancel_order", token_a, token_b):
            order = self.orders.get(key, side, index)
            if order.trader != caller:
                raise Unauthorized(f"{caller} does not own {side.value} order #{index} on {key}")
            with self.events.staged() as emit, atomic(self.orders.scoped(key)):
                changed = self.orders.deactivate(key, side, index, CloseReason.CANCELLED)
                if changed:
                    emit(OrderCancelled(key, side.value, index, caller, self.now()))
            return changed

    def get_order(self, token_a: str, token_b: str, index: int, is_buy: bool) -> ConditionalOrder:
        return self.orders.get(pair_key(token_a, token_b), OrderSide.from_is_buy(is_buy), index)

    def match_conditional_orders(
        self, token_a: str, token_b: str, buy_side: bool, caller: Optional[str] = None
    ) -> List[MatchResult]:
        """
        Match the requested side of a pair against the opposite side and
        settle every match through the pool.

        Orders are scanned in insertion order. Each eligible taker trades
        with the earliest eligible compatible maker, at most once per call.

        Raises:
            PairNotFound, VolumeConditionNotMet, SlippageExceeded, plus any
            pool or token failure; the call is rolled back as a whole
        """
        pool = self.get_pair(token_a, token_b)
        key = pair_key(token_a, token_b)
        with self._guard("match_conditional_orders", token_a, token_b):
            with self.events.staged() as emit, atomic(*self._participants(key)):
                results = self._match(key, pool, OrderSide.from_is_buy(buy_side), emit)
            if results:
                logger.info(
                    "Matched %d %s order(s) on %s%s",
                    len(results), OrderSide.from_is_buy(buy_side).value, key,
                    f" (by {caller})" if caller else "",
                )
            return results

    def _match(
        self, key: str, pool: LiquidityPool, side: OrderSide, emit: Callable[[Any], None]
    ) -> List[MatchResult]:
        now = self.now()
        takers = self.orders.orders(key, side)
        makers = self.orders.orders(key, side.opposite)
        results: List[MatchResult] = []

        for taker in takers:
            evaluator = ConditionEvaluator(now, pool.spot_price(self.config.price_precision))
            if not evaluator.is_price_eligible(taker):
                continue
            evaluator.require_volume(taker, makers)

            maker = evaluator.find_counterparty(taker, makers, takers)
            if maker is None:
                continue

            fill = min(taker.remaining, maker.remaining)
            amount_out = pool.swap(
                taker.trader, taker.token_in, fill, min_output_for_fill(taker, fill)
            )
            apply_fill(taker, fill, self.partial_fill_policy)
            apply_fill(maker, fill, self.partial_fill_policy)
            self._record_observation(key)

            result = MatchResult(
                pair=key,
                taker_side=side,
                taker_index=taker.index,
                maker_index=maker.index,
                taker=taker.trader,
                maker=maker.trader,
                token_in=taker.token_in,
                token_out=taker.token_out,
                fill=fill,
                amount_out=amount_out,
            )
            results.append(result)
            emit(OrderMatched(key, side.value, taker.index, maker.index, fill, amount_out, now))
            logger.debug(
                "Settled %s#%d against #%d on %s: %d in → %d out",
                side.value, taker.index, maker.index, key, fill, amount_out,
            )
        return results

    # =====================================================================
    #  Batch execution
    # =====================================================================

    def batch_execute_orders(
        self,
        trader: str,
        tokens_in: Sequence[str],
        tokens_out: Sequence[str],
        amounts_in: Sequence[int],
        amounts_out: Sequence[int],
    ) -> List[int]:
        """
        Execute several swaps as one transaction; amounts_out[i] is the
        minimum output of swap i.

        Raises:
            BatchLengthMismatch: empty, unequal or oversized sequences
            PairNotFound: a swap names a pair without a pool
        """
        n = len(tokens_in)
        if n == 0 or not (n == len(tokens_out) == len(amounts_in) == len(amounts_out)):
            logger.warning("batch_execute_orders rejected: sequence lengths %d/%d/%d/%d",
                           n, len(tokens_out), len(amounts_in), len(amounts_out))
            raise BatchLengthMismatch("Batch sequences must be non-empty and of equal length")
        if n > self.config.max_batch_size:
            logger.warning("batch_execute_orders rejected: %d swaps > max %d", n, self.config.max_batch_size)
            raise BatchLengthMismatch(f"Batch of {n} swaps exceeds max {self.config.max_batch_size}")

        keys = [pair_key(t_in, t_out) for t_in, t_out in zip(tokens_in, tokens_out)]
        with self._guard("batch_execute_orders", *tokens_in, *tokens_out):
            pools = [self.get_pair(t_in, t_out) for t_in, t_out in zip(tokens_in, tokens_out)]
            participants: List[Any] = []
            for key in dict.fromkeys(keys):
                participants.extend(self._participants(key))

            with self.events.staged() as emit, atomic(*participants):
                outs: List[int] = []
                for pool, key, t_in, a_in, a_out in zip(pools, keys, tokens_in, amounts_in, amounts_out):
                    outs.append(pool.swap(trader, t_in, a_in, a_out))
                    self._record_observation(key)
                emit(BatchExecuted(trader, tuple(keys), tuple(outs), self.now()))

            logger.info("Batch of %d swaps executed for %s", n, trader)
            return outs

    # =====================================================================
    #  Auditing
    # =====================================================================

    def compute_state_root(self) -> str:
        """
        Deterministic hash of pools, orders and oracles.

        Returns:
            64-char hex string (blake2b-256)
        """
        hasher = hashlib.blake2b(digest_size=32)

        for key in sorted(self._pairs):
            pool = self._pairs[key]
            s = pool.state
            hasher.update(hashlib.blake2b(
                f"{key}:{s.reserve_x}:{s.reserve_y}:{pool.total_shares}:{s.total_volume}".encode(),
                digest_size=16,
            ).digest())

            for side in (OrderSide.BUY, OrderSide.SELL):
                for o in self.orders.orders(key, side):
                    hasher.update(
                        f"{key}:{side.value}:{o.index}:{o.trader}:{o.filled}:{o.is_active}".encode()
                    )

            twap = self._twaps[key]
            hasher.update(hashlib.blake2b(
                f"{key}:{twap.latest_price or 0}:{twap.observation_count}".encode(),
                digest_size=16,
            ).digest())

        hasher.update(len(self.events).to_bytes(8, "big"))
        return hasher.hexdigest()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "pairs": self.all_pairs_length(),
            "total_volume": sum(p.get_total_volume() for p in self._pairs.values()),
            "events": len(self.events),
            "partial_fill_policy": self.partial_fill_policy.value,
        }

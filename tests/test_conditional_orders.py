"""
Test suite for XDEX conditional order execution through the factory

Covers:
  - Placement, matching and settlement through the pool
  - Partial-fill policies
  - Volume, price, expiry and time-lock conditions
  - Cancellation (owner-only, idempotent)
  - External-price gated placement
  - Batch execution and all-or-nothing rollback
"""

import pytest

from xdex.config import ExchangeConfig
from xdex.exceptions import (
    BatchLengthMismatch,
    OrderNotFound,
    PairNotFound,
    PriceConditionNotMet,
    SlippageExceeded,
    Unauthorized,
    VolumeConditionNotMet,
)
from xdex.exchange import (
    AMMFactory,
    BatchExecuted,
    FeedPriceOracle,
    OrderCancelled,
    OrderMatched,
    OrderState,
    pair_key,
)
from xdex.tokens import TokenRegistry, XToken

OWNER = "0xowner0000000000000000000000000000000001"
ALICE = "0xalice0000000000000000000000000000000002"
BOB = "0xbob000000000000000000000000000000000003"

START = 1_000


class FakeClock:
    def __init__(self, t=START):
        self.t = t

    def __call__(self):
        return self.t


def _setup(policy="keep_remainder", oracle=None, max_batch_size=64):
    tokens = TokenRegistry()
    a = tokens.deploy(XToken("TokenA", "TKA", 1_000_000, 0, OWNER))
    b = tokens.deploy(XToken("TokenB", "TKB", 1_000_000, 0, OWNER))
    clock = FakeClock()
    cfg = ExchangeConfig(partial_fill_policy=policy, max_batch_size=max_batch_size)
    factory = AMMFactory(tokens, config=cfg, price_oracle=oracle, clock=clock)
    pool = factory.create_pair(a.address, b.address)
    for t in (a, b):
        for who in (ALICE, BOB):
            t.transfer(OWNER, who, 100_000)
        for who in (OWNER, ALICE, BOB):
            t.approve(who, pool.address, 10 ** 12)
    factory.add_liquidity(a.address, b.address, OWNER, 1_000, 1_000)
    return factory, pool, a, b, clock


def _place_buy(factory, a, b, amount_in=100, min_out=50, price=100, **kw):
    return factory.place_conditional_order(a.address, b.address, amount_in, min_out, True, price,
                                           trader=kw.pop("trader", ALICE), **kw)


def _place_sell(factory, a, b, amount_in=50, min_out=100, price=100, **kw):
    return factory.place_conditional_order(b.address, a.address, amount_in, min_out, False, price,
                                           trader=kw.pop("trader", BOB), **kw)


# ============================================================================
#  Placement
# ============================================================================

class TestPlaceOrder:

    def test_place_limit_order(self):
        factory, _, a, b, _ = _setup()
        assert _place_buy(factory, a, b) == 0
        orders = factory.buy_orders(a.address, b.address)
        assert len(orders) == 1
        assert orders[0].amount_in == 100
        assert orders[0].token_in == a.address
        assert orders[0].token_out == b.address
        assert orders[0].created_at == START

    def test_views_are_order_independent(self):
        factory, _, a, b, _ = _setup()
        _place_buy(factory, a, b)
        assert factory.buy_orders(b.address, a.address)[0].index == 0
        assert factory.sell_orders(a.address, b.address) == []

    def test_time_lock_boundary(self):
        factory, _, a, b, _ = _setup()
        _place_buy(factory, a, b, time_locked=True)
        assert factory.buy_orders(a.address, b.address)[0].lock_boundary == START + 3_600

    def test_unknown_pair(self):
        factory, _, a, _, _ = _setup()
        c = factory.tokens.deploy(XToken("TokenC", "TKC", 1_000, 0, OWNER))
        with pytest.raises(PairNotFound):
            factory.place_conditional_order(a.address, c.address, 10, 1, True, 100, trader=ALICE)


# ============================================================================
#  Matching
# ============================================================================

class TestMatching:

    def test_match_buy_and_sell(self):
        factory, pool, a, b, _ = _setup()
        _place_buy(factory, a, b)
        _place_sell(factory, a, b)
        assert pool.get_total_volume() == 0

        results = factory.match_conditional_orders(a.address, b.address, True)

        assert pool.get_total_volume() == 50
        assert len(results) == 1
        assert results[0].fill == 50
        assert b.balance_of(ALICE) == 100_000 + results[0].amount_out

        sell = factory.sell_orders(a.address, b.address)[0]
        buy = factory.buy_orders(a.address, b.address)[0]
        assert not sell.is_active and sell.state(START) == OrderState.FILLED
        assert buy.is_active and buy.remaining == 50
        assert len(factory.events.of_type(OrderMatched)) == 1

    def test_consume_on_match_closes_remainder(self):
        factory, pool, a, b, _ = _setup(policy="consume_on_match")
        _place_buy(factory, a, b)
        _place_sell(factory, a, b)
        factory.match_conditional_orders(a.address, b.address, True)
        buy = factory.buy_orders(a.address, b.address)[0]
        assert pool.get_total_volume() == 50
        assert not buy.is_active
        assert buy.remaining == 50
        assert buy.state(START) == OrderState.FILLED

    def test_sell_side_as_taker(self):
        factory, pool, a, b, _ = _setup()
        _place_buy(factory, a, b)
        _place_sell(factory, a, b, min_out=40)
        results = factory.match_conditional_orders(a.address, b.address, False)
        assert len(results) == 1
        assert results[0].token_in == b.address
        assert pool.get_total_volume() == 50
        assert factory.buy_orders(a.address, b.address)[0].remaining == 50

    def test_one_counterparty_per_call(self):
        factory, pool, a, b, _ = _setup()
        _place_buy(factory, a, b, price=None)
        _place_sell(factory, a, b, amount_in=30, min_out=0, price=None)
        _place_sell(factory, a, b, amount_in=30, min_out=0, price=None)

        first = factory.match_conditional_orders(a.address, b.address, True)
        assert [(r.maker_index, r.fill) for r in first] == [(0, 30)]
        second = factory.match_conditional_orders(a.address, b.address, True)
        assert [(r.maker_index, r.fill) for r in second] == [(1, 30)]
        assert factory.buy_orders(a.address, b.address)[0].remaining == 40
        assert pool.get_total_volume() == 60

    def test_no_counterparty(self):
        factory, pool, a, b, _ = _setup()
        _place_buy(factory, a, b)
        assert factory.match_conditional_orders(a.address, b.address, True) == []
        assert pool.get_total_volume() == 0

    def test_price_condition_not_met_skips(self):
        factory, pool, a, b, _ = _setup()
        _place_buy(factory, a, b, price=90)
        _place_sell(factory, a, b)
        assert factory.match_conditional_orders(a.address, b.address, True) == []
        assert factory.buy_orders(a.address, b.address)[0].is_active

    def test_slippage_aborts_whole_call(self):
        factory, pool, a, b, _ = _setup()
        _place_buy(factory, a, b, min_out=1_000)
        _place_sell(factory, a, b)
        with pytest.raises(SlippageExceeded):
            factory.match_conditional_orders(a.address, b.address, True)
        assert pool.get_reserves() == (1_000, 1_000)
        assert factory.sell_orders(a.address, b.address)[0].is_active
        assert factory.buy_orders(a.address, b.address)[0].filled == 0

    def test_held_order_reflects_rollback(self):
        factory, pool, a, b, _ = _setup()
        _place_buy(factory, a, b)
        _place_buy(factory, a, b, price=None, volume_condition=200)
        _place_sell(factory, a, b)
        held = factory.get_order(a.address, b.address, 0, True)
        with pytest.raises(VolumeConditionNotMet):
            factory.match_conditional_orders(a.address, b.address, True)
        assert factory.get_order(a.address, b.address, 0, True) is held
        assert held.filled == 0
        assert pool.get_total_volume() == 0
        factory.cancel_order(a.address, b.address, 0, True, ALICE)
        assert held.state(START) == OrderState.CANCELLED


class TestVolumeCondition:

    def test_unmet_volume_condition_fails(self):
        factory, pool, a, b, _ = _setup()
        _place_buy(factory, a, b, volume_condition=200)
        assert pool.get_total_volume() == 0
        with pytest.raises(VolumeConditionNotMet):
            factory.match_conditional_orders(a.address, b.address, True)
        assert pool.get_total_volume() == 0
        assert pool.get_reserves() == (1_000, 1_000)

    def test_unmet_volume_condition_with_counterparty(self):
        factory, pool, a, b, _ = _setup()
        _place_buy(factory, a, b, volume_condition=200)
        _place_sell(factory, a, b)
        with pytest.raises(VolumeConditionNotMet):
            factory.match_conditional_orders(a.address, b.address, True)
        assert pool.get_total_volume() == 0
        assert factory.sell_orders(a.address, b.address)[0].is_active

    def test_met_volume_condition(self):
        factory, pool, a, b, _ = _setup()
        _place_buy(factory, a, b, volume_condition=50)
        _place_sell(factory, a, b)
        assert len(factory.match_conditional_orders(a.address, b.address, True)) == 1
        assert pool.get_total_volume() == 50

    def test_maker_volume_condition_checked(self):
        factory, pool, a, b, _ = _setup()
        _place_buy(factory, a, b)
        _place_sell(factory, a, b, volume_condition=200)
        with pytest.raises(VolumeConditionNotMet):
            factory.match_conditional_orders(a.address, b.address, True)
        assert pool.get_total_volume() == 0


class TestExpiryAndTimeLock:

    def test_expired_order_not_matched(self):
        factory, pool, a, b, clock = _setup()
        _place_buy(factory, a, b, expiration_time=START + 10)
        _place_sell(factory, a, b)
        clock.t = START + 10
        assert factory.match_conditional_orders(a.address, b.address, True) == []
        buy = factory.buy_orders(a.address, b.address)[0]
        assert buy.state(clock.t) == OrderState.EXPIRED
        assert pool.get_total_volume() == 0

    def test_expired_maker_not_used(self):
        factory, pool, a, b, clock = _setup()
        _place_buy(factory, a, b)
        _place_sell(factory, a, b, expiration_time=START + 10)
        clock.t = START + 20
        assert factory.match_conditional_orders(a.address, b.address, True) == []

    def test_time_locked_order_waits(self):
        factory, pool, a, b, clock = _setup()
        _place_buy(factory, a, b, time_locked=True)
        _place_sell(factory, a, b)
        assert factory.match_conditional_orders(a.address, b.address, True) == []
        clock.t = START + 3_600
        assert len(factory.match_conditional_orders(a.address, b.address, True)) == 1
        assert pool.get_total_volume() == 50


# ============================================================================
#  Cancellation
# ============================================================================

class TestCancelOrder:

    def test_cancel(self):
        factory, _, a, b, _ = _setup()
        _place_buy(factory, a, b)
        assert factory.cancel_order(a.address, b.address, 0, True, ALICE) is True
        order = factory.buy_orders(a.address, b.address)[0]
        assert order.is_active is False
        assert order.state(START) == OrderState.CANCELLED

    def test_double_cancel_is_idempotent(self):
        factory, _, a, b, _ = _setup()
        _place_buy(factory, a, b)
        factory.cancel_order(a.address, b.address, 0, True, ALICE)
        assert factory.cancel_order(a.address, b.address, 0, True, ALICE) is False
        assert len(factory.events.of_type(OrderCancelled)) == 1

    def test_cancel_by_non_owner(self):
        factory, _, a, b, _ = _setup()
        _place_buy(factory, a, b)
        with pytest.raises(Unauthorized):
            factory.cancel_order(a.address, b.address, 0, True, BOB)
        assert factory.buy_orders(a.address, b.address)[0].is_active

    def test_cancel_missing(self):
        factory, _, a, b, _ = _setup()
        with pytest.raises(OrderNotFound):
            factory.cancel_order(a.address, b.address, 0, True, ALICE)
        _place_buy(factory, a, b)
        with pytest.raises(OrderNotFound):
            factory.cancel_order(a.address, b.address, 0, False, ALICE)

    def test_cancelled_order_not_matched(self):
        factory, pool, a, b, _ = _setup()
        _place_buy(factory, a, b)
        _place_sell(factory, a, b)
        factory.cancel_order(b.address, a.address, 0, False, BOB)
        assert factory.match_conditional_orders(a.address, b.address, True) == []
        assert pool.get_total_volume() == 0


# ============================================================================
#  External price gate
# ============================================================================

class TestExternalPriceCondition:

    def _feed(self, a, b, price=95, timestamp=START):
        oracle = FeedPriceOracle()
        oracle.update(pair_key(a.address, b.address), price, timestamp)
        return oracle

    def test_no_oracle(self):
        factory, _, a, b, _ = _setup()
        with pytest.raises(PriceConditionNotMet):
            factory.place_order_with_external_price_condition(
                a.address, b.address, 100, 50, True, 2_000, ALICE)
        assert factory.buy_orders(a.address, b.address) == []

    def test_condition_met(self):
        factory, _, a, b, _ = _setup()
        factory.set_price_oracle(self._feed(a, b))
        idx = factory.place_order_with_external_price_condition(
            a.address, b.address, 100, 50, True, 100, ALICE)
        order = factory.buy_orders(a.address, b.address)[idx]
        assert order.price_condition is None
        assert order.trader == ALICE

    def test_condition_not_met(self):
        factory, _, a, b, _ = _setup()
        factory.set_price_oracle(self._feed(a, b, price=95))
        with pytest.raises(PriceConditionNotMet):
            factory.place_order_with_external_price_condition(
                b.address, a.address, 50, 40, False, 100, BOB)
        with pytest.raises(PriceConditionNotMet):
            factory.place_order_with_external_price_condition(
                a.address, b.address, 100, 50, True, 90, ALICE)

    def test_stale_answer(self):
        factory, _, a, b, clock = _setup()
        factory.set_price_oracle(self._feed(a, b))
        clock.t = START + 3_600
        factory.place_order_with_external_price_condition(
            a.address, b.address, 100, 50, True, 100, ALICE)
        clock.t = START + 3_601
        with pytest.raises(PriceConditionNotMet, match="stale"):
            factory.place_order_with_external_price_condition(
                a.address, b.address, 100, 50, True, 100, ALICE)

    def test_named_feed(self):
        oracle = FeedPriceOracle()
        oracle.update("ETH/USD", 1_900, START)
        factory, _, a, b, _ = _setup(oracle=oracle)
        factory.place_order_with_external_price_condition(
            a.address, b.address, 100, 50, True, 2_000, ALICE, asset_pair="ETH/USD")
        with pytest.raises(PriceConditionNotMet):
            factory.place_order_with_external_price_condition(
                a.address, b.address, 100, 50, True, 2_000, ALICE, asset_pair="BTC/USD")

    def test_pool_twap_as_reference(self):
        factory, _, a, b, _ = _setup()
        factory.set_price_oracle(factory.twap_oracle(a.address, b.address))
        factory.place_order_with_external_price_condition(
            a.address, b.address, 100, 50, True, 100, ALICE)
        assert len(factory.buy_orders(a.address, b.address)) == 1

    def test_gated_order_matches_without_pool_condition(self):
        factory, pool, a, b, _ = _setup()
        factory.set_price_oracle(self._feed(a, b))
        factory.place_order_with_external_price_condition(
            a.address, b.address, 100, 50, True, 100, ALICE)
        _place_sell(factory, a, b, price=None)
        assert len(factory.match_conditional_orders(a.address, b.address, True)) == 1
        assert pool.get_total_volume() == 50


# ============================================================================
#  Batch execution
# ============================================================================

class TestBatchExecution:

    def test_batch(self):
        factory, pool, a, b, _ = _setup()
        outs = factory.batch_execute_orders(
            ALICE, [a.address, b.address], [b.address, a.address], [100, 50], [0, 0])
        assert len(outs) == 2 and all(o > 0 for o in outs)
        assert pool.get_total_volume() == 150
        assert len(factory.events.of_type(BatchExecuted)) == 1

    def test_mismatched_lengths(self):
        factory, pool, a, b, _ = _setup()
        with pytest.raises(BatchLengthMismatch):
            factory.batch_execute_orders(
                ALICE, [a.address], [b.address, a.address], [100, 50], [50, 100])
        assert pool.get_reserves() == (1_000, 1_000)
        assert pool.get_total_volume() == 0

    def test_empty_batch(self):
        factory, _, _, _, _ = _setup()
        with pytest.raises(BatchLengthMismatch):
            factory.batch_execute_orders(ALICE, [], [], [], [])

    def test_batch_size_limit(self):
        factory, _, a, b, _ = _setup(max_batch_size=1)
        with pytest.raises(BatchLengthMismatch):
            factory.batch_execute_orders(
                ALICE, [a.address, b.address], [b.address, a.address], [10, 10], [0, 0])

    def test_failure_rolls_back_every_leg(self):
        factory, pool, a, b, _ = _setup()
        events_before = len(factory.events)
        with pytest.raises(SlippageExceeded):
            factory.batch_execute_orders(
                ALICE, [a.address, b.address], [b.address, a.address], [100, 50], [0, 10_000])
        assert pool.get_reserves() == (1_000, 1_000)
        assert pool.get_total_volume() == 0
        assert a.balance_of(ALICE) == 100_000
        assert b.balance_of(ALICE) == 100_000
        assert len(factory.events) == events_before

    def test_missing_pair(self):
        factory, _, a, _, _ = _setup()
        c = factory.tokens.deploy(XToken("TokenC", "TKC", 1_000, 0, OWNER))
        with pytest.raises(PairNotFound):
            factory.batch_execute_orders(ALICE, [a.address], [c.address], [10], [0])

    def test_batch_across_pairs(self):
        factory, pool_ab, a, b, _ = _setup()
        c = factory.tokens.deploy(XToken("TokenC", "TKC", 1_000_000, 0, OWNER))
        pool_ac = factory.create_pair(a.address, c.address)
        a.approve(OWNER, pool_ac.address, 10 ** 12)
        c.approve(OWNER, pool_ac.address, 10 ** 12)
        a.approve(ALICE, pool_ac.address, 10 ** 12)
        factory.add_liquidity(a.address, c.address, OWNER, 2_000, 2_000)

        outs = factory.batch_execute_orders(
            ALICE, [a.address, a.address], [b.address, c.address], [100, 100], [1, 1])
        assert len(outs) == 2
        assert pool_ab.get_total_volume() == 100
        assert pool_ac.get_total_volume() == 100
        assert c.balance_of(ALICE) == outs[1]

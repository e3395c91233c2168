"""
Test suite for the XDEX constant-product liquidity pool

Covers:
  - Bootstrap and proportional liquidity, refund / reject ratio policies
  - Exact-in swaps, fee math, slippage protection
  - Cumulative volume, k monotonicity
  - Fee-on-transfer tokens (reserves track received amounts)
  - Atomic rollback and reentrancy protection
"""

import math

import pytest

from xdex.exceptions import (
    InsufficientLiquidity,
    InsufficientShares,
    InvalidAmount,
    InvalidToken,
    PoolLocked,
    RatioMismatch,
    SlippageExceeded,
)
from xdex.exchange.pool import LiquidityPool, LiquidityRatioPolicy, ShareLedger, get_amount_out
from xdex.tokens import XToken

OWNER = "0xowner0000000000000000000000000000000001"
ALICE = "0xalice0000000000000000000000000000000002"
BOB = "0xbob000000000000000000000000000000000003"

ALLOWANCE = 10 ** 12


def _fund(pool, *tokens):
    for t in tokens:
        for who in (ALICE, BOB):
            t.transfer(OWNER, who, 100_000)
        for who in (OWNER, ALICE, BOB):
            t.approve(who, pool.address, ALLOWANCE)


def _make_pool(fee_bps=30, policy=LiquidityRatioPolicy.REFUND, tolerance_bps=0, fee_percent_a=0):
    a = XToken("TokenA", "TKA", 1_000_000, fee_percent_a, OWNER)
    b = XToken("TokenB", "TKB", 1_000_000, 0, OWNER)
    pool = LiquidityPool(a, b, fee_bps=fee_bps, ratio_policy=policy, ratio_tolerance_bps=tolerance_bps)
    _fund(pool, a, b)
    return pool, a, b


class ReentrantToken(XToken):
    """Calls back into the pool from inside transfer_from."""

    target = None

    def transfer_from(self, spender, sender, recipient, amount):
        if self.target is not None:
            pool, self.target = self.target, None
            pool.swap(sender, self.address, 1)
        return super().transfer_from(spender, sender, recipient, amount)


# ============================================================================
#  Construction & math
# ============================================================================

class TestPoolConstruction:

    def test_identical_tokens_rejected(self):
        a = XToken("TokenA", "TKA", 1_000, 0, OWNER)
        with pytest.raises(InvalidToken):
            LiquidityPool(a, a)

    def test_fee_bounds(self):
        a = XToken("TokenA", "TKA", 1_000, 0, OWNER)
        b = XToken("TokenB", "TKB", 1_000, 0, OWNER)
        with pytest.raises(InvalidAmount):
            LiquidityPool(a, b, fee_bps=10_001)

    def test_empty_pool(self):
        pool, a, b = _make_pool()
        assert pool.get_reserves() == (0, 0)
        assert pool.total_shares == 0
        assert pool.get_total_volume() == 0
        assert pool.spot_price() == 0

    def test_deterministic_address(self):
        pool1, _, _ = _make_pool()
        pool2, _, _ = _make_pool()
        assert pool1.address == pool2.address

    def test_amount_out_formula(self):
        # 0.3% fee on a 1000/1000 pool
        assert get_amount_out(100, 1_000, 1_000, 30) == 90
        assert get_amount_out(100, 1_000, 1_000, 0) == 90
        assert get_amount_out(0, 1_000, 1_000, 30) == 0


# ============================================================================
#  Liquidity
# ============================================================================

class TestAddLiquidity:

    def test_bootstrap_mints_sqrt(self):
        pool, a, b = _make_pool()
        shares = pool.add_liquidity(ALICE, 1_000, 4_000)
        assert shares == math.isqrt(1_000 * 4_000) == 2_000
        assert pool.get_reserves() == (1_000, 4_000)
        assert pool.share_balance(ALICE) == 2_000
        assert a.balance_of(ALICE) == 99_000
        assert a.balance_of(pool.address) == 1_000

    def test_zero_amount_rejected(self):
        pool, _, _ = _make_pool()
        with pytest.raises(InvalidAmount):
            pool.add_liquidity(ALICE, 0, 1_000)

    def test_proportional_deposit(self):
        pool, _, _ = _make_pool()
        pool.add_liquidity(ALICE, 1_000, 1_000)
        assert pool.add_liquidity(BOB, 500, 500) == 500
        assert pool.total_shares == 1_500
        assert pool.get_reserves() == (1_500, 1_500)

    def test_refund_policy_returns_excess(self):
        pool, a, b = _make_pool()
        pool.add_liquidity(ALICE, 1_000, 1_000)
        shares = pool.add_liquidity(BOB, 100, 200)
        assert shares == 100
        assert pool.get_reserves() == (1_100, 1_100)
        assert a.balance_of(BOB) == 100_000 - 100
        assert b.balance_of(BOB) == 100_000 - 100

    def test_reject_policy(self):
        pool, a, b = _make_pool(policy=LiquidityRatioPolicy.REJECT)
        pool.add_liquidity(ALICE, 1_000, 1_000)
        with pytest.raises(RatioMismatch):
            pool.add_liquidity(BOB, 100, 200)
        # nothing moved
        assert pool.get_reserves() == (1_000, 1_000)
        assert a.balance_of(BOB) == 100_000
        assert b.balance_of(BOB) == 100_000
        assert pool.share_balance(BOB) == 0

    def test_reject_policy_within_tolerance(self):
        pool, _, _ = _make_pool(policy=LiquidityRatioPolicy.REJECT, tolerance_bps=100)
        pool.add_liquidity(ALICE, 1_000, 1_000)
        assert pool.add_liquidity(BOB, 100, 101) == 100
        assert pool.get_reserves() == (1_100, 1_101)

    def test_dust_deposit_mints_nothing(self):
        pool, _, _ = _make_pool()
        pool.add_liquidity(ALICE, 100_000, 1)
        with pytest.raises(InvalidAmount):
            pool.add_liquidity(BOB, 1, 1)
        assert pool.get_reserves() == (100_000, 1)


class TestRemoveLiquidity:

    def test_remove_all_returns_deposit(self):
        pool, a, b = _make_pool()
        shares = pool.add_liquidity(ALICE, 1_000, 1_000)
        assert pool.remove_liquidity(ALICE, shares) == (1_000, 1_000)
        assert pool.get_reserves() == (0, 0)
        assert pool.total_shares == 0
        assert a.balance_of(ALICE) == 100_000

    def test_round_trip_never_profits(self):
        pool, _, _ = _make_pool()
        pool.add_liquidity(ALICE, 1_000, 1_000)
        pool.swap(OWNER, pool.token_x.address, 100)
        rx, ry = pool.get_reserves()
        dx, dy = rx // 10, ry // 10
        shares = pool.add_liquidity(BOB, dx, dy)
        out_x, out_y = pool.remove_liquidity(BOB, shares)
        assert out_x <= dx
        assert out_y <= dy

    def test_remove_more_than_balance(self):
        pool, _, _ = _make_pool()
        pool.add_liquidity(ALICE, 1_000, 1_000)
        with pytest.raises(InsufficientShares):
            pool.remove_liquidity(ALICE, 1_001)
        with pytest.raises(InsufficientShares):
            pool.remove_liquidity(BOB, 1)

    def test_remove_zero(self):
        pool, _, _ = _make_pool()
        pool.add_liquidity(ALICE, 1_000, 1_000)
        with pytest.raises(InvalidAmount):
            pool.remove_liquidity(ALICE, 0)

    def test_transferred_shares_can_be_redeemed(self):
        pool, _, _ = _make_pool()
        pool.add_liquidity(ALICE, 1_000, 1_000)
        pool.shares.transfer(ALICE, BOB, 100)
        assert pool.remove_liquidity(BOB, 100) == (100, 100)
        assert pool.share_balance(ALICE) == 900


# ============================================================================
#  Swaps
# ============================================================================

class TestSwap:

    def test_fee_free_pool_scenario(self):
        pool, a, b = _make_pool(fee_bps=0)
        shares = pool.add_liquidity(OWNER, 1_000, 1_000)
        assert shares > 0
        out = pool.swap(OWNER, a.address, 100, 0)
        assert out < 100
        reserve_a, reserve_b = pool.get_reserves()
        assert reserve_a == 1_100
        assert reserve_b < 1_000
        assert reserve_b == 1_000 - out

    def test_output_goes_to_recipient(self):
        pool, a, b = _make_pool()
        pool.add_liquidity(ALICE, 1_000, 1_000)
        out = pool.swap(BOB, a.address, 100, recipient=ALICE)
        assert b.balance_of(ALICE) == 99_000 + out
        assert b.balance_of(BOB) == 100_000

    def test_reverse_direction(self):
        pool, a, b = _make_pool()
        pool.add_liquidity(ALICE, 1_000, 1_000)
        out = pool.swap(BOB, b.address, 100)
        assert pool.get_reserves() == (1_000 - out, 1_100)

    def test_k_never_decreases(self):
        pool, a, b = _make_pool()
        pool.add_liquidity(ALICE, 10_000, 10_000)
        k = pool.state.k
        for token, amount in ((a, 500), (b, 1_200), (a, 37), (b, 3)):
            pool.swap(BOB, token.address, amount)
            assert pool.state.k >= k
            k = pool.state.k

    def test_volume_tracks_amount_in(self):
        pool, a, b = _make_pool()
        pool.add_liquidity(ALICE, 10_000, 10_000)
        pool.swap(BOB, a.address, 250)
        assert pool.get_total_volume() == 250
        pool.swap(BOB, b.address, 40)
        assert pool.get_total_volume() == 290

    def test_quote_matches_swap_and_is_read_only(self):
        pool, a, _ = _make_pool()
        pool.add_liquidity(ALICE, 1_000, 1_000)
        quote = pool.get_amount_out(a.address, 100)
        assert pool.get_reserves() == (1_000, 1_000)
        assert pool.swap(BOB, a.address, 100) == quote

    def test_slippage_rolls_back(self):
        pool, a, b = _make_pool()
        pool.add_liquidity(ALICE, 1_000, 1_000)
        with pytest.raises(SlippageExceeded):
            pool.swap(BOB, a.address, 100, min_amount_out=1_000)
        assert pool.get_reserves() == (1_000, 1_000)
        assert a.balance_of(BOB) == 100_000
        assert pool.get_total_volume() == 0

    def test_unknown_token(self):
        pool, _, _ = _make_pool()
        pool.add_liquidity(ALICE, 1_000, 1_000)
        with pytest.raises(InvalidToken):
            pool.swap(BOB, "0xnotatoken", 100)

    def test_zero_amount(self):
        pool, a, _ = _make_pool()
        pool.add_liquidity(ALICE, 1_000, 1_000)
        with pytest.raises(InvalidAmount):
            pool.swap(BOB, a.address, 0)

    def test_empty_pool(self):
        pool, a, _ = _make_pool()
        with pytest.raises(InsufficientLiquidity):
            pool.swap(BOB, a.address, 100)

    def test_spot_price(self):
        pool, _, _ = _make_pool()
        pool.add_liquidity(ALICE, 1_000, 2_000)
        assert pool.spot_price() == 200
        assert pool.spot_price(10_000) == 20_000


class TestFeeOnTransferToken:

    def _make_fee_pool(self):
        pool, a, b = _make_pool(fee_percent_a=10)
        a.set_fee_enabled(OWNER, True)
        return pool, a, b

    def test_liquidity_uses_received_amount(self):
        pool, a, _ = self._make_fee_pool()
        shares = pool.add_liquidity(ALICE, 1_000, 1_000)
        assert pool.get_reserves() == (900, 1_000)
        assert shares == math.isqrt(900 * 1_000)
        assert a.balance_of(pool.address) == 900

    def test_swap_prices_on_received_amount(self):
        pool, a, _ = self._make_fee_pool()
        pool.add_liquidity(ALICE, 1_000, 1_000)
        expected = get_amount_out(90, 900, 1_000, pool.fee_bps)
        out = pool.swap(BOB, a.address, 100)
        assert out == expected
        assert pool.get_reserves()[0] == 990
        assert pool.get_total_volume() == 90
        assert a.balance_of(pool.address) == pool.get_reserves()[0]


class TestPoolReentrancy:

    def test_nested_swap_is_rejected(self):
        a = ReentrantToken("TokenA", "TKA", 1_000_000, 0, OWNER)
        b = XToken("TokenB", "TKB", 1_000_000, 0, OWNER)
        pool = LiquidityPool(a, b)
        _fund(pool, a, b)
        pool.add_liquidity(ALICE, 1_000, 1_000)

        a.target = pool
        with pytest.raises(PoolLocked):
            pool.swap(BOB, a.address, 100)
        assert pool.get_reserves() == (1_000, 1_000)
        # lock released after the failure
        assert pool.swap(BOB, a.address, 100) > 0


class TestPoolSnapshot:

    def test_restore(self):
        pool, a, _ = _make_pool()
        pool.add_liquidity(ALICE, 1_000, 1_000)
        snap = pool.snapshot()
        pool.swap(BOB, a.address, 100)
        pool.add_liquidity(BOB, 10, 10)
        pool.restore(snap)
        assert pool.get_reserves() == (1_000, 1_000)
        assert pool.total_shares == 1_000
        assert pool.share_balance(BOB) == 0
        assert pool.get_total_volume() == 0


class TestShareLedger:

    def test_mint_burn_transfer(self):
        ledger = ShareLedger()
        ledger.mint(ALICE, 100)
        ledger.transfer(ALICE, BOB, 40)
        ledger.burn(BOB, 10)
        assert ledger.balance_of(ALICE) == 60
        assert ledger.balance_of(BOB) == 30
        assert ledger.total_supply == 90
        assert sum(ledger.holders().values()) == ledger.total_supply

    def test_overdraw(self):
        ledger = ShareLedger()
        ledger.mint(ALICE, 10)
        with pytest.raises(InsufficientShares):
            ledger.transfer(ALICE, BOB, 11)

"""
XDEX Constant-Product Liquidity Pool

Two-token AMM pool with:
  - Constant-product pricing (x * y = k) with a flat fee in basis points
  - Proportional liquidity shares tracked in a transferable ledger
  - Fee-on-transfer aware accounting: reserves grow by what the pool
    actually received, never by what was requested
  - Integer arithmetic throughout, always rounding in the pool's favour

Security features:
  - Slippage protection (min_amount_out on every swap)
  - Reentrancy lock on swap + liquidity mutations
  - Every mutation is all-or-nothing across the pool and both tokens
  - Deterministic pool addresses (blake2b)
"""

from __future__ import annotations

import hashlib
import logging
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from ..constants import BPS_DENOMINATOR, DEFAULT_FEE_BPS, DEFAULT_PRICE_PRECISION, MAX_FEE_BPS
from ..exceptions import (
    InsufficientLiquidity,
    InsufficientShares,
    InvalidAmount,
    InvalidToken,
    PoolLocked,
    RatioMismatch,
    SlippageExceeded,
)
from ..tokens import TokenInterface
from .atomic import atomic

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class LiquidityRatioPolicy(str, Enum):
    """How a deposit that does not match the reserve ratio is handled."""
    REFUND = "refund"  # mint the smaller proportional share, return the excess
    REJECT = "reject"  # fail with RatioMismatch beyond the tolerance


# ---------------------------------------------------------------------------
# Math helpers
# ---------------------------------------------------------------------------

def get_amount_out(amount_in: int, reserve_in: int, reserve_out: int, fee_bps: int) -> int:
    """
    Constant-product output for an exact input, floor-rounded.

    out = reserve_out * in_after_fee / (reserve_in + in_after_fee)
    with in_after_fee = amount_in * (1 - fee), kept in BPS units so the
    division happens once.
    """
    if amount_in <= 0 or reserve_in <= 0 or reserve_out <= 0:
        return 0
    in_with_fee = amount_in * (BPS_DENOMINATOR - fee_bps)
    return (reserve_out * in_with_fee) // (reserve_in * BPS_DENOMINATOR + in_with_fee)


def _ceil_div(a: int, b: int) -> int:
    return -(-a // b)


def pool_address(token_x: str, token_y: str, fee_bps: int) -> str:
    """Deterministic pool address: same tokens and fee give the same address."""
    raw = f"{token_x}:{token_y}:{fee_bps}".encode()
    return "0x" + hashlib.blake2b(raw, digest_size=20).hexdigest()


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------

@dataclass
class PoolState:
    """
    Reserve pair of a pool.

    Invariant: total shares are zero iff both reserves are zero.
    """
    address: str
    token_x: str
    token_y: str
    fee_bps: int
    reserve_x: int = 0
    reserve_y: int = 0
    total_volume: int = 0
    swap_count: int = 0
    created_at: float = field(default_factory=time.time)

    @property
    def k(self) -> int:
        return self.reserve_x * self.reserve_y


class ShareLedger:
    """Provider → liquidity share balance. Sum of balances == total_supply."""

    def __init__(self) -> None:
        self._balances: Dict[str, int] = {}
        self._total_supply: int = 0

    @property
    def total_supply(self) -> int:
        return self._total_supply

    def balance_of(self, provider: str) -> int:
        return self._balances.get(provider, 0)

    def holders(self) -> Dict[str, int]:
        return {p: b for p, b in self._balances.items() if b > 0}

    def mint(self, provider: str, amount: int) -> None:
        if amount <= 0:
            raise InvalidAmount("Share mint amount must be positive")
        self._balances[provider] = self.balance_of(provider) + amount
        self._total_supply += amount

    def burn(self, provider: str, amount: int) -> None:
        bal = self.balance_of(provider)
        if amount <= 0:
            raise InvalidAmount("Share burn amount must be positive")
        if amount > bal:
            raise InsufficientShares(f"{provider} holds {bal} shares, cannot burn {amount}")
        self._balances[provider] = bal - amount
        self._total_supply -= amount

    def transfer(self, sender: str, recipient: str, amount: int) -> None:
        bal = self.balance_of(sender)
        if amount <= 0:
            raise InvalidAmount("Share transfer amount must be positive")
        if amount > bal:
            raise InsufficientShares(f"{sender} holds {bal} shares, cannot transfer {amount}")
        self._balances[sender] = bal - amount
        self._balances[recipient] = self.balance_of(recipient) + amount

    def snapshot(self) -> Dict[str, Any]:
        return {"balances": dict(self._balances), "total_supply": self._total_supply}

    def restore(self, snapshot: Dict[str, Any]) -> None:
        self._balances = dict(snapshot["balances"])
        self._total_supply = snapshot["total_supply"]


# ---------------------------------------------------------------------------
# Liquidity Pool
# ---------------------------------------------------------------------------

class LiquidityPool:
    """
    Constant-product pool over two tokens.

    Implements:
      - Swap (exact-in) with slippage protection
      - Add / remove liquidity against proportional shares
      - Cumulative swap volume
      - Reentrancy protection

    Token order is the constructor order: ``get_reserves()`` returns
    ``(reserve_x, reserve_y)`` for ``(token_x, token_y)``.
    """

    def __init__(
        self,
        token_x: TokenInterface,
        token_y: TokenInterface,
        fee_bps: int = DEFAULT_FEE_BPS,
        ratio_policy: LiquidityRatioPolicy = LiquidityRatioPolicy.REFUND,
        ratio_tolerance_bps: int = 0,
        address: Optional[str] = None,
    ):
        if token_x.address == token_y.address:
            raise InvalidToken("Pool tokens must differ")
        if not 0 <= fee_bps <= MAX_FEE_BPS:
            raise InvalidAmount(f"Fee must be within 0..{MAX_FEE_BPS} bps, got {fee_bps}")
        if ratio_tolerance_bps < 0:
            raise InvalidAmount("Ratio tolerance cannot be negative")

        self.token_x = token_x
        self.token_y = token_y
        self.ratio_policy = LiquidityRatioPolicy(ratio_policy)
        self.ratio_tolerance_bps = ratio_tolerance_bps
        self.state = PoolState(
            address=address or pool_address(token_x.address, token_y.address, fee_bps),
            token_x=token_x.address,
            token_y=token_y.address,
            fee_bps=fee_bps,
        )
        self.shares = ShareLedger()
        self._locked: bool = False   # reentrancy guard

    # -- Properties ---------------------------------------------------------

    @property
    def address(self) -> str:
        return self.state.address

    @property
    def fee_bps(self) -> int:
        return self.state.fee_bps

    @property
    def total_shares(self) -> int:
        return self.shares.total_supply

    def get_reserves(self) -> Tuple[int, int]:
        return self.state.reserve_x, self.state.reserve_y

    def get_total_volume(self) -> int:
        return self.state.total_volume

    def share_balance(self, provider: str) -> int:
        return self.shares.balance_of(provider)

    def spot_price(self, precision: int = DEFAULT_PRICE_PRECISION) -> int:
        """Price of token_x in token_y, scaled by *precision* (0 when empty)."""
        if self.state.reserve_x == 0:
            return 0
        return self.state.reserve_y * precision // self.state.reserve_x

    def has_token(self, token: str) -> bool:
        return token in (self.state.token_x, self.state.token_y)

    # -- Reentrancy guard ---------------------------------------------------

    def _acquire_lock(self) -> None:
        if self._locked:
            raise PoolLocked(f"Reentrancy detected: pool {self.address} is locked")
        self._locked = True

    def _release_lock(self) -> None:
        self._locked = False

    # -- Quoting ------------------------------------------------------------

    def get_amount_out(self, token_in: str, amount_in: int) -> int:
        """Read-only quote for an exact-in swap (assumes full receipt)."""
        reserve_in, reserve_out = self._directional_reserves(token_in)
        return get_amount_out(amount_in, reserve_in, reserve_out, self.fee_bps)

    def _directional_reserves(self, token_in: str) -> Tuple[int, int]:
        if token_in == self.state.token_x:
            return self.state.reserve_x, self.state.reserve_y
        if token_in == self.state.token_y:
            return self.state.reserve_y, self.state.reserve_x
        raise InvalidToken(f"Token {token_in} is not part of pool {self.address}")

    # -- Swap ---------------------------------------------------------------

    def swap(
        self,
        trader: str,
        token_in: str,
        amount_in: int,
        min_amount_out: int = 0,
        recipient: Optional[str] = None,
    ) -> int:
        """
        Execute an exact-in swap.

        The pool pulls *amount_in* from *trader* (allowance to the pool
        address required) and prices the swap on what it actually received.

        Args:
            trader: address paying token_in
            token_in: address of the input token
            amount_in: exact input amount
            min_amount_out: minimum acceptable output (slippage protection)
            recipient: receiver of the output (defaults to trader)

        Returns:
            amount_out sent by the pool

        Raises:
            InvalidAmount, InvalidToken, InsufficientLiquidity,
            SlippageExceeded, PoolLocked
        """
        if amount_in <= 0:
            raise InvalidAmount("Swap amount must be positive")
        if min_amount_out < 0:
            raise InvalidAmount("Minimum output cannot be negative")
        if not self.has_token(token_in):
            raise InvalidToken(f"Token {token_in} is not part of pool {self.address}")
        if self.state.reserve_x == 0 or self.state.reserve_y == 0:
            raise InsufficientLiquidity("No liquidity in pool")

        self._acquire_lock()
        try:
            with atomic(self, self.token_x, self.token_y):
                return self._execute_swap(trader, token_in, amount_in, min_amount_out, recipient or trader)
        finally:
            self._release_lock()

    def _execute_swap(
        self,
        trader: str,
        token_in: str,
        amount_in: int,
        min_amount_out: int,
        recipient: str,
    ) -> int:
        """Core swap logic, called under reentrancy lock."""
        zero_for_one = token_in == self.state.token_x
        tin, tout = (self.token_x, self.token_y) if zero_for_one else (self.token_y, self.token_x)

        received = tin.transfer_from(self.address, trader, self.address, amount_in)
        reserve_in, reserve_out = self._directional_reserves(token_in)
        amount_out = get_amount_out(received, reserve_in, reserve_out, self.fee_bps)

        # --- Slippage protection ---
        if amount_out < min_amount_out:
            raise SlippageExceeded(
                f"Slippage exceeded: got {amount_out}, minimum {min_amount_out}"
            )
        if amount_out == 0:
            raise InvalidAmount("Swap output rounds down to zero")

        if zero_for_one:
            self.state.reserve_x += received
            self.state.reserve_y -= amount_out
        else:
            self.state.reserve_y += received
            self.state.reserve_x -= amount_out

        tout.transfer(self.address, recipient, amount_out)

        self.state.total_volume += received
        self.state.swap_count += 1
        logger.debug(
            "Swap on %s: %s in %d %s → out %d %s",
            self.address, trader, received, tin.symbol, amount_out, tout.symbol,
        )
        return amount_out

    # -- Liquidity ----------------------------------------------------------

    def add_liquidity(self, provider: str, amount_x: int, amount_y: int) -> int:
        """
        Deposit both tokens and mint proportional shares.

        The first deposit fixes the price and mints ``isqrt(x * y)``.
        Later deposits mint ``min(total * x / reserve_x, total * y / reserve_y)``;
        the imbalance is handled by the pool's ratio policy.

        Returns:
            shares minted
        """
        if amount_x <= 0 or amount_y <= 0:
            raise InvalidAmount("Both liquidity amounts must be positive")

        self._acquire_lock()
        try:
            with atomic(self, self.token_x, self.token_y):
                return self._execute_add(provider, amount_x, amount_y)
        finally:
            self._release_lock()

    def _execute_add(self, provider: str, amount_x: int, amount_y: int) -> int:
        rx = self.token_x.transfer_from(self.address, provider, self.address, amount_x)
        ry = self.token_y.transfer_from(self.address, provider, self.address, amount_y)

        total = self.shares.total_supply
        reserve_x, reserve_y = self.state.reserve_x, self.state.reserve_y

        if total == 0:
            shares = math.isqrt(rx * ry)
            used_x, used_y = rx, ry
        else:
            shares_x = total * rx // reserve_x
            shares_y = total * ry // reserve_y
            shares = min(shares_x, shares_y)

            if self.ratio_policy == LiquidityRatioPolicy.REJECT:
                larger = max(shares_x, shares_y)
                if (larger - shares) * BPS_DENOMINATOR > self.ratio_tolerance_bps * larger:
                    raise RatioMismatch(
                        f"Deposit {rx}/{ry} does not match reserve ratio {reserve_x}/{reserve_y}"
                    )
                used_x, used_y = rx, ry
            elif shares_x <= shares_y:
                used_x = rx
                used_y = min(ry, _ceil_div(rx * reserve_y, reserve_x))
            else:
                used_y = ry
                used_x = min(rx, _ceil_div(ry * reserve_x, reserve_y))

        if shares <= 0:
            raise InvalidAmount("Insufficient liquidity minted")

        self.state.reserve_x += used_x
        self.state.reserve_y += used_y
        self.shares.mint(provider, shares)

        refund_x, refund_y = rx - used_x, ry - used_y
        if refund_x > 0:
            self.token_x.transfer(self.address, provider, refund_x)
        if refund_y > 0:
            self.token_y.transfer(self.address, provider, refund_y)

        logger.info(
            "Liquidity added to %s by %s: %d/%d → %d shares (refund %d/%d)",
            self.address, provider, used_x, used_y, shares, refund_x, refund_y,
        )
        return shares

    def remove_liquidity(self, provider: str, share_amount: int) -> Tuple[int, int]:
        """
        Burn shares and withdraw the proportional part of both reserves.

        Returns:
            (amount_x, amount_y) sent by the pool
        """
        if share_amount <= 0:
            raise InvalidAmount("Share amount must be positive")
        balance = self.shares.balance_of(provider)
        if share_amount > balance:
            raise InsufficientShares(
                f"{provider} holds {balance} shares, cannot remove {share_amount}"
            )

        self._acquire_lock()
        try:
            with atomic(self, self.token_x, self.token_y):
                return self._execute_remove(provider, share_amount)
        finally:
            self._release_lock()

    def _execute_remove(self, provider: str, share_amount: int) -> Tuple[int, int]:
        total = self.shares.total_supply
        amount_x = self.state.reserve_x * share_amount // total
        amount_y = self.state.reserve_y * share_amount // total
        if amount_x == 0 or amount_y == 0:
            raise InvalidAmount("Insufficient liquidity burned")

        self.shares.burn(provider, share_amount)
        self.state.reserve_x -= amount_x
        self.state.reserve_y -= amount_y

        self.token_x.transfer(self.address, provider, amount_x)
        self.token_y.transfer(self.address, provider, amount_y)

        logger.info(
            "Liquidity removed from %s by %s: %d shares → %d/%d",
            self.address, provider, share_amount, amount_x, amount_y,
        )
        return amount_x, amount_y

    # -- Snapshot / restore -------------------------------------------------

    def snapshot(self) -> Dict[str, Any]:
        s = self.state
        return {
            "reserve_x": s.reserve_x,
            "reserve_y": s.reserve_y,
            "total_volume": s.total_volume,
            "swap_count": s.swap_count,
            "shares": self.shares.snapshot(),
        }

    def restore(self, snapshot: Dict[str, Any]) -> None:
        self.state.reserve_x = snapshot["reserve_x"]
        self.state.reserve_y = snapshot["reserve_y"]
        self.state.total_volume = snapshot["total_volume"]
        self.state.swap_count = snapshot["swap_count"]
        self.shares.restore(snapshot["shares"])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "tokenX": self.state.token_x,
            "tokenY": self.state.token_y,
            "feeBps": self.fee_bps,
            "reserveX": self.state.reserve_x,
            "reserveY": self.state.reserve_y,
            "totalShares": self.total_shares,
            "totalVolume": self.state.total_volume,
        }

    def __repr__(self) -> str:
        return f"<LiquidityPool {self.token_x.symbol}/{self.token_y.symbol} reserves={self.get_reserves()}>"

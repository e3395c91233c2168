"""
XDEX Price Oracles

Two sources of reference prices:
  - External feeds consumed through the PriceOracle interface
    (get_reference_price → ReferencePrice(price, timestamp))
  - Per-pool TWAP oracle recorded on every pool interaction
    (swap / add / remove liquidity)

TWAP:
  - Geometric mean:  exp( Σ(ln(P_i) * Δt_i) / ΣΔt_i )
  - Accumulator-based, O(log n) lookup for any historical window
  - Same-timestamp observation dedup (overwrite, not append)
  - Optional outlier rejection for externally fed series

All reference prices are integers expressed in price-precision units
(a balanced pool quotes ``price_precision``).
"""

from __future__ import annotations

import logging
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

from ..constants import TWAP_MAX_OBSERVATIONS, TWAP_WINDOW_SECONDS
from ..exceptions import OracleError

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
MAX_PRICE_CHANGE_PCT = Decimal("0.50")  # max single-observation change when outlier checks are on


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ReferencePrice:
    """Oracle answer: integer price and the time it was observed."""
    price: int
    timestamp: int


class PriceOracle(ABC):
    """External reference-price source."""

    @abstractmethod
    def get_reference_price(self, asset_pair: str) -> ReferencePrice:
        """
        Latest reference price for *asset_pair*.

        Raises:
            OracleError: when no answer can be produced
        """


class FeedPriceOracle(PriceOracle):
    """
    Manually fed oracle: the latest pushed answer per asset pair.

    Stands in for an off-chain aggregator feed.
    """

    def __init__(self) -> None:
        self._answers: Dict[str, ReferencePrice] = {}

    def update(self, asset_pair: str, price: int, timestamp: int) -> ReferencePrice:
        if price <= 0:
            raise OracleError(f"Feed price for {asset_pair} must be positive")
        prev = self._answers.get(asset_pair)
        if prev is not None and timestamp < prev.timestamp:
            raise OracleError(f"Feed update for {asset_pair} is older than the current answer")
        answer = ReferencePrice(price=price, timestamp=timestamp)
        self._answers[asset_pair] = answer
        logger.debug("Feed %s updated: %d @ %d", asset_pair, price, timestamp)
        return answer

    def get_reference_price(self, asset_pair: str) -> ReferencePrice:
        try:
            return self._answers[asset_pair]
        except KeyError:
            raise OracleError(f"No feed answer for {asset_pair}") from None

    def pairs(self) -> List[str]:
        return sorted(self._answers)


# ---------------------------------------------------------------------------
# TWAP Oracle
# ---------------------------------------------------------------------------

@dataclass
class Observation:
    """A single price observation recorded at a point in time."""
    timestamp: int
    price: Decimal
    log_price_cumulative: Decimal = ZERO  # Σ(ln(price) × dt)


class TWAPOracle(PriceOracle):
    """
    Time-weighted average price oracle for one pool.

    Each observation's price holds until the next one, so the accumulator
    adds ``ln(previous price) * dt`` when a new observation arrives.
    """

    def __init__(
        self,
        pool_id: str = "",
        window_seconds: int = TWAP_WINDOW_SECONDS,
        max_observations: int = TWAP_MAX_OBSERVATIONS,
        reject_outliers: bool = False,
    ):
        self.pool_id = pool_id
        self.window_seconds = window_seconds
        self.max_observations = max_observations
        self.reject_outliers = reject_outliers
        self._observations: List[Observation] = []

    @property
    def observation_count(self) -> int:
        return len(self._observations)

    @property
    def latest(self) -> Optional[Observation]:
        return self._observations[-1] if self._observations else None

    @property
    def latest_price(self) -> Optional[Decimal]:
        return self._observations[-1].price if self._observations else None

    # -- Recording ----------------------------------------------------------

    def record(self, price: Decimal, timestamp: Optional[int] = None) -> Observation:
        """
        Record a new price observation.

        Args:
            price: current spot price (positive)
            timestamp: observation time in seconds (defaults to now)

        Returns:
            The recorded (or overwritten) Observation

        Raises:
            OracleError: non-positive price, time going backwards, or an
                outlier when outlier rejection is enabled
        """
        price = Decimal(price)
        if price <= 0:
            raise OracleError("Price must be positive")

        now = timestamp if timestamp is not None else int(time.time())

        if self._observations:
            prev = self._observations[-1]

            if self.reject_outliers and prev.price > 0:
                change = abs(price - prev.price) / prev.price
                if change > MAX_PRICE_CHANGE_PCT:
                    raise OracleError(
                        f"Outlier price rejected: {change:.2%} change exceeds "
                        f"max {MAX_PRICE_CHANGE_PCT:.2%}"
                    )

            dt = now - prev.timestamp
            if dt < 0:
                raise OracleError("Timestamp must be monotonically increasing")

            if dt == 0:
                prev.price = price
                return prev

            prev_log = Decimal(str(math.log(float(prev.price))))
            cumulative = prev.log_price_cumulative + prev_log * dt
        else:
            cumulative = ZERO

        obs = Observation(timestamp=now, price=price, log_price_cumulative=cumulative)
        self._observations.append(obs)

        if len(self._observations) > self.max_observations:
            self._observations = self._observations[-self.max_observations:]

        return obs

    # -- TWAP computation ---------------------------------------------------

    def twap(self, window_seconds: Optional[int] = None) -> Optional[Decimal]:
        """
        Geometric-mean TWAP over the last *window_seconds* ending at the
        latest observation.

        Returns:
            TWAP price, the sole price when only one observation exists,
            or None when there is no data
        """
        if not self._observations:
            return None
        end = self._observations[-1]
        if len(self._observations) == 1:
            return end.price

        window = self.window_seconds if window_seconds is None else window_seconds
        start = self._find_observation_at(end.timestamp - window)

        dt = end.timestamp - start.timestamp
        if dt <= 0:
            return end.price

        avg_log = (end.log_price_cumulative - start.log_price_cumulative) / dt
        return Decimal(str(math.exp(float(avg_log)))).quantize(
            Decimal("0.00000001"), rounding=ROUND_HALF_UP
        )

    def get_reference_price(self, asset_pair: str) -> ReferencePrice:
        if self.pool_id and asset_pair != self.pool_id:
            raise OracleError(f"TWAP oracle for {self.pool_id} cannot price {asset_pair}")
        price = self.twap()
        if price is None:
            raise OracleError(f"No observations for {self.pool_id or asset_pair}")
        return ReferencePrice(
            price=int(price.to_integral_value(rounding=ROUND_DOWN)),
            timestamp=self._observations[-1].timestamp,
        )

    # -- Helpers ------------------------------------------------------------

    def _find_observation_at(self, target_time: int) -> Observation:
        """Binary search for observation at or just before target_time."""
        if target_time <= self._observations[0].timestamp:
            return self._observations[0]

        lo, hi = 0, len(self._observations) - 1
        while lo < hi:
            mid = (lo + hi + 1) // 2
            if self._observations[mid].timestamp <= target_time:
                lo = mid
            else:
                hi = mid - 1
        return self._observations[lo]

    def get_observations(self, count: int = 50) -> List[Observation]:
        """Return the most recent observations."""
        return self._observations[-count:]

    def is_stale(self, threshold: int, now: Optional[int] = None) -> bool:
        if not self._observations:
            return True
        now = now if now is not None else int(time.time())
        return now - self._observations[-1].timestamp > threshold

    # -- Snapshot / restore -------------------------------------------------

    def snapshot(self) -> Dict[str, Any]:
        return {"observations": [replace(o) for o in self._observations]}

    def restore(self, snapshot: Dict[str, Any]) -> None:
        self._observations = [replace(o) for o in snapshot["observations"]]

# smc_engine/features/fibonacci.py
"""
Fibonacci retracement math for optimal-trade-entry (OTE) zones.

Percentages follow the 0..100 convention (61.8, not 0.618).
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional, Tuple


OTE_LEVELS = (61.8, 79.0)
OTE_SWEET_SPOT = 70.5
EQUILIBRIUM = 50.0
OTE_INVALIDATION = 88.0

STANDARD_FIB_LEVELS = (23.6, 38.2, 50.0, 61.8, 70.5, 78.6, 88.6)


@dataclass(frozen=True)
class FibLevel:
    """A single Fibonacci level."""
    pct: float      # Percentage (e.g., 61.8)
    price: float    # Calculated price at this level


@dataclass(frozen=True)
class FibRetracement:
    """
    Fibonacci retracement of an impulse.

    For a bullish impulse (low -> high) levels measure the pullback
    from the high; for a bearish impulse (high -> low) from the low.
    """
    anchor_high: float
    anchor_low: float
    direction: int  # +1 = bullish impulse, -1 = bearish impulse
    levels: Tuple[FibLevel, ...]
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def range(self) -> float:
        return self.anchor_high - self.anchor_low

    def price_at_pct(self, pct: float) -> float:
        return calculate_fib_price(self.anchor_high, self.anchor_low, pct, self.direction)

    def retracement_pct(self, price: float) -> float:
        """How far `price` has pulled back into the impulse, in percent (0 = impulse end)."""
        if self.range <= 0:
            return 0.0
        if self.direction == 1:
            return (self.anchor_high - price) / self.range * 100.0
        return (price - self.anchor_low) / self.range * 100.0

    def is_price_between(self, price: float, pct_low: float, pct_high: float) -> bool:
        p_low = self.price_at_pct(pct_low)
        p_high = self.price_at_pct(pct_high)
        return min(p_low, p_high) <= price <= max(p_low, p_high)


def calculate_fib_price(
    anchor_high: float,
    anchor_low: float,
    pct: float,
    direction: int,
) -> float:
    """
    Price at a retracement percentage.

    direction +1: bullish impulse, retracement pulls back from the high.
    direction -1: bearish impulse, retracement pulls back from the low.
    """
    retracement = (anchor_high - anchor_low) * (pct / 100.0)
    if direction == 1:
        return anchor_high - retracement
    return anchor_low + retracement


def create_fib_retracement(
    anchor_high: float,
    anchor_low: float,
    direction: int,
    *,
    levels: Optional[Iterable[float]] = None,
    meta: Optional[Dict[str, Any]] = None,
) -> FibRetracement:
    if levels is None:
        levels = STANDARD_FIB_LEVELS

    fib_levels = tuple(
        FibLevel(pct=pct, price=calculate_fib_price(anchor_high, anchor_low, pct, direction))
        for pct in levels
    )
    return FibRetracement(
        anchor_high=anchor_high,
        anchor_low=anchor_low,
        direction=direction,
        levels=fib_levels,
        meta=meta or {},
    )


def impulse_retracement(impulse_start: float, impulse_end: float, **kwargs) -> Optional[FibRetracement]:
    """
    Retracement for an impulse start -> end; direction follows the move.
    None for a zero-length impulse.
    """
    if impulse_end == impulse_start:
        return None
    direction = 1 if impulse_end > impulse_start else -1
    return create_fib_retracement(
        anchor_high=max(impulse_start, impulse_end),
        anchor_low=min(impulse_start, impulse_end),
        direction=direction,
        **kwargs,
    )


from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from smc_engine.common.types import BEARISH, BULLISH, COL_H, COL_L, NEUTRAL, Direction, bar_times


@dataclass(frozen=True)
class SwingPoint:
    time: pd.Timestamp
    kind: str  # "H" or "L"
    price: float
    idx: int


# Pivot width used for bias swings on each timeframe.
ADAPTIVE_PIVOT: Dict[str, int] = {
    "M5": 2,
    "M15": 3,
    "H1": 4,
    "H4": 5,
}
DEFAULT_PIVOT = 3


def pivot_for(timeframe: str) -> int:
    return ADAPTIVE_PIVOT.get(timeframe, DEFAULT_PIVOT)


def is_swing_high(highs: Sequence[float], i: int, pivot: int) -> bool:
    """
    Strict fractal high: highs[i] > highs[i-k] and highs[i] > highs[i+k]
    for every k in [1, pivot]. Never true within `pivot` of either end.
    """
    n = len(highs)
    if i < pivot or i + pivot >= n:
        return False
    v = highs[i]
    for k in range(1, pivot + 1):
        if not (v > highs[i - k] and v > highs[i + k]):
            return False
    return True


def is_swing_low(lows: Sequence[float], i: int, pivot: int) -> bool:
    n = len(lows)
    if i < pivot or i + pivot >= n:
        return False
    v = lows[i]
    for k in range(1, pivot + 1):
        if not (v < lows[i - k] and v < lows[i + k]):
            return False
    return True


def last_swing_high_before(
    highs: Sequence[float], i: int, pivot: int, *, max_back: Optional[int] = None
) -> Optional[int]:
    """Index of the most recent swing high strictly before i, or None."""
    return _scan_back(highs, i, pivot, max_back, is_swing_high)


def last_swing_low_before(
    lows: Sequence[float], i: int, pivot: int, *, max_back: Optional[int] = None
) -> Optional[int]:
    return _scan_back(lows, i, pivot, max_back, is_swing_low)


def _scan_back(values, i, pivot, max_back, test) -> Optional[int]:
    n = len(values)
    start = min(i - 1, n - 1 - pivot)
    stop = pivot if max_back is None else max(pivot, i - max_back)
    for j in range(start, stop - 1, -1):
        if test(values, j, pivot):
            return j
    return None


def detect_swings(df: pd.DataFrame, *, pivot: int = 3) -> List[SwingPoint]:
    """All strict fractal swings in the frame, sorted by index."""
    h = df[COL_H].to_numpy(dtype=float)
    l = df[COL_L].to_numpy(dtype=float)
    t = bar_times(df)

    swings: List[SwingPoint] = []
    for i in range(pivot, len(df) - pivot):
        if is_swing_high(h, i, pivot):
            swings.append(SwingPoint(time=t.iloc[i], kind="H", price=float(h[i]), idx=i))
        if is_swing_low(l, i, pivot):
            swings.append(SwingPoint(time=t.iloc[i], kind="L", price=float(l[i]), idx=i))
    return swings


def swing_bias(df: pd.DataFrame, *, pivot: int = DEFAULT_PIVOT) -> Direction:
    """
    Bias from the last three swing highs and lows:
      HH, HH + HL, HL -> bullish
      LH, LH + LL, LL -> bearish
    anything else is neutral.
    """
    swings = detect_swings(df, pivot=pivot)
    highs = [s.price for s in swings if s.kind == "H"][-3:]
    lows = [s.price for s in swings if s.kind == "L"][-3:]
    if len(highs) < 3 or len(lows) < 3:
        return NEUTRAL

    dh = np.diff(highs)
    dl = np.diff(lows)
    if (dh > 0).all() and (dl > 0).all():
        return BULLISH
    if (dh < 0).all() and (dl < 0).all():
        return BEARISH
    return NEUTRAL

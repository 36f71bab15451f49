# smc_engine/patterns/imbalance.py
"""
Fair-value gap (3-candle imbalance) detection.

A gap exists when candle 1's range and candle 3's range do not overlap:
- Bullish: c1.high < c3.low, gap = (c1.high, c3.low)
- Bearish: c1.low > c3.high, gap = (c3.high, c1.low)

`middle_idx` always names candle 2.
"""
from __future__ import annotations

from typing import Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from smc_engine.common.types import COL_H, COL_L


def gap_bounds(
    highs: Sequence[float],
    lows: Sequence[float],
    middle_idx: int,
    direction: int,
    *,
    min_gap: float = 0.0,
) -> Optional[Tuple[float, float]]:
    """
    (low, high) of the gap around `middle_idx` in `direction`, or None.

    The gap must be strictly larger than `min_gap`.
    """
    n = len(highs)
    if middle_idx < 1 or middle_idx + 1 >= n:
        return None

    c1, c3 = middle_idx - 1, middle_idx + 1
    if direction == 1:
        bottom, top = float(highs[c1]), float(lows[c3])
    elif direction == -1:
        bottom, top = float(highs[c3]), float(lows[c1])
    else:
        return None

    if top - bottom > min_gap:
        return bottom, top
    return None


def has_gap(highs, lows, middle_idx: int, direction: int, *, min_gap: float = 0.0) -> bool:
    return gap_bounds(highs, lows, middle_idx, direction, min_gap=min_gap) is not None


def compute_imbalance(df: pd.DataFrame, *, min_gap: float = 0.0) -> pd.DataFrame:
    """
    Adds per-bar gap columns, flagged on the middle candle:
      - imbalance_dir: 1 bullish, -1 bearish, 0 none
      - imbalance_low / imbalance_high: gap bounds (NaN when none)
    """
    out = df.copy()
    h = out[COL_H].to_numpy(dtype=float)
    l = out[COL_L].to_numpy(dtype=float)

    n = len(out)
    dirs = np.zeros(n, dtype=int)
    lo = np.full(n, np.nan)
    hi = np.full(n, np.nan)

    for idx in range(1, n - 1):
        for d in (1, -1):
            b = gap_bounds(h, l, idx, d, min_gap=min_gap)
            if b is not None:
                dirs[idx] = d
                lo[idx], hi[idx] = b
                break

    out["imbalance_dir"] = dirs
    out["imbalance_low"] = lo
    out["imbalance_high"] = hi
    return out

# smc_engine/features/atr.py
"""
True range / average true range.

RunningATR is the incremental form used by the per-bar detectors; the
Series helpers are thin wrappers for frame-level work and tests.
"""
from __future__ import annotations

from typing import Optional

import numpy as np
import pandas as pd

from smc_engine.common.types import COL_C, COL_H, COL_L


class RunningATR:
    """
    Average true range over `period` samples.

    Primes with a simple average of the first N true ranges, then applies
    Wilder smoothing: value = (value * (N - 1) + tr) / N.
    """

    def __init__(self, period: int = 14):
        if period < 1:
            raise ValueError(f"[atr] period must be >= 1, got {period}")
        self.period = int(period)
        self.value = 0.0
        self.count = 0
        self.ready = False

    def update(self, high: float, low: float, prev_close: Optional[float] = None) -> float:
        tr = bar_true_range(high, low, prev_close)
        n = self.period

        if self.count < n - 1:
            self.value += tr
            self.count += 1
            if self.count == n - 1:
                self.value /= self.count
        elif self.count == n - 1:
            # n == 1 lands here on the first sample
            self.value = (self.value * (n - 1) + tr) / n
            self.count += 1
            self.ready = True
        else:
            self.value = (self.value * (n - 1) + tr) / n

        return self.value

    def reset(self) -> None:
        self.value = 0.0
        self.count = 0
        self.ready = False


def bar_true_range(high: float, low: float, prev_close: Optional[float] = None) -> float:
    if prev_close is None:
        return float(high - low)
    return float(max(high - low, abs(high - prev_close), abs(low - prev_close)))


def true_range(df: pd.DataFrame) -> pd.Series:
    """True range per bar; the first bar uses high - low."""
    h = df[COL_H].astype(float)
    l = df[COL_L].astype(float)
    pc = df[COL_C].astype(float).shift(1)

    tr = pd.concat([h - l, (h - pc).abs(), (l - pc).abs()], axis=1).max(axis=1)
    if len(tr):
        tr.iloc[0] = h.iloc[0] - l.iloc[0]
    return tr


def atr_series(df: pd.DataFrame, period: int = 14) -> pd.Series:
    """RunningATR over the frame; NaN until the average is ready."""
    atr = RunningATR(period)
    h = df[COL_H].to_numpy(dtype=float)
    l = df[COL_L].to_numpy(dtype=float)
    c = df[COL_C].to_numpy(dtype=float)

    out = np.full(len(df), np.nan)
    for i in range(len(df)):
        v = atr.update(h[i], l[i], c[i - 1] if i > 0 else None)
        if atr.ready:
            out[i] = v
    return pd.Series(out, index=df.index, name="atr")


def median_true_range(highs, lows, closes, i: int, window: int) -> Optional[float]:
    """Median true range over bars [max(1, i - window), i); None when the window is empty."""
    start = max(1, i - window)
    if start >= i:
        return None
    trs = [bar_true_range(highs[k], lows[k], closes[k - 1]) for k in range(start, i)]
    return float(np.median(trs))

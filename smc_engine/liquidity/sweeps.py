# smc_engine/liquidity/sweeps.py
"""
Liquidity sweep detection.

A sweep is a same-bar pierce-and-revert of a zone edge:
- demand zone: low < zone.low - buffer and close >= zone.low  -> bullish
- supply zone: high > zone.high + buffer and close <= zone.high -> bearish

The buffer only ever tightens the pierce condition, so a larger buffer
can remove detections but never add them.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from smc_engine.common.timeframes import require_timeframe
from smc_engine.common.types import COL_C, COL_H, COL_L, Direction, bar_times
from smc_engine.features.atr import true_range
from smc_engine.liquidity.zones import (
    CURRENT_DAY_LABELS,
    DAILY_LABELS,
    EQUAL_LABELS,
    SWING_LABELS,
    WEEKLY_LABELS,
    LiquidityZone,
)

logger = logging.getLogger(__name__)


class SweepScope(str, Enum):
    ANY = "any"
    PDH_PDL_ONLY = "pdh_pdl_only"
    INTERNAL_ONLY = "internal_only"
    WEEKLY_ONLY = "weekly_only"


_SCOPE_LABELS = {
    SweepScope.PDH_PDL_ONLY: set(DAILY_LABELS),
    SweepScope.INTERNAL_ONLY: set(SWING_LABELS + EQUAL_LABELS + CURRENT_DAY_LABELS),
    SweepScope.WEEKLY_ONLY: set(WEEKLY_LABELS),
}


@dataclass(frozen=True)
class SweepEvent:
    time: pd.Timestamp
    idx: int
    price: float
    direction: Direction  # +1 bullish (sell-side taken), -1 bearish (buy-side taken)
    zone: LiquidityZone
    bar_high: float
    bar_low: float
    bar_close: float

    @property
    def label(self) -> str:
        return self.zone.label


@dataclass
class SweepConfig:
    scope: SweepScope = SweepScope.ANY
    scan_bars: int = 50
    keep_last: int = 20
    adaptive_buffer: bool = True
    buffer_atr_period: int = 17


def zone_in_scope(zone: LiquidityZone, scope: SweepScope) -> bool:
    if scope == SweepScope.ANY:
        return True
    return zone.label in _SCOPE_LABELS[scope]


def sweep_direction(zone: LiquidityZone, high: float, low: float, close: float, buffer: float) -> Direction:
    """+1 / -1 when the bar sweeps the zone, 0 otherwise."""
    if zone.kind == "demand":
        if low < zone.low - buffer and close >= zone.low:
            return 1
    else:
        if high > zone.high + buffer and close <= zone.high:
            return -1
    return 0


def is_sweep(zone: LiquidityZone, high: float, low: float, close: float, buffer: float = 0.0) -> bool:
    return sweep_direction(zone, high, low, close, buffer) != 0


def detect_sweeps(
    df: pd.DataFrame,
    zones: List[LiquidityZone],
    *,
    buffer: float = 0.0,
    config: Optional[SweepConfig] = None,
) -> List[SweepEvent]:
    """
    Sweeps over the last `scan_bars` closed bars, time-ordered, at most
    one per (bar, zone). Only zones active at the bar's time are tested.
    """
    cfg = config or SweepConfig()
    if df.empty or not zones:
        return []

    h = df[COL_H].to_numpy(dtype=float)
    l = df[COL_L].to_numpy(dtype=float)
    c = df[COL_C].to_numpy(dtype=float)
    t = bar_times(df)
    n = len(df)

    scoped = [z for z in zones if zone_in_scope(z, cfg.scope)]
    out: List[SweepEvent] = []
    for i in range(max(0, n - cfg.scan_bars), n):
        if not (np.isfinite(h[i]) and np.isfinite(l[i]) and np.isfinite(c[i])):
            logger.debug("sweep scan skipped non-finite bar idx=%s", i)
            continue
        ti = t.iloc[i]
        for z in scoped:
            if not z.is_active(ti):
                continue
            d = sweep_direction(z, h[i], l[i], c[i], buffer)
            if d == 0:
                continue
            out.append(
                SweepEvent(
                    time=ti,
                    idx=i,
                    price=z.low if d == 1 else z.high,
                    direction=d,
                    zone=z,
                    bar_high=float(h[i]),
                    bar_low=float(l[i]),
                    bar_close=float(c[i]),
                )
            )

    if len(out) > cfg.keep_last:
        out = out[-cfg.keep_last:]
    return out


def sweep_flags(df: pd.DataFrame, sweeps: List[SweepEvent]) -> np.ndarray:
    """Boolean per bar: True where at least one sweep was detected."""
    flags = np.zeros(len(df), dtype=bool)
    for s in sweeps:
        if 0 <= s.idx < len(flags):
            flags[s.idx] = True
    return flags


# ---------------------------------------------------------------------
# Adaptive buffer
# ---------------------------------------------------------------------

# timeframe -> (atr multiplier, min pips, max pips)
BUFFER_PROFILES: Dict[str, Tuple[float, float, float]] = {
    "M15": (0.25, 3.0, 20.0),
    "M5": (0.20, 2.0, 10.0),
}
DEFAULT_BUFFER_PROFILE = (0.30, 5.0, 30.0)


class SweepBufferCalculator:
    """
    ATR-scaled sweep buffer, clamped to a per-timeframe pip band.

    Falls back to a fixed default (5 pips intraday, 10 pips otherwise)
    while the ATR is unavailable.
    """

    def __init__(self, timeframe: str, pip_size: float, *, atr_period: int = 17):
        self.timeframe = require_timeframe(timeframe)
        self.pip_size = float(pip_size)
        self.atr_period = int(atr_period)

    @property
    def profile(self) -> Tuple[float, float, float]:
        return BUFFER_PROFILES.get(self.timeframe.code, DEFAULT_BUFFER_PROFILE)

    def default_buffer(self) -> float:
        pips = 5.0 if self.timeframe.is_intraday else 10.0
        return pips * self.pip_size

    def atr(self, df: pd.DataFrame) -> float:
        if len(df) < self.atr_period:
            return 0.0
        value = true_range(df).rolling(self.atr_period).mean().iloc[-1]
        return float(value) if np.isfinite(value) else 0.0

    def buffer_for_atr(self, atr_value: float) -> float:
        if atr_value <= 0:
            return self.default_buffer()
        mult, min_pips, max_pips = self.profile
        pips = (atr_value * mult) / self.pip_size
        clamped = max(min_pips, min(max_pips, pips))
        return clamped * self.pip_size

    def calculate(self, df: pd.DataFrame) -> float:
        value = self.atr(df)
        buf = self.buffer_for_atr(value)
        logger.debug(
            "sweep buffer tf=%s atr=%.6f buffer=%.1fp",
            self.timeframe.code, value, buf / self.pip_size,
        )
        return buf

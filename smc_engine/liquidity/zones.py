# smc_engine/liquidity/zones.py
"""
Liquidity zone construction.

Zones are rebuilt from a bounded rolling window on every evaluation:
  1. swing pivots (supply above highs, demand below lows)
  2. equal highs / equal lows, kept only while no later close breaks them
  3. reference extremes: previous day, current day, previous week

The list is capped; the oldest (first-built) zones are evicted first.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

import numpy as np
import pandas as pd

from smc_engine.common.types import COL_C, COL_H, COL_L, bar_times
from smc_engine.structure.swings import is_swing_high, is_swing_low

logger = logging.getLogger(__name__)

ZoneKind = Literal["supply", "demand"]

SWING_LABELS = ("Swing High", "Swing Low")
EQUAL_LABELS = ("EQH", "EQL")
DAILY_LABELS = ("PDH", "PDL")
CURRENT_DAY_LABELS = ("CDH", "CDL")
WEEKLY_LABELS = ("PWH", "PWL")


@dataclass(frozen=True)
class LiquidityZone:
    start: pd.Timestamp
    end: pd.Timestamp
    low: float
    high: float
    kind: ZoneKind
    label: str
    meta: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def mid(self) -> float:
        return (self.low + self.high) / 2.0

    @property
    def range(self) -> float:
        return self.high - self.low

    def is_active(self, t: pd.Timestamp) -> bool:
        return self.start <= t < self.end


@dataclass
class LiquidityConfig:
    lookback_bars: int = 120
    pivot: int = 3
    swing_pad_pips: float = 2.0
    swing_zone_minutes: int = 240

    include_equal_levels: bool = True
    eq_tolerance_pips: float = 1.0
    eq_lookback_bars: int = 50
    eq_max_pair_distance: int = 20

    include_previous_day: bool = True
    include_current_day: bool = True
    include_previous_week: bool = True
    day_pad_pips: float = 1.0
    week_pad_pips: float = 2.0
    current_day_extension_hours: int = 4

    max_zones: int = 14
    min_bars: int = 20


def make_zone(
    start, end, low: float, high: float, kind: ZoneKind, label: str, **meta
) -> Optional[LiquidityZone]:
    """Zone or None when the bounds are inverted or not finite."""
    if not (np.isfinite(low) and np.isfinite(high)) or low > high:
        return None
    return LiquidityZone(start=start, end=end, low=float(low), high=float(high), kind=kind, label=label, meta=meta)


def build_liquidity_zones(
    df: pd.DataFrame,
    *,
    pip_size: float,
    config: Optional[LiquidityConfig] = None,
    daily: Optional[pd.DataFrame] = None,
    weekly: Optional[pd.DataFrame] = None,
) -> List[LiquidityZone]:
    """
    Build the capped zone list for the closed bars in `df`.

    `daily` / `weekly` are optional higher-timeframe frames; when absent the
    reference extremes are derived from `df` itself.
    Fewer than `min_bars` bars yields an empty list.
    """
    cfg = config or LiquidityConfig()
    if len(df) < cfg.min_bars:
        return []

    zones: List[Optional[LiquidityZone]] = []
    zones += _swing_zones(df, cfg, pip_size)
    if cfg.include_equal_levels:
        zones += _equal_level_zones(df, cfg, pip_size)
    if cfg.include_previous_day:
        zones += _previous_period_zones(df, daily, "D", DAILY_LABELS, cfg.day_pad_pips * pip_size)
    if cfg.include_current_day:
        zones += _current_day_zones(df, cfg, pip_size)
    if cfg.include_previous_week:
        zones += _previous_period_zones(df, weekly, "W", WEEKLY_LABELS, cfg.week_pad_pips * pip_size)

    out = [z for z in zones if z is not None]
    if len(out) > cfg.max_zones:
        out = out[len(out) - cfg.max_zones:]
    return out


def _swing_zones(df: pd.DataFrame, cfg: LiquidityConfig, pip_size: float) -> List[Optional[LiquidityZone]]:
    h = df[COL_H].to_numpy(dtype=float)
    l = df[COL_L].to_numpy(dtype=float)
    t = bar_times(df)
    n = len(df)

    pad = cfg.swing_pad_pips * pip_size
    life = pd.Timedelta(minutes=cfg.swing_zone_minutes)
    start = max(cfg.pivot, n - cfg.lookback_bars)

    out: List[Optional[LiquidityZone]] = []
    for i in range(start, n - cfg.pivot):
        # a bar that is both a swing high and low counts as a high
        if is_swing_high(h, i, cfg.pivot):
            out.append(make_zone(t.iloc[i], t.iloc[i] + life, h[i] - pad, h[i] + pad, "supply", "Swing High", idx=i))
        elif is_swing_low(l, i, cfg.pivot):
            out.append(make_zone(t.iloc[i], t.iloc[i] + life, l[i] - pad, l[i] + pad, "demand", "Swing Low", idx=i))
    return out


def _equal_level_zones(df: pd.DataFrame, cfg: LiquidityConfig, pip_size: float) -> List[Optional[LiquidityZone]]:
    h = df[COL_H].to_numpy(dtype=float)
    l = df[COL_L].to_numpy(dtype=float)
    c = df[COL_C].to_numpy(dtype=float)
    t = bar_times(df)
    n = len(df)

    tol = max(0.0, cfg.eq_tolerance_pips) * pip_size
    life = pd.Timedelta(minutes=cfg.swing_zone_minutes)
    first = max(1, n - max(5, cfg.eq_lookback_bars))

    def _key(price: float) -> int:
        # tenth-of-a-pip buckets
        return int(round(price / (pip_size * 0.1)))

    out: List[Optional[LiquidityZone]] = []
    for prices, kind, label, broken_by in (
        (h, "supply", "EQH", lambda level, close: close > level + tol),
        (l, "demand", "EQL", lambda level, close: close < level - tol),
    ):
        seen = set()
        for i in range(first + 2, n - 1):
            for j in range(max(first, i - cfg.eq_max_pair_distance), i - 1):
                if not abs(prices[i] - prices[j]) <= tol:
                    continue
                level = (prices[i] + prices[j]) * 0.5
                k = _key(level)
                if k not in seen:
                    if not any(broken_by(level, c[b]) for b in range(i + 1, n)):
                        out.append(make_zone(t.iloc[j], t.iloc[i] + life, level - tol, level + tol, kind, label, pair=(j, i)))
                    seen.add(k)
                break
    return out


def _period_keys(t: pd.Series, period: str) -> pd.Series:
    """Start of the calendar day ("D") or Monday-based week ("W") of each time."""
    day = t.dt.floor("D")
    if period == "D":
        return day
    return day - pd.to_timedelta(t.dt.weekday, unit="D")


def _period_extremes(df: pd.DataFrame, period: str) -> pd.DataFrame:
    """High/low per calendar day or week, indexed by period start."""
    key = _period_keys(bar_times(df), period)
    grouped = pd.DataFrame({"key": key, "h": df[COL_H].astype(float), "l": df[COL_L].astype(float)}).groupby("key")
    return grouped.agg(h=("h", "max"), l=("l", "min"))


def _previous_period_zones(
    df: pd.DataFrame,
    htf: Optional[pd.DataFrame],
    period: str,
    labels,
    pad: float,
) -> List[Optional[LiquidityZone]]:
    """
    Extremes of the last period that ended before the period of the newest
    bar in `df`, active for that newest period. Weekly bars labelled by
    week end and daily bars labelled by day start both resolve to the same
    period key, and a still-forming htf bar never qualifies.
    """
    step = pd.Timedelta(days=1 if period == "D" else 7)
    current = _period_keys(bar_times(df).iloc[-1:], period).iloc[0]

    if htf is not None and not htf.empty:
        before = np.flatnonzero((_period_keys(bar_times(htf), period) < current).to_numpy())
        if len(before) == 0:
            return []
        row = htf.iloc[int(before[-1])]
        p_high, p_low = float(row[COL_H]), float(row[COL_L])
    else:
        ext = _period_extremes(df, period)
        ext = ext[ext.index < current]
        if ext.empty:
            return []
        p_high, p_low = float(ext["h"].iloc[-1]), float(ext["l"].iloc[-1])

    end = current + step
    hi_label, lo_label = labels
    return [
        make_zone(current, end, p_high - pad, p_high + pad, "supply", hi_label),
        make_zone(current, end, p_low - pad, p_low + pad, "demand", lo_label),
    ]


def _current_day_zones(df: pd.DataFrame, cfg: LiquidityConfig, pip_size: float) -> List[Optional[LiquidityZone]]:
    """Day extremes formed before the newest bar, so that bar can sweep them."""
    t = bar_times(df)
    day = t.iloc[-1].floor("D")
    mask = (t.dt.floor("D") == day).to_numpy(copy=True)
    mask[-1] = False
    if not mask.any():
        return []

    pad = cfg.day_pad_pips * pip_size
    day_high = float(df.loc[mask, COL_H].max())
    day_low = float(df.loc[mask, COL_L].min())
    first_t = t[mask].iloc[0]
    end = t.iloc[-1] + pd.Timedelta(hours=cfg.current_day_extension_hours)
    return [
        make_zone(first_t, end, day_high - pad, day_high + pad, "supply", "CDH"),
        make_zone(first_t, end, day_low - pad, day_low + pad, "demand", "CDL"),
    ]


def active_zones(zones: List[LiquidityZone], t: pd.Timestamp) -> List[LiquidityZone]:
    return [z for z in zones if z.is_active(t)]


def opposite_liquidity(zones: List[LiquidityZone], price: float, *, for_buy: bool) -> Optional[LiquidityZone]:
    """Nearest supply zone for a buy (demand for a sell) by distance of its mid to `price`."""
    kind = "supply" if for_buy else "demand"
    candidates = [z for z in zones if z.kind == kind]
    if not candidates:
        return None
    return min(candidates, key=lambda z: abs(z.mid - price))

# smc_engine/zones/ote.py
"""
Optimal-trade-entry (OTE) zones derived from structure shifts.

Three impulse anchorings are supported:
  - structure shift: pre-break swing extreme -> break bar extreme
  - continuation: pre-break swing extreme -> furthest price reached before
    the first opposite micro-break (for moves that run past the break)
  - sweep: extremes between the sweep candle and the bar before the shift

All frames passed here are expected to hold closed bars only.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

import numpy as np
import pandas as pd

from smc_engine.common.types import COL_C, COL_H, COL_L, COL_O, Direction, bar_times
from smc_engine.features.fibonacci import (
    EQUILIBRIUM,
    OTE_INVALIDATION,
    OTE_LEVELS,
    OTE_SWEET_SPOT,
    FibRetracement,
    impulse_retracement,
)
from smc_engine.liquidity.sweeps import SweepEvent
from smc_engine.structure.structure_shift import StructureShiftSignal
from smc_engine.structure.swings import last_swing_high_before, last_swing_low_before

OTESource = Literal["structure_shift", "continuation", "sweep"]


@dataclass
class EntryZoneConfig:
    ote_swing_pivot: int = 2
    ote_swing_max_back: int = 50
    max_ote_zones: int = 4
    enable_continuation: bool = True
    enable_sweep_variant: bool = True

    order_block_scan_bars: int = 200
    order_block_validity_bars: int = 500
    breaker_lookback: int = 200
    require_shift_for_order_block: bool = False
    require_opposite_sweep: bool = False
    opposite_sweep_minutes: int = 90


@dataclass(frozen=True)
class OTEZone:
    direction: Direction
    impulse_start: float
    impulse_end: float
    low: float
    high: float
    time: pd.Timestamp
    idx: int
    source: OTESource
    fib: FibRetracement
    meta: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def sweet_spot(self) -> float:
        return self.fib.price_at_pct(OTE_SWEET_SPOT)

    @property
    def mid(self) -> float:
        return self.sweet_spot

    @property
    def equilibrium(self) -> float:
        return self.fib.price_at_pct(EQUILIBRIUM)

    @property
    def invalidation_price(self) -> float:
        return self.fib.price_at_pct(OTE_INVALIDATION)

    def contains(self, price: float) -> bool:
        return self.low <= price <= self.high


def make_ote_zone(
    direction: int,
    impulse_start: float,
    impulse_end: float,
    *,
    time: pd.Timestamp,
    idx: int,
    source: OTESource,
) -> Optional[OTEZone]:
    """
    OTE zone for an impulse, or None when the impulse is flat or runs
    against `direction`.
    """
    if direction == 1 and not impulse_end > impulse_start:
        return None
    if direction == -1 and not impulse_end < impulse_start:
        return None
    fib = impulse_retracement(impulse_start, impulse_end)
    if fib is None:
        return None
    a, b = fib.price_at_pct(OTE_LEVELS[0]), fib.price_at_pct(OTE_LEVELS[1])
    return OTEZone(
        direction=direction,
        impulse_start=float(impulse_start),
        impulse_end=float(impulse_end),
        low=min(a, b),
        high=max(a, b),
        time=time,
        idx=idx,
        source=source,
        fib=fib,
    )


def _pre_break_extreme(df: pd.DataFrame, signal: StructureShiftSignal, cfg: EntryZoneConfig) -> Optional[tuple]:
    """(index, price) of the swing extreme the impulse starts from."""
    i = signal.idx
    if signal.direction == 1:
        l = df[COL_L].to_numpy(dtype=float)[: i + 1]
        j = last_swing_low_before(l, i - 1, cfg.ote_swing_pivot, max_back=cfg.ote_swing_max_back)
        if j is None:
            return None
        return j, float(l[j])
    h = df[COL_H].to_numpy(dtype=float)[: i + 1]
    j = last_swing_high_before(h, i - 1, cfg.ote_swing_pivot, max_back=cfg.ote_swing_max_back)
    if j is None:
        return None
    return j, float(h[j])


def ote_from_structure_shift(
    df: pd.DataFrame,
    signal: StructureShiftSignal,
    *,
    config: Optional[EntryZoneConfig] = None,
) -> Optional[OTEZone]:
    cfg = config or EntryZoneConfig()
    i = signal.idx
    if i <= 2 or i >= len(df):
        return None

    anchor = _pre_break_extreme(df, signal, cfg)
    start = anchor[1] if anchor is not None else signal.impulse_start
    end = float(df[COL_H].iloc[i] if signal.direction == 1 else df[COL_L].iloc[i])
    return make_ote_zone(signal.direction, start, end, time=signal.time, idx=i, source="structure_shift")


def ote_zones_from_shifts(
    df: pd.DataFrame,
    signals: List[StructureShiftSignal],
    *,
    config: Optional[EntryZoneConfig] = None,
) -> List[OTEZone]:
    """One zone per signal that has a usable impulse, newest first, capped."""
    cfg = config or EntryZoneConfig()
    zones = [z for z in (ote_from_structure_shift(df, s, config=cfg) for s in signals) if z is not None]
    zones.sort(key=lambda z: z.idx, reverse=True)
    return zones[: max(1, cfg.max_ote_zones)]


def first_opposite_break(df: pd.DataFrame, from_idx: int, direction: int) -> Optional[int]:
    """
    First micro-break against `direction` at or after `from_idx`:
    for a bullish move a down candle taking the previous low, for a
    bearish move an up candle taking the previous high.
    """
    o = df[COL_O].to_numpy(dtype=float)
    h = df[COL_H].to_numpy(dtype=float)
    l = df[COL_L].to_numpy(dtype=float)
    c = df[COL_C].to_numpy(dtype=float)

    for i in range(max(1, from_idx), len(df)):
        up = c[i] >= o[i]
        if direction == 1 and not up and l[i] < l[i - 1]:
            return i
        if direction == -1 and up and h[i] > h[i - 1]:
            return i
    return None


def continuation_ote(
    df: pd.DataFrame,
    signal: StructureShiftSignal,
    *,
    config: Optional[EntryZoneConfig] = None,
) -> Optional[OTEZone]:
    """
    Re-anchored OTE for a move that kept running after the break.

    Returns None until the first opposite micro-break exists; the far end
    of the impulse is the extreme reached before that micro-break.
    """
    cfg = config or EntryZoneConfig()
    if len(df) < 5 or signal.idx >= len(df) - 1:
        return None

    anchor = _pre_break_extreme(df, signal, cfg)
    if anchor is None:
        return None
    swing_idx, start = anchor

    br = first_opposite_break(df, signal.idx + 1, signal.direction)
    if br is None:
        return None

    lo = max(signal.idx, swing_idx)
    hi = max(lo, br - 1)
    if signal.direction == 1:
        end = float(df[COL_H].iloc[lo : hi + 1].max())
    else:
        end = float(df[COL_L].iloc[lo : hi + 1].min())

    zone = make_ote_zone(
        signal.direction, start, end, time=bar_times(df).iloc[br], idx=br, source="continuation"
    )
    if zone is not None:
        zone.meta.update({"shift_idx": signal.idx, "micro_break_idx": br})
    return zone


def ote_from_sweep(df: pd.DataFrame, sweep: SweepEvent, signal: StructureShiftSignal) -> Optional[OTEZone]:
    """
    Impulse between the sweep candle and the bar before the shift.

    The zone direction is opposite to the sweep: a bullish sweep measures
    the high -> low leg (bearish retracement) and vice versa.
    """
    sweep_idx = sweep.idx
    pre = signal.idx - 1
    if sweep_idx < 0 or pre <= sweep_idx or signal.idx >= len(df):
        return None

    hi = float(df[COL_H].iloc[sweep_idx : pre + 1].max())
    lo = float(df[COL_L].iloc[sweep_idx : pre + 1].min())
    if not hi > lo:
        return None

    if sweep.direction == 1:
        zone = make_ote_zone(-1, hi, lo, time=signal.time, idx=signal.idx, source="sweep")
    else:
        zone = make_ote_zone(1, lo, hi, time=signal.time, idx=signal.idx, source="sweep")
    if zone is not None:
        zone.meta.update({"sweep_idx": sweep_idx, "shift_idx": signal.idx})
    return zone


def derive_ote_zones(
    df: pd.DataFrame,
    signals: List[StructureShiftSignal],
    sweeps: List[SweepEvent],
    *,
    config: Optional[EntryZoneConfig] = None,
) -> List[OTEZone]:
    """Every OTE variant for the latest evidence, newest first."""
    cfg = config or EntryZoneConfig()
    zones = ote_zones_from_shifts(df, signals, config=cfg)
    if signals and cfg.enable_continuation:
        z = continuation_ote(df, signals[-1], config=cfg)
        if z is not None:
            zones.append(z)
    if signals and sweeps and cfg.enable_sweep_variant:
        z = ote_from_sweep(df, sweeps[-1], signals[-1])
        if z is not None:
            zones.append(z)
    zones.sort(key=lambda z: (z.idx, z.source), reverse=True)
    return zones


# ---------------------------------------------------------------------
# Touch classification
# ---------------------------------------------------------------------

class OTETouchLevel(int, Enum):
    NONE = 0
    SHALLOW = 1
    OPTIMAL = 2
    DEEP_OPTIMAL = 3
    EXCEEDED = 4


class TouchMethod(str, Enum):
    WICK = "wick"
    BODY_CLOSE = "body_close"


def classify_ote_touch(
    zone: OTEZone,
    *,
    high: float,
    low: float,
    close: float,
    method: TouchMethod = TouchMethod.WICK,
) -> OTETouchLevel:
    """
    How deep a bar retraced into the impulse:
      < 61.8  shallow, < 70.5 optimal, <= 79 deep optimal, beyond exceeded.
    A bar that never pulled back against the impulse is NONE.
    """
    if method == TouchMethod.BODY_CLOSE:
        price = close
    else:
        price = low if zone.direction == 1 else high

    pct = zone.fib.retracement_pct(price)
    if not np.isfinite(pct) or pct <= 0:
        return OTETouchLevel.NONE
    if pct < OTE_LEVELS[0]:
        return OTETouchLevel.SHALLOW
    if pct < OTE_SWEET_SPOT:
        return OTETouchLevel.OPTIMAL
    if pct <= OTE_LEVELS[1]:
        return OTETouchLevel.DEEP_OPTIMAL
    return OTETouchLevel.EXCEEDED


def is_invalidated(zone: OTEZone, *, high: float, low: float) -> bool:
    """Price retraced past the invalidation level (88%)."""
    price = low if zone.direction == 1 else high
    return zone.fib.retracement_pct(price) > OTE_INVALIDATION

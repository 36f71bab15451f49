# smc_engine/zones/reaction_zones.py
"""
Reaction zones: order blocks and breaker blocks.

Order block (engulfing heuristic):
- bullish: bearish candle c0, then a bullish c1 with c1.close > c0.high and
  c1.low < c0.low (sell-side taken). Zone = c0 range, stop = min(c0.low, c1.low)
- bearish: symmetric, stop = max(c0.high, c1.high)

Breaker block:
- bearish: close[i] < low[i-1] where bar i-1 was an up candle
- bullish: close[i] > high[i-1] where bar i-1 was a down candle
Bounds span both bars.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

import pandas as pd

from smc_engine.common.types import COL_C, COL_H, COL_L, COL_O, Direction, bar_times
from smc_engine.liquidity.sweeps import SweepEvent
from smc_engine.structure.structure_shift import StructureShiftSignal
from smc_engine.zones.ote import EntryZoneConfig

ReactionKind = Literal["order_block", "breaker"]


@dataclass(frozen=True)
class ReactionZone:
    kind: ReactionKind
    direction: Direction
    idx: int
    time: pd.Timestamp
    low: float
    high: float
    stop: float
    liquidity_grab: bool
    valid_until_idx: int
    meta: Dict[str, Any] = field(default_factory=dict, compare=False)

    def contains(self, price: float) -> bool:
        return self.low <= price <= self.high

    def is_expired(self, current_idx: int) -> bool:
        return current_idx > self.valid_until_idx


def detect_order_blocks(df: pd.DataFrame, *, config: Optional[EntryZoneConfig] = None) -> List[ReactionZone]:
    cfg = config or EntryZoneConfig()
    n = len(df)
    if n < 5:
        return []

    o = df[COL_O].to_numpy(dtype=float)
    h = df[COL_H].to_numpy(dtype=float)
    l = df[COL_L].to_numpy(dtype=float)
    c = df[COL_C].to_numpy(dtype=float)
    t = bar_times(df)

    out: List[ReactionZone] = []
    start = max(1, n - min(cfg.order_block_scan_bars, n - 1))
    for i in range(start, n):
        p = i - 1
        if c[p] < o[p] and c[i] > o[i] and c[i] > h[p] and l[i] < l[p]:
            out.append(ReactionZone(
                kind="order_block", direction=1, idx=p, time=t.iloc[p],
                low=float(l[p]), high=float(h[p]), stop=float(min(l[p], l[i])),
                liquidity_grab=bool(l[i] < l[p]),
                valid_until_idx=i + cfg.order_block_validity_bars,
            ))
        if c[p] > o[p] and c[i] < o[i] and c[i] < l[p] and h[i] > h[p]:
            out.append(ReactionZone(
                kind="order_block", direction=-1, idx=p, time=t.iloc[p],
                low=float(l[p]), high=float(h[p]), stop=float(max(h[p], h[i])),
                liquidity_grab=bool(h[i] > h[p]),
                valid_until_idx=i + cfg.order_block_validity_bars,
            ))
    return out


def validate_order_blocks(
    blocks: List[ReactionZone],
    *,
    shifts: List[StructureShiftSignal],
    sweeps: List[SweepEvent],
    config: Optional[EntryZoneConfig] = None,
) -> List[ReactionZone]:
    """
    Keep blocks with a liquidity grab, optionally also requiring a
    same-direction shift at/after the block and a sweep within
    `opposite_sweep_minutes` of it.
    """
    cfg = config or EntryZoneConfig()
    window = pd.Timedelta(minutes=cfg.opposite_sweep_minutes)

    out: List[ReactionZone] = []
    for ob in blocks:
        if not ob.liquidity_grab:
            continue
        if cfg.require_shift_for_order_block and not any(
            s.direction == ob.direction and s.time >= ob.time for s in shifts
        ):
            continue
        if cfg.require_opposite_sweep and not any(abs(s.time - ob.time) <= window for s in sweeps):
            continue
        out.append(ob)
    return out


def detect_breaker_blocks(df: pd.DataFrame, *, config: Optional[EntryZoneConfig] = None) -> List[ReactionZone]:
    """Newest first, one block per anchor time."""
    cfg = config or EntryZoneConfig()
    n = len(df)
    if n < 5:
        return []

    o = df[COL_O].to_numpy(dtype=float)
    h = df[COL_H].to_numpy(dtype=float)
    l = df[COL_L].to_numpy(dtype=float)
    c = df[COL_C].to_numpy(dtype=float)
    t = bar_times(df)

    found: List[ReactionZone] = []
    end = n - 1
    for i in range(max(2, end - cfg.breaker_lookback), end + 1):
        p = i - 1
        direction = 0
        if c[i] < l[p] and o[p] < c[p]:
            direction = -1
        elif c[i] > h[p] and o[p] > c[p]:
            direction = 1
        if direction == 0:
            continue

        low = float(min(l[p], l[i]))
        high = float(max(h[p], h[i]))
        found.append(ReactionZone(
            kind="breaker", direction=direction, idx=p, time=t.iloc[p],
            low=low, high=high, stop=low if direction == 1 else high,
            liquidity_grab=False,
            valid_until_idx=i + cfg.order_block_validity_bars,
        ))

    seen = set()
    out: List[ReactionZone] = []
    for b in sorted(found, key=lambda z: z.idx, reverse=True):
        if b.time in seen:
            continue
        seen.add(b.time)
        out.append(b)
    return out


def drop_expired(zones: List[ReactionZone], current_idx: int) -> List[ReactionZone]:
    return [z for z in zones if not z.is_expired(current_idx)]

# smc_engine/structure/structure_shift.py
"""
Structure-shift (break of structure) detection.

A candidate exists on bar i when the close breaks the last swing high
(bullish) or swing low (bearish) before i. It must then pass, in order:

  1. body ratio       body / range >= min_body_ratio
  2. displacement     |close - level| >= max(atr_factor * ATR, median_factor * median TR)
  3. bias alignment   direction == htf bias (when enabled and a bias is supplied)
  4. sweep            external flag, or the previous bar took the recent extreme
  5. gap              3-bar gap ending on the break bar (when required)
  6. composition      wick / body / combined percentage, by break mode

Every gate is a "must pass" check, so tightening any threshold can only
shrink the emitted set.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from smc_engine.common.errors import DetectionError
from smc_engine.common.types import COL_C, COL_H, COL_L, COL_O, Direction, bar_times
from smc_engine.features.atr import RunningATR, median_true_range
from smc_engine.features.candles import candle_composition
from smc_engine.patterns.imbalance import gap_bounds
from smc_engine.structure.swings import last_swing_high_before, last_swing_low_before

logger = logging.getLogger(__name__)

ORDER_BLOCK_SCAN_BARS = 10


class BreakMode(str, Enum):
    WICK = "wick"
    BODY = "body"
    BOTH = "both"


@dataclass
class StructureShiftConfig:
    swing_pivot: int = 1
    swing_max_back: Optional[int] = None

    min_body_ratio: float = 0.6
    min_displacement_atr: float = 1.2
    atr_period: int = 14
    use_median_displacement: bool = True
    median_window: int = 10
    median_factor: float = 1.25

    require_bias_alignment: bool = True
    sweep_lookback: int = 5

    require_gap: bool = True
    min_gap: float = 0.0

    break_mode: BreakMode = BreakMode.BOTH
    wick_pct: float = 25.0
    body_pct: float = 60.0
    combined_pct: float = 65.0

    retest_timeout_bars: int = 50


@dataclass(frozen=True)
class StructureShiftSignal:
    direction: Direction
    idx: int
    time: pd.Timestamp
    close: float
    break_level: float
    swing_idx: int

    displacement: float
    atr: float
    body_pct: float
    wick_pct: float
    combined_pct: float

    has_gap: bool
    had_sweep: bool

    # zone of interest: gap bounds, else the nearest opposite candle body
    zone_low: float
    zone_high: float
    zone_source: str

    impulse_start: float
    impulse_end: float
    valid_until_idx: int

    meta: Dict[str, Any] = field(default_factory=dict, compare=False)

    def is_stale(self, current_idx: int) -> bool:
        return current_idx > self.valid_until_idx


class StructureShiftDetector:
    """
    Incremental detector: feed closed bars in order with on_bar(df, i).

    The detector only reads bars [0, i] on each call. Re-submitting an
    already processed index returns the cached result, so each bar yields
    at most one signal.
    """

    def __init__(self, config: Optional[StructureShiftConfig] = None):
        self.config = config or StructureShiftConfig()
        self._atr = RunningATR(self.config.atr_period)
        self._last_idx = -1
        self._signals: Dict[int, StructureShiftSignal] = {}

    @property
    def signals(self) -> List[StructureShiftSignal]:
        return [self._signals[k] for k in sorted(self._signals)]

    def reset(self) -> None:
        self._atr.reset()
        self._last_idx = -1
        self._signals.clear()

    def on_bar(
        self,
        df: pd.DataFrame,
        i: int,
        *,
        htf_bias: Optional[int] = None,
        sweep_flag: bool = False,
    ) -> Optional[StructureShiftSignal]:
        if i <= self._last_idx:
            return self._signals.get(i)
        if i >= len(df):
            raise IndexError(f"[structure_shift] bar index {i} outside frame of {len(df)}")

        o = df[COL_O].to_numpy(dtype=float)[: i + 1]
        h = df[COL_H].to_numpy(dtype=float)[: i + 1]
        l = df[COL_L].to_numpy(dtype=float)[: i + 1]
        c = df[COL_C].to_numpy(dtype=float)[: i + 1]

        # catch up the ATR on any bars that were not submitted
        for k in range(self._last_idx + 1, i + 1):
            if not (np.isfinite(h[k]) and np.isfinite(l[k]) and np.isfinite(c[k])):
                self._last_idx = i
                raise DetectionError(f"[structure_shift] non-finite prices at idx={k}")
            self._atr.update(h[k], l[k], c[k - 1] if k > 0 else None)
        self._last_idx = i

        if i < 3 or not self._atr.ready:
            return None

        cfg = self.config
        pivot = max(1, cfg.swing_pivot)
        hi_idx = last_swing_high_before(h, i, pivot, max_back=cfg.swing_max_back)
        lo_idx = last_swing_low_before(l, i, pivot, max_back=cfg.swing_max_back)
        if hi_idx is None or lo_idx is None:
            return None

        candidates: List[Tuple[int, int]] = []
        if c[i] > h[hi_idx]:
            candidates.append((1, hi_idx))
        if c[i] < l[lo_idx]:
            candidates.append((-1, lo_idx))

        times = None
        for direction, swing_idx in candidates:
            sig = self._evaluate(o, h, l, c, i, direction, swing_idx, htf_bias, sweep_flag)
            if sig is None:
                continue
            if times is None:
                times = bar_times(df)
            sig = _with_time(sig, times.iloc[i])
            self._signals[i] = sig
            logger.debug(
                "structure shift %s idx=%s level=%.5f disp=%.5f gap=%s",
                "bull" if direction == 1 else "bear", i, sig.break_level, sig.displacement, sig.has_gap,
            )
            return sig
        return None

    def _evaluate(
        self,
        o: np.ndarray,
        h: np.ndarray,
        l: np.ndarray,
        c: np.ndarray,
        i: int,
        direction: int,
        swing_idx: int,
        htf_bias: Optional[int],
        sweep_flag: bool,
    ) -> Optional[StructureShiftSignal]:
        cfg = self.config
        comp = candle_composition(o[i], h[i], l[i], c[i])

        # 1. body ratio
        if comp.body_ratio < cfg.min_body_ratio:
            return _reject(i, direction, "body_ratio")

        # 2. displacement
        level = float(h[swing_idx] if direction == 1 else l[swing_idx])
        displacement = abs(c[i] - level)
        required = cfg.min_displacement_atr * self._atr.value
        if cfg.use_median_displacement:
            med = median_true_range(h, l, c, i, max(3, cfg.median_window))
            if med is not None:
                required = max(required, cfg.median_factor * med)
        if displacement < required:
            return _reject(i, direction, "displacement")

        # 3. bias alignment
        if cfg.require_bias_alignment and htf_bias is not None and htf_bias != direction:
            return _reject(i, direction, "bias")

        # 4. sweep
        had_sweep = bool(sweep_flag) or _internal_sweep(h, l, i, direction, cfg.sweep_lookback)
        if not had_sweep:
            return _reject(i, direction, "sweep")

        # 5. gap, with the break bar as the third candle
        gap = gap_bounds(h, l, i - 1, direction, min_gap=max(0.0, cfg.min_gap))
        if cfg.require_gap and gap is None:
            return _reject(i, direction, "gap")

        # 6. candle composition
        if not _composition_passes(comp, cfg):
            return _reject(i, direction, "composition")

        if gap is not None:
            zone, source = gap, "gap"
        else:
            zone = _opposite_candle_body(o, c, i, direction)
            source = "order_block"
            if zone is None:
                zone = (min(o[i], c[i]), max(o[i], c[i]))
                source = "break_bar"

        impulse_start = _impulse_start(h, l, i, direction, swing_idx, max(1, cfg.swing_pivot))
        impulse_end = float(h[i] if direction == 1 else l[i])

        return StructureShiftSignal(
            direction=direction,
            idx=i,
            time=pd.NaT,
            close=float(c[i]),
            break_level=level,
            swing_idx=int(swing_idx),
            displacement=float(displacement),
            atr=float(self._atr.value),
            body_pct=comp.body_pct,
            wick_pct=comp.wick_pct,
            combined_pct=comp.combined_pct,
            has_gap=gap is not None,
            had_sweep=had_sweep,
            zone_low=float(zone[0]),
            zone_high=float(zone[1]),
            zone_source=source,
            impulse_start=impulse_start,
            impulse_end=impulse_end,
            valid_until_idx=i + cfg.retest_timeout_bars,
        )


def detect_structure_shifts(
    df: pd.DataFrame,
    *,
    config: Optional[StructureShiftConfig] = None,
    htf_bias: Optional[int] = None,
    sweep_flags: Optional[Sequence[bool]] = None,
) -> List[StructureShiftSignal]:
    """Run a fresh detector over every bar of `df`."""
    det = StructureShiftDetector(config)
    out: List[StructureShiftSignal] = []
    for i in range(len(df)):
        flag = bool(sweep_flags[i]) if sweep_flags is not None else False
        sig = det.on_bar(df, i, htf_bias=htf_bias, sweep_flag=flag)
        if sig is not None:
            out.append(sig)
    return out


def _reject(i: int, direction: int, gate: str) -> None:
    logger.debug("structure shift rejected idx=%s dir=%s gate=%s", i, direction, gate)
    return None


def _with_time(sig: StructureShiftSignal, t: pd.Timestamp) -> StructureShiftSignal:
    return replace(sig, time=t)


def _internal_sweep(h: np.ndarray, l: np.ndarray, i: int, direction: int, lookback: int) -> bool:
    """Did bar i-1 take out the extreme of the `lookback` bars before it?"""
    prev = i - 1
    start = max(0, prev - max(1, lookback))
    if prev - start < 1:
        return False
    if direction == 1:
        return bool(l[prev] < np.min(l[start:prev]))
    return bool(h[prev] > np.max(h[start:prev]))


def _composition_passes(comp, cfg: StructureShiftConfig) -> bool:
    if cfg.break_mode == BreakMode.WICK:
        return comp.wick_pct >= cfg.wick_pct
    if cfg.break_mode == BreakMode.BODY:
        return comp.body_pct >= cfg.body_pct
    return comp.combined_pct >= cfg.combined_pct


def _opposite_candle_body(o: np.ndarray, c: np.ndarray, i: int, direction: int) -> Optional[Tuple[float, float]]:
    for k in range(i - 1, max(0, i - ORDER_BLOCK_SCAN_BARS) - 1, -1):
        opposite = c[k] < o[k] if direction == 1 else c[k] >= o[k]
        if opposite:
            return float(min(o[k], c[k])), float(max(o[k], c[k]))
    return None


def _impulse_start(h: np.ndarray, l: np.ndarray, i: int, direction: int, swing_idx: int, pivot: int) -> float:
    """
    Pre-break swing extreme: the last opposite swing before i - 1, falling back
    to the extreme between the broken swing and the break bar.
    """
    if direction == 1:
        idx = last_swing_low_before(l, i - 1, pivot)
        if idx is not None:
            return float(l[idx])
        return float(np.min(l[swing_idx : i + 1]))
    idx = last_swing_high_before(h, i - 1, pivot)
    if idx is not None:
        return float(h[idx])
    return float(np.max(h[swing_idx : i + 1]))

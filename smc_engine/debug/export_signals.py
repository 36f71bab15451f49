from __future__ import annotations

from pathlib import Path

import pandas as pd

from smc_engine.features.atr import atr_series
from smc_engine.features.candles import compute_candle_metrics
from smc_engine.liquidity.sweeps import SweepEvent
from smc_engine.liquidity.zones import LiquidityZone
from smc_engine.patterns.imbalance import compute_imbalance
from smc_engine.structure.structure_shift import StructureShiftSignal
from smc_engine.structure.swings import detect_swings
from smc_engine.zones.ote import OTEZone


def _write(rows: list[dict], path: str | Path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    pd.DataFrame(rows).to_csv(path, index=False)
    return path


def export_liquidity_zones(zones: list[LiquidityZone], path: str | Path) -> Path:
    return _write([{
        "start": z.start,
        "end": z.end,
        "kind": z.kind,
        "label": z.label,
        "low": z.low,
        "high": z.high,
        "meta": z.meta,
    } for z in zones], path)


def export_sweeps(sweeps: list[SweepEvent], path: str | Path) -> Path:
    return _write([{
        "time": s.time,
        "idx": s.idx,
        "direction": s.direction,
        "label": s.label,
        "price": s.price,
        "bar_high": s.bar_high,
        "bar_low": s.bar_low,
        "bar_close": s.bar_close,
    } for s in sweeps], path)


def export_structure_shifts(shifts: list[StructureShiftSignal], path: str | Path) -> Path:
    return _write([{
        "time": s.time,
        "idx": s.idx,
        "direction": s.direction,
        "close": s.close,
        "break_level": s.break_level,
        "swing_idx": s.swing_idx,
        "displacement": s.displacement,
        "atr": s.atr,
        "body_pct": s.body_pct,
        "has_gap": s.has_gap,
        "had_sweep": s.had_sweep,
        "zone_low": s.zone_low,
        "zone_high": s.zone_high,
        "zone_source": s.zone_source,
        "impulse_start": s.impulse_start,
        "impulse_end": s.impulse_end,
    } for s in shifts], path)


def export_ote_zones(zones: list[OTEZone], path: str | Path) -> Path:
    return _write([{
        "time": z.time,
        "idx": z.idx,
        "direction": z.direction,
        "source": z.source,
        "impulse_start": z.impulse_start,
        "impulse_end": z.impulse_end,
        "low": z.low,
        "high": z.high,
        "sweet_spot": z.sweet_spot,
        "invalidation": z.invalidation_price,
    } for z in zones], path)


def export_bar_features(df: pd.DataFrame, path: str | Path, *, atr_period: int = 14, pivot: int = 3) -> Path:
    """Bars annotated with candle metrics, gaps, ATR and swing flags."""
    out = compute_imbalance(compute_candle_metrics(df))
    out["atr"] = atr_series(df, atr_period)
    out["swing"] = ""
    for s in detect_swings(df, pivot=pivot):
        out.loc[s.idx, "swing"] = s.kind

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    out.to_csv(path, index=False)
    return path

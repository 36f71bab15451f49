from __future__ import annotations

from typing import Literal

import pandas as pd

from smc_engine.common.errors import BarDataError

# ---------------------------
# Canonical column names
# ---------------------------
# All OHLC dataframes in smc_engine must use these column names.
COL_TIME = "time"
COL_O = "o"
COL_H = "h"
COL_L = "l"
COL_C = "c"
COL_V = "volume"

# volume is carried through when present but never required for structure
REQUIRED_CANDLE_COLS = (COL_TIME, COL_O, COL_H, COL_L, COL_C)

Direction = Literal[-1, 0, 1]  # -1 bearish, 1 bullish, 0 neutral/unknown

BULLISH = 1
BEARISH = -1
NEUTRAL = 0


def direction_name(direction: int) -> str:
    if direction == BULLISH:
        return "bullish"
    if direction == BEARISH:
        return "bearish"
    return "neutral"


def validate_bars(df: pd.DataFrame, *, where: str = "bars") -> None:
    """
    Contract check for a bar frame.

    Raises BarDataError for missing columns, a non-RangeIndex or
    time going backwards. An empty frame is valid (nothing to evaluate).
    """
    missing = [c for c in REQUIRED_CANDLE_COLS if c not in df.columns]
    if missing:
        raise BarDataError(f"[{where}] Missing required columns: {missing}")
    if df.empty:
        return
    if not isinstance(df.index, pd.RangeIndex) or df.index.start != 0 or df.index.step != 1:
        raise BarDataError(f"[{where}] Expected a 0-based RangeIndex, got {type(df.index).__name__}")
    t = pd.to_datetime(df[COL_TIME], utc=True)
    if not t.is_monotonic_increasing:
        raise BarDataError(f"[{where}] Time column must be monotonically increasing")


def bar_times(df: pd.DataFrame) -> pd.Series:
    return pd.to_datetime(df[COL_TIME], utc=True)

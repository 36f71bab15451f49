from __future__ import annotations

from dataclasses import dataclass
from typing import Dict

import pandas as pd

from smc_engine.common.types import COL_C, COL_H, COL_L, COL_O, COL_TIME, COL_V


@dataclass(frozen=True)
class Timeframe:
    """Simple timeframe representation."""

    code: str
    seconds: int
    pandas_rule: str

    @property
    def is_intraday(self) -> bool:
        return self.seconds < 24 * 60 * 60


TIMEFRAMES = {
    "M1": Timeframe("M1", 60, "1min"),
    "M5": Timeframe("M5", 5 * 60, "5min"),
    "M15": Timeframe("M15", 15 * 60, "15min"),
    "M30": Timeframe("M30", 30 * 60, "30min"),
    "H1": Timeframe("H1", 60 * 60, "1h"),
    "H4": Timeframe("H4", 4 * 60 * 60, "4h"),
    "D": Timeframe("D", 24 * 60 * 60, "1D"),
    "W": Timeframe("W", 7 * 24 * 60 * 60, "W-SUN"),
}

# Structure-shift confirmation timeframe for each execution timeframe.
LOWER_TIMEFRAME: Dict[str, str] = {
    "H4": "M15",
    "H1": "M15",
    "M15": "M5",
    "M5": "M1",
}


def require_timeframe(code: str) -> Timeframe:
    if code not in TIMEFRAMES:
        raise ValueError(
            f"Unsupported timeframe '{code}'. Supported: {sorted(TIMEFRAMES)}"
        )
    return TIMEFRAMES[code]


def lower_timeframe(code: str) -> str:
    """Falls back to the timeframe itself when no lower one is mapped."""
    return LOWER_TIMEFRAME.get(code, code)


def resample_bars(df: pd.DataFrame, code: str) -> pd.DataFrame:
    """
    Aggregate canonical bars into a higher timeframe.

    Bins are left-labelled; the last bin may be partial, which is fine because
    callers drop still-open bars before structural analysis.
    """
    tf = require_timeframe(code)
    if df.empty:
        return df.copy()

    src = df.copy()
    src[COL_TIME] = pd.to_datetime(src[COL_TIME], utc=True)
    src = src.set_index(COL_TIME)

    agg = {COL_O: "first", COL_H: "max", COL_L: "min", COL_C: "last"}
    if COL_V in src.columns:
        agg[COL_V] = "sum"

    kwargs = {"label": "left", "closed": "left"} if tf.is_intraday or code == "D" else {}
    out = src.resample(tf.pandas_rule, **kwargs).agg(agg).dropna(subset=[COL_O])
    return out.reset_index()

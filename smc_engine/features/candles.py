from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import pandas as pd

from smc_engine.common.types import COL_C, COL_H, COL_L, COL_O


EPS = 1e-12


@dataclass(frozen=True)
class CandleComposition:
    body: float
    range: float
    upper_wick: float
    lower_wick: float
    direction: int

    @property
    def wick(self) -> float:
        # the dominant wick, whichever side it is on
        return max(self.upper_wick, self.lower_wick)

    @property
    def body_ratio(self) -> float:
        return self.body / self.range if self.range > EPS else 0.0

    @property
    def body_pct(self) -> float:
        return self.body_ratio * 100.0

    @property
    def wick_pct(self) -> float:
        return self.wick / self.range * 100.0 if self.range > EPS else 0.0

    @property
    def combined_pct(self) -> float:
        return (self.body + self.wick) / self.range * 100.0 if self.range > EPS else 0.0


def candle_composition(o: float, h: float, l: float, c: float) -> CandleComposition:
    return CandleComposition(
        body=abs(c - o),
        range=max(h - l, 0.0),
        upper_wick=h - max(o, c),
        lower_wick=min(o, c) - l,
        direction=1 if c > o else (-1 if c < o else 0),
    )


def compute_candle_metrics(df: pd.DataFrame) -> pd.DataFrame:
    """
    Adds core metrics:
      - body_len, candle_len, upper_wick, lower_wick
      - direction (-1/0/1)
      - body_pct, wick_pct, combined_pct (0..100, relative to candle_len)
    """
    out = df.copy()

    o = out[COL_O].astype(float)
    h = out[COL_H].astype(float)
    l = out[COL_L].astype(float)
    c = out[COL_C].astype(float)

    body_len = (c - o).abs()
    candle_len = (h - l).clip(lower=0.0)
    upper_wick = h - np.maximum(o, c)
    lower_wick = np.minimum(o, c) - l
    wick_len = np.maximum(upper_wick, lower_wick)

    out["body_len"] = body_len
    out["candle_len"] = candle_len
    out["upper_wick"] = upper_wick
    out["lower_wick"] = lower_wick
    out["direction"] = np.where(c > o, 1, np.where(c < o, -1, 0)).astype(int)

    def _pct(part: pd.Series) -> np.ndarray:
        return np.divide(
            part.to_numpy(dtype=float) * 100.0,
            candle_len.to_numpy(dtype=float),
            out=np.zeros(len(out), dtype=float),
            where=candle_len.to_numpy(dtype=float) > EPS,
        )

    out["body_pct"] = _pct(body_len)
    out["wick_pct"] = _pct(wick_len)
    out["combined_pct"] = _pct(body_len + wick_len)
    return out

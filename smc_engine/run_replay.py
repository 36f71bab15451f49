from __future__ import annotations

import argparse
import dataclasses
import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pandas as pd

from smc_engine.common.errors import BarDataError
from smc_engine.common.timeframes import lower_timeframe, require_timeframe, resample_bars
from smc_engine.common.types import COL_C, COL_H, COL_L, COL_O, COL_TIME, COL_V, REQUIRED_CANDLE_COLS
from smc_engine.config import DEFAULT_CONFIG, EngineConfig
from smc_engine.execution.cascade import CASCADE_DEFINITIONS
from smc_engine.pipeline.orchestrator import EngineSession, PipelineResult

logger = logging.getLogger("smc_engine.replay")

_ALIASES = {
    "timestamp": COL_TIME,
    "datetime": COL_TIME,
    "date": COL_TIME,
    "open": COL_O,
    "high": COL_H,
    "low": COL_L,
    "close": COL_C,
    "vol": COL_V,
    "tick_volume": COL_V,
}


def load_bars(path: str | Path) -> pd.DataFrame:
    """
    Read a bar CSV into the canonical frame.
    Accepts either canonical column names or open/high/low/close/timestamp.
    """
    df = pd.read_csv(path)
    df = df.rename(columns={c: _ALIASES.get(c.strip().lower(), c.strip().lower()) for c in df.columns})
    missing = [c for c in REQUIRED_CANDLE_COLS if c not in df.columns]
    if missing:
        raise BarDataError(f"[replay] {path}: missing columns {missing}")

    df[COL_TIME] = pd.to_datetime(df[COL_TIME], utc=True)
    for col in (COL_O, COL_H, COL_L, COL_C):
        df[col] = df[col].astype(float)
    df = df.sort_values(COL_TIME, kind="stable").drop_duplicates(subset=[COL_TIME], keep="last")
    return df.reset_index(drop=True)


def replay_timeframes(cfg: EngineConfig, source_tf: str) -> List[str]:
    """Every timeframe the session reads, at or above the source resolution."""
    wanted = {cfg.execution_timeframe, cfg.structure_timeframe, cfg.bias_timeframe, "D", "W"}
    for d in CASCADE_DEFINITIONS.values():
        wanted.update((d.htf, d.mid, d.ltf))
    floor = require_timeframe(source_tf).seconds
    return sorted((tf for tf in wanted if require_timeframe(tf).seconds >= floor), key=lambda tf: require_timeframe(tf).seconds)


def build_frames(window: pd.DataFrame, source_tf: str, timeframes: Sequence[str]) -> Dict[str, pd.DataFrame]:
    return {tf: window if tf == source_tf else resample_bars(window, tf) for tf in timeframes}


def replay(
    bars: pd.DataFrame,
    cfg: EngineConfig,
    *,
    source_tf: str,
    warmup: int = 300,
    max_bars: int = 3000,
    step: int = 1,
) -> tuple[EngineSession, List[PipelineResult]]:
    """
    Step the session bar by bar; `now` is the close of the newest source bar,
    so timeouts run on the replayed clock.
    """
    session = EngineSession(cfg)
    timeframes = replay_timeframes(cfg, source_tf)
    span = pd.Timedelta(seconds=require_timeframe(source_tf).seconds)

    results: List[PipelineResult] = []
    for i in range(min(warmup, len(bars)), len(bars), max(1, step)):
        window = bars.iloc[max(0, i + 1 - max_bars): i + 1].reset_index(drop=True)
        now = bars[COL_TIME].iloc[i] + span
        res = session.evaluate(build_frames(window, source_tf, timeframes), now)
        results.append(res)
        if res.decision is not None:
            d = res.decision
            logger.info(
                "%s phase %s %s entry=%.5f stop=%.5f target=%.5f risk=%.2f%% tags=%s",
                now, d.phase, "BUY" if d.direction == 1 else "SELL",
                d.entry, d.stop, d.target, d.risk_pct, ",".join(d.tags),
            )
    return session, results


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Replay a bar CSV through the decision core.")
    parser.add_argument("csv", help="bars at the source timeframe (time,o,h,l,c[,volume])")
    parser.add_argument("--source-tf", default="M5", help="timeframe of the CSV rows")
    parser.add_argument("--execution-tf", default=DEFAULT_CONFIG.execution_timeframe)
    parser.add_argument("--structure-tf", default=None, help="defaults to the timeframe below execution")
    parser.add_argument("--pip-size", type=float, default=DEFAULT_CONFIG.pip_size)
    parser.add_argument("--config", default=None, help="JSON file with engine settings")
    parser.add_argument("--warmup", type=int, default=300)
    parser.add_argument("--max-bars", type=int, default=3000)
    parser.add_argument("--step", type=int, default=1)
    parser.add_argument("--export-dir", default=None, help="write the final signals as CSV here")
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    )

    raw = json.loads(Path(args.config).read_text()) if args.config else {}
    cfg = dataclasses.replace(
        EngineConfig.from_mapping(raw),
        pip_size=args.pip_size,
        execution_timeframe=require_timeframe(args.execution_tf).code,
        structure_timeframe=require_timeframe(args.structure_tf or lower_timeframe(args.execution_tf)).code,
    )

    bars = load_bars(args.csv)
    session, results = replay(
        bars, cfg, source_tf=args.source_tf, warmup=args.warmup, max_bars=args.max_bars, step=args.step
    )

    decisions = [r.decision for r in results if r.decision is not None]
    withheld = sum(len(r.meta.get("withheld", [])) for r in results)
    logger.info("=== Replay Summary ===")
    logger.info("bars=%s evaluated=%s decisions=%s withheld_stages=%s", len(bars), len(results), len(decisions), withheld)
    logger.info("session: %s", session.phases.summary())

    if args.export_dir and results:
        from smc_engine.debug.export_signals import (
            export_bar_features,
            export_liquidity_zones,
            export_ote_zones,
            export_structure_shifts,
            export_sweeps,
        )

        out = Path(args.export_dir)
        last = results[-1]
        export_liquidity_zones(last.zones, out / "liquidity_zones.csv")
        export_sweeps(last.sweeps, out / "sweeps.csv")
        export_structure_shifts(last.shifts, out / "structure_shifts.csv")
        export_ote_zones(last.ote_zones, out / "ote_zones.csv")
        export_bar_features(bars, out / "bars.csv")
        pd.DataFrame([dataclasses.asdict(d) for d in decisions]).to_csv(out / "decisions.csv", index=False)
        logger.info("Exported signals to %s", out)


if __name__ == "__main__":
    main()

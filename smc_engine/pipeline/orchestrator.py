from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from smc_engine.common.errors import BarDataError, DetectionError
from smc_engine.common.timeframes import require_timeframe
from smc_engine.common.types import COL_C, COL_H, COL_L, NEUTRAL, bar_times, direction_name, validate_bars
from smc_engine.config import DEFAULT_CONFIG, EngineConfig
from smc_engine.execution.cascade import CascadeName, CascadeSnapshot, CascadeValidator
from smc_engine.execution.confirmation import (
    BREAKER,
    IFVG,
    MSS,
    OB,
    OTE,
    SWEEP,
    ConfirmationConfig,
    ConfirmationGate,
    EntryGateMode,
    GateVerdict,
)
from smc_engine.execution.phase_manager import PhaseManager, TradingPhase
from smc_engine.liquidity.sweeps import SweepBufferCalculator, SweepEvent, detect_sweeps, sweep_flags
from smc_engine.liquidity.zones import LiquidityZone, active_zones, build_liquidity_zones, opposite_liquidity
from smc_engine.pipeline.collaborators import ExecutionGateway, OutcomeRecorder, SignalJournal, TradeOutcome
from smc_engine.structure.structure_shift import StructureShiftSignal, detect_structure_shifts
from smc_engine.structure.swings import pivot_for, swing_bias
from smc_engine.zones.ote import OTEZone, derive_ote_zones
from smc_engine.zones.ote_tracker import OTETracker
from smc_engine.zones.reaction_zones import (
    ReactionZone,
    detect_breaker_blocks,
    detect_order_blocks,
    drop_expired,
    validate_order_blocks,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EntryDecision:
    """A phase-eligible entry proposal. Placing it is the caller's job."""

    phase: int  # 1 or 3
    direction: int
    time: pd.Timestamp
    entry: float
    stop: float
    target: float
    risk_pct: float
    risk_multiplier: float
    reward_risk: float
    tags: Tuple[str, ...]
    reason: str = ""
    # mid of the nearest opposite liquidity zone beyond entry, if any
    liquidity_target: Optional[float] = None

    @property
    def risk(self) -> float:
        return abs(self.entry - self.stop)


@dataclass
class PipelineResult:
    time: pd.Timestamp
    bias: int
    phase: TradingPhase
    zones: List[LiquidityZone] = field(default_factory=list)
    sweeps: List[SweepEvent] = field(default_factory=list)
    shifts: List[StructureShiftSignal] = field(default_factory=list)
    ote_zones: List[OTEZone] = field(default_factory=list)
    order_blocks: List[ReactionZone] = field(default_factory=list)
    breakers: List[ReactionZone] = field(default_factory=list)
    verdict: Optional[GateVerdict] = None
    cascades: Dict[CascadeName, CascadeSnapshot] = field(default_factory=dict)
    decision: Optional[EntryDecision] = None
    meta: Dict[str, Any] = field(default_factory=dict)

    def to_records(self) -> List[Dict[str, Any]]:
        """Flat rows for an append-only journal."""
        rows: List[Dict[str, Any]] = [{
            "kind": "evaluation",
            "time": self.time,
            "bias": self.bias,
            "phase": self.phase.value,
            "zones": len(self.zones),
            "sweeps": len(self.sweeps),
            "shifts": len(self.shifts),
            "ote_zones": len(self.ote_zones),
            "gate_allowed": self.verdict.allowed if self.verdict is not None else None,
            "gate_reason": self.verdict.reason if self.verdict is not None else "",
            "cascades": {n.value: s.status.value for n, s in self.cascades.items()},
            "withheld": list(self.meta.get("withheld", [])),
        }]
        if self.decision is not None:
            row = asdict(self.decision)
            row["kind"] = "decision"
            rows.append(row)
        return rows


class EngineSession:
    """
    Everything that persists between bars for one instrument.

    Detection itself is re-run on the closed bars every evaluation; only the
    cascade table, the phase machine, the OTE tracker and the registration
    watermarks carry over.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        *,
        journal: Optional[SignalJournal] = None,
        recorder: Optional[OutcomeRecorder] = None,
        gateway: Optional[ExecutionGateway] = None,
    ):
        self.config = config or DEFAULT_CONFIG
        self.cascades = CascadeValidator()
        self.phases = PhaseManager(self.config.phases)
        self.ote = OTETracker(self.config.ote_touch_method)
        self.gate = ConfirmationGate(self.config.confirmation)
        self.strict_gate = ConfirmationGate(ConfirmationConfig(mode=EntryGateMode.STRUCTURE_SHIFT_AND_OTE))
        self.journal = journal
        self.recorder = recorder
        self.gateway = gateway
        self.open_entry: Optional[EntryDecision] = None
        # (cascade, slot) -> time of the last event handed to the validator
        self._registered: Dict[Tuple[CascadeName, str], pd.Timestamp] = {}

    def evaluate(self, frames: Dict[str, pd.DataFrame], now, *, bias: Optional[int] = None) -> PipelineResult:
        return evaluate_bar(self, frames, now, bias=bias)

    def execute(self, decision: EntryDecision) -> Optional[str]:
        """Hand the decision to the gateway; a returned reference counts as filled."""
        if self.gateway is None:
            raise RuntimeError("[pipeline] no execution gateway attached")
        ref = self.gateway.submit(decision)
        if ref is not None:
            self.confirm_entry(decision)
        return ref

    def confirm_entry(self, decision: EntryDecision) -> None:
        if decision.phase == 1:
            self.phases.on_phase1_entry(time=decision.time, risk_pct=decision.risk_pct)
        elif decision.phase == 3:
            self.phases.on_phase3_entry(time=decision.time, risk_pct=decision.risk_pct)
        else:
            raise ValueError(f"[pipeline] unknown entry phase {decision.phase}")
        self.open_entry = decision

    def record_exit(self, phase: int, hit_tp: bool, pnl: float, now) -> None:
        """
        Close out a filled entry. An exit that no longer matches the live
        phase (the cycle was reset while the trade was open) is still
        recorded, but moves no phase.
        """
        if phase not in (1, 3):
            raise ValueError(f"[pipeline] unknown entry phase {phase}")
        t = _ts(now)
        expected = TradingPhase.PHASE1_ACTIVE if phase == 1 else TradingPhase.PHASE3_ACTIVE
        if self.phases.phase != expected:
            logger.warning(
                "phase %s exit arrived in %s; outcome recorded without a phase transition",
                phase, self.phases.phase.value,
            )
        elif phase == 1:
            self.phases.on_phase1_exit(hit_tp, pnl, time=t)
        else:
            self.phases.on_phase3_exit(hit_tp, pnl, time=t)

        entry = self.open_entry if self.open_entry is not None and self.open_entry.phase == phase else None
        self.open_entry = None
        if self.recorder is not None:
            self.recorder.record_outcome(TradeOutcome(
                phase=f"phase{phase}",
                direction=entry.direction if entry is not None else self.phases.bias,
                hit_tp=bool(hit_tp),
                pnl=float(pnl),
                time=t,
                tags=entry.tags if entry is not None else (),
            ))

    def _is_new(self, name: CascadeName, slot: str, t: pd.Timestamp) -> bool:
        key = (name, slot)
        last = self._registered.get(key)
        if last is not None and t <= last:
            return False
        self._registered[key] = t
        return True


def evaluate_bar(
    session: EngineSession,
    frames: Dict[str, pd.DataFrame],
    now,
    *,
    bias: Optional[int] = None,
) -> PipelineResult:
    """
    One pass over the latest closed bars:
      zones -> sweeps -> structure shifts -> entry zones -> gate
      -> cascades -> phases -> entry decision
    """
    cfg = session.config
    now = _ts(now)
    _validate_frames(frames, cfg)

    closed = {tf: _closed(df, cfg.open_bar_count) for tf, df in frames.items()}
    exec_tf = cfg.execution_timeframe
    exec_df = closed[exec_tf]

    if len(exec_df) < cfg.min_bars:
        logger.debug("insufficient data: %s closed %s bars (< %s)", len(exec_df), exec_tf, cfg.min_bars)
        session.cascades.update(now)
        return PipelineResult(
            time=now,
            bias=session.phases.bias,
            phase=session.phases.phase,
            cascades=session.cascades.snapshot(),
            meta={"insufficient_data": True, "withheld": []},
        )

    withheld: List[str] = []
    struct_tf = cfg.structure_timeframe if cfg.structure_timeframe in closed else exec_tf
    struct_df = closed[struct_tf]
    htf_bias = _resolve_bias(bias, closed, cfg)

    ctx = _FrameContext(session, frames, closed, withheld, htf_bias if htf_bias != NEUTRAL else None)
    zones = ctx.zones(exec_tf)
    sweeps = ctx.sweeps(exec_tf)
    shifts = ctx.shifts(struct_tf)

    last_struct = len(struct_df) - 1
    fresh = [s for s in shifts if not s.is_stale(last_struct)]
    struct_sweeps = sweeps if struct_tf == exec_tf else _align_sweeps(sweeps, struct_df, exec_tf)
    ote_zones = _stage(
        "entry_zones", withheld, [],
        derive_ote_zones, struct_df, fresh, struct_sweeps, config=cfg.entry_zones,
    )

    last_exec = len(exec_df) - 1
    blocks = _stage("order_blocks", withheld, [], detect_order_blocks, exec_df, config=cfg.entry_zones)
    order_blocks = drop_expired(
        validate_order_blocks(blocks, shifts=fresh, sweeps=sweeps, config=cfg.entry_zones), last_exec
    )
    breakers = drop_expired(
        _stage("breakers", withheld, [], detect_breaker_blocks, exec_df, config=cfg.entry_zones), last_exec
    )

    _register_cascades(ctx)
    session.cascades.update(now)

    _apply_bias(session, htf_bias, now)
    _track_ote(session, struct_df, ote_zones)

    evidence = EntryEvidence(
        close=float(exec_df[COL_C].iloc[-1]),
        time=bar_times(exec_df).iloc[-1],
        zones=zones,
        sweeps=sweeps,
        shifts=fresh,
        ote_zones=ote_zones,
        order_blocks=order_blocks,
        breakers=breakers,
    )
    decision, verdict = _decide(session, evidence, now)

    result = PipelineResult(
        time=now,
        bias=session.phases.bias,
        phase=session.phases.phase,
        zones=zones,
        sweeps=sweeps,
        shifts=shifts,
        ote_zones=ote_zones,
        order_blocks=order_blocks,
        breakers=breakers,
        verdict=verdict,
        cascades=session.cascades.snapshot(),
        decision=decision,
        meta={"withheld": withheld, "bias_source": "argument" if bias is not None else "swings"},
    )
    if session.journal is not None:
        session.journal.append(result.to_records())
    return result


# ---------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------

def _stage(name: str, withheld: List[str], default, fn: Callable, *args, **kwargs):
    try:
        return fn(*args, **kwargs)
    except DetectionError as exc:
        logger.warning("stage %s withheld this cycle: %s", name, exc)
        withheld.append(name)
        return default


class _FrameContext:
    """Per-evaluation cache of zones / sweeps / shifts keyed by timeframe."""

    def __init__(
        self,
        session: EngineSession,
        frames: Dict[str, pd.DataFrame],
        closed: Dict[str, pd.DataFrame],
        withheld: List[str],
        htf_bias,
    ):
        self.session = session
        self.config = session.config
        self.frames = frames
        self.closed = closed
        self.withheld = withheld
        self.htf_bias = htf_bias
        self._zones: Dict[str, List[LiquidityZone]] = {}
        self._sweeps: Dict[str, List[SweepEvent]] = {}
        self._shifts: Dict[str, List[StructureShiftSignal]] = {}

    def zones(self, tf: str) -> List[LiquidityZone]:
        if tf not in self._zones:
            df = self.closed.get(tf)
            self._zones[tf] = [] if df is None else _stage(
                f"zones:{tf}", self.withheld, [],
                build_liquidity_zones, df,
                pip_size=self.config.pip_size,
                config=self.config.liquidity,
                # previous periods are selected by time; forming bars never qualify
                daily=self.frames.get("D"),
                weekly=self.frames.get("W"),
            )
        return self._zones[tf]

    def sweeps(self, tf: str) -> List[SweepEvent]:
        if tf not in self._sweeps:
            df = self.closed.get(tf)
            if df is None or df.empty:
                self._sweeps[tf] = []
            else:
                sc = self.config.sweeps
                buffer = 0.0
                if sc.adaptive_buffer:
                    calc = SweepBufferCalculator(tf, self.config.pip_size, atr_period=sc.buffer_atr_period)
                    buffer = calc.calculate(df)
                self._sweeps[tf] = _stage(
                    f"sweeps:{tf}", self.withheld, [],
                    detect_sweeps, df, self.zones(tf), buffer=buffer, config=sc,
                )
        return self._sweeps[tf]

    def shifts(self, tf: str) -> List[StructureShiftSignal]:
        if tf not in self._shifts:
            df = self.closed.get(tf)
            if df is None or df.empty:
                self._shifts[tf] = []
            else:
                exec_tf = self.config.execution_timeframe
                own = self.sweeps(exec_tf)
                aligned = own if tf == exec_tf else _align_sweeps(own, df, exec_tf)
                self._shifts[tf] = _stage(
                    f"structure:{tf}", self.withheld, [],
                    detect_structure_shifts, df,
                    config=self.config.structure,
                    htf_bias=self.htf_bias,
                    sweep_flags=sweep_flags(df, aligned),
                )
        return self._shifts[tf]


def _register_cascades(ctx: _FrameContext) -> None:
    """
    Hand each cascade the newest event per slot, once. Events are timed at
    the close of the bar that produced them.
    """
    session = ctx.session
    validator = session.cascades
    for name in CascadeName:
        d = validator.definition(name)

        htf = _latest(ctx.sweeps(d.htf))
        if htf is not None:
            t = _bar_close(htf.time, d.htf)
            if session._is_new(name, "htf", t):
                validator.register_htf_sweep(name, htf.direction, t, htf.price)

        mid = _latest(ctx.sweeps(d.mid))
        if mid is not None:
            t = _bar_close(mid.time, d.mid)
            if session._is_new(name, "mid", t):
                validator.register_mid_sweep(name, mid.direction, t, mid.price)

        ltf = _latest(ctx.shifts(d.ltf))
        if ltf is not None:
            t = _bar_close(ltf.time, d.ltf)
            if session._is_new(name, "ltf", t):
                validator.register_ltf_shift(name, ltf.direction, t)


def _resolve_bias(bias: Optional[int], closed: Dict[str, pd.DataFrame], cfg: EngineConfig) -> int:
    if bias is not None:
        if bias not in (-1, 0, 1):
            raise ValueError(f"[pipeline] bias must be -1, 0 or 1, got {bias}")
        return int(bias)
    tf = cfg.bias_timeframe if cfg.bias_timeframe in closed else cfg.execution_timeframe
    return int(swing_bias(closed[tf], pivot=pivot_for(tf)))


def _apply_bias(session: EngineSession, bias: int, now: pd.Timestamp) -> None:
    pm = session.phases
    if pm.phase in (TradingPhase.PHASE1_ACTIVE, TradingPhase.PHASE3_ACTIVE):
        if bias != pm.bias:
            logger.info("bias change to %s deferred while %s", direction_name(bias), pm.phase.value)
        return
    if bias == NEUTRAL:
        if pm.phase != TradingPhase.NO_BIAS:
            pm.invalidate_bias("bias turned neutral", time=now)
            session.ote.invalidate()
        return
    if bias != pm.bias:
        pm.set_bias(bias, reason=f"swing structure {direction_name(bias)}", time=now)
        session.ote.invalidate()


def _track_ote(session: EngineSession, struct_df: pd.DataFrame, ote_zones: List[OTEZone]) -> None:
    tracker = session.ote
    for direction in (1, -1):
        newest = next((z for z in ote_zones if z.direction == direction), None)
        current = tracker.current(direction)
        if newest is not None and (current is None or newest.time >= current.time):
            tracker.activate(newest)

    active = [z for z in (tracker.current(1), tracker.current(-1)) if z is not None]
    if not active or struct_df.empty:
        return
    times = bar_times(struct_df)
    start = int(times.searchsorted(min(z.time for z in active), side="right"))
    h = struct_df[COL_H].to_numpy(dtype=float)
    l = struct_df[COL_L].to_numpy(dtype=float)
    c = struct_df[COL_C].to_numpy(dtype=float)
    for i in range(start, len(struct_df)):
        tracker.update(time=times.iloc[i], high=h[i], low=l[i], close=c[i])


# ---------------------------------------------------------------------
# Entry decision
# ---------------------------------------------------------------------

@dataclass
class EntryEvidence:
    close: float
    time: pd.Timestamp
    zones: List[LiquidityZone]
    sweeps: List[SweepEvent]
    shifts: List[StructureShiftSignal]
    ote_zones: List[OTEZone]
    order_blocks: List[ReactionZone]
    breakers: List[ReactionZone]


def entry_tags(direction: int, ev: EntryEvidence, extra_ote: Optional[OTEZone] = None) -> List[str]:
    """
    Confirmation tags for `direction`, ordered by when the evidence formed
    so the strict sequence check sees the real order.
    """
    stamped: List[Tuple[pd.Timestamp, int, str]] = []

    shift = next((s for s in reversed(ev.shifts) if s.direction == direction), None)
    sweeps = [s for s in ev.sweeps if s.direction == direction]
    if shift is not None:
        before = [s for s in sweeps if s.time <= shift.time]
        sweeps = before or sweeps
    if sweeps:
        stamped.append((sweeps[-1].time, 0, SWEEP))
    if shift is not None:
        stamped.append((shift.time, 1, MSS))
    breaker = next((b for b in ev.breakers if b.direction == direction), None)
    if breaker is not None:
        stamped.append((breaker.time, 2, BREAKER))
    if shift is not None and shift.has_gap:
        stamped.append((shift.time, 3, IFVG))

    otes = list(ev.ote_zones) + ([extra_ote] if extra_ote is not None else [])
    if any(z.direction == direction and z.contains(ev.close) for z in otes):
        stamped.append((ev.time, 4, OTE))
    if any(ob.direction == direction and ob.contains(ev.close) for ob in ev.order_blocks):
        stamped.append((ev.time, 5, OB))

    stamped.sort(key=lambda x: (x[0], x[1]))
    return [tag for _, _, tag in stamped]


def _decide(session: EngineSession, ev: EntryEvidence, now: pd.Timestamp) -> Tuple[Optional[EntryDecision], Optional[GateVerdict]]:
    pm = session.phases
    if pm.bias == NEUTRAL:
        return None, None

    verdict: Optional[GateVerdict] = None

    if pm.can_enter_phase1(session.ote, session.cascades, now):
        direction = -pm.bias
        candidates = [
            z for z in ev.order_blocks + ev.breakers
            if z.direction == direction and z.contains(ev.close)
        ]
        tags = entry_tags(direction, ev)
        verdict = session.gate.evaluate(tags)
        if candidates and verdict.allowed:
            zone = max(candidates, key=lambda z: z.idx)
            decision = _make_decision(session, 1, direction, ev, zone.stop, 1.0, verdict, f"{zone.kind} reaction")
            if decision is not None:
                return decision, verdict

    elig = pm.can_enter_phase3(session.ote, session.cascades, now)
    if not elig.allowed:
        logger.debug("phase 3 not eligible: %s", elig.reason)
        return None, verdict

    zone = session.ote.current(pm.bias)
    tags = entry_tags(pm.bias, ev, extra_ote=zone)
    verdict = session.gate.evaluate(tags)
    if zone is None or not verdict.allowed:
        return None, verdict

    prox = session.config.phases.ote_proximity_pips * session.config.pip_size
    if not (zone.low - prox <= ev.close <= zone.high + prox):
        return None, verdict
    if elig.require_extra_confirmation and not session.strict_gate.evaluate(tags).allowed:
        logger.debug("phase 3 held: extra confirmation required after phase 1 failure")
        return None, verdict

    decision = _make_decision(
        session, 3, pm.bias, ev, zone.impulse_start, elig.risk_multiplier, verdict, f"ote {zone.source} ({elig.reason})"
    )
    return decision, verdict


def _make_decision(
    session: EngineSession,
    phase: int,
    direction: int,
    ev: EntryEvidence,
    stop: float,
    multiplier: float,
    verdict: GateVerdict,
    reason: str,
) -> Optional[EntryDecision]:
    risk = direction * (ev.close - stop)
    if not np.isfinite(risk) or risk <= 0:
        logger.debug("entry skipped: stop %.5f on the wrong side of %.5f", stop, ev.close)
        return None
    active = TradingPhase.PHASE1_ACTIVE if phase == 1 else TradingPhase.PHASE3_ACTIVE
    risk_pct = min(session.phases.risk_percent(active, multiplier), session.phases.daily_risk_left(ev.time))
    if risk_pct <= 0:
        logger.debug("entry skipped: daily risk budget used up")
        return None
    rr = session.phases.reward_risk(active)
    beyond = [z for z in active_zones(ev.zones, ev.time) if direction * (z.mid - ev.close) > 0]
    anchor = opposite_liquidity(beyond, ev.close, for_buy=direction == 1)
    return EntryDecision(
        phase=phase,
        direction=direction,
        time=ev.time,
        entry=ev.close,
        stop=float(stop),
        target=ev.close + direction * rr * risk,
        risk_pct=risk_pct,
        risk_multiplier=float(multiplier),
        reward_risk=rr,
        tags=verdict.tags,
        reason=reason,
        liquidity_target=anchor.mid if anchor is not None else None,
    )


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------

def _validate_frames(frames: Dict[str, pd.DataFrame], cfg: EngineConfig) -> None:
    if cfg.execution_timeframe not in frames:
        raise BarDataError(f"[pipeline] Missing execution timeframe frame '{cfg.execution_timeframe}'")
    for tf, df in frames.items():
        try:
            require_timeframe(tf)
        except ValueError as exc:
            raise BarDataError(f"[pipeline] {exc}") from exc
        validate_bars(df, where=f"pipeline:{tf}")


def _closed(df: pd.DataFrame, open_bar_count: int) -> pd.DataFrame:
    if open_bar_count <= 0:
        return df
    keep = max(0, len(df) - open_bar_count)
    return df.iloc[:keep].reset_index(drop=True)


def _align_sweeps(sweeps: List[SweepEvent], target: pd.DataFrame, source_tf: str) -> List[SweepEvent]:
    """Re-index sweeps onto the last `target` bar inside the sweeping bar."""
    if not sweeps or target.empty:
        return []
    times = bar_times(target)
    span = pd.Timedelta(seconds=require_timeframe(source_tf).seconds)
    out = []
    for s in sweeps:
        pos = int(times.searchsorted(s.time + span, side="left")) - 1
        if pos >= 0 and times.iloc[pos] >= s.time:
            out.append(replace(s, idx=pos))
    return out


def _latest(events):
    return max(events, key=lambda e: e.time) if events else None


def _bar_close(t: pd.Timestamp, tf: str) -> pd.Timestamp:
    return t + pd.Timedelta(seconds=require_timeframe(tf).seconds)


def _ts(value) -> pd.Timestamp:
    t = pd.Timestamp(value)
    return t.tz_localize("UTC") if t.tzinfo is None else t

import logging

import numpy as np
import pandas as pd
import pytest

from smc_engine.common.errors import BarDataError
from smc_engine.execution.cascade import CascadeName
from smc_engine.execution.phase_manager import TradingPhase
from smc_engine.liquidity.zones import make_zone
from smc_engine.pipeline.orchestrator import (
    EngineSession,
    EntryDecision,
    EntryEvidence,
    _decide,
    entry_tags,
    evaluate_bar,
)
from smc_engine.run_replay import build_frames
from smc_engine.zones.ote import make_ote_zone
from smc_engine.zones.reaction_zones import ReactionZone

T0 = pd.Timestamp("2025-01-06 00:00", tz="UTC")


def _bars(n=80, minutes=15):
    rows = []
    prev = 1.1000
    for k in range(n):
        close = 1.1000 + 0.0020 * np.sin(k / 4.0) + 0.00002 * k
        rows.append({
            "time": T0 + pd.Timedelta(minutes=minutes * k),
            "o": prev,
            "h": max(prev, close) + 0.0003,
            "l": min(prev, close) - 0.0003,
            "c": close,
        })
        prev = close
    return pd.DataFrame(rows)


def _now(df, minutes=15):
    return df["time"].iloc[-1] + pd.Timedelta(minutes=minutes)


class _Journal:
    def __init__(self):
        self.rows = []

    def append(self, records):
        self.rows.extend(records)


class _Recorder:
    def __init__(self):
        self.outcomes = []

    def record_outcome(self, outcome):
        self.outcomes.append(outcome)


class _Gateway:
    def __init__(self, ref):
        self.ref = ref
        self.submitted = []

    def submit(self, decision):
        self.submitted.append(decision)
        return self.ref


# ---------------------------------------------------------------------
# evaluate_bar
# ---------------------------------------------------------------------

def test_insufficient_data_returns_empty_result():
    df = _bars(20)
    res = evaluate_bar(EngineSession(), {"M15": df}, _now(df), bias=1)
    assert res.meta["insufficient_data"]
    assert res.decision is None
    assert res.zones == [] and res.shifts == []
    assert set(res.cascades) == set(CascadeName)
    assert res.phase == TradingPhase.NO_BIAS


@pytest.mark.parametrize("frames", [
    {"H1": _bars(40, minutes=60)},
    {"M15": _bars(40), "M7": _bars(40)},
    {"M15": _bars(40).drop(columns=["l"])},
    {"M15": _bars(40).iloc[::-1].reset_index(drop=True)},
])
def test_bad_frames_raise(frames):
    with pytest.raises(BarDataError):
        evaluate_bar(EngineSession(), frames, T0 + pd.Timedelta(days=1))


def test_same_bars_same_result():
    df = _bars()
    a = EngineSession().evaluate({"M15": df}, _now(df), bias=1)
    b = EngineSession().evaluate({"M15": df}, _now(df), bias=1)
    assert a.to_records() == b.to_records()
    assert a.meta["bias_source"] == "argument"
    assert a.bias == 1
    assert a.meta["withheld"] == []


def test_open_bars_are_ignored():
    df = _bars()
    res = EngineSession().evaluate({"M15": df}, _now(df), bias=1)
    last_bar = df["time"].iloc[-3]
    assert all(z.start <= last_bar for z in res.zones)
    assert all(s.time <= last_bar for s in res.sweeps)


def test_journal_receives_evaluation_rows():
    df = _bars()
    journal = _Journal()
    session = EngineSession(journal=journal)
    session.evaluate({"M15": df}, _now(df), bias=-1)
    assert journal.rows[0]["kind"] == "evaluation"
    assert journal.rows[0]["bias"] == -1
    assert journal.rows[0]["phase"] == TradingPhase.PHASE1_PENDING.value


def test_neutral_bias_clears_cycle():
    df = _bars()
    session = EngineSession()
    session.evaluate({"M15": df}, _now(df), bias=1)
    assert session.phases.phase == TradingPhase.PHASE1_PENDING
    res = session.evaluate({"M15": df}, _now(df), bias=0)
    assert res.phase == TradingPhase.NO_BIAS
    assert res.decision is None


def test_broken_prices_withhold_structure_stage():
    df = _bars()
    df.loc[5, "h"] = np.nan
    res = EngineSession().evaluate({"M15": df}, _now(df), bias=1)
    assert "structure:M15" in res.meta["withheld"]
    assert res.shifts == []
    assert res.to_records()[0]["withheld"] == res.meta["withheld"]


def test_bad_bias_argument():
    df = _bars()
    with pytest.raises(ValueError):
        EngineSession().evaluate({"M15": df}, _now(df), bias=2)


def test_reference_levels_active_with_htf_frames():
    df = _bars(6 * 96)
    frames = build_frames(df, "M15", ["M15", "D", "W"])
    res = EngineSession().evaluate(frames, _now(df), bias=1)

    last = df["time"].iloc[-3]
    prev_day = df[df["time"].dt.floor("D") == last.floor("D") - pd.Timedelta(days=1)]
    pdh = next(z for z in res.zones if z.label == "PDH")
    pdl = next(z for z in res.zones if z.label == "PDL")
    assert pdh.is_active(last) and pdl.is_active(last)
    assert pdh.high == pytest.approx(prev_day["h"].max() + 0.0001)
    assert pdl.low == pytest.approx(prev_day["l"].min() - 0.0001)


# ---------------------------------------------------------------------
# Entry decisions
# ---------------------------------------------------------------------

EVAL_T = T0 + pd.Timedelta(hours=2)


def _evidence(close, **kw):
    base = dict(close=close, time=EVAL_T, zones=[], sweeps=[], shifts=[], ote_zones=[], order_blocks=[], breakers=[])
    base.update(kw)
    return EntryEvidence(**base)


@pytest.fixture
def bullish_session():
    session = EngineSession()
    session.phases.set_bias(1, time=T0)
    session.ote.activate(make_ote_zone(1, 1.1000, 1.1100, time=T0, idx=0, source="structure_shift"))
    return session


def test_phase3_decision_from_ote(bullish_session):
    target = make_zone(T0, T0 + pd.Timedelta(days=1), 1.1148, 1.1152, "supply", "PDH")
    decision, verdict = _decide(bullish_session, _evidence(1.1030, zones=[target]), EVAL_T)

    assert verdict.allowed
    assert decision.phase == 3
    assert decision.direction == 1
    assert decision.stop == pytest.approx(1.1000)
    assert decision.risk == pytest.approx(0.0030)
    assert decision.target == pytest.approx(1.1030 + 3 * 0.0030)
    assert decision.risk_pct == pytest.approx(0.9)
    assert decision.liquidity_target == pytest.approx(1.1150)
    assert decision.tags == ("OTE",)


def test_phase3_waits_for_price_near_ote(bullish_session):
    decision, _ = _decide(bullish_session, _evidence(1.1090), EVAL_T)
    assert decision is None


def test_phase3_after_failure_needs_structure_shift(bullish_session):
    bullish_session.phases.on_phase1_entry()
    bullish_session.phases.on_phase1_exit(False, -5.0)
    decision, verdict = _decide(bullish_session, _evidence(1.1030), EVAL_T)
    assert verdict.allowed
    assert decision is None


def _complete_cascade(session):
    cv = session.cascades
    cv.register_htf_sweep(CascadeName.INTRADAY_EXECUTION, 1, EVAL_T - pd.Timedelta(minutes=40))
    cv.register_mid_sweep(CascadeName.INTRADAY_EXECUTION, 1, EVAL_T - pd.Timedelta(minutes=30))
    cv.register_ltf_shift(CascadeName.INTRADAY_EXECUTION, -1, EVAL_T - pd.Timedelta(minutes=10))


def test_phase1_counter_trend_from_order_block():
    session = EngineSession()
    session.phases.set_bias(1, time=T0)
    _complete_cascade(session)
    ob = ReactionZone(kind="order_block", direction=-1, idx=10, time=T0, low=1.1040, high=1.1060,
                      stop=1.1065, liquidity_grab=True, valid_until_idx=600)

    decision, _ = _decide(session, _evidence(1.1050, order_blocks=[ob]), EVAL_T)
    assert decision.phase == 1
    assert decision.direction == -1
    assert decision.target == pytest.approx(1.1050 - 2 * 0.0015)
    assert decision.risk_pct == pytest.approx(0.2)
    assert decision.liquidity_target is None


def test_daily_risk_budget_caps_decision(bullish_session):
    pm = bullish_session.phases
    pm.risk_day = EVAL_T.floor("D")
    pm.risk_used_pct = pm.config.max_daily_risk_pct - 0.5
    decision, _ = _decide(bullish_session, _evidence(1.1030), EVAL_T)
    assert decision.risk_pct == pytest.approx(0.5)

    pm.risk_used_pct = pm.config.max_daily_risk_pct
    decision, _ = _decide(bullish_session, _evidence(1.1030), EVAL_T)
    assert decision is None


def test_entry_tags_follow_event_order():
    sweep_t = EVAL_T - pd.Timedelta(minutes=45)
    breaker = ReactionZone(kind="breaker", direction=1, idx=3, time=EVAL_T - pd.Timedelta(minutes=15),
                           low=1.0, high=1.2, stop=1.0, liquidity_grab=False, valid_until_idx=500)

    class _S:
        def __init__(self, direction, time, has_gap=False):
            self.direction, self.time, self.has_gap = direction, time, has_gap

    ev = _evidence(
        1.1030,
        sweeps=[_S(1, sweep_t)],
        shifts=[_S(1, EVAL_T - pd.Timedelta(minutes=30), has_gap=True)],
        breakers=[breaker],
    )
    assert entry_tags(1, ev) == ["SWEEP", "MSS", "IFVG", "BREAKER"]
    assert entry_tags(-1, ev) == []


# ---------------------------------------------------------------------
# Fills and exits
# ---------------------------------------------------------------------

def test_execute_and_record_exit(bullish_session):
    recorder = _Recorder()
    bullish_session.recorder = recorder
    bullish_session.gateway = _Gateway("ref-1")
    decision, _ = _decide(bullish_session, _evidence(1.1030), EVAL_T)

    assert bullish_session.execute(decision) == "ref-1"
    assert bullish_session.phases.phase == TradingPhase.PHASE3_ACTIVE

    bullish_session.record_exit(3, True, 42.0, EVAL_T + pd.Timedelta(hours=3))
    assert bullish_session.phases.phase == TradingPhase.CYCLE_COMPLETE
    out = recorder.outcomes[0]
    assert (out.phase, out.direction, out.hit_tp, out.pnl) == ("phase3", 1, True, 42.0)
    assert out.tags == ("OTE",)
    assert out.day == "2025-01-06"


def test_unfilled_order_keeps_phase(bullish_session):
    bullish_session.gateway = _Gateway(None)
    decision, _ = _decide(bullish_session, _evidence(1.1030), EVAL_T)
    assert bullish_session.execute(decision) is None
    assert bullish_session.phases.phase == TradingPhase.PHASE1_PENDING


def test_execute_without_gateway(bullish_session):
    decision, _ = _decide(bullish_session, _evidence(1.1030), EVAL_T)
    with pytest.raises(RuntimeError):
        bullish_session.execute(decision)


def test_bias_flip_waits_for_open_trade(bullish_session):
    recorder = _Recorder()
    bullish_session.recorder = recorder
    decision, _ = _decide(bullish_session, _evidence(1.1030), EVAL_T)
    bullish_session.confirm_entry(decision)

    df = _bars()
    res = bullish_session.evaluate({"M15": df}, _now(df), bias=-1)
    assert res.phase == TradingPhase.PHASE3_ACTIVE
    assert res.bias == 1

    bullish_session.record_exit(3, False, -30.0, _now(df))
    assert bullish_session.phases.phase == TradingPhase.CYCLE_COMPLETE
    assert recorder.outcomes[0].direction == 1

    res = bullish_session.evaluate({"M15": df}, _now(df), bias=-1)
    assert res.bias == -1
    assert bullish_session.phases.phase1_attempts == 0


def test_exit_after_cycle_reset_is_still_recorded(caplog):
    session = EngineSession(recorder=_Recorder())
    session.phases.set_bias(1, time=T0)
    entry = EntryDecision(
        phase=1, direction=-1, time=EVAL_T, entry=1.1050, stop=1.1065, target=1.1020,
        risk_pct=0.2, risk_multiplier=1.0, reward_risk=2.0, tags=("OB",),
    )
    session.confirm_entry(entry)
    session.phases.set_bias(-1, time=EVAL_T)

    caplog.set_level(logging.WARNING, logger="smc_engine.pipeline.orchestrator")
    session.record_exit(1, False, -10.0, EVAL_T + pd.Timedelta(hours=1))

    assert session.phases.phase == TradingPhase.PHASE1_PENDING
    assert session.phases.phase1_failures == 0
    assert session.open_entry is None
    out = session.recorder.outcomes[0]
    assert (out.phase, out.direction, out.pnl, out.tags) == ("phase1", -1, -10.0, ("OB",))
    assert "without a phase transition" in caplog.text

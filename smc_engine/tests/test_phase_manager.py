import pandas as pd
import pytest

from smc_engine.common.errors import PhaseTransitionError
from smc_engine.execution.cascade import CascadeName, CascadeValidator
from smc_engine.execution.phase_manager import (
    HISTORY_LIMIT,
    Phase1Outcome,
    PhaseConfig,
    PhaseManager,
    TradingPhase,
)
from smc_engine.zones.ote import make_ote_zone
from smc_engine.zones.ote_tracker import OTETracker

T = pd.Timestamp("2025-01-06 10:00", tz="UTC")
NOW = T + pd.Timedelta(minutes=30)


def _at(minutes):
    return T + pd.Timedelta(minutes=minutes)


@pytest.fixture
def cascades():
    cv = CascadeValidator()
    cv.register_htf_sweep(CascadeName.INTRADAY_EXECUTION, 1, T)
    cv.register_mid_sweep(CascadeName.INTRADAY_EXECUTION, 1, _at(10))
    cv.register_ltf_shift(CascadeName.INTRADAY_EXECUTION, -1, _at(20))
    return cv


@pytest.fixture
def ote():
    tr = OTETracker()
    tr.activate(make_ote_zone(1, 1.10000, 1.11000, time=T, idx=0, source="structure_shift"))
    return tr


def _bullish():
    pm = PhaseManager()
    pm.set_bias(1, reason="test", time=T)
    return pm


def test_bias_starts_phase1_pending():
    pm = _bullish()
    assert pm.phase == TradingPhase.PHASE1_PENDING
    assert pm.bias == 1
    assert [(h.from_phase, h.to_phase) for h in pm.history] == [
        (TradingPhase.NO_BIAS, TradingPhase.PHASE1_PENDING)
    ]


@pytest.mark.parametrize("bad", [0, 2])
def test_bias_must_be_directional(bad):
    with pytest.raises(ValueError):
        PhaseManager().set_bias(bad)


def test_phase1_gates(ote, cascades):
    pm = _bullish()
    assert pm.can_enter_phase1(OTETracker(), cascades, NOW)
    # untouched ote does not block phase 1
    assert pm.can_enter_phase1(ote, cascades, NOW)
    assert not pm.can_enter_phase1(ote, CascadeValidator(), NOW)

    ote.update(time=_at(5), high=1.11, low=1.1035, close=1.105)
    assert not pm.can_enter_phase1(ote, cascades, NOW)


def test_two_phase1_failures_end_the_cycle(ote, cascades):
    pm = _bullish()
    pm.on_phase1_entry(time=_at(30))
    pm.on_phase1_exit(False, -10.0, time=_at(40))
    assert pm.phase == TradingPhase.PHASE3_PENDING

    elig = pm.can_enter_phase3(ote)
    assert elig.allowed
    assert elig.outcome == Phase1Outcome.ONE_FAILURE
    assert elig.risk_multiplier == pytest.approx(0.5)
    assert elig.require_extra_confirmation

    # a second counter-trend attempt is the caller's call
    assert not pm.can_enter_phase1(OTETracker(), cascades, _at(45))
    pm.on_phase1_entry(time=_at(45))
    assert pm.phase == TradingPhase.PHASE1_ACTIVE
    pm.on_phase1_exit(False, -10.0, time=_at(55))
    assert pm.phase == TradingPhase.CYCLE_COMPLETE
    assert pm.pnl["phase1"] == pytest.approx(-20.0)

    ote.update(time=_at(60), high=1.11, low=1.1030, close=1.104)
    assert not pm.can_enter_phase3(ote).allowed
    assert not pm.can_enter_phase1(OTETracker(), cascades, _at(60))


def test_first_failure_moves_to_phase3_pending_even_with_attempts_left():
    pm = _bullish()
    assert pm.config.phase1_max_attempts == 2
    pm.on_phase1_entry()
    pm.on_phase1_exit(False)
    assert pm.phase == TradingPhase.PHASE3_PENDING
    assert [h.to_phase for h in pm.history][-2:] == [TradingPhase.PHASE1_FAILED, TradingPhase.PHASE3_PENDING]


def test_phase1_reentry_needs_exactly_one_failure():
    pm = _bullish()
    pm.on_phase1_entry()
    pm.on_phase1_exit(True, 20.0)
    with pytest.raises(PhaseTransitionError):
        pm.on_phase1_entry()
    assert pm.phase == TradingPhase.PHASE3_PENDING


def test_phase1_success_then_phase3(ote):
    pm = _bullish()
    pm.on_phase1_entry()
    pm.on_phase1_exit(True, 20.0)
    assert pm.phase == TradingPhase.PHASE3_PENDING

    elig = pm.can_enter_phase3(ote)
    assert elig.outcome == Phase1Outcome.SUCCESS
    assert elig.risk_multiplier == pytest.approx(1.5)
    assert not elig.require_extra_confirmation

    pm.on_phase3_entry()
    assert not pm.can_enter_phase3(ote).allowed
    pm.on_phase3_exit(True, 60.0)
    assert pm.phase == TradingPhase.CYCLE_COMPLETE
    assert pm.pnl == {"phase1": 20.0, "phase3": 60.0}


def test_direct_phase3_without_phase1(ote):
    elig = _bullish().can_enter_phase3(ote)
    assert elig.allowed
    assert elig.outcome == Phase1Outcome.NO_PHASE1
    assert elig.risk_multiplier == pytest.approx(1.5)


def test_phase3_needs_ote_for_bias(ote):
    pm = PhaseManager()
    pm.set_bias(-1)
    assert pm.can_enter_phase3(ote).reason == "no valid ote zone"


def test_strict_phase3_checks_are_opt_in(ote, cascades):
    pm = PhaseManager(PhaseConfig(phase3_require_ote_touch=True, phase3_require_cascade=True))
    pm.set_bias(1)
    assert pm.can_enter_phase3(ote).reason == "ote not touched"
    ote.update(time=_at(5), high=1.11, low=1.1035, close=1.105)
    assert pm.can_enter_phase3(ote, CascadeValidator(), NOW).reason == "execution cascade not confirmed"
    assert pm.can_enter_phase3(ote, cascades, NOW).allowed


def test_invalid_transition_raises():
    pm = PhaseManager()
    with pytest.raises(PhaseTransitionError):
        pm.on_phase1_entry()
    pm.set_bias(1)
    with pytest.raises(PhaseTransitionError):
        pm.on_phase3_exit(True)


def test_rebias_resets_counters():
    pm = _bullish()
    pm.on_phase1_entry()
    pm.set_bias(-1, reason="flip")
    assert pm.phase == TradingPhase.PHASE1_PENDING
    assert pm.bias == -1
    assert pm.phase1_attempts == 0
    assert pm.history[-2].to_phase == TradingPhase.NO_BIAS


def test_invalidate_bias_returns_to_no_bias():
    pm = _bullish()
    pm.invalidate_bias("neutral")
    assert pm.phase == TradingPhase.NO_BIAS
    assert pm.bias == 0
    pm.invalidate_bias()
    assert pm.phase == TradingPhase.NO_BIAS


def test_risk_and_reward_table():
    pm = PhaseManager()
    assert pm.risk_percent(TradingPhase.PHASE1_ACTIVE) == pytest.approx(0.2)
    assert pm.risk_percent(TradingPhase.PHASE3_ACTIVE, 1.5) == pytest.approx(0.9)
    assert pm.risk_percent(TradingPhase.NO_BIAS) == pytest.approx(0.4)
    assert pm.reward_risk(TradingPhase.PHASE1_PENDING) == pytest.approx(2.0)
    assert pm.reward_risk(TradingPhase.PHASE3_PENDING) == pytest.approx(3.0)
    assert pm.reward_risk(TradingPhase.CYCLE_COMPLETE) == pytest.approx(2.0)


def test_summary_and_snapshot():
    pm = _bullish()
    assert pm.summary().startswith("phase=phase1_pending bias=bullish")
    assert pm.snapshot()["phase1_attempts"] == 0


def test_daily_risk_budget():
    pm = PhaseManager(PhaseConfig(max_daily_risk_pct=0.5))
    assert pm.daily_risk_left(T) == pytest.approx(0.5)
    pm.set_bias(1, time=T)
    pm.on_phase1_entry(time=T, risk_pct=0.2)
    assert pm.daily_risk_left(_at(60)) == pytest.approx(0.3)

    # spent risk survives a re-bias but not a new day
    pm.set_bias(-1, time=_at(90))
    pm.on_phase1_entry(time=_at(90), risk_pct=0.4)
    assert pm.daily_risk_left(_at(120)) == pytest.approx(0.0)
    assert pm.daily_risk_left(T + pd.Timedelta(days=1)) == pytest.approx(0.5)


def test_history_is_bounded():
    pm = PhaseManager()
    for k in range(HISTORY_LIMIT):
        pm.set_bias(1 if k % 2 else -1)
    assert len(pm.history) == HISTORY_LIMIT
    assert pm.history[-1].to_phase == TradingPhase.PHASE1_PENDING

# smc_engine/execution/phase_manager.py
"""
Phase state machine for one directional-bias cycle.

    NO_BIAS -> PHASE1_PENDING -> PHASE1_ACTIVE -> PHASE1_SUCCESS -> PHASE3_PENDING
                                               -> PHASE1_FAILED  -> PHASE3_PENDING  (1st failure, reduced risk)
                                                                 -> CYCLE_COMPLETE  (2nd failure)
    PHASE3_PENDING -> PHASE1_ACTIVE (caller re-entry after exactly one failure)
    PHASE1_PENDING / PHASE3_PENDING -> PHASE3_ACTIVE -> PHASE3_COMPLETE -> CYCLE_COMPLETE
    any state -> NO_BIAS (reset / invalidation)

Phase 1 is the counter-trend attempt, Phase 3 the with-trend attempt from
the OTE zone. Transitions outside the graph raise PhaseTransitionError.
"""
from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, Optional, Set

import pandas as pd

from smc_engine.common.errors import PhaseTransitionError
from smc_engine.common.types import NEUTRAL, Direction, direction_name
from smc_engine.execution.cascade import CascadeName, CascadeValidator
from smc_engine.zones.ote import OTETouchLevel
from smc_engine.zones.ote_tracker import OTETracker

logger = logging.getLogger(__name__)


class TradingPhase(str, Enum):
    NO_BIAS = "no_bias"
    PHASE1_PENDING = "phase1_pending"
    PHASE1_ACTIVE = "phase1_active"
    PHASE1_SUCCESS = "phase1_success"
    PHASE1_FAILED = "phase1_failed"
    PHASE3_PENDING = "phase3_pending"
    PHASE3_ACTIVE = "phase3_active"
    PHASE3_COMPLETE = "phase3_complete"
    CYCLE_COMPLETE = "cycle_complete"


P = TradingPhase

PHASE_TRANSITIONS: Dict[TradingPhase, Set[TradingPhase]] = {
    P.NO_BIAS: {P.PHASE1_PENDING},
    P.PHASE1_PENDING: {P.PHASE1_ACTIVE, P.PHASE3_ACTIVE, P.NO_BIAS},
    P.PHASE1_ACTIVE: {P.PHASE1_SUCCESS, P.PHASE1_FAILED, P.NO_BIAS},
    P.PHASE1_SUCCESS: {P.PHASE3_PENDING, P.NO_BIAS},
    P.PHASE1_FAILED: {P.PHASE3_PENDING, P.CYCLE_COMPLETE, P.NO_BIAS},
    P.PHASE3_PENDING: {P.PHASE3_ACTIVE, P.PHASE1_ACTIVE, P.NO_BIAS},
    P.PHASE3_ACTIVE: {P.PHASE3_COMPLETE, P.NO_BIAS},
    P.PHASE3_COMPLETE: {P.CYCLE_COMPLETE, P.NO_BIAS},
    P.CYCLE_COMPLETE: {P.NO_BIAS},
}

MAX_CONSECUTIVE_PHASE1_FAILURES = 2
HISTORY_LIMIT = 100


class Phase1Outcome(str, Enum):
    NO_PHASE1 = "no_phase1"
    SUCCESS = "after_phase1_success"
    ONE_FAILURE = "after_phase1_failure_1x"


@dataclass
class PhaseConfig:
    phase1_risk_pct: float = 0.2
    phase1_reward_risk: float = 2.0
    phase1_max_attempts: int = 2
    phase3_risk_pct: float = 0.6
    phase3_reward_risk: float = 3.0
    phase3_max_attempts: int = 1
    base_risk_pct: float = 0.4
    default_reward_risk: float = 2.0
    max_daily_risk_pct: float = 6.0
    ote_proximity_pips: float = 5.0

    # (multiplier, extra confirmation) keyed by the Phase-1 outcome
    phase3_risk_table: Dict[Phase1Outcome, tuple] = field(default_factory=lambda: {
        Phase1Outcome.NO_PHASE1: (1.5, False),
        Phase1Outcome.SUCCESS: (1.5, False),
        Phase1Outcome.ONE_FAILURE: (0.5, True),
    })

    # stricter Phase 3 checks, both off by default
    phase3_require_cascade: bool = False
    phase3_require_ote_touch: bool = False


@dataclass(frozen=True)
class Phase3Eligibility:
    allowed: bool
    risk_multiplier: float = 1.0
    require_extra_confirmation: bool = False
    outcome: Optional[Phase1Outcome] = None
    reason: str = ""


@dataclass(frozen=True)
class PhaseTransition:
    from_phase: TradingPhase
    to_phase: TradingPhase
    time: Optional[pd.Timestamp]
    reason: str


class PhaseManager:
    def __init__(self, config: Optional[PhaseConfig] = None):
        self.config = config or PhaseConfig()
        self.phase = TradingPhase.NO_BIAS
        self.bias: Direction = NEUTRAL
        self.phase1_attempts = 0
        self.phase1_failures = 0
        self.phase1_hit_tp = False
        self.phase3_attempts = 0
        self.bias_set_at: Optional[pd.Timestamp] = None
        self.history: Deque[PhaseTransition] = deque(maxlen=HISTORY_LIMIT)
        self.pnl: Dict[str, float] = {}
        # risk committed on the current UTC day; survives re-bias
        self.risk_day: Optional[pd.Timestamp] = None
        self.risk_used_pct = 0.0

    # ----------------------------
    # Bias lifecycle
    # ----------------------------

    def set_bias(self, direction: int, *, reason: str = "", time=None) -> None:
        if direction == NEUTRAL:
            raise ValueError("[phase] neutral bias cannot start a cycle; use invalidate_bias()")
        if direction not in (1, -1):
            raise ValueError(f"[phase] bias must be 1 or -1, got {direction}")

        if self.phase != TradingPhase.NO_BIAS:
            self._transition(TradingPhase.NO_BIAS, time, f"re-bias: {reason}")
        self._clear_counters()
        self.bias = direction
        self.bias_set_at = time
        self._transition(TradingPhase.PHASE1_PENDING, time, f"bias {direction_name(direction)} ({reason or 'unspecified'})")

    def invalidate_bias(self, reason: str = "invalidated", *, time=None) -> None:
        self.reset_cycle(reason=reason, time=time)

    def reset_cycle(self, *, reason: str = "reset", time=None) -> None:
        if self.phase != TradingPhase.NO_BIAS:
            self._transition(TradingPhase.NO_BIAS, time, reason)
        self.bias = NEUTRAL
        self._clear_counters()

    # ----------------------------
    # Phase 1
    # ----------------------------

    def can_enter_phase1(self, ote: OTETracker, cascades: CascadeValidator, now) -> bool:
        if self.phase != TradingPhase.PHASE1_PENDING or self.bias == NEUTRAL:
            return False
        if self.phase1_attempts >= self.config.phase1_max_attempts:
            logger.debug("phase 1 blocked: max attempts %s reached", self.phase1_attempts)
            return False
        if ote.has_valid_ote(self.bias) and ote.touch_level(self.bias) >= OTETouchLevel.OPTIMAL:
            logger.debug("phase 1 blocked: ote already touched")
            return False
        if not cascades.is_valid(CascadeName.INTRADAY_EXECUTION, now):
            logger.debug("phase 1 blocked: execution cascade not confirmed")
            return False
        return True

    def on_phase1_entry(self, *, time=None, risk_pct: float = 0.0) -> None:
        """
        Register a Phase-1 fill. From PHASE3_PENDING this is a caller-driven
        second attempt and is only accepted after exactly one failure.
        """
        if self.phase == TradingPhase.PHASE3_PENDING and (self.phase1_hit_tp or self.phase1_failures != 1):
            raise PhaseTransitionError("[phase] phase 1 re-entry needs exactly one prior phase 1 failure")
        self._transition(TradingPhase.PHASE1_ACTIVE, time, f"phase 1 entry #{self.phase1_attempts + 1}")
        self.phase1_attempts += 1
        self._commit_risk(risk_pct, time)

    def on_phase1_exit(self, hit_tp: bool, pnl: float = 0.0, *, time=None) -> None:
        self.pnl["phase1"] = self.pnl.get("phase1", 0.0) + float(pnl)
        if hit_tp:
            self._transition(TradingPhase.PHASE1_SUCCESS, time, f"phase 1 TP ({pnl:+.2f})")
            self.phase1_hit_tp = True
            self.phase1_failures = 0
            self._transition(TradingPhase.PHASE3_PENDING, time, "phase 1 success")
            return

        self._transition(TradingPhase.PHASE1_FAILED, time, f"phase 1 SL ({pnl:+.2f})")
        self.phase1_failures += 1
        if self.phase1_failures >= MAX_CONSECUTIVE_PHASE1_FAILURES:
            self._transition(TradingPhase.CYCLE_COMPLETE, time, f"{self.phase1_failures}x phase 1 failures")
        else:
            self._transition(TradingPhase.PHASE3_PENDING, time, "phase 3 allowed at reduced risk")

    # ----------------------------
    # Phase 3
    # ----------------------------

    def can_enter_phase3(
        self,
        ote: OTETracker,
        cascades: Optional[CascadeValidator] = None,
        now=None,
    ) -> Phase3Eligibility:
        cfg = self.config
        if self.phase not in (TradingPhase.PHASE3_PENDING, TradingPhase.PHASE1_PENDING):
            return Phase3Eligibility(False, reason=f"wrong phase ({self.phase.value})")
        if self.bias == NEUTRAL:
            return Phase3Eligibility(False, reason="no bias")
        if self.phase1_failures >= MAX_CONSECUTIVE_PHASE1_FAILURES:
            return Phase3Eligibility(False, reason=f"{self.phase1_failures}x phase 1 failures")
        if self.phase3_attempts >= cfg.phase3_max_attempts:
            return Phase3Eligibility(False, reason="phase 3 attempts exhausted")
        if not ote.has_valid_ote(self.bias):
            return Phase3Eligibility(False, reason="no valid ote zone")
        if cfg.phase3_require_ote_touch and ote.touch_level(self.bias) < OTETouchLevel.OPTIMAL:
            return Phase3Eligibility(False, reason="ote not touched")
        if cfg.phase3_require_cascade and (
            cascades is None or now is None or not cascades.is_valid(CascadeName.INTRADAY_EXECUTION, now)
        ):
            return Phase3Eligibility(False, reason="execution cascade not confirmed")

        outcome = self.phase1_outcome()
        if outcome is None:
            return Phase3Eligibility(False, reason="phase 1 outcome unknown")
        multiplier, extra = cfg.phase3_risk_table[outcome]
        return Phase3Eligibility(True, float(multiplier), bool(extra), outcome, reason=outcome.value)

    def phase1_outcome(self) -> Optional[Phase1Outcome]:
        if self.phase1_attempts == 0:
            return Phase1Outcome.NO_PHASE1
        if self.phase1_hit_tp:
            return Phase1Outcome.SUCCESS
        if self.phase1_failures == 1:
            return Phase1Outcome.ONE_FAILURE
        return None

    def on_phase3_entry(self, *, time=None, risk_pct: float = 0.0) -> None:
        self._transition(TradingPhase.PHASE3_ACTIVE, time, "phase 3 entry")
        self.phase3_attempts += 1
        self._commit_risk(risk_pct, time)

    def on_phase3_exit(self, hit_tp: bool, pnl: float = 0.0, *, time=None) -> None:
        self.pnl["phase3"] = self.pnl.get("phase3", 0.0) + float(pnl)
        self._transition(TradingPhase.PHASE3_COMPLETE, time, f"phase 3 {'TP' if hit_tp else 'SL'} ({pnl:+.2f})")
        self._transition(TradingPhase.CYCLE_COMPLETE, time, "cycle complete")

    # ----------------------------
    # Risk lookups
    # ----------------------------

    def risk_percent(self, phase: TradingPhase, multiplier: float = 1.0) -> float:
        cfg = self.config
        if phase in (TradingPhase.PHASE1_PENDING, TradingPhase.PHASE1_ACTIVE):
            return cfg.phase1_risk_pct * multiplier
        if phase in (TradingPhase.PHASE3_PENDING, TradingPhase.PHASE3_ACTIVE):
            return cfg.phase3_risk_pct * multiplier
        return cfg.base_risk_pct

    def daily_risk_left(self, time=None) -> float:
        """Unused part of `max_daily_risk_pct` for the UTC day of `time`."""
        cap = self.config.max_daily_risk_pct
        if time is None or self.risk_day is None or _utc_day(time) != self.risk_day:
            return cap
        return max(0.0, cap - self.risk_used_pct)

    def reward_risk(self, phase: TradingPhase) -> float:
        cfg = self.config
        if phase in (TradingPhase.PHASE1_PENDING, TradingPhase.PHASE1_ACTIVE):
            return cfg.phase1_reward_risk
        if phase in (TradingPhase.PHASE3_PENDING, TradingPhase.PHASE3_ACTIVE):
            return cfg.phase3_reward_risk
        return cfg.default_reward_risk

    def summary(self) -> str:
        return (
            f"phase={self.phase.value} bias={direction_name(self.bias)} "
            f"p1={self.phase1_attempts}x (fail {self.phase1_failures}) p3={self.phase3_attempts}x"
        )

    def snapshot(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "bias": self.bias,
            "phase1_attempts": self.phase1_attempts,
            "phase1_failures": self.phase1_failures,
            "phase3_attempts": self.phase3_attempts,
        }

    # ----------------------------
    # Internals
    # ----------------------------

    def _clear_counters(self) -> None:
        self.phase1_attempts = 0
        self.phase1_failures = 0
        self.phase1_hit_tp = False
        self.phase3_attempts = 0

    def _commit_risk(self, risk_pct: float, time) -> None:
        if time is None or risk_pct <= 0:
            return
        day = _utc_day(time)
        if day != self.risk_day:
            self.risk_day = day
            self.risk_used_pct = 0.0
        self.risk_used_pct += float(risk_pct)

    def _transition(self, to_phase: TradingPhase, time, reason: str) -> None:
        if to_phase not in PHASE_TRANSITIONS[self.phase]:
            raise PhaseTransitionError(f"[phase] invalid transition {self.phase.value} -> {to_phase.value}")
        self.history.append(PhaseTransition(self.phase, to_phase, time, reason))
        logger.info("phase %s -> %s: %s", self.phase.value, to_phase.value, reason)
        self.phase = to_phase


def _utc_day(time) -> pd.Timestamp:
    t = pd.Timestamp(time)
    t = t.tz_localize("UTC") if t.tzinfo is None else t.tz_convert("UTC")
    return t.floor("D")

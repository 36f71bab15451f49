# smc_engine/execution/cascade.py
"""
Multi-timeframe cascade validation.

A cascade is complete when, within `timeout` of the higher-timeframe sweep:

    HTF sweep  ->  mid-timeframe sweep  ->  LTF structure shift (opposite to the mid sweep)

with strictly increasing event times. Times always come from the events
(or a clock supplied by the caller), never from the wall clock, so live and
replayed feeds behave the same.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional

import pandas as pd

from smc_engine.common.types import Direction

logger = logging.getLogger(__name__)


class CascadeName(str, Enum):
    DAILY_BIAS = "DailyBias"
    INTRADAY_EXECUTION = "IntradayExecution"


class CascadeStatus(str, Enum):
    INACTIVE = "inactive"
    HTF_SWEEP = "htf_sweep"
    MID_SWEEP = "mid_sweep"
    COMPLETE = "complete"


@dataclass(frozen=True)
class CascadeDefinition:
    name: CascadeName
    htf: str
    mid: str
    ltf: str
    timeout_minutes: int

    @property
    def timeout(self) -> pd.Timedelta:
        return pd.Timedelta(minutes=self.timeout_minutes)


CASCADE_DEFINITIONS: Dict[CascadeName, CascadeDefinition] = {
    CascadeName.DAILY_BIAS: CascadeDefinition(CascadeName.DAILY_BIAS, "D", "H1", "M15", 240),
    CascadeName.INTRADAY_EXECUTION: CascadeDefinition(CascadeName.INTRADAY_EXECUTION, "H4", "M15", "M5", 60),
}


@dataclass(frozen=True)
class CascadeEvent:
    direction: Direction
    time: pd.Timestamp
    level: Optional[float] = None


@dataclass
class CascadeState:
    definition: CascadeDefinition
    htf: Optional[CascadeEvent] = None
    mid: Optional[CascadeEvent] = None
    ltf: Optional[CascadeEvent] = None
    expires_at: Optional[pd.Timestamp] = None
    complete: bool = False

    @property
    def status(self) -> CascadeStatus:
        if self.complete:
            return CascadeStatus.COMPLETE
        if self.mid is not None:
            return CascadeStatus.MID_SWEEP
        if self.htf is not None:
            return CascadeStatus.HTF_SWEEP
        return CascadeStatus.INACTIVE

    def is_expired(self, now: pd.Timestamp) -> bool:
        return self.expires_at is not None and now > self.expires_at

    def clear(self) -> None:
        self.htf = None
        self.mid = None
        self.ltf = None
        self.expires_at = None
        self.complete = False


@dataclass(frozen=True)
class CascadeSnapshot:
    name: CascadeName
    status: CascadeStatus
    htf: Optional[CascadeEvent]
    mid: Optional[CascadeEvent]
    ltf: Optional[CascadeEvent]
    expires_at: Optional[pd.Timestamp]


class CascadeValidator:
    """One CascadeState per CascadeName, held in a fixed table."""

    def __init__(self, definitions: Optional[Dict[CascadeName, CascadeDefinition]] = None):
        defs = definitions or CASCADE_DEFINITIONS
        missing = [n for n in CascadeName if n not in defs]
        if missing:
            raise ValueError(f"[cascade] missing definitions for {[m.value for m in missing]}")
        self._states: Dict[CascadeName, CascadeState] = {n: CascadeState(definition=defs[n]) for n in CascadeName}

    def definition(self, name: CascadeName) -> CascadeDefinition:
        return self._states[name].definition

    # ----------------------------
    # Registration
    # ----------------------------

    def register_htf_sweep(self, name: CascadeName, direction: int, time, level: Optional[float] = None) -> bool:
        st = self._states[name]
        t = _ts(time)
        st.clear()
        st.htf = CascadeEvent(direction=direction, time=t, level=level)
        st.expires_at = t + st.definition.timeout
        logger.debug("cascade %s htf sweep dir=%s at %s (expires %s)", name.value, direction, t, st.expires_at)
        return True

    def register_mid_sweep(self, name: CascadeName, direction: int, time, level: Optional[float] = None) -> bool:
        st = self._states[name]
        t = _ts(time)
        if st.htf is None:
            return False
        if st.is_expired(t):
            self._expire(st, t)
            return False
        if t <= st.htf.time:
            logger.debug("cascade %s mid sweep at %s not after htf sweep %s", name.value, t, st.htf.time)
            return False
        st.mid = CascadeEvent(direction=direction, time=t, level=level)
        st.ltf = None
        st.complete = False
        return True

    def register_ltf_shift(self, name: CascadeName, direction: int, time) -> bool:
        st = self._states[name]
        t = _ts(time)
        if st.mid is None:
            return False
        if st.is_expired(t):
            self._expire(st, t)
            return False
        if t <= st.mid.time:
            logger.debug("cascade %s ltf shift at %s not after mid sweep %s", name.value, t, st.mid.time)
            return False
        if direction == st.mid.direction:
            logger.info("cascade %s reset: ltf shift dir=%s matches mid sweep", name.value, direction)
            st.clear()
            return False

        st.ltf = CascadeEvent(direction=direction, time=t)
        st.complete = True
        logger.info("cascade %s complete at %s", name.value, t)
        return True

    # ----------------------------
    # Queries / maintenance
    # ----------------------------

    def is_valid(self, name: CascadeName, now) -> bool:
        st = self._states[name]
        t = _ts(now)
        if st.is_expired(t):
            self._expire(st, t)
            return False
        return st.complete

    def status(self, name: CascadeName) -> CascadeStatus:
        return self._states[name].status

    def snapshot(self) -> Dict[CascadeName, CascadeSnapshot]:
        return {
            n: CascadeSnapshot(name=n, status=s.status, htf=s.htf, mid=s.mid, ltf=s.ltf, expires_at=s.expires_at)
            for n, s in self._states.items()
        }

    def update(self, now) -> None:
        t = _ts(now)
        for st in self._states.values():
            if st.is_expired(t):
                self._expire(st, t)

    def reset(self, name: CascadeName) -> None:
        self._states[name].clear()

    def reset_all(self) -> None:
        for st in self._states.values():
            st.clear()

    def _expire(self, st: CascadeState, now: pd.Timestamp) -> None:
        logger.warning(
            "cascade %s timed out at %s (expired %s); reset to inactive",
            st.definition.name.value, now, st.expires_at,
        )
        st.clear()


def _ts(value) -> pd.Timestamp:
    t = pd.Timestamp(value)
    return t.tz_localize("UTC") if t.tzinfo is None else t

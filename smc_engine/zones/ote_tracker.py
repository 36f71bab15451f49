# smc_engine/zones/ote_tracker.py
"""
Lifecycle tracking for the active OTE zone per direction.

Lifecycle:
1. activate(zone)       -> zone becomes the current OTE for its direction
2. update(bar)          -> deepest touch level so far is recorded
3. retrace past 88%     -> zone invalidated
4. invalidate / reset   -> explicit removal (bias change, cycle reset)

Only one zone per direction; a newer zone replaces the older one. Re-activating
the zone already held is a no-op, so an invalidated zone stays invalidated.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Dict, Optional

import pandas as pd

from smc_engine.zones.ote import (
    OTETouchLevel,
    OTEZone,
    TouchMethod,
    classify_ote_touch,
    is_invalidated,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OTEState:
    """Immutable - updates create new instances."""

    zone: OTEZone
    touch: OTETouchLevel = OTETouchLevel.NONE
    active: bool = True
    last_update: Optional[pd.Timestamp] = None


class OTETracker:
    def __init__(self, method: TouchMethod = TouchMethod.WICK):
        self.method = method
        self._states: Dict[int, OTEState] = {}

    def activate(self, zone: OTEZone) -> OTEState:
        prev = self._states.get(zone.direction)
        if prev is not None and _same_zone(prev.zone, zone):
            return prev
        state = OTEState(zone=zone)
        self._states[zone.direction] = state
        logger.debug("ote activated dir=%s [%.5f, %.5f] source=%s", zone.direction, zone.low, zone.high, zone.source)
        return state

    def update(self, *, time: pd.Timestamp, high: float, low: float, close: float) -> None:
        """Record how deep the bar closing at `time` reached into each active zone."""
        for direction, state in list(self._states.items()):
            if not state.active or time <= state.zone.time:
                continue
            if state.last_update is not None and time <= state.last_update:
                continue
            if is_invalidated(state.zone, high=high, low=low):
                self._states[direction] = replace(state, active=False, last_update=time)
                logger.info("ote invalidated dir=%s at %s", direction, time)
                continue
            level = classify_ote_touch(state.zone, high=high, low=low, close=close, method=self.method)
            self._states[direction] = replace(state, touch=max(state.touch, level), last_update=time)

    def invalidate(self, direction: Optional[int] = None) -> None:
        if direction is None:
            self._states.clear()
        else:
            self._states.pop(direction, None)

    def current(self, direction: int) -> Optional[OTEZone]:
        state = self._states.get(direction)
        return state.zone if state is not None and state.active else None

    def has_valid_ote(self, direction: int) -> bool:
        return self.current(direction) is not None

    def touch_level(self, direction: int) -> OTETouchLevel:
        state = self._states.get(direction)
        if state is None or not state.active:
            return OTETouchLevel.NONE
        return state.touch


def _same_zone(a: OTEZone, b: OTEZone) -> bool:
    return a.time == b.time and a.source == b.source and a.low == b.low and a.high == b.high

from datetime import datetime

import pandas as pd
import pytest

from smc_engine.execution.cascade import (
    CASCADE_DEFINITIONS,
    CascadeName,
    CascadeStatus,
    CascadeValidator,
)

T = pd.Timestamp("2025-01-06 10:00", tz="UTC")
INTRA = CascadeName.INTRADAY_EXECUTION
DAILY = CascadeName.DAILY_BIAS


def _at(minutes):
    return T + pd.Timedelta(minutes=minutes)


def test_definitions_table():
    cv = CascadeValidator()
    d = cv.definition(DAILY)
    assert (d.htf, d.mid, d.ltf, d.timeout_minutes) == ("D", "H1", "M15", 240)
    assert cv.definition(INTRA).timeout == pd.Timedelta(minutes=60)


def test_missing_definition_rejected():
    with pytest.raises(ValueError):
        CascadeValidator({DAILY: CASCADE_DEFINITIONS[DAILY]})


def test_full_cascade_completes():
    cv = CascadeValidator()
    assert cv.register_htf_sweep(INTRA, 1, T)
    assert cv.status(INTRA) == CascadeStatus.HTF_SWEEP
    assert cv.register_mid_sweep(INTRA, 1, _at(20))
    assert cv.status(INTRA) == CascadeStatus.MID_SWEEP
    assert cv.register_ltf_shift(INTRA, -1, _at(40))
    assert cv.is_valid(INTRA, _at(45))
    assert cv.status(DAILY) == CascadeStatus.INACTIVE


def test_late_ltf_shift_times_out():
    cv = CascadeValidator()
    cv.register_htf_sweep(INTRA, 1, T)
    assert cv.register_mid_sweep(INTRA, 1, _at(50))
    assert not cv.register_ltf_shift(INTRA, -1, _at(61))
    assert cv.status(INTRA) == CascadeStatus.INACTIVE
    assert not cv.is_valid(INTRA, _at(61))


def test_complete_cascade_expires_on_update():
    cv = CascadeValidator()
    cv.register_htf_sweep(INTRA, 1, T)
    cv.register_mid_sweep(INTRA, 1, _at(10))
    cv.register_ltf_shift(INTRA, -1, _at(20))
    cv.update(_at(60))
    assert cv.status(INTRA) == CascadeStatus.COMPLETE
    cv.update(_at(61))
    assert cv.status(INTRA) == CascadeStatus.INACTIVE


def test_events_must_be_strictly_ordered():
    cv = CascadeValidator()
    assert not cv.register_mid_sweep(INTRA, 1, _at(5))  # no htf yet
    cv.register_htf_sweep(INTRA, 1, T)
    assert not cv.register_mid_sweep(INTRA, 1, T)
    assert not cv.register_ltf_shift(INTRA, -1, _at(5))  # no mid yet
    cv.register_mid_sweep(INTRA, 1, _at(10))
    assert not cv.register_ltf_shift(INTRA, -1, _at(10))
    assert cv.status(INTRA) == CascadeStatus.MID_SWEEP


def test_shift_in_sweep_direction_resets():
    cv = CascadeValidator()
    cv.register_htf_sweep(INTRA, 1, T)
    cv.register_mid_sweep(INTRA, 1, _at(10))
    assert not cv.register_ltf_shift(INTRA, 1, _at(20))
    assert cv.status(INTRA) == CascadeStatus.INACTIVE


def test_new_htf_sweep_restarts():
    cv = CascadeValidator()
    cv.register_htf_sweep(INTRA, 1, T)
    cv.register_mid_sweep(INTRA, 1, _at(10))
    cv.register_htf_sweep(INTRA, -1, _at(30))
    snap = cv.snapshot()[INTRA]
    assert snap.status == CascadeStatus.HTF_SWEEP
    assert snap.mid is None
    assert snap.expires_at == _at(90)


def test_naive_times_are_utc():
    cv = CascadeValidator()
    cv.register_htf_sweep(DAILY, -1, datetime(2025, 1, 6, 10, 0))
    assert cv.snapshot()[DAILY].htf.time == T


def test_reset_helpers():
    cv = CascadeValidator()
    cv.register_htf_sweep(INTRA, 1, T)
    cv.register_htf_sweep(DAILY, 1, T)
    cv.reset(INTRA)
    assert cv.status(INTRA) == CascadeStatus.INACTIVE
    assert cv.status(DAILY) == CascadeStatus.HTF_SWEEP
    cv.reset_all()
    assert cv.status(DAILY) == CascadeStatus.INACTIVE

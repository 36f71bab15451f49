import pandas as pd
import pytest

from smc_engine.liquidity.sweeps import SweepEvent
from smc_engine.liquidity.zones import make_zone
from smc_engine.structure.structure_shift import StructureShiftSignal
from smc_engine.zones.ote import EntryZoneConfig
from smc_engine.zones.reaction_zones import (
    ReactionZone,
    detect_breaker_blocks,
    detect_order_blocks,
    drop_expired,
    validate_order_blocks,
)

T0 = pd.Timestamp("2025-01-06 08:00", tz="UTC")


@pytest.fixture
def frame():
    rows = [(1.1000, 1.1005, 1.0995, 1.1000)] * 20
    rows[5] = (1.1010, 1.1015, 1.0995, 1.0998)   # down candle
    rows[6] = (1.0997, 1.1030, 1.0990, 1.1025)   # engulfs it and takes its low
    rows[12] = (1.0998, 1.1010, 1.0995, 1.1008)  # up candle
    rows[13] = (1.1009, 1.1015, 1.0985, 1.0990)  # engulfs it and takes its high
    return pd.DataFrame([
        {"time": T0 + pd.Timedelta(minutes=5 * i), "o": o, "h": h, "l": l, "c": c}
        for i, (o, h, l, c) in enumerate(rows)
    ])


def test_order_blocks_both_directions(frame):
    blocks = detect_order_blocks(frame)
    assert [(b.direction, b.idx) for b in blocks] == [(1, 5), (-1, 12)]

    bull, bear = blocks
    assert (bull.low, bull.high) == pytest.approx((1.0995, 1.1015))
    assert bull.stop == pytest.approx(1.0990)
    assert bull.liquidity_grab
    assert bull.valid_until_idx == 6 + 500
    assert bull.time == frame["time"].iloc[5]
    assert bear.stop == pytest.approx(1.1015)
    assert bull.contains(1.1000) and not bull.contains(1.1020)


def test_order_block_scan_window(frame):
    assert detect_order_blocks(frame, config=EntryZoneConfig(order_block_scan_bars=3)) == []
    assert detect_order_blocks(frame.head(4)) == []


def test_breakers_newest_first(frame):
    breakers = detect_breaker_blocks(frame)
    assert [(b.direction, b.idx) for b in breakers] == [(-1, 12), (1, 5)]
    bull = breakers[1]
    assert (bull.low, bull.high) == pytest.approx((1.0990, 1.1030))
    assert bull.stop == pytest.approx(1.0990)
    assert breakers[0].stop == pytest.approx(1.1015)


def test_drop_expired(frame):
    blocks = detect_order_blocks(frame)
    assert len(drop_expired(blocks, 506)) == 2
    assert [b.direction for b in drop_expired(blocks, 507)] == [-1]


def _signal(direction, time):
    return StructureShiftSignal(
        direction=direction, idx=8, time=time, close=1.1, break_level=1.1, swing_idx=4,
        displacement=0.001, atr=0.001, body_pct=70.0, wick_pct=20.0, combined_pct=90.0,
        has_gap=True, had_sweep=False, zone_low=1.0, zone_high=1.1, zone_source="gap",
        impulse_start=1.09, impulse_end=1.11, valid_until_idx=58,
    )


def _sweep(time):
    zone = make_zone(T0, T0 + pd.Timedelta(days=1), 1.0990, 1.0992, "demand", "Swing Low")
    return SweepEvent(time=time, idx=6, price=1.0990, direction=1, zone=zone,
                      bar_high=1.1030, bar_low=1.0985, bar_close=1.1025)


def test_validation_requires_liquidity_grab(frame):
    bull = detect_order_blocks(frame)[0]
    weak = ReactionZone(kind="order_block", direction=1, idx=3, time=T0, low=1.0, high=1.1,
                        stop=0.99, liquidity_grab=False, valid_until_idx=500)
    assert validate_order_blocks([bull, weak], shifts=[], sweeps=[]) == [bull]


def test_validation_optional_shift_and_sweep(frame):
    bull = detect_order_blocks(frame)[0]
    after = bull.time + pd.Timedelta(minutes=15)

    need_shift = EntryZoneConfig(require_shift_for_order_block=True)
    assert validate_order_blocks([bull], shifts=[], sweeps=[], config=need_shift) == []
    assert validate_order_blocks([bull], shifts=[_signal(-1, after)], sweeps=[], config=need_shift) == []
    assert validate_order_blocks([bull], shifts=[_signal(1, after)], sweeps=[], config=need_shift) == [bull]

    need_sweep = EntryZoneConfig(require_opposite_sweep=True)
    near, far = _sweep(bull.time + pd.Timedelta(minutes=30)), _sweep(bull.time + pd.Timedelta(hours=3))
    assert validate_order_blocks([bull], shifts=[], sweeps=[far], config=need_sweep) == []
    assert validate_order_blocks([bull], shifts=[], sweeps=[near], config=need_sweep) == [bull]

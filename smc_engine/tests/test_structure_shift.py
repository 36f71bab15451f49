import numpy as np
import pandas as pd
import pytest

from smc_engine.common.errors import DetectionError
from smc_engine.structure.structure_shift import (
    StructureShiftConfig,
    StructureShiftDetector,
    detect_structure_shifts,
)


def _df(rows):
    t0 = pd.Timestamp("2025-01-06 08:00", tz="UTC")
    return pd.DataFrame([
        {"time": t0 + pd.Timedelta(minutes=5 * i), "o": o, "h": h, "l": l, "c": c}
        for i, (o, h, l, c) in enumerate(rows)
    ])


def _bull_rows(break_low=1.1008):
    rows = [(1.1000, 1.1005, 1.0995, 1.1002)] * 15
    rows += [
        (1.1000, 1.1010, 1.0995, 1.1002),  # 15 swing high
        (1.1002, 1.1005, 1.0995, 1.1000),  # 16 down candle
        (1.1000, 1.1012, 1.0985, 1.1010),  # 17 sweeps the lows
        (1.1010, 1.1042, break_low, 1.1040),  # 18 breaks 1.1010 with a gap over bar 16
    ]
    return rows


def _mirror(rows, axis=2.2):
    return [(axis - o, axis - l, axis - h, axis - c) for o, h, l, c in rows]


@pytest.fixture
def bull():
    return _df(_bull_rows())


def test_bullish_shift_signal_fields(bull):
    sigs = detect_structure_shifts(bull)
    assert len(sigs) == 1
    s = sigs[0]
    assert s.direction == 1
    assert s.idx == 18
    assert s.time == bull["time"].iloc[18]
    assert s.break_level == pytest.approx(1.1010)
    assert s.swing_idx == 15
    assert s.displacement == pytest.approx(0.0030)
    assert s.has_gap and s.had_sweep
    assert s.zone_source == "gap"
    assert (s.zone_low, s.zone_high) == pytest.approx((1.1005, 1.1008))
    assert s.impulse_start == pytest.approx(1.0985)
    assert s.impulse_end == pytest.approx(1.1042)
    assert s.body_pct == pytest.approx(0.0030 / 0.0034 * 100)


def test_bearish_mirror_image():
    df = _df(_mirror(_bull_rows()))
    sigs = detect_structure_shifts(df)
    assert len(sigs) == 1
    s = sigs[0]
    assert s.direction == -1
    assert s.break_level == pytest.approx(2.2 - 1.1010)
    assert s.impulse_start == pytest.approx(2.2 - 1.0985)
    assert s.impulse_end == pytest.approx(2.2 - 1.1042)


def test_bias_alignment_gate(bull):
    assert detect_structure_shifts(bull, htf_bias=-1) == []
    assert len(detect_structure_shifts(bull, htf_bias=1)) == 1
    relaxed = StructureShiftConfig(require_bias_alignment=False)
    assert len(detect_structure_shifts(bull, config=relaxed, htf_bias=-1)) == 1


def test_gap_requirement():
    df = _df(_bull_rows(break_low=1.1003))
    assert detect_structure_shifts(df) == []

    sigs = detect_structure_shifts(df, config=StructureShiftConfig(require_gap=False))
    assert len(sigs) == 1
    assert not sigs[0].has_gap
    # nearest down candle before the break
    assert sigs[0].zone_source == "order_block"
    assert (sigs[0].zone_low, sigs[0].zone_high) == pytest.approx((1.1000, 1.1002))


@pytest.mark.parametrize("field,values", [
    ("min_displacement_atr", [0.5, 1.2, 2.0, 2.5]),
    ("min_body_ratio", [0.5, 0.8, 0.9]),
])
def test_stricter_thresholds_never_add_signals(bull, field, values):
    counts = [len(detect_structure_shifts(bull, config=StructureShiftConfig(**{field: v}))) for v in values]
    assert counts == sorted(counts, reverse=True)
    assert counts[0] == 1 and counts[-1] == 0


def test_detector_caches_processed_bars(bull):
    det = StructureShiftDetector()
    first = det.on_bar(bull, 18)
    assert first is not None
    assert det.on_bar(bull, 18) is first
    assert det.on_bar(bull, 10) is None
    assert det.signals == [first]


def test_detector_reset_and_bounds(bull):
    det = StructureShiftDetector()
    det.on_bar(bull, 18)
    det.reset()
    assert det.signals == []
    with pytest.raises(IndexError):
        det.on_bar(bull, len(bull))


def test_non_finite_prices_raise_detection_error(bull):
    bull.loc[5, "h"] = np.nan
    with pytest.raises(DetectionError):
        detect_structure_shifts(bull)


def test_signal_goes_stale_after_retest_window(bull):
    s = detect_structure_shifts(bull)[0]
    assert not s.is_stale(18 + 50)
    assert s.is_stale(18 + 51)


def test_not_enough_bars_for_atr():
    # ten bars never prime a 14-bar ATR
    assert detect_structure_shifts(_df(_bull_rows()[-10:])) == []

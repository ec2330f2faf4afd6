import math

import numpy as np
import pytest
from scipy.stats import chi2

from kcpfit.config import Settings
from kcpfit.core.kcp import (
    KCP,
    _llr_curve,
    calc_sigma,
    critical_value,
    generate_segments,
    linear_regression,
    single_change_point,
)
from kcpfit.types import TraceValidationError


def jump_trace():
    x = np.arange(100.0)
    y = np.where(x < 50, x, 100.0 + 2.0 * x)
    return x, y


def assert_contiguous(segments, x):
    assert segments[0].x1 == x[0]
    assert segments[-1].x2 == x[-1]
    for left, right in zip(segments, segments[1:]):
        assert left.x2 == right.x1


def test_critical_value():
    assert critical_value(0.99) == pytest.approx(chi2.ppf(0.99, 1) / 2)
    with pytest.raises(TraceValidationError):
        critical_value(1.0)


def test_calc_sigma():
    y = [1.0, 2.0, 4.0, 8.0]
    assert calc_sigma(y) == pytest.approx(np.std(y, ddof=1))
    assert calc_sigma(y, 1, 3) == pytest.approx(np.std([2.0, 4.0], ddof=1))
    assert math.isnan(calc_sigma([1.0]))


def test_linear_regression_exact_line():
    x = np.arange(10.0)
    a, sigma_a, b, sigma_b = linear_regression(x, 3.0 - 0.5 * x)
    assert a == pytest.approx(3.0)
    assert b == pytest.approx(-0.5)
    assert sigma_a == pytest.approx(0.0, abs=1e-6)
    assert sigma_b == pytest.approx(0.0, abs=1e-6)


def test_linear_regression_step_mode():
    x = np.arange(6.0)
    y = np.array([1.0, 2.0, 3.0, 1.0, 2.0, 3.0])
    a, sigma_a, b, sigma_b = linear_regression(x, y, offset=1, length=3, step_analysis=True)
    assert a == pytest.approx(2.0)
    assert sigma_a == pytest.approx(1.0)
    assert (b, sigma_b) == (0.0, 0.0)


def test_finds_single_jump():
    x, y = jump_trace()
    kcp = KCP(1.0, 0.99, x, y)
    assert kcp.change_points() == [0, 50, 99]
    segments = kcp.generate_segments()
    assert len(segments) == 2
    assert_contiguous(segments, x)
    assert segments[0].a == pytest.approx(0.0, abs=1e-9)
    assert segments[0].b == pytest.approx(1.0)
    assert segments[1].a == pytest.approx(100.0)
    assert segments[1].b == pytest.approx(2.0)
    assert segments[0].x2 == 50.0


def test_straight_line_gives_one_segment():
    x = np.linspace(0, 10, 200)
    segments = KCP(0.5, 0.99, x, 1.0 + 0.25 * x).generate_segments(uid="m1")
    assert len(segments) == 1
    assert segments[0].uid == "m1"
    assert segments[0].b == pytest.approx(0.25)
    assert_contiguous(segments, x)


def test_step_analysis_levels():
    rng = np.random.default_rng(42)
    x = np.arange(200.0)
    y = np.where(x < 100, 0.0, 5.0) + rng.normal(0, 0.1, x.size)
    kcp = KCP(0.1, 0.9999, x, y, True)
    assert 100 in kcp.change_points()
    segments = kcp.generate_segments()
    assert_contiguous(segments, x)
    for seg in segments:
        assert seg.b == 0.0
        assert seg.sigma_b == 0.0
    first = next(s for s in segments if s.x1 <= 50 <= s.x2)
    last = next(s for s in segments if s.x1 <= 150 <= s.x2)
    assert first.a == pytest.approx(0.0, abs=0.1)
    assert last.a == pytest.approx(5.0, abs=0.1)


@pytest.mark.parametrize(
    "x, y",
    [
        ([], []),
        ([np.nan, np.nan, np.nan], [np.nan, np.nan, np.nan]),
    ],
)
def test_empty_input_gives_nan_segment(x, y):
    segments = KCP(1.0, 0.99, x, y).generate_segments()
    assert len(segments) == 1
    assert segments[0].is_empty()


def test_nan_rows_are_dropped():
    x, y = jump_trace()
    y = y.copy()
    y[10] = np.nan
    kcp = KCP(1.0, 0.99, x, y)
    assert len(kcp.trace) == 99
    assert len(kcp.generate_segments()) == 2


@pytest.mark.parametrize("sigma", [0.0, -1.0, float("nan"), float("inf")])
def test_invalid_sigma(sigma):
    with pytest.raises(TraceValidationError):
        KCP(sigma, 0.99, [0.0, 1.0], [0.0, 1.0])


def test_mismatched_lengths():
    with pytest.raises(TraceValidationError):
        KCP(1.0, 0.99, [0.0, 1.0, 2.0], [0.0, 1.0])


def test_single_change_point():
    x, y = jump_trace()
    assert single_change_point(x, y) == 50
    assert single_change_point([0.0, 1.0, 2.0], [0.0, 1.0, 2.0]) is None


def test_generate_segments_from_positions():
    x, y = jump_trace()
    segments = KCP.generate_segments_from_positions(x, y, [50])
    assert len(segments) == 2
    assert_contiguous(segments, x)
    assert generate_segments(x, y, [0, 50, 99]) == segments


def test_defaults_from_settings():
    settings = Settings()
    settings.kcp.global_sigma = 2.0
    settings.kcp.confidence_level = 0.95
    settings.kcp.step_analysis = True
    kcp = KCP(x=[0.0, 1.0], y=[0.0, 1.0], settings=settings)
    assert kcp.sigma == 2.0
    assert kcp.threshold == pytest.approx(chi2.ppf(0.95, 1) / 2)
    assert kcp.step_analysis is True
    assert KCP(0.5, settings=settings).sigma == 0.5


def residual_ss(x, y, step_analysis=False):
    dy = y - np.mean(y)
    if not step_analysis:
        dx = x - np.mean(x)
        dy = dy - (np.dot(dx, dy) / np.dot(dx, dx)) * dx
    return float(np.dot(dy, dy))


def direct_llr(x, y, split, sigma, step_analysis=False):
    null = residual_ss(x, y, step_analysis)
    left = residual_ss(x[:split], y[:split], step_analysis)
    right = residual_ss(x[split:], y[split:], step_analysis)
    return (null - left - right) / (2.0 * sigma * sigma)


def direct_change_points(x, y, sigma, confidence, step_analysis=False):
    """Recursive search scoring every split from explicit residuals."""

    threshold = chi2.ppf(confidence, 1) / 2.0
    positions = {0, len(x) - 1}
    pending = [(0, len(x))]
    while pending:
        lo, hi = pending.pop()
        xs, ys = x[lo:hi], y[lo:hi]
        best, best_llr = None, -np.inf
        for split in range(2, xs.size - 2):
            llr = direct_llr(xs, ys, split, sigma, step_analysis)
            if llr > best_llr:
                best, best_llr = split, llr
        if best is None or not best_llr > threshold:
            continue
        positions.add(lo + best)
        pending.append((lo, lo + best))
        pending.append((lo + best, hi))
    return sorted(positions)


def test_llr_curve_matches_direct_scores_within_bound():
    rng = np.random.default_rng(7)
    x = np.arange(300.0)
    y = np.where(x < 120, 0.5 * x, 80.0 - 0.2 * x) + rng.normal(0, 1.0, x.size)
    splits, llr, err = _llr_curve(x, y, 1.0, False)
    assert splits[0] == 2
    assert splits[-1] == x.size - 3
    direct = np.array([direct_llr(x, y, s, 1.0) for s in splits])
    assert np.all(np.abs(llr - direct) <= err + 1e-9)
    assert int(splits[np.argmax(llr)]) == int(splits[np.argmax(direct)])


@pytest.mark.parametrize(
    "dx, n, step_analysis",
    [
        (1.0, 400, False),
        (100.0, 600, False),
        (1000.0, 400, False),
        (1000.0, 400, True),
    ],
)
def test_change_points_match_direct_search(dx, n, step_analysis):
    rng = np.random.default_rng(11)
    x = np.arange(n) * dx
    y = 2.0 * x + rng.normal(0, 0.01, n)
    y[n // 3 :] += 0.05
    expected = direct_change_points(x, y, 0.01, 0.99, step_analysis)
    assert KCP(0.01, 0.99, x, y, step_analysis).change_points() == expected


def test_large_x_scale_jump_is_located():
    i = np.arange(1000)
    x = i * 1000.0
    y = 2.0 * x + np.where(i >= 600, 1.0, 0.0)
    kcp = KCP(0.01, 0.99, x, y)
    assert kcp.change_points() == [0, 600, 999]
    segments = kcp.generate_segments()
    assert len(segments) == 2
    assert_contiguous(segments, x)
    assert segments[1].a - segments[0].a == pytest.approx(1.0, abs=1e-3)


def test_three_level_steps():
    rng = np.random.default_rng(5)
    x = np.arange(300.0)
    levels = np.select([x < 100, x < 200], [0.0, 5.0], 10.0)
    y = levels + rng.normal(0, 0.1, x.size)
    kcp = KCP(0.1, 0.999999, x, y, True)
    assert kcp.change_points() == [0, 100, 200, 299]
    segments = kcp.generate_segments()
    assert len(segments) == 3
    assert_contiguous(segments, x)
    assert [s.x1 for s in segments] == [0.0, 100.0, 200.0]
    for seg, level in zip(segments, [0.0, 5.0, 10.0]):
        assert seg.b == 0.0
        assert seg.a == pytest.approx(level, abs=0.05)


def test_single_change_point_at_large_x_scale():
    i = np.arange(500)
    x = i * 1000.0
    y = 3.0 * x + np.where(i >= 321, 2.0, 0.0)
    assert single_change_point(x, y, sigma=0.01) == 321

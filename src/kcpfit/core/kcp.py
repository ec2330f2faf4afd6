"""Kinetic change point (KCP) segmentation.

A trace is split into statistically distinct linear pieces.  For a
sub-range the null hypothesis is one straight line (or, in step analysis,
one constant level).  Every interior split ``w`` is scored by the
log-likelihood ratio of two independent fits against the single fit, with
Gaussian noise of known standard deviation ``sigma``:

.. math::

   \\mathrm{LLR}(w) = \\frac{RSS_{null} - RSS_{left}(w) - RSS_{right}(w)}{2\\sigma^2}

The best split is accepted when ``LLR`` exceeds half the chi-squared
critical value for one degree of freedom at ``confidence_level``.  Accepted
splits are searched again on both halves until no sub-range can be split.
The fitted segments are finally generated between consecutive change
points with the closed-form regressions of :func:`linear_regression`.
"""

from __future__ import annotations

import logging
import math
from typing import List, Optional, Sequence

import numpy as np
from scipy.stats import chi2

from ..config import Settings
from ..types import Segment, Trace, TraceValidationError

logger = logging.getLogger(__name__)

# Each side of a candidate split keeps at least this many points.
MIN_SPLIT_POINTS = 2

# Multiple of machine epsilon per summed point allowed for rounding in the
# running-sum split scores.
ROUNDING_FACTOR = 16


def critical_value(confidence_level: float, df: int = 1) -> float:
    """Return the log-likelihood-ratio threshold for ``confidence_level``."""

    if not 0.0 < confidence_level < 1.0:
        raise TraceValidationError(
            f"confidence_level must lie in (0, 1), got {confidence_level}"
        )
    return float(chi2.ppf(confidence_level, df)) / 2.0


def calc_sigma(y: Sequence[float] | np.ndarray, start: int = 0, end: int | None = None) -> float:
    """Estimate the noise level as the sample standard deviation of ``y[start:end]``.

    Returns NaN when fewer than two samples are available.
    """

    window = np.asarray(y, dtype=float)[start:end]
    if window.size < 2:
        return float("nan")
    return float(np.std(window, ddof=1))


def linear_regression(
    x: np.ndarray,
    y: np.ndarray,
    offset: int = 0,
    length: int | None = None,
    step_analysis: bool = False,
) -> tuple[float, float, float, float]:
    """Fit ``y = A + B*x`` to ``[offset, offset + length)``.

    Returns ``(A, sigma_A, B, sigma_B)`` where the uncertainties follow the
    usual unweighted least-squares expressions with the noise estimated from
    the residuals.  In step analysis the slope is fixed at zero, ``A`` is the
    mean and ``sigma_A`` the sample standard deviation of the points.
    Ranges too short for an uncertainty estimate give NaN.
    """

    if length is None:
        length = len(x) - offset
    xs = np.asarray(x[offset : offset + length], dtype=float)
    ys = np.asarray(y[offset : offset + length], dtype=float)
    n = xs.size

    with np.errstate(divide="ignore", invalid="ignore"):
        if n == 0:
            nan = float("nan")
            return nan, nan, nan, nan
        if step_analysis:
            mean = float(np.mean(ys))
            spread = float(np.sqrt(np.sum((ys - mean) ** 2) / np.float64(n - 1)))
            return mean, spread, 0.0, 0.0

        xm = np.mean(xs)
        ym = np.mean(ys)
        dx = xs - xm
        sxx = np.sum(dx * dx)
        b = np.sum(dx * (ys - ym)) / sxx
        a = ym - b * xm
        resid = ys - a - b * xs
        sigma_y = np.sqrt(np.sum(resid * resid) / np.float64(n - 2))
        sigma_a = sigma_y * np.sqrt(np.sum(xs * xs) / (n * sxx))
        sigma_b = sigma_y / np.sqrt(sxx)
    return float(a), float(sigma_a), float(b), float(sigma_b)


def _prefix_sums(x: np.ndarray, y: np.ndarray) -> tuple[np.ndarray, ...]:
    # Centre first so that the running sums do not lose precision.
    xc = x - np.mean(x)
    yc = y - np.mean(y)
    zero = np.zeros(1)
    return (
        np.concatenate([zero, np.cumsum(xc)]),
        np.concatenate([zero, np.cumsum(yc)]),
        np.concatenate([zero, np.cumsum(xc * xc)]),
        np.concatenate([zero, np.cumsum(xc * yc)]),
        np.concatenate([zero, np.cumsum(yc * yc)]),
    )


def _rss(sums: tuple[np.ndarray, ...], lo, hi, step_analysis: bool):
    """Residual sum of squares of the best fit on ``[lo, hi)``.

    ``lo`` and ``hi`` may be arrays, in which case one value per pair is
    returned.  The second return value bounds the rounding error of the
    first, which grows with the spread of the whole range relative to the
    residuals.
    """

    sx, sy, sxx, sxy, syy = sums
    tolerance = ROUNDING_FACTOR * np.finfo(float).eps * syy.size
    n = np.asarray(hi - lo, dtype=float)
    sum_x = sx[hi] - sx[lo]
    sum_y = sy[hi] - sy[lo]
    cyy = (syy[hi] - syy[lo]) - sum_y * sum_y / n
    if step_analysis:
        return cyy, tolerance * syy[-1]
    cxx = (sxx[hi] - sxx[lo]) - sum_x * sum_x / n
    cxy = (sxy[hi] - sxy[lo]) - sum_x * sum_y / n
    explained = cxy * cxy / cxx
    return cyy - explained, 2.0 * tolerance * (syy[-1] + explained * sxx[-1] / cxx)


def _residual_ss(x: np.ndarray, y: np.ndarray, step_analysis: bool) -> float:
    """Residual sum of squares of the best fit, summed point by point."""

    dy = y - np.mean(y)
    if not step_analysis:
        dx = x - np.mean(x)
        sxx = np.dot(dx, dx)
        if not sxx > 0:
            return float("nan")
        dy = dy - (np.dot(dx, dy) / sxx) * dx
    return float(np.dot(dy, dy))


def _llr_curve(x: np.ndarray, y: np.ndarray, sigma: float, step_analysis: bool):
    """Return candidate splits of ``x``/``y``, their LLRs and error bounds.

    The scores come from running sums and are only accurate to within the
    returned bounds.
    """

    splits = np.arange(MIN_SPLIT_POINTS, x.size - MIN_SPLIT_POINTS)
    if splits.size == 0:
        return splits, np.empty(0), np.empty(0)
    sums = _prefix_sums(x, y)
    end = x.size
    scale = 2.0 * sigma * sigma
    with np.errstate(divide="ignore", invalid="ignore"):
        null, null_err = _rss(sums, 0, end, step_analysis)
        left, left_err = _rss(sums, np.zeros(splits.size, dtype=int), splits, step_analysis)
        right, right_err = _rss(sums, splits, np.full(splits.size, end), step_analysis)
        llr = (null - left - right) / scale
        err = (null_err + left_err + right_err) / scale
    return splits, llr, err


def _best_split(
    x: np.ndarray,
    y: np.ndarray,
    sigma: float,
    step_analysis: bool,
    minimum: float = -np.inf,
) -> tuple[Optional[int], float]:
    """Return the most likely split of ``x``/``y`` and its LLR.

    Every split whose running-sum score may still be the maximum once
    rounding is accounted for is scored again from explicit residuals.
    Splits that cannot score above ``minimum`` are not rescored, and
    ``(None, nan)`` is returned when none is left.
    """

    splits, llr, err = _llr_curve(x, y, sigma, step_analysis)
    usable = np.isfinite(llr) & np.isfinite(err)
    if not usable.any():
        return None, float("nan")
    floor = np.max((llr - err)[usable])
    candidates = splits[usable & (llr + err >= floor) & (llr + err > minimum)]

    null = _residual_ss(x, y, step_analysis)
    scale = 2.0 * sigma * sigma
    position, value = None, -np.inf
    for split in candidates:
        score = (
            null
            - _residual_ss(x[:split], y[:split], step_analysis)
            - _residual_ss(x[split:], y[split:], step_analysis)
        ) / scale
        if score > value:
            position, value = int(split), score
    if position is None:
        return None, float("nan")
    return position, float(value)


def single_change_point(
    x: Sequence[float] | np.ndarray,
    y: Sequence[float] | np.ndarray,
    step_analysis: bool = False,
    sigma: float = 1.0,
) -> Optional[int]:
    """Return the index of the most likely single change point.

    No significance test is applied.  ``None`` is returned when the trace is
    too short or no split improves on the single fit.
    """

    trace = Trace(x, y)
    position, value = _best_split(trace.x, trace.y, sigma, step_analysis, minimum=0.0)
    if position is None or not value > 0:
        return None
    return position


def generate_segments(
    x: Sequence[float] | np.ndarray,
    y: Sequence[float] | np.ndarray,
    positions: Sequence[int],
    step_analysis: bool = False,
    uid: str | None = None,
) -> List[Segment]:
    """Fit one segment between each pair of consecutive change points.

    ``positions`` are sample indices and should include ``0`` and
    ``len(x) - 1``.  Segment ``i`` is fitted to ``[p_i, p_{i+1})``, the last
    one to ``[p_i, len(x))``, and spans ``x[p_i]`` to ``x[p_{i+1}]`` so that
    consecutive segments share their end points.
    """

    trace = Trace(x, y)
    n = len(trace)
    if n == 0:
        return [Segment.empty(uid)]
    cps = sorted({int(p) for p in positions} | {0, n - 1})

    segments: List[Segment] = []
    if len(cps) == 1:
        cps = cps * 2
    for i in range(len(cps) - 1):
        lo = cps[i]
        hi = n if i == len(cps) - 2 else cps[i + 1]
        a, sigma_a, b, sigma_b = linear_regression(trace.x, trace.y, lo, hi - lo, step_analysis)
        x1 = float(trace.x[cps[i]])
        x2 = float(trace.x[cps[i + 1]])
        segments.append(
            Segment(
                x1=x1,
                y1=a + b * x1,
                x2=x2,
                y2=a + b * x2,
                a=a,
                sigma_a=sigma_a,
                b=b,
                sigma_b=sigma_b,
                uid=uid,
            )
        )
    return segments


class KCP:
    """Recursive change-point search over one trace.

    Parameters
    ----------
    sigma:
        Standard deviation of the measurement noise.  Must be positive.
    confidence_level:
        Probability used to derive the split acceptance threshold.
    x, y:
        Sample series.  ``x`` is expected to be non-decreasing.  Rows where
        either value is NaN are dropped, so an all-NaN trace is treated as
        empty.
    step_analysis:
        Fit constant levels (zero slope) instead of lines.
    settings:
        Optional :class:`~kcpfit.config.Settings` supplying defaults for
        ``sigma``, ``confidence_level`` and ``step_analysis``.
    """

    def __init__(
        self,
        sigma: float | None = None,
        confidence_level: float | None = None,
        x: Sequence[float] | np.ndarray = (),
        y: Sequence[float] | np.ndarray = (),
        step_analysis: bool | None = None,
        *,
        settings: Settings | None = None,
    ) -> None:
        if settings is None:
            settings = Settings()
        sigma = settings.kcp.global_sigma if sigma is None else sigma
        confidence_level = (
            settings.kcp.confidence_level if confidence_level is None else confidence_level
        )
        if step_analysis is None:
            step_analysis = settings.kcp.step_analysis

        if not (math.isfinite(sigma) and sigma > 0):
            raise TraceValidationError(f"sigma must be positive and finite, got {sigma}")

        self.trace = Trace(x, y).finite()
        self.sigma = float(sigma)
        self.confidence_level = float(confidence_level)
        self.step_analysis = bool(step_analysis)
        self.threshold = critical_value(self.confidence_level)

    def change_point(self, offset: int, length: int) -> Optional[int]:
        """Return the significant split of ``[offset, offset + length)`` or ``None``.

        The sub-range is scored on its own so that its running sums are
        centred on its own means.
        """

        end = offset + length
        split, value = _best_split(
            self.trace.x[offset:end],
            self.trace.y[offset:end],
            self.sigma,
            self.step_analysis,
            minimum=self.threshold,
        )
        if split is None or not value > self.threshold:
            return None
        return offset + split

    def change_points(self) -> List[int]:
        """Return all change-point indices including both trace ends."""

        n = len(self.trace)
        if n == 0:
            return []
        positions = {0, n - 1}
        pending = [(0, n)]
        while pending:
            offset, length = pending.pop()
            cp = self.change_point(offset, length)
            if cp is None:
                continue
            positions.add(cp)
            pending.append((offset, cp - offset))
            pending.append((cp, offset + length - cp))
        return sorted(positions)

    def generate_segments(self, uid: str | None = None) -> List[Segment]:
        """Segment the whole trace.

        An empty trace yields a single all-NaN segment.
        """

        if len(self.trace) == 0:
            return [Segment.empty(uid)]
        positions = self.change_points()
        logger.debug("found %d change points", len(positions) - 2)
        return generate_segments(self.trace.x, self.trace.y, positions, self.step_analysis, uid)

    @staticmethod
    def generate_segments_from_positions(
        x, y, positions: Sequence[int], step_analysis: bool = False, uid: str | None = None
    ) -> List[Segment]:
        return generate_segments(x, y, positions, step_analysis, uid)

    calc_sigma = staticmethod(calc_sigma)


__all__ = [
    "MIN_SPLIT_POINTS",
    "critical_value",
    "calc_sigma",
    "linear_regression",
    "single_change_point",
    "generate_segments",
    "KCP",
]

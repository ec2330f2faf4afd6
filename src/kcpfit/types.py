"""Common type helpers for kcpfit.

This module defines the lightweight containers exchanged between the
change-point search, the distribution builder and the table layer.  Segment
column names are fixed so that stored segment tables stay readable by other
tools.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, astuple
from typing import Optional, Sequence

import numpy as np

SEGMENT_COLUMNS = ("x1", "y1", "x2", "y2", "A", "sigma_A", "B", "sigma_B")
UID_COLUMN = "UID"


class TraceValidationError(ValueError):
    """Raised when input data violates a precondition of the numerical core."""


@dataclass(frozen=True)
class Segment:
    """One linear piece ``y = a + b*x`` of a segmented trace.

    ``(x1, y1)`` and ``(x2, y2)`` are the fitted end points, ``a`` and ``b``
    the intercept and slope with their standard errors.  ``uid`` names the
    owning molecule and is only set when segments are pooled.
    """

    x1: float
    y1: float
    x2: float
    y2: float
    a: float
    sigma_a: float
    b: float
    sigma_b: float
    uid: Optional[str] = None

    @classmethod
    def empty(cls, uid: Optional[str] = None) -> "Segment":
        """Return the all-NaN segment used to mark "no valid region"."""

        nan = float("nan")
        return cls(nan, nan, nan, nan, nan, nan, nan, nan, uid)

    @property
    def duration(self) -> float:
        return self.x2 - self.x1

    def is_empty(self) -> bool:
        return all(math.isnan(v) for v in astuple(self)[:-1])

    def values(self) -> tuple[float, ...]:
        """Return the numeric fields in :data:`SEGMENT_COLUMNS` order."""

        return (self.x1, self.y1, self.x2, self.y2, self.a, self.sigma_a, self.b, self.sigma_b)


@dataclass(frozen=True)
class Region:
    """Named x-range used to select part of a trace."""

    start: float
    end: float

    @property
    def width(self) -> float:
        return self.end - self.start


@dataclass
class Trace:
    """Container for paired ``x``/``y`` sample sequences."""

    x: np.ndarray
    y: np.ndarray

    def __post_init__(self) -> None:
        self.x = np.asarray(self.x, dtype=float)
        self.y = np.asarray(self.y, dtype=float)
        if self.x.ndim != 1 or self.y.ndim != 1:
            raise TraceValidationError("x and y must be one-dimensional")
        if self.x.size != self.y.size:
            raise TraceValidationError(
                f"x and y must have the same length ({self.x.size} != {self.y.size})"
            )

    def __len__(self) -> int:
        return int(self.x.size)

    def finite(self) -> "Trace":
        """Return a copy without rows where ``x`` or ``y`` is NaN."""

        keep = ~(np.isnan(self.x) | np.isnan(self.y))
        return Trace(self.x[keep], self.y[keep])

    def slice(self, offset: int, length: int) -> "Trace":
        return Trace(self.x[offset : offset + length], self.y[offset : offset + length])


def as_trace(x: Sequence[float] | np.ndarray, y: Sequence[float] | np.ndarray) -> Trace:
    """Build a validated :class:`Trace` from two sequences."""

    return Trace(np.asarray(x, dtype=float), np.asarray(y, dtype=float))


__all__ = [
    "SEGMENT_COLUMNS",
    "UID_COLUMN",
    "TraceValidationError",
    "Segment",
    "Region",
    "Trace",
    "as_trace",
]

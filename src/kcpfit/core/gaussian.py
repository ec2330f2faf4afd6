from __future__ import annotations

"""Normal density used as a weighting kernel.

A :class:`Gaussian` is centred on a fitted rate with the rate's standard
error as width.  The optional ``duration`` is not part of the density; it
is carried along so that pooled kernels can be weighted by segment length.
"""

import math

import numpy as np

from ..types import TraceValidationError

_SQRT_2PI = math.sqrt(2.0 * math.pi)


class Gaussian:
    """One- or two-dimensional normal density.

    Parameters
    ----------
    x0, x_sigma:
        Mean and standard deviation along ``x``.  ``x_sigma`` must be positive.
    duration:
        External weight, e.g. the length of the segment the kernel represents.
    y0, y_sigma:
        Mean and standard deviation along ``y`` for the 2D product form.
    """

    def __init__(
        self,
        x0: float,
        x_sigma: float,
        duration: float = 0.0,
        *,
        y0: float | None = None,
        y_sigma: float | None = None,
    ) -> None:
        if not x_sigma > 0:
            raise TraceValidationError(f"x_sigma must be positive, got {x_sigma}")
        self.x0 = float(x0)
        self.x_sigma = float(x_sigma)
        self.duration = float(duration)
        self.y0 = y0
        self.y_sigma = y_sigma

    @property
    def normalization(self) -> float:
        if self.y_sigma is None:
            return 1.0 / (_SQRT_2PI * self.x_sigma)
        return 1.0 / (2.0 * math.pi * self.x_sigma * self.y_sigma)

    def set_y(self, y0: float, y_sigma: float) -> None:
        """Turn the kernel into the 2D product form."""

        if not y_sigma > 0:
            raise TraceValidationError(f"y_sigma must be positive, got {y_sigma}")
        self.y0 = float(y0)
        self.y_sigma = float(y_sigma)

    def set_duration(self, duration: float) -> None:
        self.duration = float(duration)

    def value(self, x, y=None):
        """Evaluate the density at ``x`` (and ``y`` for the 2D form).

        Scalars and NumPy arrays are both accepted.
        """

        exponent = -((np.asarray(x, dtype=float) - self.x0) ** 2) / (2.0 * self.x_sigma**2)
        if y is not None:
            if self.y_sigma is None or self.y0 is None:
                raise ValueError("2D evaluation requires y0 and y_sigma")
            exponent = exponent - ((np.asarray(y, dtype=float) - self.y0) ** 2) / (
                2.0 * self.y_sigma**2
            )
        out = self.normalization * np.exp(exponent)
        return float(out) if np.ndim(out) == 0 else out

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        return f"Gaussian(x0={self.x0!r}, x_sigma={self.x_sigma!r}, duration={self.duration!r})"


__all__ = ["Gaussian"]

"""Levenberg-Marquardt non-linear least squares.

The solver minimises the (optionally weighted) sum of squared residuals of
a scalar model ``f(x, p)`` over a parameter vector ``p``.  Each iteration
builds the normal equations ``J^T J`` from the Jacobian of the free
parameters, applies Marquardt damping to the diagonal
(``alpha[i][i] *= 1 + lambda``) and solves for the step with
:func:`gauss_jordan`.  A step is accepted only if chi-squared decreases, in
which case ``lambda`` shrinks by ``factor``; otherwise ``lambda`` grows by
``factor`` and the previous parameters are kept.

Singular normal equations are not detected.  They produce NaN/Inf steps that
never reduce chi-squared, so the loop runs out of iterations and returns the
last accepted parameters.  All working arrays are allocated per call, so one
:class:`LevenbergMarquardt` instance may be shared between threads.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from ..config import Settings

logger = logging.getLogger(__name__)


def gauss_jordan(left, right) -> np.ndarray:
    """Solve ``left @ X = right`` by Gauss-Jordan elimination.

    Rows are pivoted on the largest absolute value in the pivot column.
    ``right`` may be a vector or a matrix with any number of columns, so
    passing the identity matrix returns the inverse of ``left``.  The inputs
    are copied; a singular ``left`` yields NaN/Inf entries instead of an
    exception.
    """

    a = np.array(left, dtype=float)
    b = np.array(right, dtype=float)
    vector = b.ndim == 1
    if vector:
        b = b[:, None]
    n = a.shape[0]
    if a.shape != (n, n) or b.shape[0] != n:
        raise ValueError(f"incompatible shapes {a.shape} and {np.shape(right)}")

    with np.errstate(divide="ignore", invalid="ignore"):
        for i in range(n):
            pivot = i + int(np.argmax(np.abs(a[i:, i])))
            if pivot != i:
                a[[i, pivot]] = a[[pivot, i]]
                b[[i, pivot]] = b[[pivot, i]]
            for j in range(n):
                if j == i:
                    continue
                d = a[j, i] / a[i, i]
                a[j, i] = 0.0
                a[j, i + 1 :] -= d * a[i, i + 1 :]
                b[j] -= d * b[i]
        b /= np.diag(a)[:, None]

    return b[:, 0] if vector else b


class Model:
    """Scalar model function ``f(x, p)`` with a numerical Jacobian.

    Subclasses implement :meth:`value` and may override :meth:`jacobian`
    with an analytic derivative.  ``x`` is a 1-D input vector, so one model
    handles both curve (``x = [t]``) and surface (``x = [X, Y]``) fits.
    """

    name: str = "model"
    parameter_names: Sequence[str] = ()

    def __init__(self, delta_parameter: float = 1e-6) -> None:
        self.delta_parameter = delta_parameter

    @property
    def n_parameters(self) -> int:
        return len(self.parameter_names)

    def value(self, x: np.ndarray, p: np.ndarray) -> float:
        raise NotImplementedError

    def values(self, x: np.ndarray, p: np.ndarray) -> np.ndarray:
        """Evaluate the model for every row of ``x``."""

        return np.array([self.value(xi, p) for xi in x], dtype=float)

    def jacobian(self, x: np.ndarray, p: np.ndarray, free: np.ndarray) -> np.ndarray:
        """Return ``d f / d p`` for the ``free`` parameter indices.

        Central differences with step ``delta_parameter`` are used.
        """

        jac = np.empty((len(x), free.size), dtype=float)
        q = np.array(p, dtype=float)
        h = self.delta_parameter
        for col, idx in enumerate(free):
            q[idx] = p[idx] + h
            upper = self.values(x, q)
            q[idx] = p[idx] - h
            lower = self.values(x, q)
            q[idx] = p[idx]
            jac[:, col] = (upper - lower) / (2.0 * h)
        return jac

    def __call__(self, x, p) -> float:
        return self.value(np.atleast_1d(np.asarray(x, dtype=float)), np.asarray(p, dtype=float))


@dataclass
class FitResult:
    """Outcome of :meth:`LevenbergMarquardt.solve`.

    Attributes
    ----------
    parameters:
        Final parameter vector.  Fixed parameters keep their initial value.
    chi_squared:
        Weighted sum of squared residuals at ``parameters``.
    iterations:
        Number of damped Gauss-Newton iterations performed.
    lam:
        Damping factor after the last iteration.
    std_dev:
        Standard deviation of each parameter, or ``None`` when not requested.
        Fixed parameters report ``0.0``.
    """

    parameters: np.ndarray
    chi_squared: float
    iterations: int
    lam: float
    std_dev: Optional[np.ndarray] = None

    def r_squared(self, y: Sequence[float], sigma: Sequence[float] | None = None) -> float:
        """Return ``1 - (chi2/(n-p)) / (sst/(n-1))`` for the fitted data."""

        y = np.asarray(y, dtype=float)
        w = np.ones_like(y) if sigma is None else 1.0 / np.asarray(sigma, dtype=float) ** 2
        mean = float(np.sum(w * y) / np.sum(w))
        sst = float(np.sum(w * (y - mean) ** 2))
        n, p = y.size, self.parameters.size
        return 1.0 - (self.chi_squared / (n - p)) / (sst / (n - 1))


class LevenbergMarquardt:
    """Damped Gauss-Newton solver for a :class:`Model`.

    Parameters
    ----------
    model:
        Model function to fit.
    precision:
        Convergence threshold on the absolute change of chi-squared.
    max_iterations:
        Upper bound on the number of iterations.
    factor:
        Multiplier applied to ``lambda`` after each accepted or rejected step.
    settings:
        Optional :class:`~kcpfit.config.Settings` supplying defaults for the
        values above.
    """

    def __init__(
        self,
        model: Model,
        *,
        precision: float | None = None,
        max_iterations: int | None = None,
        factor: float | None = None,
        settings: Settings | None = None,
    ) -> None:
        if settings is None:
            settings = Settings()
        self.model = model
        self.precision = settings.lm.precision if precision is None else precision
        self.max_iterations = (
            settings.lm.max_iterations if max_iterations is None else max_iterations
        )
        self.factor = settings.lm.factor if factor is None else factor
        self.default_lambda = settings.lm.lam

    @staticmethod
    def _chi_squared(residual: np.ndarray, weights: np.ndarray) -> float:
        with np.errstate(invalid="ignore", over="ignore"):
            return float(np.sum(weights * residual * residual))

    def solve(
        self,
        parameters: Sequence[float],
        x,
        y: Sequence[float],
        sigma: Sequence[float] | None = None,
        *,
        vary: Sequence[bool] | None = None,
        lam: float | None = None,
        std_dev: bool = True,
    ) -> FitResult:
        """Fit the model to ``(x, y)`` starting from ``parameters``.

        ``x`` may be one-dimensional (one scalar input per point) or a
        ``(n, k)`` array of input vectors.  When ``sigma`` is given residuals
        are divided by it (chi-squared), otherwise ordinary least squares is
        used.  ``vary`` masks the parameters that are allowed to change.
        """

        p = np.array(parameters, dtype=float)
        xs = np.asarray(x, dtype=float)
        if xs.ndim == 1:
            xs = xs[:, None]
        ys = np.asarray(y, dtype=float)
        if xs.shape[0] != ys.size:
            raise ValueError("x and y must contain the same number of points")
        if sigma is None:
            weights = np.ones_like(ys)
        else:
            s = np.asarray(sigma, dtype=float)
            if s.shape != ys.shape:
                raise ValueError("sigma must match the shape of y")
            weights = 1.0 / (s * s)
        if vary is None:
            free = np.arange(p.size)
        else:
            mask = np.asarray(vary, dtype=bool)
            if mask.size != p.size:
                raise ValueError("vary must have one entry per parameter")
            free = np.flatnonzero(mask)
        lam = self.default_lambda if lam is None else lam

        model = self.model
        residual = ys - model.values(xs, p)
        chi2 = self._chi_squared(residual, weights)
        jac = model.jacobian(xs, p, free)
        iterations = 0

        with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
            while True:
                wj = jac * weights[:, None]
                normal = jac.T @ wj
                alpha = normal.copy()
                alpha[np.diag_indices_from(alpha)] *= 1.0 + lam
                beta = wj.T @ residual
                step = gauss_jordan(alpha, beta)

                trial = p.copy()
                trial[free] += step
                trial_residual = ys - model.values(xs, trial)
                trial_chi2 = self._chi_squared(trial_residual, weights)
                change = abs(chi2 - trial_chi2)

                if trial_chi2 < chi2:
                    lam /= self.factor
                    p = trial
                    residual = trial_residual
                    chi2 = trial_chi2
                    jac = model.jacobian(xs, p, free)
                else:
                    lam *= self.factor

                iterations += 1
                if iterations >= self.max_iterations or change <= self.precision:
                    break

        logger.debug("LM finished after %d iterations, chi2=%g", iterations, chi2)

        errors = None
        if std_dev:
            errors = np.zeros(p.size)
            dof = ys.size - free.size
            with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
                covar = jac.T @ (jac * weights[:, None])
                inverse = gauss_jordan(covar, np.identity(free.size))
                errors[free] = np.sqrt(np.diag(inverse) * chi2 / dof)

        return FitResult(parameters=p, chi_squared=chi2, iterations=iterations, lam=lam, std_dev=errors)


__all__ = ["gauss_jordan", "Model", "FitResult", "LevenbergMarquardt"]

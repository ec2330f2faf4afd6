from __future__ import annotations

"""Model registry and built-in model functions for the LM solver."""

from typing import Dict, List, Type

import numpy as np

from .lm import Model

_registry: Dict[str, Type[Model]] = {}


def register_model(cls: Type[Model]) -> Type[Model]:
    """Register ``cls`` under its ``name``.  Usable as a class decorator."""
    if not (isinstance(cls, type) and issubclass(cls, Model)):
        raise TypeError("models must subclass Model")
    _registry[cls.name] = cls
    return cls


def get_model(name: str, **kwargs) -> Model:
    """Instantiate the model registered as ``name``."""
    try:
        cls = _registry[name]
    except KeyError:
        raise KeyError(f"unknown model {name!r}; available: {', '.join(available_models())}") from None
    return cls(**kwargs)


def available_models() -> List[str]:
    """Return the list of registered model names."""
    return sorted(_registry)


# ---------------------------------------------------------------------------
# Built-in models
# ---------------------------------------------------------------------------


@register_model
class LinearModel(Model):
    """``y = a + b*x``"""

    name = "linear"
    parameter_names = ("a", "b")

    def value(self, x, p):
        return p[0] + p[1] * x[0]

    def values(self, x, p):
        return p[0] + p[1] * x[:, 0]

    def jacobian(self, x, p, free):
        full = np.column_stack([np.ones(len(x)), x[:, 0]])
        return full[:, free]


@register_model
class ConstantModel(Model):
    """``y = a``"""

    name = "constant"
    parameter_names = ("a",)

    def value(self, x, p):
        return p[0]

    def values(self, x, p):
        return np.full(len(x), p[0], dtype=float)

    def jacobian(self, x, p, free):
        return np.ones((len(x), 1))[:, free]


@register_model
class GaussianPeakModel(Model):
    """Gaussian peak on a constant baseline.

    ``y = a + b * exp(-(x - c)^2 / (2 d^2))``
    """

    name = "gaussian"
    parameter_names = ("baseline", "height", "center", "width")

    def value(self, x, p):
        return p[0] + p[1] * np.exp(-((x[0] - p[2]) ** 2) / (2.0 * p[3] ** 2))

    def values(self, x, p):
        return p[0] + p[1] * np.exp(-((x[:, 0] - p[2]) ** 2) / (2.0 * p[3] ** 2))


@register_model
class ExponentialDecayModel(Model):
    """``y = a + b * exp(-x / tau)``"""

    name = "exponential"
    parameter_names = ("offset", "amplitude", "tau")

    def value(self, x, p):
        return p[0] + p[1] * np.exp(-x[0] / p[2])

    def values(self, x, p):
        return p[0] + p[1] * np.exp(-x[:, 0] / p[2])


@register_model
class Gaussian2DModel(Model):
    """Symmetric 2D Gaussian spot on a baseline, evaluated at ``x = [X, Y]``.

    ``baseline + height * exp(-((X - x0)^2 + (Y - y0)^2) / (2 sigma^2))``
    """

    name = "gaussian2d"
    parameter_names = ("baseline", "height", "x0", "y0", "sigma")

    def value(self, x, p):
        r2 = (x[0] - p[2]) ** 2 + (x[1] - p[3]) ** 2
        return p[0] + p[1] * np.exp(-r2 / (2.0 * p[4] ** 2))

    def values(self, x, p):
        r2 = (x[:, 0] - p[2]) ** 2 + (x[:, 1] - p[3]) ** 2
        return p[0] + p[1] * np.exp(-r2 / (2.0 * p[4] ** 2))

    def jacobian(self, x, p, free):
        dx = x[:, 0] - p[2]
        dy = x[:, 1] - p[3]
        s2 = p[4] ** 2
        e = np.exp(-(dx**2 + dy**2) / (2.0 * s2))
        full = np.column_stack(
            [
                np.ones(len(x)),
                e,
                p[1] * e * dx / s2,
                p[1] * e * dy / s2,
                p[1] * e * (dx**2 + dy**2) / (s2 * p[4]),
            ]
        )
        return full[:, free]


__all__ = [
    "register_model",
    "get_model",
    "available_models",
    "LinearModel",
    "ConstantModel",
    "GaussianPeakModel",
    "ExponentialDecayModel",
    "Gaussian2DModel",
]

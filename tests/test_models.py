import numpy as np
import pytest

from kcpfit.core.lm import LevenbergMarquardt, Model
from kcpfit.core.models import available_models, get_model, register_model


def test_builtin_models_registered():
    names = available_models()
    for name in ["linear", "constant", "gaussian", "exponential", "gaussian2d"]:
        assert name in names


def test_unknown_model():
    with pytest.raises(KeyError):
        get_model("nope")


def test_register_rejects_non_models():
    with pytest.raises(TypeError):
        register_model(object)


@pytest.mark.parametrize("name", ["linear", "constant", "gaussian2d"])
def test_analytic_jacobian_matches_numerical(name):
    model = get_model(name)
    rng = np.random.default_rng(1)
    if name == "gaussian2d":
        x = rng.uniform(0, 10, size=(30, 2))
        p = np.array([5.0, 50.0, 4.0, 6.0, 1.5])
    else:
        x = rng.uniform(0, 10, size=(30, 1))
        p = np.array([1.5, -0.7])[: model.n_parameters]
    free = np.arange(model.n_parameters)
    np.testing.assert_allclose(
        model.jacobian(x, p, free), Model.jacobian(model, x, p, free), rtol=1e-5, atol=1e-6
    )


def test_value_matches_values():
    model = get_model("exponential")
    p = np.array([0.5, 2.0, 3.0])
    x = np.array([[0.0], [1.0], [2.5]])
    np.testing.assert_allclose(model.values(x, p), [model(xi, p) for xi in x[:, 0]])


def test_fit_exponential_decay():
    x = np.linspace(0, 15, 80)
    truth = np.array([0.5, 2.0, 3.0])
    model = get_model("exponential")
    y = model.values(x[:, None], truth)
    result = LevenbergMarquardt(model, precision=1e-12).solve([0.3, 1.5, 2.0], x, y)
    np.testing.assert_allclose(result.parameters, truth, atol=1e-4)


def test_fit_two_dimensional_spot():
    xs, ys = np.meshgrid(np.arange(15.0), np.arange(15.0))
    points = np.column_stack([xs.ravel(), ys.ravel()])
    truth = np.array([10.0, 100.0, 7.2, 6.8, 1.5])
    model = get_model("gaussian2d")
    z = model.values(points, truth)
    result = LevenbergMarquardt(model, precision=1e-12).solve([8.0, 80.0, 7.0, 7.0, 2.0], points, z)
    np.testing.assert_allclose(result.parameters, truth, atol=1e-3)

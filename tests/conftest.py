"""
conftest.py
~~~~~~~~~~~

Shared fixtures: seeded RNG, volume factory and finite-difference gradient checks.
"""

import numpy as np
import pytest

from clear_convnet import Volume


@pytest.fixture(autouse=True)
def seeded_rng():
    """Every test starts from the same global NumPy RNG state."""
    np.random.seed(1234)


@pytest.fixture
def make_volume():
    """Factory for volumes filled with scaled standard-normal values."""
    def _make(width, height, depth, scale=1.0):
        return Volume.from_array(np.random.randn(depth, height, width) * scale)
    return _make


def _numerical_gradient(objective, values, eps=1e-5):
    """Central differences of `objective()` w.r.t. each entry of the flat array `values`."""
    grad = np.zeros(values.shape[0])
    for i in range(values.shape[0]):
        original = values[i]
        values[i] = original + eps
        plus = objective()
        values[i] = original - eps
        minus = objective()
        values[i] = original
        grad[i] = (plus - minus) / (2 * eps)
    return grad


def _check_layer_gradients(layer, input_volume, rtol=1e-4, atol=1e-6):
    """
    Compares analytic gradients of  sum(output * upstream)  with numerical ones,
    for the input activations and every parameter array of `layer`.
    """
    out = layer.forward(input_volume)
    upstream = np.random.randn(out.length)

    layer.zero_parameter_gradients()
    out.dw[:] = upstream
    layer.backward()
    analytic_input = input_volume.dw.copy()
    analytic_params = [pg.gradients.copy() for pg in layer.get_parameters_and_gradients()]

    def objective():
        return float(np.dot(layer.forward(input_volume).w, upstream))

    np.testing.assert_allclose(analytic_input, _numerical_gradient(objective, input_volume.w),
                               rtol=rtol, atol=atol)
    for pg, analytic in zip(layer.get_parameters_and_gradients(), analytic_params):
        np.testing.assert_allclose(analytic, _numerical_gradient(objective, pg.parameters),
                                   rtol=rtol, atol=atol)


def _check_loss_gradients(layer, input_volume, y, rtol=1e-4, atol=1e-6):
    """Compares a loss layer's input gradient with numerical derivatives of its loss."""
    layer.forward(input_volume)
    layer.backward(y)
    analytic = input_volume.dw.copy()

    def objective():
        layer.forward(input_volume)
        return layer.backward(y)

    np.testing.assert_allclose(analytic, _numerical_gradient(objective, input_volume.w),
                               rtol=rtol, atol=atol)


@pytest.fixture
def layer_gradient_check():
    return _check_layer_gradients


@pytest.fixture
def loss_gradient_check():
    return _check_loss_gradients

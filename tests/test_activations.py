"""
test_activations.py
~~~~~~~~~~~~~~~~~~~

Unit tests for the activation layers and the activation factory.
"""

import numpy as np
import pytest

from clear_convnet import (Activation, LayerKind, MaxoutLayer, NetConstructionError, ReluLayer,
                           SigmoidLayer, TanhLayer, Volume, get_activation, get_activation_layer)


@pytest.mark.unit
class TestPointwiseActivations:
    """Relu, Sigmoid and Tanh forward values and gradients."""

    def test_relu_forward(self):
        layer = ReluLayer()
        layer.init(1, 1, 4)

        out = layer.forward(Volume.from_array([-2.0, -0.5, 0.5, 2.0]))

        np.testing.assert_array_equal(out.w, [0.0, 0.0, 0.5, 2.0])

    def test_sigmoid_forward(self):
        layer = SigmoidLayer()
        layer.init(1, 1, 3)

        out = layer.forward(Volume.from_array([0.0, 1000.0, -1000.0]))

        np.testing.assert_allclose(out.w, [0.5, 1.0, 0.0], atol=1e-12)

    def test_tanh_forward(self):
        layer = TanhLayer()
        layer.init(1, 1, 2)

        out = layer.forward(Volume.from_array([0.0, 1.0]))

        np.testing.assert_allclose(out.w, [0.0, np.tanh(1.0)])

    def test_relu_gradients(self, layer_gradient_check):
        layer = ReluLayer()
        layer.init(3, 3, 2)
        # Keep inputs away from the kink at 0
        values = np.random.uniform(0.2, 1.0, size=(2, 3, 3)) * np.random.choice([-1.0, 1.0], size=(2, 3, 3))
        layer_gradient_check(layer, Volume.from_array(values))

    @pytest.mark.parametrize("layer_class", [SigmoidLayer, TanhLayer])
    def test_smooth_gradients(self, layer_class, make_volume, layer_gradient_check):
        layer = layer_class()
        layer.init(3, 2, 2)
        layer_gradient_check(layer, make_volume(3, 2, 2))

    def test_shape_is_preserved(self):
        layer = TanhLayer()
        layer.init(5, 4, 3)

        assert layer.output_shape == (5, 4, 3)


@pytest.mark.unit
class TestMaxout:
    """Grouped max over depth."""

    def test_output_depth(self):
        layer = MaxoutLayer(group_size=3)
        layer.init(2, 2, 7)

        # 7 // 3 = 2 groups, the 7th channel is unused
        assert layer.output_shape == (2, 2, 2)

    def test_group_larger_than_depth(self):
        with pytest.raises(NetConstructionError):
            MaxoutLayer(group_size=4).init(1, 1, 3)

    def test_forward_takes_group_max(self):
        layer = MaxoutLayer(group_size=2)
        layer.init(1, 1, 4)

        out = layer.forward(Volume.from_array([1.0, 5.0, -3.0, -4.0]))

        np.testing.assert_array_equal(out.w, [5.0, -3.0])

    def test_backward_routes_to_argmax_only(self, make_volume):
        layer = MaxoutLayer(group_size=3)
        layer.init(3, 2, 6)
        vol = make_volume(3, 2, 6)

        out = layer.forward(vol)
        out.dw[:] = np.random.uniform(0.5, 1.5, size=out.length)
        layer.backward()

        groups = vol.as_array().reshape(2, 3, 2, 3)
        grads = vol.grad_array().reshape(2, 3, 2, 3)
        winners = np.argmax(groups, axis=1)
        for g in range(2):
            for y in range(2):
                for x in range(3):
                    nonzero = np.flatnonzero(grads[g, :, y, x])
                    assert list(nonzero) == [winners[g, y, x]]
                    assert grads[g, winners[g, y, x], y, x] == out.get_grad(x, y, g)

    def test_gradients(self, make_volume, layer_gradient_check):
        layer = MaxoutLayer(group_size=2)
        layer.init(2, 2, 5)
        layer_gradient_check(layer, make_volume(2, 2, 5))


@pytest.mark.unit
class TestActivationFactory:
    """Name resolution for activation requests."""

    @pytest.mark.parametrize("name, layer_class, kind", [
        ('relu', ReluLayer, LayerKind.RELU),
        ('Sigmoid', SigmoidLayer, LayerKind.SIGMOID),
        (Activation.TANH, TanhLayer, LayerKind.TANH),
        ('maxout', MaxoutLayer, LayerKind.MAXOUT),
    ])
    def test_builds_matching_layer(self, name, layer_class, kind):
        layer = get_activation_layer(name)

        assert isinstance(layer, layer_class)
        assert layer.kind is kind
        assert not layer.is_initialized

    def test_maxout_kwargs(self):
        assert get_activation_layer('maxout', group_size=4).group_size == 4

    def test_unknown_activation(self):
        with pytest.raises(NetConstructionError, match="Unknown activation 'swish'"):
            get_activation('swish')

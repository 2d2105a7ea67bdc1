# clear_convnet/activations.py

import enum
import logging
from typing import Union

import numpy as np

from .errors import NetConstructionError
from .layers import Layer, LayerKind


class Activation(str, enum.Enum):
    """Activation kinds a conv or fully connected layer can request."""
    RELU = 'relu'
    SIGMOID = 'sigmoid'
    TANH = 'tanh'
    MAXOUT = 'maxout'


class ReluLayer(Layer):
    """Rectified Linear Unit activation layer.

    Mathematical form:
        forward: f(x) = max(0, x)
        backward: f'(x) = 1 if x > 0 else 0
    """
    kind = LayerKind.RELU

    def forward(self, input_volume, is_training=False):
        self._check_input(input_volume)
        self.input_activation = input_volume
        self.output_activation = self._new_output(np.maximum(0, input_volume.w))
        return self.output_activation

    def backward(self):
        self._require_forward()
        out = self.output_activation
        self.input_activation.dw[:] = out.dw * (out.w > 0)


class SigmoidLayer(Layer):
    """Sigmoid activation layer.

    Mathematical form:
        forward: f(x) = 1 / (1 + e^-x)
        backward: f'(x) = f(x) * (1 - f(x))
    """
    kind = LayerKind.SIGMOID

    def forward(self, input_volume, is_training=False):
        self._check_input(input_volume)
        # Clip input to avoid overflow in exp(-x) for large negative x
        clipped_x = np.clip(input_volume.w, -500, 500)
        self.input_activation = input_volume
        self.output_activation = self._new_output(1.0 / (1.0 + np.exp(-clipped_x)))
        return self.output_activation

    def backward(self):
        self._require_forward()
        out = self.output_activation
        self.input_activation.dw[:] = out.w * (1.0 - out.w) * out.dw


class TanhLayer(Layer):
    """Hyperbolic tangent activation layer.

    Mathematical form:
        forward: f(x) = tanh(x)
        backward: f'(x) = 1 - tanh^2(x)
    """
    kind = LayerKind.TANH

    def forward(self, input_volume, is_training=False):
        self._check_input(input_volume)
        self.input_activation = input_volume
        self.output_activation = self._new_output(np.tanh(input_volume.w))
        return self.output_activation

    def backward(self):
        self._require_forward()
        out = self.output_activation
        self.input_activation.dw[:] = (1.0 - out.w ** 2) * out.dw


class MaxoutLayer(Layer):
    """
    Maxout over the depth dimension.

    Consecutive depth channels are grouped `group_size` at a time and each
    spatial position outputs the max of its group, so
    output_depth = input_depth // group_size. Leftover channels are ignored.
    Backward routes each output gradient to the arg-max element only.
    """
    kind = LayerKind.MAXOUT

    def __init__(self, group_size: int = 2):
        super().__init__()
        if group_size <= 0:
            raise NetConstructionError(f"Maxout group size must be positive, got {group_size}")
        self.group_size = int(group_size)

    def _compute_output_shape(self, width, height, depth):
        out_depth = depth // self.group_size
        if out_depth < 1:
            raise NetConstructionError(
                f"Maxout group size {self.group_size} is larger than input depth {depth}")
        return (width, height, out_depth)

    def _grouped(self, values: np.ndarray) -> np.ndarray:
        """(D_in, H, W) -> (D_out, group_size, H, W), dropping leftover channels."""
        used = self.output_depth * self.group_size
        return values[:used].reshape(self.output_depth, self.group_size, self.input_height, self.input_width)

    def forward(self, input_volume, is_training=False):
        self._check_input(input_volume)
        groups = self._grouped(input_volume.as_array())
        # Positions of the max values, needed for backprop
        switches = np.argmax(groups, axis=1)
        self.cache['switches'] = switches
        out = np.take_along_axis(groups, switches[:, None], axis=1)[:, 0]

        self.input_activation = input_volume
        self.output_activation = self._new_output(out)
        return self.output_activation

    def backward(self):
        self._require_forward()
        switches = self.cache['switches']
        d_out = self.output_activation.grad_array()

        d_input = np.zeros((self.input_depth, self.input_height, self.input_width))
        d_groups = np.zeros((self.output_depth, self.group_size, self.input_height, self.input_width))
        np.put_along_axis(d_groups, switches[:, None], d_out[:, None], axis=1)
        d_input[:self.output_depth * self.group_size] = d_groups.reshape(-1, self.input_height, self.input_width)
        self.input_activation.dw[:] = d_input.reshape(-1)

    def __repr__(self):
        return f"MaxoutLayer(group_size={self.group_size}, output={self.output_shape})"


# Dictionary mapping activation kinds to their layer classes
ACTIVATION_LAYERS = {
    Activation.RELU: ReluLayer,
    Activation.SIGMOID: SigmoidLayer,
    Activation.TANH: TanhLayer,
    Activation.MAXOUT: MaxoutLayer,
}


def get_activation(name: Union[str, Activation]) -> Activation:
    """Resolves an activation name (case-insensitive) or enum member.

    Raises:
        NetConstructionError: If the activation kind is not recognized.
    """
    if isinstance(name, Activation):
        return name
    try:
        return Activation(str(name).lower())
    except ValueError:
        raise NetConstructionError(
            f"Unknown activation '{name}'. "
            f"Available activations: {[a.value for a in Activation]}"
        ) from None


def get_activation_layer(name: Union[str, Activation], **kwargs) -> Layer:
    """Factory returning a fresh, uninitialized activation layer.

    Args:
        name: Activation kind (e.g. 'relu' or Activation.RELU).
        **kwargs: Passed to the layer constructor (e.g. 'group_size' for maxout).
    """
    activation = get_activation(name)
    logging.debug(f"Creating {ACTIVATION_LAYERS[activation].__name__} for activation '{activation.value}'")
    return ACTIVATION_LAYERS[activation](**kwargs)

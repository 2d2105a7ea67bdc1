# clear_convnet/layers.py

"""
Layer implementations for the Volume-based network engine.

Every layer follows the same two-phase contract:
   1. `init(input_width, input_height, input_depth)` fixes the output shape and
      allocates parameters. The Net calls it once, when the layer is appended.
   2. `forward(volume, is_training)` computes a new output Volume and caches the
      input/output pair; `backward()` then reads that cache, writes the gradient
      of the loss w.r.t. the input into `input_volume.dw` (overwriting it) and
      *accumulates* parameter gradients, so several samples can be summed
      before the optimizer applies an update.

Terminal (loss) layers replace `backward()` with `backward(y)`, which takes the
ground truth, seeds the gradient and returns the scalar loss.

Layers defined here:
   - InputLayer
   - ConvLayer (sliding-window convolution with stride and zero padding)
   - FullyConnectedLayer
   - DropoutLayer
   - SoftmaxLayer (classification loss)
   - RegressionLayer (squared-error loss)
The pointwise/grouped activation layers live in activations.py.
"""

import enum
import logging
from typing import List, Optional, Tuple

import numpy as np

from .errors import NetConstructionError, NetUsageError
from .volume import Volume


class LayerKind(enum.IntEnum):
    """Tag identifying each layer variant. The values double as the on-disk type tags."""
    INPUT = 1
    CONV = 2
    FULLY_CONNECTED = 3
    RELU = 4
    SIGMOID = 5
    TANH = 6
    MAXOUT = 7
    DROPOUT = 8
    SOFTMAX = 9
    REGRESSION = 10


class ParametersAndGradients:
    """
    One trainable parameter array paired with its gradient array.

    Both arrays are flat views into the owning layer's storage, so an optimizer
    that updates them in place updates the layer.
    """

    def __init__(self, parameters: np.ndarray, gradients: np.ndarray,
                 l1_decay_mul: float = 0.0, l2_decay_mul: float = 1.0):
        self.parameters = parameters
        self.gradients = gradients
        self.l1_decay_mul = l1_decay_mul
        self.l2_decay_mul = l2_decay_mul

    def __repr__(self):
        return (f"ParametersAndGradients(size={self.parameters.size}, "
                f"l1_decay_mul={self.l1_decay_mul}, l2_decay_mul={self.l2_decay_mul})")


# --- Base Layer Class ---

class Layer:
    """
    Abstract base class for all layers.

    Capability flags are class attributes, so callers never need isinstance checks:
        kind:              LayerKind tag
        is_terminal:       True for loss layers (backward takes a target, returns the loss)
        is_classification: True for loss layers that declare a `class_count`
        has_bias_pref:     True for layers whose bias start value can be tuned
    """
    kind: LayerKind = None
    is_terminal = False
    is_classification = False
    has_bias_pref = False

    def __init__(self):
        self.input_width: Optional[int] = None
        self.input_height: Optional[int] = None
        self.input_depth: Optional[int] = None
        self.output_width: Optional[int] = None
        self.output_height: Optional[int] = None
        self.output_depth: Optional[int] = None

        # Requests honoured by Net.add_layer, not by the layer itself
        self.activation = None
        self.drop_prob: Optional[float] = None

        # Forward state kept for the next backward call
        self.input_activation: Optional[Volume] = None
        self.output_activation: Optional[Volume] = None
        self.cache = {}

    @property
    def is_initialized(self) -> bool:
        return self.output_depth is not None

    @property
    def output_shape(self) -> Tuple[int, int, int]:
        return (self.output_width, self.output_height, self.output_depth)

    def init(self, input_width: int, input_height: int, input_depth: int):
        """
        Fixes the output shape from the input shape and allocates parameters.
        Calling it again with the same input shape is a no-op.
        """
        input_shape = (input_width, input_height, input_depth)
        if self.is_initialized:
            if input_shape == (self.input_width, self.input_height, self.input_depth):
                return
            raise NetConstructionError(
                f"{type(self).__name__} already initialized for input "
                f"{(self.input_width, self.input_height, self.input_depth)}, got {input_shape}")

        self.input_width, self.input_height, self.input_depth = input_shape
        self.output_width, self.output_height, self.output_depth = self._compute_output_shape(*input_shape)
        self._allocate_parameters()
        logging.debug(f"{type(self).__name__} init - input {input_shape} -> output {self.output_shape}")

    def _compute_output_shape(self, width: int, height: int, depth: int) -> Tuple[int, int, int]:
        """Shape-preserving by default."""
        return (width, height, depth)

    def _allocate_parameters(self):
        pass

    def forward(self, input_volume: Volume, is_training: bool = False) -> Volume:
        """Performs the forward pass for the layer."""
        raise NotImplementedError("Each layer must implement its own forward pass.")

    def backward(self):
        """Propagates the output gradient to the input and records parameter gradients."""
        raise NotImplementedError("Each layer must implement its own backward pass.")

    def get_parameters_and_gradients(self) -> List[ParametersAndGradients]:
        return []

    def zero_parameter_gradients(self):
        for pg in self.get_parameters_and_gradients():
            pg.gradients[:] = 0.0

    # --- Contract checks shared by all variants ---

    def _check_input(self, input_volume: Volume):
        if not self.is_initialized:
            raise NetUsageError(f"{type(self).__name__} used before init()")
        expected = (self.input_width, self.input_height, self.input_depth)
        if input_volume.shape != expected:
            raise NetUsageError(
                f"{type(self).__name__} expects input {expected}, got {input_volume.shape}")

    def _require_forward(self):
        if self.input_activation is None or self.output_activation is None:
            raise NetUsageError(f"{type(self).__name__}.backward called before forward")

    def _new_output(self, values: np.ndarray) -> Volume:
        out = Volume(self.output_width, self.output_height, self.output_depth, fill=0.0)
        out.w[:] = values.reshape(-1)
        return out

    def __repr__(self):
        return f"{type(self).__name__}(output={self.output_shape})"


# --- Input Layer ---

class InputLayer(Layer):
    """
    First layer of every Net. Passes the volume through unchanged and pins the
    network's input shape.
    """
    kind = LayerKind.INPUT

    def __init__(self, width: int, height: int, depth: int):
        super().__init__()
        if width <= 0 or height <= 0 or depth <= 0:
            raise NetConstructionError(f"InputLayer dimensions must be positive, got ({width}, {height}, {depth})")
        self.width, self.height, self.depth = int(width), int(height), int(depth)
        # Input and output shape are both known up front
        self.input_width = self.output_width = self.width
        self.input_height = self.output_height = self.height
        self.input_depth = self.output_depth = self.depth

    def forward(self, input_volume, is_training=False):
        self._check_input(input_volume)
        self.input_activation = input_volume
        self.output_activation = input_volume
        return input_volume

    def backward(self):
        self._require_forward()


# --- Dot-product Layers ---

class DotProductLayer(Layer):
    """
    Shared configuration of the layers that compute weighted sums (conv and fully connected):
    activation/dropout requests, decay multipliers and the bias start value.
    """
    has_bias_pref = True

    def __init__(self, activation=None, drop_prob: Optional[float] = None,
                 l1_decay_mul: float = 0.0, l2_decay_mul: float = 1.0, bias_pref: float = 0.0):
        super().__init__()
        self.activation = activation
        self.drop_prob = drop_prob
        self.l1_decay_mul = float(l1_decay_mul)
        self.l2_decay_mul = float(l2_decay_mul)
        self.biases: Optional[np.ndarray] = None
        self.bias_gradients: Optional[np.ndarray] = None
        self._bias_pref = float(bias_pref)

    @property
    def bias_pref(self) -> float:
        return self._bias_pref

    @bias_pref.setter
    def bias_pref(self, value: float):
        """Also resets already-allocated biases, so it can be applied right after init()."""
        self._bias_pref = float(value)
        if self.biases is not None:
            self.biases[:] = self._bias_pref


class ConvLayer(DotProductLayer):
    """
    2D convolution over a (width, height, depth) volume.

    Each of the `filter_count` filters spans the full input depth and a
    `width` x `height` window. The window slides with `stride`, over an input
    zero-padded by `pad` on every side, so

        output_width  = (input_width  + 2 * pad - width)  // stride + 1
        output_height = (input_height + 2 * pad - height) // stride + 1
        output_depth  = filter_count

    Filters are stored as (filter_count, input_depth, height, width).
    """
    kind = LayerKind.CONV

    def __init__(self, width: int, height: int, filter_count: int, stride: int = 1, pad: int = 0,
                 activation=None, drop_prob: Optional[float] = None,
                 l1_decay_mul: float = 0.0, l2_decay_mul: float = 1.0, bias_pref: float = 0.0):
        super().__init__(activation, drop_prob, l1_decay_mul, l2_decay_mul, bias_pref)
        if width <= 0 or height <= 0 or filter_count <= 0:
            raise NetConstructionError(
                f"ConvLayer needs positive kernel size and filter count, got ({width}, {height}, {filter_count})")
        if stride <= 0 or pad < 0:
            raise NetConstructionError(f"ConvLayer needs stride >= 1 and pad >= 0, got stride={stride}, pad={pad}")
        self.width = int(width)
        self.height = int(height)
        self.filter_count = int(filter_count)
        self.stride = int(stride)
        self.pad = int(pad)

        self.filters: Optional[np.ndarray] = None
        self.filter_gradients: Optional[np.ndarray] = None

    def _compute_output_shape(self, width, height, depth):
        out_w = (width + 2 * self.pad - self.width) // self.stride + 1
        out_h = (height + 2 * self.pad - self.height) // self.stride + 1
        if out_w < 1 or out_h < 1:
            raise NetConstructionError(
                f"ConvLayer {self.width}x{self.height} (stride {self.stride}, pad {self.pad}) "
                f"does not fit input {width}x{height}")
        return (out_w, out_h, self.filter_count)

    def _allocate_parameters(self):
        # He initialization for weights
        scale = np.sqrt(2.0 / (self.input_depth * self.height * self.width))
        self.filters = np.random.randn(self.filter_count, self.input_depth, self.height, self.width) * scale
        self.filter_gradients = np.zeros_like(self.filters)
        self.biases = np.full(self.filter_count, self.bias_pref)
        self.bias_gradients = np.zeros(self.filter_count)

    def _window(self, ky: int, kx: int):
        """Strided slices of the padded input touched by kernel offset (ky, kx)."""
        s = self.stride
        rows = slice(ky, ky + s * (self.output_height - 1) + 1, s)
        cols = slice(kx, kx + s * (self.output_width - 1) + 1, s)
        return rows, cols

    def forward(self, input_volume, is_training=False):
        self._check_input(input_volume)
        p = self.pad
        padded = np.pad(input_volume.as_array(), ((0, 0), (p, p), (p, p)), mode='constant')

        Z = np.zeros((self.filter_count, self.output_height, self.output_width))
        # One pass per kernel offset: every output position reads the same
        # (ky, kx) tap, which is a strided slice of the padded input.
        for ky in range(self.height):
            for kx in range(self.width):
                rows, cols = self._window(ky, kx)
                patch = padded[:, rows, cols]  # (D_in, H_out, W_out)
                Z += np.tensordot(self.filters[:, :, ky, kx], patch, axes=([1], [0]))
        Z += self.biases[:, None, None]

        self.cache['padded_input'] = padded
        self.input_activation = input_volume
        self.output_activation = self._new_output(Z)
        return self.output_activation

    def backward(self):
        self._require_forward()
        dZ = self.output_activation.grad_array()  # (F, H_out, W_out)
        padded = self.cache['padded_input']
        d_padded = np.zeros_like(padded)

        for ky in range(self.height):
            for kx in range(self.width):
                rows, cols = self._window(ky, kx)
                patch = padded[:, rows, cols]
                # Correlate the upstream gradient with the input patch -> (F, D_in)
                self.filter_gradients[:, :, ky, kx] += np.tensordot(dZ, patch, axes=([1, 2], [1, 2]))
                # Send the gradient back through the same tap (transposed convolution)
                d_padded[:, rows, cols] += np.tensordot(self.filters[:, :, ky, kx], dZ, axes=([0], [0]))
        self.bias_gradients += dZ.sum(axis=(1, 2))

        p = self.pad
        d_input = d_padded[:, p:p + self.input_height, p:p + self.input_width]
        self.input_activation.dw[:] = d_input.reshape(-1)

    def get_parameters_and_gradients(self):
        pairs = [ParametersAndGradients(self.filters[f].reshape(-1), self.filter_gradients[f].reshape(-1),
                                        self.l1_decay_mul, self.l2_decay_mul)
                 for f in range(self.filter_count)]
        pairs.append(ParametersAndGradients(self.biases, self.bias_gradients, 0.0, 0.0))
        return pairs

    def __repr__(self):
        return (f"ConvLayer({self.width}x{self.height}x{self.filter_count}, stride={self.stride}, "
                f"pad={self.pad}, output={self.output_shape})")


class FullyConnectedLayer(DotProductLayer):
    """
    Fully connected layer over the flattened input volume.
    Output shape: (1, 1, neuron_count). Weights are stored as (neuron_count, num_inputs).
    """
    kind = LayerKind.FULLY_CONNECTED

    def __init__(self, neuron_count: int, activation=None, drop_prob: Optional[float] = None,
                 l1_decay_mul: float = 0.0, l2_decay_mul: float = 1.0, bias_pref: float = 0.0):
        super().__init__(activation, drop_prob, l1_decay_mul, l2_decay_mul, bias_pref)
        if neuron_count <= 0:
            raise NetConstructionError(f"FullyConnectedLayer needs a positive neuron count, got {neuron_count}")
        self.neuron_count = int(neuron_count)
        self.weights: Optional[np.ndarray] = None
        self.weight_gradients: Optional[np.ndarray] = None

    def _compute_output_shape(self, width, height, depth):
        return (1, 1, self.neuron_count)

    def _allocate_parameters(self):
        num_inputs = self.input_width * self.input_height * self.input_depth
        scale = np.sqrt(2.0 / num_inputs)
        self.weights = np.random.randn(self.neuron_count, num_inputs) * scale
        self.weight_gradients = np.zeros_like(self.weights)
        self.biases = np.full(self.neuron_count, self.bias_pref)
        self.bias_gradients = np.zeros(self.neuron_count)

    def forward(self, input_volume, is_training=False):
        self._check_input(input_volume)
        Z = np.dot(self.weights, input_volume.w) + self.biases
        self.input_activation = input_volume
        self.output_activation = self._new_output(Z)
        return self.output_activation

    def backward(self):
        self._require_forward()
        dZ = self.output_activation.dw          # (neuron_count,)
        x = self.input_activation.w             # (num_inputs,)
        self.weight_gradients += np.outer(dZ, x)
        self.bias_gradients += dZ
        self.input_activation.dw[:] = np.dot(self.weights.T, dZ)

    def get_parameters_and_gradients(self):
        pairs = [ParametersAndGradients(self.weights[i], self.weight_gradients[i],
                                        self.l1_decay_mul, self.l2_decay_mul)
                 for i in range(self.neuron_count)]
        pairs.append(ParametersAndGradients(self.biases, self.bias_gradients, 0.0, 0.0))
        return pairs

    def __repr__(self):
        return f"FullyConnectedLayer({self.neuron_count}, output={self.output_shape})"


# --- Dropout ---

class DropoutLayer(Layer):
    """
    Inverted dropout.

    Training: each unit is zeroed with probability `drop_prob` and survivors are
    scaled by 1 / (1 - drop_prob). Inference: identity.
    The mask of the latest forward call is kept for backward.
    """
    kind = LayerKind.DROPOUT

    def __init__(self, drop_prob: float = 0.5):
        super().__init__()
        if drop_prob is None or not 0.0 <= drop_prob < 1.0:
            raise NetConstructionError(f"Dropout probability must be in [0, 1), got {drop_prob}")
        self.drop_prob = float(drop_prob)

    def forward(self, input_volume, is_training=False):
        self._check_input(input_volume)
        x = input_volume.w
        if is_training and self.drop_prob > 0:
            kept = np.random.rand(x.shape[0]) >= self.drop_prob
            scale = 1.0 / (1.0 - self.drop_prob)
        else:
            kept = np.ones(x.shape[0], dtype=bool)
            scale = 1.0
        self.cache['kept'] = kept
        self.cache['scale'] = scale

        self.input_activation = input_volume
        self.output_activation = self._new_output(x * kept * scale)
        return self.output_activation

    def backward(self):
        self._require_forward()
        kept, scale = self.cache['kept'], self.cache['scale']
        self.input_activation.dw[:] = self.output_activation.dw * kept * scale


# --- Loss Layers ---

class SoftmaxLayer(Layer):
    """
    Softmax over the flattened input, paired with cross-entropy loss.

    The preceding layer must produce exactly `class_count` values; Net.add_layer
    additionally requires it to be a FullyConnectedLayer of that size.
    """
    kind = LayerKind.SOFTMAX
    is_terminal = True
    is_classification = True

    def __init__(self, class_count: int):
        super().__init__()
        if class_count <= 0:
            raise NetConstructionError(f"SoftmaxLayer needs a positive class count, got {class_count}")
        self.class_count = int(class_count)

    def _compute_output_shape(self, width, height, depth):
        if width * height * depth != self.class_count:
            raise NetConstructionError(
                f"SoftmaxLayer with {self.class_count} classes cannot take {width * height * depth} inputs")
        return (1, 1, self.class_count)

    def forward(self, input_volume, is_training=False):
        self._check_input(input_volume)
        x = input_volume.w
        # Shift by the max for numerical stability (prevents overflow in exp)
        exp_x = np.exp(x - np.max(x))
        probs = exp_x / np.sum(exp_x)
        self.input_activation = input_volume
        self.output_activation = self._new_output(probs)
        return self.output_activation

    def _target_distribution(self, y) -> np.ndarray:
        if np.ndim(y) == 0:
            try:
                value = float(y)
            except (TypeError, ValueError):
                raise NetUsageError(f"Class label must be an integer, got {y!r}") from None
            if not np.isfinite(value) or value != int(value) or not 0 <= value < self.class_count:
                raise NetUsageError(f"Class label must be an integer in [0, {self.class_count}), got {y}")
            target = np.zeros(self.class_count)
            target[int(value)] = 1.0
            return target
        try:
            target = np.asarray(y, dtype=float).reshape(-1)
        except (TypeError, ValueError):
            raise NetUsageError(f"Target distribution must be numeric, got {y!r}") from None
        if target.shape[0] != self.class_count:
            raise NetUsageError(f"Target distribution must have {self.class_count} entries, got {target.shape[0]}")
        return target

    def backward(self, y) -> float:
        """
        Args:
            y: Integer class label, or a one-hot (or soft) target distribution.

        Returns:
            Cross-entropy loss  -sum(target * log(probs)).
        """
        self._require_forward()
        target = self._target_distribution(y)
        probs = self.output_activation.w
        # Gradient w.r.t. the softmax *inputs* simplifies to (probs - target)
        self.input_activation.dw[:] = probs - target
        # Clip to avoid log(0)
        return float(-np.sum(target * np.log(np.maximum(probs, 1e-300))))

    def __repr__(self):
        return f"SoftmaxLayer({self.class_count})"


class RegressionLayer(Layer):
    """
    Identity output with squared-error loss  0.5 * ||prediction - target||^2.
    """
    kind = LayerKind.REGRESSION
    is_terminal = True

    def __init__(self, neuron_count: int):
        super().__init__()
        if neuron_count <= 0:
            raise NetConstructionError(f"RegressionLayer needs a positive neuron count, got {neuron_count}")
        self.neuron_count = int(neuron_count)

    def _compute_output_shape(self, width, height, depth):
        if width * height * depth != self.neuron_count:
            raise NetConstructionError(
                f"RegressionLayer with {self.neuron_count} outputs cannot take {width * height * depth} inputs")
        return (1, 1, self.neuron_count)

    def forward(self, input_volume, is_training=False):
        self._check_input(input_volume)
        self.input_activation = input_volume
        self.output_activation = self._new_output(input_volume.w.copy())
        return self.output_activation

    def backward(self, y) -> float:
        """
        Args:
            y: Target vector of length `neuron_count`, or a scalar, in which case
               only output 0 is regressed and the others get zero gradient.
        """
        self._require_forward()
        prediction = self.output_activation.w
        d_input = np.zeros(self.neuron_count)
        if np.ndim(y) == 0:
            diff = prediction[0] - float(y)
            d_input[0] = diff
            loss = 0.5 * diff * diff
        else:
            target = np.asarray(y, dtype=float).reshape(-1)
            if target.shape[0] != self.neuron_count:
                raise NetUsageError(f"Regression target must have {self.neuron_count} entries, got {target.shape[0]}")
            d_input = prediction - target
            loss = 0.5 * np.sum(d_input ** 2)
        self.input_activation.dw[:] = d_input
        return float(loss)

    def __repr__(self):
        return f"RegressionLayer({self.neuron_count})"

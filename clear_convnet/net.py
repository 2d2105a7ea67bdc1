# clear_convnet/net.py

"""
Net: an ordered, append-only stack of layers.

`add_layer` is the only way a Net grows. Besides appending the given layer it
enforces the topology rules and expands activation/dropout *requests* into
real layers, so `net.layers` always holds the fully expanded stack, which is
exactly what gets serialized:

    net.add_layer(ConvLayer(3, 3, 8, pad=1, activation='relu', drop_prob=0.2))
    # -> [..., ConvLayer, ReluLayer, DropoutLayer]
"""

import logging
from typing import List, Optional, Union

import numpy as np

from .activations import get_activation, get_activation_layer
from .errors import ModelFormatError, NetConstructionError, NetUsageError
from .layers import DropoutLayer, Layer, LayerKind, ParametersAndGradients
from .persistence import decode_layers, encode_layers
from .volume import Volume


class Net:
    """
    A container for a linear stack of layers.

    The first layer must be an InputLayer; a loss layer (SoftmaxLayer or
    RegressionLayer), if present, must be last and sit directly on top of a
    FullyConnectedLayer.
    """

    # Start value for biases feeding a ReLU, so units are not dead from the first step
    RELU_BIAS_PREF = 0.1

    def __init__(self):
        self.layers: List[Layer] = []

    # --- Construction ---

    def add_layer(self, layer: Layer):
        """
        Appends `layer`, then any activation or dropout layer it requested.

        Raises:
            NetConstructionError: On any topology violation. Requests are validated
                before anything is appended, so a failed call leaves the Net unchanged.
        """
        activation_layer = None
        if layer.activation is not None:
            layer.activation = get_activation(layer.activation)
            activation_layer = get_activation_layer(layer.activation)

        dropout_layer = None
        if layer.drop_prob is not None and layer.kind is not LayerKind.DROPOUT:
            dropout_layer = DropoutLayer(layer.drop_prob)

        count = len(self.layers)
        self._append(layer)
        try:
            if activation_layer is not None:
                logging.debug(f"Auto-inserting {type(activation_layer).__name__} after {type(layer).__name__}")
                self.add_layer(activation_layer)
            if dropout_layer is not None:
                logging.debug(f"Auto-inserting DropoutLayer(p={dropout_layer.drop_prob}) after {type(layer).__name__}")
                self.add_layer(dropout_layer)
        except NetConstructionError:
            del self.layers[count:]
            raise

    def _append(self, layer: Layer):
        if not self.layers:
            if layer.kind is not LayerKind.INPUT:
                raise NetConstructionError("First layer should be an InputLayer")
            self.layers.append(layer)
            logging.info(f"Net input shape: {layer.output_shape}")
            return

        if layer.kind is LayerKind.INPUT:
            raise NetConstructionError("InputLayer can only be the first layer")

        previous = self.layers[-1]
        if previous.is_terminal:
            raise NetConstructionError(f"Cannot add a layer after the loss layer {type(previous).__name__}")

        self._check_predecessor(previous, layer)

        if layer.kind is LayerKind.RELU and previous.has_bias_pref:
            previous.bias_pref = self.RELU_BIAS_PREF

        layer.init(*previous.output_shape)
        self.layers.append(layer)

    @staticmethod
    def _check_predecessor(previous: Layer, layer: Layer):
        """Loss layers sit directly on a FullyConnectedLayer (of matching size for classifiers)."""
        if layer.is_classification:
            if previous.kind is not LayerKind.FULLY_CONNECTED:
                raise NetConstructionError(
                    f"Previously added layer should be a FullyConnectedLayer with {layer.class_count} neurons")
            if previous.neuron_count != layer.class_count:
                raise NetConstructionError(
                    f"Previous FullyConnectedLayer should have {layer.class_count} neurons, "
                    f"has {previous.neuron_count}")
        elif layer.kind is LayerKind.REGRESSION and previous.kind is not LayerKind.FULLY_CONNECTED:
            raise NetConstructionError("Previously added layer should be a FullyConnectedLayer")

    @classmethod
    def from_layers(cls, layers: List[Layer]) -> 'Net':
        """
        Wraps an already expanded and initialized layer list without re-running
        the auto-wiring of `add_layer`. Used when loading a saved model.
        """
        if not layers or layers[0].kind is not LayerKind.INPUT:
            raise NetConstructionError("First layer should be an InputLayer")
        for previous, layer in zip(layers, layers[1:]):
            if not layer.is_initialized or layer.kind is LayerKind.INPUT:
                raise NetConstructionError(f"{type(layer).__name__} is not a valid inner layer")
            if (layer.input_width, layer.input_height, layer.input_depth) != previous.output_shape:
                raise NetConstructionError(
                    f"{type(layer).__name__} input does not match {type(previous).__name__} output")
            if previous.is_terminal:
                raise NetConstructionError(f"Loss layer {type(previous).__name__} must be last")
            cls._check_predecessor(previous, layer)
        net = cls()
        net.layers = list(layers)
        return net

    # --- Terminal layer ---

    @property
    def terminal_layer(self) -> Optional[Layer]:
        """The loss layer, or None when the net does not end in one."""
        if self.layers and self.layers[-1].is_terminal:
            return self.layers[-1]
        return None

    @property
    def terminal_kind(self) -> Optional[LayerKind]:
        terminal = self.terminal_layer
        return terminal.kind if terminal is not None else None

    def _require_terminal(self) -> Layer:
        terminal = self.terminal_layer
        if terminal is None:
            raise NetUsageError("Last layer of the net is not a loss layer")
        return terminal

    # --- Forward / backward ---

    def forward(self, input_volume: Union[Volume, List[Volume]], is_training: bool = False) -> Volume:
        """
        Performs a full forward pass through all layers.

        Args:
            input_volume: Volume matching the InputLayer shape. A list is accepted
                          for multi-input callers; only its first volume is used.
            is_training: Enables training-only behaviour (dropout).

        Returns:
            The output Volume of the last layer.
        """
        if isinstance(input_volume, (list, tuple)):
            if not input_volume:
                raise NetUsageError("forward got an empty list of volumes")
            input_volume = input_volume[0]
        if not self.layers:
            raise NetUsageError("Net has no layers")

        activation = input_volume
        for i, layer in enumerate(self.layers):
            activation = layer.forward(activation, is_training)
            logging.debug(f"Forward pass - Layer {i} ({type(layer).__name__}) output shape: {activation.shape}")
        return activation

    def backward(self, y) -> float:
        """
        Runs the loss layer's backward with target `y`, then every other layer in
        reverse order. The InputLayer (index 0) receives its gradient but is not called.

        Args:
            y: Class label / target distribution for SoftmaxLayer, target vector
               (or scalar) for RegressionLayer.

        Returns:
            The loss reported by the terminal layer.
        """
        terminal = self._require_terminal()
        loss = terminal.backward(y)
        for i in range(len(self.layers) - 2, 0, -1):
            self.layers[i].backward()
            logging.debug(f"Backward pass - Layer {i} ({type(self.layers[i]).__name__}) done")
        return loss

    def get_cost_loss(self, input_volume: Volume, y) -> float:
        """Loss of the net on one sample, without propagating gradients past the loss layer."""
        terminal = self._require_terminal()
        self.forward(input_volume)
        return terminal.backward(y)

    def get_prediction(self) -> int:
        """Index of the most probable class from the latest forward pass."""
        if not self.layers or self.layers[-1].kind is not LayerKind.SOFTMAX:
            raise NetUsageError("get_prediction assumes a SoftmaxLayer as last layer of the net")
        probs = self.layers[-1].output_activation
        if probs is None:
            raise NetUsageError("get_prediction called before forward")
        return int(np.argmax(probs.w))

    def get_parameters_and_gradients(self) -> List[ParametersAndGradients]:
        """All trainable pairs, in layer order. The order is stable across calls."""
        pairs = []
        for layer in self.layers:
            pairs.extend(layer.get_parameters_and_gradients())
        return pairs

    # --- Persistence ---

    def to_bytes(self) -> bytes:
        return encode_layers(self.layers)

    @classmethod
    def from_bytes(cls, data: bytes) -> 'Net':
        layers = decode_layers(data)
        try:
            return cls.from_layers(layers)
        except NetConstructionError as e:
            raise ModelFormatError(f"Stored layers do not form a valid net: {e}") from e

    def save(self, filename: str):
        """Writes the full layer stack and its parameters to a binary file."""
        data = self.to_bytes()
        with open(filename, 'wb') as f:
            f.write(data)
        logging.info(f"Net with {len(self.layers)} layers saved to {filename} ({len(data)} bytes)")

    @classmethod
    def load(cls, filename: str) -> 'Net':
        """
        Reads a Net written by `save`.

        Raises:
            FileNotFoundError: If the file does not exist.
            ModelFormatError: If the file is corrupt, truncated or oversized.
        """
        try:
            with open(filename, 'rb') as f:
                data = f.read()
        except OSError as e:
            logging.error(f"Error reading model file {filename}: {e}")
            raise
        try:
            net = cls.from_bytes(data)
        except ModelFormatError as e:
            logging.error(f"Invalid model file {filename}: {e}")
            raise
        logging.info(f"Net with {len(net.layers)} layers loaded from {filename}")
        return net

    # --- Reporting ---

    def summary(self) -> str:
        """
        Generates a text summary of the network architecture and parameters.
        """
        summary_str = "\n" + "=" * 50 + "\n"
        summary_str += "Net Summary\n"
        summary_str += "=" * 50 + "\n"
        total_params = 0
        for i, layer in enumerate(self.layers):
            layer_params = sum(pg.parameters.size for pg in layer.get_parameters_and_gradients())
            total_params += layer_params
            summary_str += f"Layer {i}: {layer!r}\n"
            summary_str += f"  Output Shape: {layer.output_shape}\n"
            summary_str += f"  Parameters: {layer_params}\n"
            summary_str += "-" * 50 + "\n"
        summary_str += f"Total Parameters: {total_params}\n"
        summary_str += "=" * 50 + "\n"
        return summary_str

    def __len__(self):
        return len(self.layers)

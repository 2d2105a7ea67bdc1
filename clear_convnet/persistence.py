# clear_convnet/persistence.py

"""
Binary model format.

Layout (all little-endian):

    header   magic b"CCNV" | uint16 version | uint32 layer count
    record   uint8 LayerKind tag | uint32 payload length | payload
    payload  fixed per-kind config fields | zero or more arrays
    array    uint32 element count | count * float64

The layer list is stored fully expanded (auto-inserted activation and dropout
layers are records of their own), so decoding never re-runs Net.add_layer's
wiring. Readers skip unknown trailing bytes inside a payload, which lets a
later version append fields to a record without breaking older readers.
"""

import logging
import struct
from typing import List

import numpy as np

from .activations import Activation, MaxoutLayer, ReluLayer, SigmoidLayer, TanhLayer
from .errors import ModelFormatError, NetConstructionError
from .layers import (ConvLayer, DropoutLayer, FullyConnectedLayer, InputLayer, Layer, LayerKind,
                     RegressionLayer, SoftmaxLayer)

MAGIC = b'CCNV'
FORMAT_VERSION = 1
# Ceiling on any single stored array, in elements (80 MB of float64)
MAX_ARRAY_LENGTH = 10 * 1024 * 1024

_HEADER = struct.Struct('<4sHI')
_RECORD = struct.Struct('<BI')
_COUNT = struct.Struct('<I')
_FLOAT64 = np.dtype('<f8')

# Activation requests are kept in the record for reference only; code 0 means none
_ACTIVATION_CODES = {
    None: 0,
    Activation.RELU: 1,
    Activation.SIGMOID: 2,
    Activation.TANH: 3,
    Activation.MAXOUT: 4,
}
_ACTIVATIONS_BY_CODE = {code: activation for activation, code in _ACTIVATION_CODES.items()}


class _LayerSchema:
    """
    How one layer kind maps to bytes: a struct for its constructor arguments
    (read back with getattr under the same names) and the names of its
    parameter arrays.
    """

    def __init__(self, layer_class, config_format: str, config_fields=(), arrays=(), array_sizes=None):
        self.layer_class = layer_class
        self.config = struct.Struct('<' + config_format)
        self.config_fields = config_fields
        self.arrays = arrays
        # (config kwargs, input shape) -> element count of each array, before anything is allocated
        self.array_sizes = array_sizes

    def check_allocation(self, kwargs: dict, input_shape):
        """Rejects a record whose parameter arrays would exceed MAX_ARRAY_LENGTH once allocated."""
        if self.array_sizes is None:
            return
        for name, size in zip(self.arrays, self.array_sizes(kwargs, *input_shape)):
            if size > MAX_ARRAY_LENGTH:
                raise ModelFormatError(
                    f"{self.layer_class.__name__}.{name} would hold {size} elements, "
                    f"which exceeds the limit of {MAX_ARRAY_LENGTH}")

    def pack_config(self, layer: Layer) -> bytes:
        values = []
        for name in self.config_fields:
            value = getattr(layer, name)
            if name == 'activation':
                value = _ACTIVATION_CODES[value]
            elif name == 'drop_prob':
                value = float('nan') if value is None else value
            values.append(value)
        return self.config.pack(*values)

    def unpack_config(self, reader: '_Reader') -> dict:
        kwargs = dict(zip(self.config_fields, reader.unpack(self.config)))
        if 'activation' in kwargs:
            code = kwargs['activation']
            if code not in _ACTIVATIONS_BY_CODE:
                raise ModelFormatError(f"Unknown activation code {code}")
            kwargs['activation'] = _ACTIVATIONS_BY_CODE[code]
        if 'drop_prob' in kwargs and np.isnan(kwargs['drop_prob']):
            kwargs['drop_prob'] = None
        return kwargs


_DOT_PRODUCT_FIELDS = ('l1_decay_mul', 'l2_decay_mul', 'bias_pref', 'activation', 'drop_prob')

_SCHEMAS = {
    LayerKind.INPUT: _LayerSchema(InputLayer, 'III', ('width', 'height', 'depth')),
    LayerKind.CONV: _LayerSchema(
        ConvLayer, 'IIIIIdddBd',
        ('width', 'height', 'filter_count', 'stride', 'pad') + _DOT_PRODUCT_FIELDS,
        ('filters', 'biases'),
        lambda c, width, height, depth: (c['filter_count'] * depth * c['height'] * c['width'],
                                         c['filter_count'])),
    LayerKind.FULLY_CONNECTED: _LayerSchema(
        FullyConnectedLayer, 'IdddBd',
        ('neuron_count',) + _DOT_PRODUCT_FIELDS,
        ('weights', 'biases'),
        lambda c, width, height, depth: (c['neuron_count'] * width * height * depth,
                                         c['neuron_count'])),
    LayerKind.RELU: _LayerSchema(ReluLayer, ''),
    LayerKind.SIGMOID: _LayerSchema(SigmoidLayer, ''),
    LayerKind.TANH: _LayerSchema(TanhLayer, ''),
    LayerKind.MAXOUT: _LayerSchema(MaxoutLayer, 'I', ('group_size',)),
    LayerKind.DROPOUT: _LayerSchema(DropoutLayer, 'd', ('drop_prob',)),
    LayerKind.SOFTMAX: _LayerSchema(SoftmaxLayer, 'I', ('class_count',)),
    LayerKind.REGRESSION: _LayerSchema(RegressionLayer, 'I', ('neuron_count',)),
}


class _Reader:
    """Bounds-checked cursor over a byte buffer."""

    def __init__(self, data):
        self.data = memoryview(data)
        self.offset = 0

    @property
    def remaining(self) -> int:
        return len(self.data) - self.offset

    def take(self, size: int) -> memoryview:
        if size > self.remaining:
            raise ModelFormatError(
                f"Truncated model data: need {size} bytes at offset {self.offset}, {self.remaining} left")
        chunk = self.data[self.offset:self.offset + size]
        self.offset += size
        return chunk

    def unpack(self, fmt: struct.Struct) -> tuple:
        return fmt.unpack(self.take(fmt.size))

    def array(self) -> np.ndarray:
        (count,) = self.unpack(_COUNT)
        if count > MAX_ARRAY_LENGTH:
            raise ModelFormatError(f"Array of {count} elements exceeds the limit of {MAX_ARRAY_LENGTH}")
        return np.frombuffer(self.take(count * _FLOAT64.itemsize), dtype=_FLOAT64)


def _encode_array(values: np.ndarray) -> bytes:
    flat = np.ascontiguousarray(values, dtype=_FLOAT64).reshape(-1)
    if flat.size > MAX_ARRAY_LENGTH:
        raise ModelFormatError(f"Array of {flat.size} elements exceeds the limit of {MAX_ARRAY_LENGTH}")
    return _COUNT.pack(flat.size) + flat.tobytes()


def encode_layers(layers: List[Layer]) -> bytes:
    """Serializes an expanded, initialized layer list."""
    out = bytearray(_HEADER.pack(MAGIC, FORMAT_VERSION, len(layers)))
    for layer in layers:
        schema = _SCHEMAS[layer.kind]
        payload = bytearray(schema.pack_config(layer))
        for name in schema.arrays:
            payload += _encode_array(getattr(layer, name))
        out += _RECORD.pack(int(layer.kind), len(payload))
        out += payload
    logging.debug(f"Encoded {len(layers)} layers into {len(out)} bytes")
    return bytes(out)


def _decode_layer(kind: LayerKind, payload: _Reader, previous: Layer) -> Layer:
    schema = _SCHEMAS[kind]
    kwargs = schema.unpack_config(payload)
    if previous is not None:
        schema.check_allocation(kwargs, previous.output_shape)
    try:
        layer = schema.layer_class(**kwargs)
        if previous is not None:
            layer.init(*previous.output_shape)
    except NetConstructionError as e:
        raise ModelFormatError(f"Invalid {schema.layer_class.__name__} record: {e}") from e

    for name in schema.arrays:
        stored = payload.array()
        target = getattr(layer, name)
        if stored.size != target.size:
            raise ModelFormatError(
                f"{schema.layer_class.__name__}.{name} has {stored.size} values, expected {target.size}")
        target[...] = stored.reshape(target.shape)
    return layer


def decode_layers(data: bytes) -> List[Layer]:
    """
    Rebuilds the layer list written by `encode_layers`.

    Raises:
        ModelFormatError: On bad magic, unsupported version, unknown layer tags,
            inconsistent shapes, oversized arrays, truncation or trailing bytes.
    """
    reader = _Reader(data)
    magic, version, count = reader.unpack(_HEADER)
    if magic != MAGIC:
        raise ModelFormatError(f"Not a model file (magic {bytes(magic)!r})")
    if not 1 <= version <= FORMAT_VERSION:
        raise ModelFormatError(f"Unsupported model format version {version}")
    if count == 0:
        raise ModelFormatError("Model contains no layers")

    layers: List[Layer] = []
    for i in range(count):
        tag, length = reader.unpack(_RECORD)
        try:
            kind = LayerKind(tag)
        except ValueError:
            raise ModelFormatError(f"Unknown layer tag {tag} in record {i}") from None
        if (i == 0) != (kind is LayerKind.INPUT):
            raise ModelFormatError(f"Record {i}: InputLayer must be first and only first")

        payload = _Reader(reader.take(length))
        layers.append(_decode_layer(kind, payload, layers[-1] if layers else None))

    if reader.remaining:
        raise ModelFormatError(f"{reader.remaining} unexpected trailing bytes after the last layer")
    logging.debug(f"Decoded {len(layers)} layers")
    return layers

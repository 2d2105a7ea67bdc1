"""
test_persistence.py
~~~~~~~~~~~~~~~~~~~

Tests for saving/loading nets and for rejecting malformed model data.
"""

import struct

import numpy as np
import pytest

from clear_convnet import (AdadeltaTrainer, ConvLayer, FullyConnectedLayer, InputLayer, LayerKind,
                           ModelFormatError, Net, RegressionLayer, ReluLayer, SoftmaxLayer)
from clear_convnet.persistence import FORMAT_VERSION, MAGIC, MAX_ARRAY_LENGTH, encode_layers

HEADER_SIZE = 4 + 2 + 4
RECORD_HEADER_SIZE = 1 + 4


@pytest.fixture
def trained_classifier():
    """A classifier with non-default parameters in every layer."""
    net = Net()
    net.add_layer(InputLayer(5, 5, 2))
    net.add_layer(ConvLayer(3, 3, 4, stride=2, pad=1, activation='relu', drop_prob=0.2,
                            l1_decay_mul=0.5, l2_decay_mul=2.0))
    net.add_layer(FullyConnectedLayer(6, activation='maxout'))
    net.add_layer(FullyConnectedLayer(3, activation='tanh'))
    net.add_layer(FullyConnectedLayer(3))
    net.add_layer(SoftmaxLayer(3))
    for pg in net.get_parameters_and_gradients():
        pg.parameters += np.random.randn(pg.parameters.size) * 0.1
    return net


def _records(data):
    """Splits serialized bytes into [(tag, payload)]."""
    (count,) = struct.unpack_from('<I', data, 6)
    offset = HEADER_SIZE
    records = []
    for _ in range(count):
        tag, length = struct.unpack_from('<BI', data, offset)
        offset += RECORD_HEADER_SIZE
        records.append((tag, data[offset:offset + length]))
        offset += length
    return records


def _assemble(records, version=FORMAT_VERSION, magic=MAGIC):
    out = struct.pack('<4sHI', magic, version, len(records))
    for tag, payload in records:
        out += struct.pack('<BI', tag, len(payload)) + payload
    return out


@pytest.mark.integration
class TestRoundTrip:
    """A loaded net is indistinguishable from the saved one."""

    def test_save_and_load_file(self, trained_classifier, make_volume, tmp_path):
        path = tmp_path / "model.bin"
        inputs = [make_volume(5, 5, 2) for _ in range(5)]
        expected = [trained_classifier.forward(x).w.copy() for x in inputs]

        trained_classifier.save(str(path))
        loaded = Net.load(str(path))

        for x, probs in zip(inputs, expected):
            np.testing.assert_array_equal(loaded.forward(x).w, probs)
            assert loaded.get_prediction() == int(np.argmax(probs))

    def test_layer_stack_is_not_rewired(self, trained_classifier):
        loaded = Net.from_bytes(trained_classifier.to_bytes())

        assert [layer.kind for layer in loaded.layers] == [layer.kind for layer in trained_classifier.layers]
        assert [layer.output_shape for layer in loaded.layers] == \
            [layer.output_shape for layer in trained_classifier.layers]

    def test_layer_configuration_survives(self, trained_classifier):
        loaded = Net.from_bytes(trained_classifier.to_bytes())
        conv, original = loaded.layers[1], trained_classifier.layers[1]

        assert (conv.width, conv.height, conv.filter_count, conv.stride, conv.pad) == (3, 3, 4, 2, 1)
        assert (conv.l1_decay_mul, conv.l2_decay_mul) == (0.5, 2.0)
        assert conv.bias_pref == original.bias_pref == 0.1
        assert conv.activation == 'relu'
        assert conv.drop_prob == 0.2
        assert loaded.layers[3].drop_prob == pytest.approx(0.2)
        assert loaded.layers[-2].drop_prob is None
        np.testing.assert_array_equal(conv.filters, original.filters)

    def test_regression_net(self, make_volume):
        net = Net()
        net.add_layer(InputLayer(1, 1, 3))
        net.add_layer(FullyConnectedLayer(4, activation='sigmoid'))
        net.add_layer(FullyConnectedLayer(2))
        net.add_layer(RegressionLayer(2))
        x = make_volume(1, 1, 3)

        loaded = Net.from_bytes(net.to_bytes())

        np.testing.assert_array_equal(loaded.forward(x).w, net.forward(x).w)
        assert loaded.terminal_kind is LayerKind.REGRESSION

    def test_loaded_net_keeps_training(self, trained_classifier, make_volume):
        loaded = Net.from_bytes(trained_classifier.to_bytes())
        stats = AdadeltaTrainer(loaded).train(make_volume(5, 5, 2), 1)

        assert np.isfinite(stats['loss'])


@pytest.mark.unit
class TestMalformedData:
    """Corrupt input fails with ModelFormatError, never a partial Net."""

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            Net.load(str(tmp_path / "missing.bin"))

    def test_empty_data(self):
        with pytest.raises(ModelFormatError):
            Net.from_bytes(b"")

    def test_bad_magic(self, trained_classifier):
        data = bytearray(trained_classifier.to_bytes())
        data[:4] = b"XXXX"

        with pytest.raises(ModelFormatError, match="magic"):
            Net.from_bytes(bytes(data))

    def test_unsupported_version(self, trained_classifier):
        records = _records(trained_classifier.to_bytes())

        with pytest.raises(ModelFormatError, match="version"):
            Net.from_bytes(_assemble(records, version=FORMAT_VERSION + 1))

    @pytest.mark.parametrize("cut", [3, HEADER_SIZE + 2, 60, -1])
    def test_truncated(self, trained_classifier, cut):
        data = trained_classifier.to_bytes()

        with pytest.raises(ModelFormatError):
            Net.from_bytes(data[:cut])

    def test_trailing_bytes(self, trained_classifier):
        with pytest.raises(ModelFormatError, match="trailing"):
            Net.from_bytes(trained_classifier.to_bytes() + b"\x00")

    def test_unknown_tag(self, trained_classifier):
        records = _records(trained_classifier.to_bytes())
        records[2] = (200, records[2][1])

        with pytest.raises(ModelFormatError, match="Unknown layer tag 200"):
            Net.from_bytes(_assemble(records))

    def test_input_must_be_first(self, trained_classifier):
        records = _records(trained_classifier.to_bytes())

        with pytest.raises(ModelFormatError):
            Net.from_bytes(_assemble(records[1:]))

    def test_oversized_array(self):
        net = Net()
        net.add_layer(InputLayer(1, 1, 2))
        net.add_layer(FullyConnectedLayer(1))
        records = _records(net.to_bytes())
        tag, payload = records[1]
        config_size = struct.calcsize('<IdddBd')
        # Replace the weights array count, leaving the data short of it
        payload = payload[:config_size] + struct.pack('<I', MAX_ARRAY_LENGTH + 1) + payload[config_size + 4:]
        records[1] = (tag, payload)

        with pytest.raises(ModelFormatError, match="exceeds the limit"):
            Net.from_bytes(_assemble(records))

    def test_oversized_layer_config_is_rejected_before_allocation(self):
        input_record = (int(LayerKind.INPUT), struct.pack('<III', 1, 1, 1))
        # 2**31 neurons on one input, with no arrays stored at all
        fc_config = struct.pack('<IdddBd', 2 ** 31, 0.0, 1.0, 0.0, 0, float('nan'))
        data = _assemble([input_record, (int(LayerKind.FULLY_CONNECTED), fc_config)])

        with pytest.raises(ModelFormatError, match="exceeds the limit"):
            Net.from_bytes(data)

    def test_oversized_conv_filters_are_rejected(self):
        input_record = (int(LayerKind.INPUT), struct.pack('<III', 8, 8, 64))
        # 4096 filters of 8x8x64: far more than MAX_ARRAY_LENGTH elements
        conv_config = struct.pack('<IIIIIdddBd', 8, 8, 4096, 1, 0, 0.0, 1.0, 0.0, 0, float('nan'))
        data = _assemble([input_record, (int(LayerKind.CONV), conv_config)])

        with pytest.raises(ModelFormatError, match="filters"):
            Net.from_bytes(data)

    def test_loss_layer_without_fully_connected_predecessor(self):
        fc = FullyConnectedLayer(3)
        fc.init(1, 1, 3)
        relu = ReluLayer()
        relu.init(1, 1, 3)
        softmax = SoftmaxLayer(3)
        softmax.init(1, 1, 3)
        data = encode_layers([InputLayer(1, 1, 3), fc, relu, softmax])

        with pytest.raises(ModelFormatError, match="FullyConnectedLayer"):
            Net.from_bytes(data)

    def test_array_size_mismatch(self):
        net = Net()
        net.add_layer(InputLayer(1, 1, 2))
        net.add_layer(FullyConnectedLayer(1))
        records = _records(net.to_bytes())
        tag, payload = records[1]
        config_size = struct.calcsize('<IdddBd')
        # One weight instead of two, biases unchanged
        weights = struct.pack('<I', 1) + payload[config_size + 4:config_size + 12]
        records[1] = (tag, payload[:config_size] + weights + payload[config_size + 20:])

        with pytest.raises(ModelFormatError, match="expected 2"):
            Net.from_bytes(_assemble(records))

    def test_inconsistent_shapes(self, trained_classifier):
        records = _records(trained_classifier.to_bytes())
        tag, payload = records[-1]
        records[-1] = (tag, struct.pack('<I', 7) + payload[4:])

        with pytest.raises(ModelFormatError):
            Net.from_bytes(_assemble(records))

    def test_extra_payload_fields_are_skipped(self, trained_classifier, make_volume):
        records = [(tag, payload + b"\x01\x02\x03") for tag, payload in _records(trained_classifier.to_bytes())]
        x = make_volume(5, 5, 2)

        loaded = Net.from_bytes(_assemble(records))

        np.testing.assert_array_equal(loaded.forward(x).w, trained_classifier.forward(x).w)

    def test_corrupt_file_is_reported(self, tmp_path):
        path = tmp_path / "broken.bin"
        path.write_bytes(b"CCNV\x01")

        with pytest.raises(ModelFormatError):
            Net.load(str(path))

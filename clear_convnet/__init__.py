"""
clear_convnet
~~~~~~~~~~~~~

A small from-scratch convolutional network engine on top of NumPy:
Volumes, a linear stack of layers with forward/backward passes, Adadelta/SGD
trainers and a binary model format.
"""

from .activations import (Activation, MaxoutLayer, ReluLayer, SigmoidLayer, TanhLayer,
                          get_activation, get_activation_layer)
from .errors import ModelFormatError, NetConstructionError, NetUsageError
from .layers import (ConvLayer, DropoutLayer, FullyConnectedLayer, InputLayer, Layer, LayerKind,
                     ParametersAndGradients, RegressionLayer, SoftmaxLayer)
from .net import Net
from .trainers import AdadeltaTrainer, SgdTrainer, Trainer
from .volume import Volume

__version__ = '0.1.0'

__all__ = [
    'Activation', 'AdadeltaTrainer', 'ConvLayer', 'DropoutLayer', 'FullyConnectedLayer',
    'InputLayer', 'Layer', 'LayerKind', 'MaxoutLayer', 'ModelFormatError', 'Net',
    'NetConstructionError', 'NetUsageError', 'ParametersAndGradients', 'RegressionLayer',
    'ReluLayer', 'SgdTrainer', 'SigmoidLayer', 'SoftmaxLayer', 'TanhLayer', 'Trainer', 'Volume',
    'get_activation', 'get_activation_layer',
]

"""
Layer factories.

Each factory returns a callable that builds the layer once the shape of its input is known,
which is how layers are attached to graph nodes and sequential networks.
"""

from .conv import ConvolutionalLayer, PoolingLayer
from .dense import FullyConnectedLayer, OutputLayer, SoftmaxLayer
from .normalization import BatchNormalizationLayer


def fully_connected(neurons, activation, initialization='xavier', device='cpu'):
    return lambda info: FullyConnectedLayer(info, neurons, activation, initialization, device=device)


def convolutional(kernel_size, kernels, activation, operation=None):
    return lambda info: ConvolutionalLayer(info, kernel_size, kernels, activation, operation)


def pooling(operation=None, activation='identity'):
    return lambda info: PoolingLayer(info, operation, activation)


def batch_normalization(mode, activation='identity', device='cpu'):
    return lambda info: BatchNormalizationLayer(info, mode, activation, device=device)


def output(neurons, activation, cost, initialization='xavier', device='cpu'):
    return lambda info: OutputLayer(info, neurons, activation, cost, initialization, device=device)


def softmax(neurons, initialization='xavier', device='cpu'):
    return lambda info: SoftmaxLayer(info, neurons, initialization, device=device)

import numpy as np

from .base import ConstantLayer, WeightedLayer
from .cpu_dnn import (ConvolutionInfo, PoolingInfo, convolution_backward_bias, convolution_backward_data,
                      convolution_backward_filter, convolution_forward, pooling_backward, pooling_forward)
from .errors import ConfigurationError
from .tensor import Tensor, TensorInfo


class ConvolutionalLayer(WeightedLayer):
    """
    2D convolution (cross-correlation) over channels-first images.

    Args:
        input_info: shape of a single input image
        kernel_size: (height, width) of each kernel, or a single int for square kernels
        kernels: number of kernels, which is the number of output channels
        activation: activation applied to the convolution result
        operation: ConvolutionInfo with padding and strides
    """

    def __init__(self, input_info, kernel_size, kernels, activation, operation=None,
                 weights=None, biases=None):
        if isinstance(kernel_size, int):
            kernel_size = (kernel_size, kernel_size)
        if kernels <= 0:
            raise ConfigurationError("The number of kernels must be positive")
        self.operation = operation or ConvolutionInfo()
        self.kernel_info = TensorInfo(kernel_size[0], kernel_size[1], input_info.channels)
        h, w = self.operation.output_shape(input_info.height, input_info.width, *kernel_size)
        if h <= 0 or w <= 0:
            raise ConfigurationError(f"The kernels are too large for a {input_info.height}x{input_info.width} input")
        if weights is None:
            # Xavier initialization
            scale = np.sqrt(2.0 / self.kernel_info.size)
            weights = np.random.randn(kernels, self.kernel_info.size).astype(np.float32) * scale
        if biases is None:
            biases = np.zeros((1, kernels), dtype=np.float32)
        super().__init__(input_info, TensorInfo(h, w, kernels), activation, weights, biases)
        if self.weights.shape != (kernels, self.kernel_info.size) or self.biases.length != kernels:
            raise ConfigurationError("Invalid kernels or biases shape")

    @property
    def kernels(self):
        return self.output_info.channels

    def forward(self, x):
        z = Tensor.new(x.entities, self.outputs)
        convolution_forward(x, self.input_info, self.weights, self.kernel_info, self.biases,
                            self.operation, z, self.output_info)
        return z, self._activate(z)

    def backward_data(self, x, delta):
        dx = Tensor.new(delta.entities, self.inputs)
        convolution_backward_data(delta, self.output_info, self.weights, self.kernel_info,
                                  self.operation, dx, self.input_info)
        return dx

    def compute_gradient(self, a, delta):
        dw = Tensor.like(self.weights)
        convolution_backward_filter(a, self.input_info, delta, self.output_info, self.operation, dw, self.kernel_info)
        db = Tensor.like(self.biases)
        convolution_backward_bias(delta, self.output_info, db)
        return dw, db

    def set_device(self, device):
        if device != 'cpu':
            raise ConfigurationError("Convolutional layers only run on the CPU")

    def clone(self):
        return ConvolutionalLayer(self.input_info, (self.kernel_info.height, self.kernel_info.width), self.kernels,
                                  self.activation_type, self.operation, self.weights.duplicate(), self.biases.duplicate())

    def state_dict(self):
        state = super().state_dict()
        state["operation"] = self.operation
        return state

    def __eq__(self, other):
        return super().__eq__(other) and self.operation == other.operation

    __hash__ = object.__hash__


class PoolingLayer(ConstantLayer):
    """Max pooling over each channel, optionally followed by an activation"""

    def __init__(self, input_info, operation=None, activation='identity'):
        self.operation = operation or PoolingInfo()
        h, w = self.operation.output_shape(input_info.height, input_info.width)
        if h <= 0 or w <= 0:
            raise ConfigurationError(f"The pooling window is too large for a {input_info.height}x{input_info.width} input")
        super().__init__(input_info, TensorInfo(h, w, input_info.channels), activation)

    def forward(self, x):
        z = Tensor.new(x.entities, self.outputs)
        pooling_forward(x, self.input_info, self.operation, z)
        return z, self._activate(z)

    def backward_data(self, x, delta):
        dx = Tensor.like(x)
        pooling_backward(x, self.input_info, delta, self.operation, dx)
        return dx

    def clone(self):
        return PoolingLayer(self.input_info, self.operation, self.activation_type)

    def __eq__(self, other):
        return super().__eq__(other) and self.operation == other.operation

    __hash__ = object.__hash__

from abc import ABC, abstractmethod

import numpy as np

from . import cpu_dnn, gpu_dnn
from .activations import ActivationType, get_activations
from .errors import ConfigurationError
from .tensor import Tensor, TensorInfo


def get_backend(device):
    """The primitives module used by layers on a device"""
    return cpu_dnn if device == 'cpu' else gpu_dnn


class NetworkLayer(ABC):
    """
    Base class for every network layer.

    A layer maps a batch of inputs with shape input_info to a batch of outputs with shape
    output_info. The output shape is always derived from the input shape and the layer's
    own structural parameters.
    """
    _id_counter = 0
    # Only layers that normalize their outputs can use the softmax activation
    _supports_softmax = False

    def __init__(self, input_info, output_info, activation, device='cpu'):
        if not isinstance(input_info, TensorInfo) or not isinstance(output_info, TensorInfo):
            raise ConfigurationError("The layer shapes must be TensorInfo instances")
        self.input_info = input_info
        self.output_info = output_info
        self.activation_type = _activation_type(activation)
        if self.activation_type == ActivationType.SOFTMAX and not self._supports_softmax:
            raise ConfigurationError(f"{self.__class__.__name__} doesn't support the softmax activation")
        self.activation, self.activation_prime = get_activations(self.activation_type)
        self.device = device
        self.backend = get_backend(device)
        self.id = f"{self.__class__.__name__}_{self.get_next_id()}"

    def get_next_id(self):
        NetworkLayer._id_counter += 1
        return NetworkLayer._id_counter

    def __call__(self, x):
        """Enable layer calling syntax: layer(input)"""
        return self.forward(x)

    @property
    def inputs(self):
        return self.input_info.size

    @property
    def outputs(self):
        return self.output_info.size

    @abstractmethod
    def forward(self, x):
        """
        Forwards a batch through the layer.

        Returns:
            (z, a): new owned tensors with the activity and the activation
        """

    @abstractmethod
    def backward_data(self, x, delta):
        """Returns a new tensor with the error with respect to the layer input x"""

    def backpropagate(self, x, delta, z, activation_prime):
        """
        Backpropagates the error delta of this layer to the previous one.

        Args:
            x: the input the layer received in the forward pass
            delta: the error delta of this layer
            z: the activity of the previous layer, overwritten with its delta
            activation_prime: the derivative of the previous layer's activation

        Returns:
            z, now holding the delta of the previous layer
        """
        dx = self.backward_data(x, delta)
        try:
            self.backend.activation_backward(z, dx, activation_prime, z)
        finally:
            dx.free()
        return z

    def _activate(self, z):
        a = Tensor.like(z)
        self.backend.activation_forward(z, self.activation, a)
        return a

    @abstractmethod
    def clone(self):
        """Returns an independent copy of the layer"""

    def state_dict(self):
        return {
            "type": self.__class__.__name__,
            "input_info": self.input_info,
            "output_info": self.output_info,
            "activation": self.activation_type.value,
        }

    def load_state_dict(self, state_dict):
        if state_dict.get("type") != self.__class__.__name__:
            raise ConfigurationError(f"Can't load a {state_dict.get('type')} state into a {self.__class__.__name__}")
        if state_dict["input_info"] != self.input_info or state_dict["output_info"] != self.output_info:
            raise ConfigurationError("The layer state doesn't match the layer shape")
        self.activation_type = _activation_type(state_dict["activation"])
        self.activation, self.activation_prime = get_activations(self.activation_type)

    def __eq__(self, other):
        return (type(self) is type(other)
                and self.input_info == other.input_info
                and self.output_info == other.output_info
                and self.activation_type == other.activation_type)

    __hash__ = object.__hash__

    def __repr__(self):
        return f"{self.id}({self.input_info.size} -> {self.output_info.size}, {self.activation_type.value})"


class ConstantLayer(NetworkLayer):
    """A layer without trainable parameters"""


class WeightedLayer(NetworkLayer):
    """A layer with a weights matrix and a biases row, both updated during training"""

    def __init__(self, input_info, output_info, activation, weights, biases, device='cpu'):
        super().__init__(input_info, output_info, activation, device)
        self.weights = _as_parameter(weights, device)
        self.biases = _as_parameter(biases, device)
        if self.biases.entities != 1:
            raise ConfigurationError("The biases must be a single row")

    def set_device(self, device):
        """Move all layer parameters to specified device"""
        if self.device != device:
            self.weights = self.weights.to(device)
            self.biases = self.biases.to(device)
            self.device = device
            self.backend = get_backend(device)

    @abstractmethod
    def compute_gradient(self, a, delta):
        """
        Computes the gradient of the cost with respect to the layer parameters.

        Args:
            a: the input the layer received in the forward pass
            delta: the error delta of this layer

        Returns:
            (dJdw, dJdb): new tensors with the same shapes as weights and biases
        """

    def validate_weights(self):
        """Checks that no parameter became NaN or infinite"""
        xp = self.weights.xp
        return bool(xp.isfinite(self.weights.data).all() and xp.isfinite(self.biases.data).all())

    def state_dict(self):
        state = super().state_dict()
        state["weights"] = self.weights.to_array()
        state["biases"] = self.biases.to_array()
        return state

    def load_state_dict(self, state_dict):
        super().load_state_dict(state_dict)
        weights = np.asarray(state_dict["weights"], dtype=np.float32)
        biases = np.asarray(state_dict["biases"], dtype=np.float32)
        if weights.shape != self.weights.shape or biases.shape != self.biases.shape:
            raise ConfigurationError("The parameters shape doesn't match the layer")
        self.weights = Tensor.from_array(weights, self.device)
        self.biases = Tensor.from_array(biases, self.device)

    def __eq__(self, other):
        if not super().__eq__(other):
            return False
        return (np.array_equal(self.weights.to_array(), other.weights.to_array())
                and np.array_equal(self.biases.to_array(), other.biases.to_array()))

    __hash__ = object.__hash__


def _activation_type(activation):
    try:
        return ActivationType(activation)
    except ValueError as e:
        raise ConfigurationError(f"Unknown activation function: {activation}") from e


def _as_parameter(value, device):
    if isinstance(value, Tensor):
        if value.device != device:
            return value.to(device)
        return value
    return Tensor.from_array(value, device)

import numpy as np

from .activations import ActivationType
from .base import WeightedLayer, _activation_type
from .errors import ConfigurationError
from .loss import CostFunctionType, get_cost_functions
from .tensor import Tensor, TensorInfo


def init_weights(inputs, outputs, initialization='xavier'):
    """Random (inputs, outputs) weights matrix"""
    if initialization == 'xavier':
        init_std = np.sqrt(2.0 / (inputs + outputs))
        return np.random.randn(inputs, outputs).astype(np.float32) * init_std
    if initialization == 'normal':
        return np.random.randn(inputs, outputs).astype(np.float32) * 0.01
    raise ConfigurationError(f"Unknown weights initialization: {initialization}")


class FullyConnectedLayer(WeightedLayer):
    """z = x * w + b, a = f(z)"""

    def __init__(self, input_info, outputs, activation, initialization='xavier',
                 weights=None, biases=None, device='cpu'):
        if outputs <= 0:
            raise ConfigurationError("The number of outputs must be positive")
        if weights is None:
            weights = init_weights(input_info.size, outputs, initialization)
        if biases is None:
            biases = np.zeros((1, outputs), dtype=np.float32)
        super().__init__(input_info, TensorInfo.linear(outputs), activation, weights, biases, device)
        self.initialization = initialization
        if self.weights.shape != (input_info.size, outputs):
            raise ConfigurationError(f"Invalid weights shape {self.weights.shape}")
        if self.biases.length != outputs:
            raise ConfigurationError(f"Invalid biases shape {self.biases.shape}")

    def forward(self, x):
        z = Tensor.new(x.entities, self.outputs, self.device)
        self.backend.fully_connected_forward(x, self.weights, self.biases, z)
        return z, self._activate(z)

    def backward_data(self, x, delta):
        dx = Tensor.new(delta.entities, self.inputs, self.device)
        self.backend.fully_connected_backward_data(self.weights, delta, dx)
        return dx

    def compute_gradient(self, a, delta):
        dw = Tensor.like(self.weights)
        self.backend.fully_connected_backward_filter(a, delta, dw)
        db = Tensor.like(self.biases)
        self.backend.fully_connected_backward_bias(delta, db)
        return dw, db

    def clone(self):
        return self.__class__(self.input_info, self.outputs, self.activation_type,
                              self.initialization, self.weights.duplicate(), self.biases.duplicate(), self.device)


class OutputLayer(FullyConnectedLayer):
    """A fully connected layer that also owns the cost function of the network"""

    def __init__(self, input_info, outputs, activation, cost, initialization='xavier',
                 weights=None, biases=None, device='cpu'):
        self.cost_type = _cost_type(cost)
        _check_pairing(self.__class__, _activation_type(activation), self.cost_type)
        self.cost, self.cost_prime = get_cost_functions(self.cost_type)
        super().__init__(input_info, outputs, activation, initialization, weights, biases, device)

    def backpropagate_output(self, x, y_hat, y, z, dx=None):
        """
        Computes the output delta and the parameters gradient of the output layer.

        Args:
            x: the input the layer received in the forward pass
            y_hat: the layer activation
            y: the expected outputs
            z: the layer activity, overwritten with the output delta
            dx: optional tensor that receives the error with respect to x

        Returns:
            (dJdw, dJdb)
        """
        self.cost_prime(y_hat, y, z, self.activation_prime, z)
        if dx is not None:
            self.backend.fully_connected_backward_data(self.weights, z, dx)
        return self.compute_gradient(x, z)

    def calculate_cost(self, y_hat, y):
        return self.cost(y_hat, y)

    def clone(self):
        return self.__class__(self.input_info, self.outputs, self.activation_type, self.cost_type,
                              self.initialization, self.weights.duplicate(), self.biases.duplicate(), self.device)

    def state_dict(self):
        state = super().state_dict()
        state["cost"] = self.cost_type.value
        return state

    def load_state_dict(self, state_dict):
        if _cost_type(state_dict.get("cost")) != self.cost_type:
            raise ConfigurationError("The cost function doesn't match the layer")
        super().load_state_dict(state_dict)

    def __eq__(self, other):
        return super().__eq__(other) and self.cost_type == other.cost_type

    __hash__ = object.__hash__


class SoftmaxLayer(OutputLayer):
    """Output layer with a softmax activation and the log-likelihood cost"""
    _supports_softmax = True

    def __init__(self, input_info, outputs, initialization='xavier', weights=None, biases=None, device='cpu'):
        super().__init__(input_info, outputs, ActivationType.SOFTMAX, CostFunctionType.LOG_LIKELIHOOD,
                         initialization, weights, biases, device)

    def _activate(self, z):
        a = Tensor.like(z)
        self.backend.softmax_forward(z, a)
        return a

    def clone(self):
        return SoftmaxLayer(self.input_info, self.outputs, self.initialization,
                            self.weights.duplicate(), self.biases.duplicate(), self.device)


def _cost_type(cost):
    try:
        return CostFunctionType(cost)
    except ValueError as e:
        raise ConfigurationError(f"Unknown cost function: {cost}") from e


def _check_pairing(layer_class, activation, cost):
    if activation == ActivationType.SOFTMAX:
        if not issubclass(layer_class, SoftmaxLayer):
            raise ConfigurationError("The softmax activation is only available through a softmax layer")
        if cost != CostFunctionType.LOG_LIKELIHOOD:
            raise ConfigurationError("The softmax activation requires the log-likelihood cost function")
    elif cost == CostFunctionType.LOG_LIKELIHOOD:
        raise ConfigurationError("The log-likelihood cost function requires a softmax activation")
    elif cost == CostFunctionType.CROSS_ENTROPY and activation != ActivationType.SIGMOID:
        raise ConfigurationError("The cross-entropy cost function requires a sigmoid activation")

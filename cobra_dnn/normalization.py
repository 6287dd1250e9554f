import numpy as np

from .base import WeightedLayer
from .cpu_dnn import NormalizationMode
from .errors import ConfigurationError
from .tensor import Tensor


class BatchNormalizationLayer(WeightedLayer):
    """
    Batch normalization with a trainable scale (gamma, stored as the weights)
    and shift (beta, stored as the biases).

    While training, each batch is normalized with its own statistics, which are also
    folded into a cumulative average. Outside of training the cumulative statistics are used.
    """

    def __init__(self, input_info, mode, activation='identity', weights=None, biases=None, device='cpu'):
        try:
            self.mode = NormalizationMode(mode)
        except ValueError as e:
            raise ConfigurationError(f"Invalid normalization mode: {mode}") from e
        features = input_info.channels if self.mode == NormalizationMode.SPATIAL else input_info.size
        if weights is None:
            weights = np.ones((1, features), dtype=np.float32)
        if biases is None:
            biases = np.zeros((1, features), dtype=np.float32)
        super().__init__(input_info, input_info, activation, weights, biases, device)
        if not self.weights.match_shape(1, features) or not self.biases.match_shape(1, features):
            raise ConfigurationError("Invalid gamma or beta shape")
        self.training = False
        self.iteration = 0
        self.mu = Tensor.zeros(1, features, device)
        self.sigma2 = Tensor.zeros(1, features, device)
        self.running_mean = Tensor.zeros(1, features, device)
        self.running_var = Tensor.from_array(np.ones((1, features), dtype=np.float32), device)

    @property
    def features(self):
        return self.weights.length

    def forward(self, x):
        z = Tensor.like(x)
        if self.training:
            self.backend.batch_normalization_forward(self.mode, self.input_info, x, self.mu, self.sigma2,
                                                     self.weights, self.biases, z)
            factor = 1.0 / (1 + self.iteration)
            self.running_mean.data[...] = self.running_mean.data * (1 - factor) + self.mu.data * factor
            self.running_var.data[...] = self.running_var.data * (1 - factor) + self.sigma2.data * factor
            self.iteration += 1
        else:
            self.backend.batch_normalization_inference(self.mode, self.input_info, x, self.running_mean,
                                                       self.running_var, self.weights, self.biases, z)
        return z, self._activate(z)

    def backward_data(self, x, delta):
        dx = Tensor.like(x)
        self.backend.batch_normalization_backward_data(self.mode, self.input_info, x, self.mu, self.sigma2,
                                                       self.weights, delta, dx)
        return dx

    def compute_gradient(self, a, delta):
        dgamma = Tensor.like(self.weights)
        self.backend.batch_normalization_backward_gamma(self.mode, self.input_info, a, self.mu, self.sigma2,
                                                        delta, dgamma)
        dbeta = Tensor.like(self.biases)
        self.backend.batch_normalization_backward_beta(self.mode, self.input_info, delta, dbeta)
        return dgamma, dbeta

    def clone(self):
        layer = BatchNormalizationLayer(self.input_info, self.mode, self.activation_type,
                                        self.weights.duplicate(), self.biases.duplicate(), self.device)
        layer.iteration = self.iteration
        layer.running_mean = self.running_mean.duplicate()
        layer.running_var = self.running_var.duplicate()
        return layer

    def state_dict(self):
        state = super().state_dict()
        state["mode"] = self.mode.value
        state["iteration"] = self.iteration
        state["running_mean"] = self.running_mean.to_array()
        state["running_var"] = self.running_var.to_array()
        return state

    def load_state_dict(self, state_dict):
        if NormalizationMode(state_dict["mode"]) != self.mode:
            raise ConfigurationError("The normalization mode doesn't match the layer")
        super().load_state_dict(state_dict)
        self.iteration = state_dict["iteration"]
        self.running_mean = Tensor.from_array(state_dict["running_mean"], self.device)
        self.running_var = Tensor.from_array(state_dict["running_var"], self.device)

    def __eq__(self, other):
        return (super().__eq__(other)
                and self.mode == other.mode
                and np.array_equal(self.running_mean.to_array(), other.running_mean.to_array())
                and np.array_equal(self.running_var.to_array(), other.running_var.to_array()))

    __hash__ = object.__hash__

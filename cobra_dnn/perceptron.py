import logging
import math
from dataclasses import dataclass

import numpy as np

from .activations import sigmoid, sigmoid_prime
from .errors import ConfigurationError, ShapeMismatch
from .lbfgs import BoundedLBFGS

logger = logging.getLogger(__name__)


class PerceptronNetwork:
    """
    A network with a single hidden layer, sigmoid activations and no biases.

    The weights are plain float64 arrays, so the whole network can be flattened into
    the solution vector of the L-BFGS optimizer and rebuilt from it.
    """

    def __init__(self, w1, w2):
        w1, w2 = np.asarray(w1, dtype=np.float64), np.asarray(w2, dtype=np.float64)
        if w1.ndim != 2 or w2.ndim != 2 or w1.shape[1] != w2.shape[0]:
            raise ShapeMismatch(f"Invalid weights shapes {w1.shape} and {w2.shape}")
        self.w1 = w1
        self.w2 = w2

    @property
    def inputs(self):
        return self.w1.shape[0]

    @property
    def hidden(self):
        return self.w1.shape[1]

    @property
    def outputs(self):
        return self.w2.shape[1]

    @classmethod
    def deserialize(cls, inputs, hidden, outputs, w1w2):
        w1w2 = np.asarray(w1w2, dtype=np.float64)
        split = inputs * hidden
        if w1w2.size != split + hidden * outputs:
            raise ShapeMismatch("The weights vector doesn't match the network size")
        return cls(w1w2[:split].reshape(inputs, hidden), w1w2[split:].reshape(hidden, outputs))

    def serialize(self):
        return np.concatenate([self.w1.ravel(), self.w2.ravel()])

    def forward(self, x):
        x = np.asarray(x, dtype=np.float64)
        return sigmoid(sigmoid(x @ self.w1) @ self.w2)

    def __call__(self, x):
        return self.forward(x)

    def calculate_cost(self, x, y):
        """C = 1/2 * sum((yHat - y)^2)"""
        diff = self.forward(x) - y
        return 0.5 * float(np.sum(diff * diff))

    def cost_function_prime(self, x, y):
        """Gradient of the cost with respect to the flattened weights"""
        x = np.asarray(x, dtype=np.float64)
        z2 = x @ self.w1
        a2 = sigmoid(z2)
        z3 = a2 @ self.w2
        delta3 = -(y - sigmoid(z3)) * sigmoid_prime(z3)
        dJdW2 = a2.T @ delta3
        delta2 = (delta3 @ self.w2.T) * sigmoid_prime(z2)
        dJdW1 = x.T @ delta2
        return np.concatenate([dJdW1.ravel(), dJdW2.ravel()])

    def __eq__(self, other):
        return (isinstance(other, PerceptronNetwork)
                and np.array_equal(self.w1, other.w1) and np.array_equal(self.w2, other.w2))

    __hash__ = object.__hash__


@dataclass(frozen=True)
class BackpropagationProgress:
    iteration: int
    cost: float
    solution: np.ndarray
    shape: tuple

    @property
    def network(self):
        return PerceptronNetwork.deserialize(*self.shape, self.solution)


def compute_trained_network(x, ys, size=None, token=None, solution=None, progress=None):
    """
    Creates a PerceptronNetwork and trains it on the given data with L-BFGS.

    Args:
        x: (samples, inputs) input data
        ys: (samples, outputs) expected results
        size: number of hidden nodes, (inputs + outputs) / 2 if None
        token: optional threading.Event to stop the training
        solution: optional starting weights vector, to resume a previous session
        progress: optional callback receiving a BackpropagationProgress after each iteration
    """
    x = np.asarray(x, dtype=np.float64)
    ys = np.asarray(ys, dtype=np.float64)
    if x.size == 0:
        raise ConfigurationError("The input matrix is empty")
    if ys.size == 0:
        raise ConfigurationError("The results set is empty")
    if x.ndim != 2 or ys.ndim != 2 or x.shape[0] != ys.shape[0]:
        raise ConfigurationError("The number of inputs and results must be equal")
    if size is not None and size <= 0:
        raise ConfigurationError("The hidden layer must have a positive number of nodes")
    inputs, outputs = x.shape[1], ys.shape[1]
    hidden = size if size is not None else (inputs + outputs) // 2
    shape = (inputs, hidden, outputs)

    def cost_function(w1w2):
        return PerceptronNetwork.deserialize(*shape, w1w2).calculate_cost(x, ys)

    def gradient_function(w1w2):
        return PerceptronNetwork.deserialize(*shape, w1w2).cost_function_prime(x, ys)

    def report(e):
        if not math.isnan(e.value):
            progress(BackpropagationProgress(e.iteration, e.value, e.solution, shape))

    count = inputs * hidden + hidden * outputs
    bfgs = BoundedLBFGS(count, cost_function, gradient_function, token=token,
                        progress=report if progress is not None else None)
    start = solution if solution is not None else np.random.uniform(-1, 1, count)
    status = bfgs.minimize(start)
    logger.info("Perceptron training completed with status %s, cost %g", status.value, bfgs.value)
    return PerceptronNetwork.deserialize(*shape, bfgs.solution)

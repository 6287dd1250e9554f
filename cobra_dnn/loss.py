from enum import Enum

import numpy as np

from .errors import ConfigurationError, ShapeMismatch
from .parallel import parallel_for


class CostFunctionType(Enum):
    QUADRATIC = 'quadratic'
    CROSS_ENTROPY = 'cross_entropy'
    LOG_LIKELIHOOD = 'log_likelihood'


# Keeps log() away from 0 and 1
EPSILON = 1e-12


def _check(y_hat, y):
    if not y_hat.match_shape(y):
        raise ShapeMismatch(f"Output shape {y_hat.shape} must match target shape {y.shape}")


def quadratic_cost(y_hat, y):
    """C = 1/2n * sum((yHat - y)^2)"""
    _check(y_hat, y)
    xp = y_hat.xp
    diff = y_hat.data.astype(np.float64) - y.data
    return float(0.5 * xp.sum(diff * diff) / y.entities)


def quadratic_cost_prime(y_hat, y, z, activation_prime, dx):
    """delta = (yHat - y) * f'(z)"""
    _check(y_hat, y)
    pyh, py, pz, pdx = y_hat.data, y.data, z.data, dx.data

    def kernel(lo, hi):
        pdx[lo:hi] = (pyh[lo:hi] - py[lo:hi]) * activation_prime(pz[lo:hi])
    parallel_for(0, y.entities, kernel)


def cross_entropy_cost(y_hat, y):
    """C = -1/n * sum(y * ln(yHat) + (1 - y) * ln(1 - yHat))"""
    _check(y_hat, y)
    xp = y_hat.xp
    clipped = xp.clip(y_hat.data.astype(np.float64), EPSILON, 1 - EPSILON)
    total = xp.sum(y.data * xp.log(clipped) + (1 - y.data) * xp.log(1 - clipped))
    return float(-total / y.entities)


def log_likelihood_cost(y_hat, y):
    """C = -1/n * sum(y * ln(yHat))"""
    _check(y_hat, y)
    xp = y_hat.xp
    clipped = xp.clip(y_hat.data.astype(np.float64), EPSILON, None)
    return float(-xp.sum(y.data * xp.log(clipped)) / y.entities)


def simplified_cost_prime(y_hat, y, z, activation_prime, dx):
    """
    delta = yHat - y

    With sigmoid + cross-entropy and softmax + log-likelihood, the derivative of the cost
    with respect to the activation already cancels the activation prime, so f'(z) is not applied.
    """
    _check(y_hat, y)
    pyh, py, pdx = y_hat.data, y.data, dx.data

    def kernel(lo, hi):
        pdx[lo:hi] = pyh[lo:hi] - py[lo:hi]
    parallel_for(0, y.entities, kernel)


_COSTS = {
    CostFunctionType.QUADRATIC: (quadratic_cost, quadratic_cost_prime),
    CostFunctionType.CROSS_ENTROPY: (cross_entropy_cost, simplified_cost_prime),
    CostFunctionType.LOG_LIKELIHOOD: (log_likelihood_cost, simplified_cost_prime),
}


def get_cost_functions(cost):
    """Returns the (cost, cost prime) pair for a cost function type or name"""
    try:
        return _COSTS[CostFunctionType(cost)]
    except ValueError as e:
        raise ConfigurationError(f"Unknown cost function: {cost}") from e


class Accuracy:
    """Counts the samples whose highest output matches the expected class"""

    def __call__(self, y_hat, y):
        """
        Args:
            y_hat: (entities, classes) network outputs
            y: (entities, classes) one-hot expected outputs

        Returns:
            The number of correctly classified samples
        """
        _check(y_hat, y)
        xp = y_hat.xp
        if y.length == 1:
            # Single output: threshold at 0.5
            return int(xp.sum((y_hat.data > 0.5) == (y.data > 0.5)))
        return int(xp.sum(xp.argmax(y_hat.data, axis=1) == xp.argmax(y.data, axis=1)))

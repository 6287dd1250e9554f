import math
from dataclasses import dataclass

import numpy as np
try:
    import cupy as cp # type: ignore
except ImportError:
    cp = None

from .errors import ConfigurationError


# ===========================
# Training algorithms info
# ===========================

def _check_positive(name, value):
    if not value > 0:
        raise ConfigurationError(f"{name} must be positive, got {value}")


def _check_non_negative(name, value):
    if not value >= 0:
        raise ConfigurationError(f"{name} can't be negative, got {value}")


def _check_decay(name, value):
    if not 0 <= value < 1:
        raise ConfigurationError(f"{name} must be in [0, 1), got {value}")


@dataclass(frozen=True)
class StochasticGradientDescentInfo:
    eta: float = 0.1
    lambda_: float = 0.0

    def __post_init__(self):
        _check_positive("eta", self.eta)
        _check_non_negative("lambda", self.lambda_)


@dataclass(frozen=True)
class AdadeltaInfo:
    rho: float = 0.95
    epsilon: float = 1e-8
    l2: float = 0.0

    def __post_init__(self):
        _check_decay("rho", self.rho)
        _check_positive("epsilon", self.epsilon)
        _check_non_negative("l2", self.l2)


@dataclass(frozen=True)
class AdamInfo:
    eta: float = 0.001
    beta1: float = 0.9
    beta2: float = 0.999
    epsilon: float = 1e-8

    def __post_init__(self):
        _check_positive("eta", self.eta)
        _check_decay("beta1", self.beta1)
        _check_decay("beta2", self.beta2)
        _check_positive("epsilon", self.epsilon)


@dataclass(frozen=True)
class AdaMaxInfo:
    eta: float = 0.002
    beta1: float = 0.9
    beta2: float = 0.999

    def __post_init__(self):
        _check_positive("eta", self.eta)
        _check_decay("beta1", self.beta1)
        _check_decay("beta2", self.beta2)


# ===========================
# Weights updaters
# ===========================

class WeightsUpdater:
    """
    Base updater, bound to the weighted layers of a network for a whole training run.

    The state of each weighted layer lives in its own slot, so different layers can be
    updated concurrently within the same batch.

    Args:
        network: the network to train
    """
    def __init__(self, network):
        positions = list(network.weighted_layers_indexes)
        self.layers = [network.layers[i] for i in positions]
        # Layer position in the network -> state slot
        self.index = {position: slot for slot, position in enumerate(positions)}

    def _get_xp(self, param):
        """Get correct numerical library for parameter"""
        return np if param.device == 'cpu' else cp # type: ignore

    def _slot(self, i):
        try:
            return self.index[i]
        except KeyError:
            raise ConfigurationError(f"The layer at position {i} has no weights to update") from None

    def _zeros(self, param):
        return [self._get_xp(getattr(layer, param)).zeros_like(getattr(layer, param).data) for layer in self.layers]

    def __call__(self, i, dJdw, dJdb, samples, layer):
        """
        Updates the weights and biases of a layer in place.

        Args:
            i: position of the layer in the network
            dJdw: weights gradient
            dJdb: biases gradient
            samples: number of samples in the batch
            layer: the layer to update
        """
        raise NotImplementedError


class StochasticGradientDescent(WeightsUpdater):
    """Plain gradient descent with L2 regularization"""
    def __init__(self, network, info):
        super().__init__(network)
        self.eta = info.eta
        self.lambda_ = info.lambda_

    def __call__(self, i, dJdw, dJdb, samples, layer):
        self._slot(i)
        w, b = layer.weights.data, layer.biases.data
        w -= (self.eta * self.lambda_ / samples) * w + (self.eta / samples) * dJdw.data
        b -= (self.eta / samples) * dJdb.data


class Adadelta(WeightsUpdater):
    """Adadelta with L2 regularization"""
    def __init__(self, network, info):
        super().__init__(network)
        self.rho = info.rho
        self.epsilon = info.epsilon
        self.l2 = info.l2
        self.mw, self.mb = self._zeros('weights'), self._zeros('biases')
        self.sw, self.sb = self._zeros('weights'), self._zeros('biases')

    def _step(self, xp, param, g, eg, edx):
        # Running average of the squared gradients
        eg *= self.rho
        eg += (1 - self.rho) * g * g
        dx = -(xp.sqrt(edx + self.epsilon) / xp.sqrt(eg + self.epsilon)) * g
        # Running average of the squared updates
        edx *= self.rho
        edx += (1 - self.rho) * dx * dx
        param += dx - self.l2 * param

    def __call__(self, i, dJdw, dJdb, samples, layer):
        slot = self._slot(i)
        xp = self._get_xp(layer.weights)
        self._step(xp, layer.weights.data, dJdw.data, self.mw[slot], self.sw[slot])
        self._step(xp, layer.biases.data, dJdb.data, self.mb[slot], self.sb[slot])


class Adam(WeightsUpdater):
    """Adam, with the bias correction folded into the step size"""
    def __init__(self, network, info):
        super().__init__(network)
        self.eta = info.eta
        self.beta1 = info.beta1
        self.beta2 = info.beta2
        self.epsilon = info.epsilon
        self.mw, self.mb = self._zeros('weights'), self._zeros('biases')
        self.vw, self.vb = self._zeros('weights'), self._zeros('biases')
        # beta1^t and beta2^t, for each layer
        self.beta1t = [self.beta1] * len(self.layers)
        self.beta2t = [self.beta2] * len(self.layers)

    def _step(self, xp, param, g, m, v, alphat):
        m *= self.beta1
        m += (1 - self.beta1) * g
        v *= self.beta2
        v += (1 - self.beta2) * g * g
        param -= alphat * m / (xp.sqrt(v) + self.epsilon)

    def __call__(self, i, dJdw, dJdb, samples, layer):
        slot = self._slot(i)
        xp = self._get_xp(layer.weights)
        alphat = self.eta * math.sqrt(1 - self.beta2t[slot]) / (1 - self.beta1t[slot])
        self.beta1t[slot] *= self.beta1
        self.beta2t[slot] *= self.beta2
        self._step(xp, layer.weights.data, dJdw.data, self.mw[slot], self.vw[slot], alphat)
        self._step(xp, layer.biases.data, dJdb.data, self.mb[slot], self.vb[slot], alphat)


class AdaMax(WeightsUpdater):
    """AdaMax: Adam with the infinity norm in place of the second moment"""
    def __init__(self, network, info):
        super().__init__(network)
        self.eta = info.eta
        self.beta1 = info.beta1
        self.beta2 = info.beta2
        self.mw, self.mb = self._zeros('weights'), self._zeros('biases')
        self.uw, self.ub = self._zeros('weights'), self._zeros('biases')
        self.beta1t = [self.beta1] * len(self.layers)

    def _step(self, xp, param, g, m, u, scale):
        m *= self.beta1
        m += (1 - self.beta1) * g
        xp.maximum(self.beta2 * u, xp.abs(g), out=u)
        # u is 0 only where every gradient so far was 0, and there m is 0 too
        param -= scale * m / xp.maximum(u, np.finfo(np.float32).tiny)

    def __call__(self, i, dJdw, dJdb, samples, layer):
        slot = self._slot(i)
        xp = self._get_xp(layer.weights)
        b1t = self.beta1t[slot]
        self.beta1t[slot] *= self.beta1
        scale = self.eta / (1 - b1t)
        self._step(xp, layer.weights.data, dJdw.data, self.mw[slot], self.uw[slot], scale)
        self._step(xp, layer.biases.data, dJdb.data, self.mb[slot], self.ub[slot], scale)


def create_updater(info, network):
    """Creates the updater for a training algorithm info"""
    if isinstance(info, StochasticGradientDescentInfo):
        return StochasticGradientDescent(network, info)
    if isinstance(info, AdadeltaInfo):
        return Adadelta(network, info)
    if isinstance(info, AdamInfo):
        return Adam(network, info)
    if isinstance(info, AdaMaxInfo):
        return AdaMax(network, info)
    raise ConfigurationError(f"Unsupported training algorithm: {type(info).__name__}")

import numpy as np
import pytest

from cobra_dnn.dense import FullyConnectedLayer, OutputLayer
from cobra_dnn.errors import ConfigurationError
from cobra_dnn.optimizer import (AdadeltaInfo, AdaMaxInfo, AdamInfo, StochasticGradientDescentInfo,
                                 create_updater)
from cobra_dnn.sequential import SequentialNetwork
from cobra_dnn.tensor import Tensor, TensorInfo


def _network():
    return SequentialNetwork([
        FullyConnectedLayer(TensorInfo.linear(2), 2, 'relu', weights=[[1, -1], [2, 0.5]], biases=[[0, 0]]),
        OutputLayer(TensorInfo.linear(2), 1, 'sigmoid', 'quadratic', weights=[[1], [1]], biases=[[0.5]]),
    ])


def _gradients():
    return Tensor.from_array([[2, -4], [0.5, 0]]), Tensor.from_array([[1, -1]])


def test_sgd():
    network = _network()
    layer = network.layers[0]
    updater = create_updater(StochasticGradientDescentInfo(eta=0.5, lambda_=0.1), network)
    dw, db = _gradients()
    updater(0, dw, db, 2, layer)
    w = np.array([[1, -1], [2, 0.5]])
    expected = w - (0.5 * 0.1 / 2) * w - (0.5 / 2) * np.array([[2, -4], [0.5, 0]])
    assert np.allclose(layer.weights.data, expected)
    assert np.allclose(layer.biases.data, [[-0.25, 0.25]])


def test_adadelta_first_step():
    network = _network()
    layer = network.layers[0]
    info = AdadeltaInfo(rho=0.9, epsilon=1e-6, l2=0.01)
    updater = create_updater(info, network)
    dw, db = _gradients()
    updater(0, dw, db, 2, layer)
    g = np.array([[2, -4], [0.5, 0]])
    w = np.array([[1, -1], [2, 0.5]])
    eg = 0.1 * g * g
    dx = -(np.sqrt(1e-6) / np.sqrt(eg + 1e-6)) * g
    assert np.allclose(layer.weights.data, w + dx - 0.01 * w, atol=1e-6)
    assert np.allclose(updater.sw[0], 0.1 * dx * dx)


def test_adam_first_step_moves_by_eta():
    network = _network()
    layer = network.layers[0]
    updater = create_updater(AdamInfo(eta=0.01), network)
    dw, db = _gradients()
    updater(0, dw, db, 2, layer)
    w = np.array([[1, -1], [2, 0.5]])
    # After one step the bias corrected update is eta * sign(g)
    assert np.allclose(layer.weights.data, w - 0.01 * np.sign([[2, -4], [0.5, 0]]), atol=1e-5)
    assert np.allclose(layer.biases.data, [[-0.01, 0.01]], atol=1e-5)
    assert np.isclose(updater.beta1t[0], 0.9 ** 2)
    assert np.isclose(updater.beta2t[0], 0.999 ** 2)


def test_adamax_first_step_moves_by_eta():
    network = _network()
    layer = network.layers[0]
    updater = create_updater(AdaMaxInfo(eta=0.002), network)
    dw, db = _gradients()
    updater(0, dw, db, 2, layer)
    w = np.array([[1, -1], [2, 0.5]])
    assert np.allclose(layer.weights.data, w - 0.002 * np.sign([[2, -4], [0.5, 0]]), atol=1e-6)
    assert np.all(np.isfinite(layer.weights.data))
    assert np.allclose(updater.uw[0], np.abs([[2, -4], [0.5, 0]]))


def test_layers_have_independent_state():
    network = _network()
    updater = create_updater(AdamInfo(), network)
    dw, db = _gradients()
    updater(0, dw, db, 2, network.layers[0])
    assert np.isclose(updater.beta1t[1], 0.9)
    assert np.all(updater.mw[1] == 0)
    updater(1, Tensor.from_array([[1], [1]]), Tensor.from_array([[1]]), 2, network.layers[1])
    assert np.isclose(updater.beta1t[1], 0.81)


def test_unknown_layer_position():
    network = _network()
    updater = create_updater(StochasticGradientDescentInfo(), network)
    dw, db = _gradients()
    with pytest.raises(ConfigurationError):
        updater(5, dw, db, 2, network.layers[0])


@pytest.mark.parametrize("factory", [
    lambda: StochasticGradientDescentInfo(eta=0),
    lambda: StochasticGradientDescentInfo(lambda_=-1),
    lambda: AdadeltaInfo(rho=1.0),
    lambda: AdadeltaInfo(epsilon=0),
    lambda: AdamInfo(beta1=1.0),
    lambda: AdamInfo(beta2=-0.1),
    lambda: AdaMaxInfo(eta=-0.002),
])
def test_invalid_info(factory):
    with pytest.raises(ConfigurationError):
        factory()


def test_unsupported_algorithm():
    with pytest.raises(ConfigurationError):
        create_updater(object(), _network())


def test_defaults():
    assert StochasticGradientDescentInfo() == StochasticGradientDescentInfo(0.1, 0.0)
    assert AdamInfo().beta2 == 0.999
    assert AdaMaxInfo().eta == 0.002
    assert AdadeltaInfo().rho == 0.95

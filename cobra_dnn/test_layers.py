import numpy as np
import pytest

from cobra_dnn import layers
from cobra_dnn.conv import ConvolutionalLayer, PoolingLayer
from cobra_dnn.cpu_dnn import ConvolutionInfo, NormalizationMode
from cobra_dnn.dense import FullyConnectedLayer, OutputLayer, SoftmaxLayer, init_weights
from cobra_dnn.errors import ConfigurationError
from cobra_dnn.loss import Accuracy, CostFunctionType, get_cost_functions
from cobra_dnn.normalization import BatchNormalizationLayer
from cobra_dnn.tensor import Tensor, TensorInfo


def test_fully_connected_forward():
    layer = FullyConnectedLayer(TensorInfo.linear(3), 2, 'relu',
                                weights=[[1, 0], [0, 1], [1, -1]], biases=[[0.5, -0.5]])
    z, a = layer.forward(Tensor.from_array([[1, 2, 3]]))
    assert np.allclose(z.data, [[4.5, -1.5]])
    assert np.allclose(a.data, [[4.5, 0.0]])
    assert layer.output_info == TensorInfo.linear(2)


def test_fully_connected_rejects_softmax():
    with pytest.raises(ConfigurationError):
        FullyConnectedLayer(TensorInfo.linear(3), 2, 'softmax')


def test_invalid_weights_shape():
    with pytest.raises(ConfigurationError):
        FullyConnectedLayer(TensorInfo.linear(3), 2, 'sigmoid', weights=np.zeros((2, 3)))
    with pytest.raises(ConfigurationError):
        init_weights(3, 2, 'uniform')


def test_zero_size_input():
    with pytest.raises(ConfigurationError):
        FullyConnectedLayer(TensorInfo.linear(0), 3, 'sigmoid')
    with pytest.raises(ConfigurationError):
        FullyConnectedLayer(TensorInfo.linear(4), 0, 'sigmoid')


@pytest.mark.parametrize("activation, cost", [
    ('relu', 'cross_entropy'),
    ('sigmoid', 'log_likelihood'),
    ('softmax', 'log_likelihood'),
    ('sigmoid', 'hinge'),
])
def test_output_layer_pairing(activation, cost):
    with pytest.raises(ConfigurationError):
        OutputLayer(TensorInfo.linear(4), 2, activation, cost)


@pytest.mark.parametrize("activation, cost_type", [('tanh', 'quadratic'), ('sigmoid', 'cross_entropy')])
def test_output_layer_gradient_matches_finite_difference(activation, cost_type):
    np.random.seed(3)
    x = np.random.randn(4, 3).astype(np.float32)
    y = np.random.rand(4, 2).astype(np.float32)
    layer = OutputLayer(TensorInfo.linear(3), 2, activation, cost_type)
    xt, yt = Tensor.from_array(x), Tensor.from_array(y)

    z, a = layer.forward(xt)
    dw, db = layer.backpropagate_output(xt, a, yt, z)

    def cost(weights, biases):
        other = OutputLayer(TensorInfo.linear(3), 2, activation, cost_type, weights=weights, biases=biases)
        _, out = other.forward(xt)
        return other.calculate_cost(out, yt)

    w0, b0 = layer.weights.to_array().astype(np.float64), layer.biases.to_array().astype(np.float64)
    h = 1e-2
    for index in [(0, 0), (1, 1), (2, 0)]:
        plus, minus = w0.copy(), w0.copy()
        plus[index] += h
        minus[index] -= h
        numeric = (cost(plus, b0) - cost(minus, b0)) / (2 * h)
        # The gradient is summed over the batch, the cost is averaged
        assert np.isclose(dw.data[index] / 4, numeric, rtol=2e-2, atol=1e-3)
    plus, minus = b0.copy(), b0.copy()
    plus[0, 1] += h
    minus[0, 1] -= h
    numeric = (cost(w0, plus) - cost(w0, minus)) / (2 * h)
    assert np.isclose(db.data[0, 1] / 4, numeric, rtol=2e-2, atol=1e-3)


def test_softmax_layer_delta():
    layer = SoftmaxLayer(TensorInfo.linear(2), 3)
    x = Tensor.from_array([[1.0, -1.0]])
    y = Tensor.from_array([[0.0, 1.0, 0.0]])
    z, a = layer.forward(x)
    assert np.isclose(a.data.sum(), 1.0)
    expected = a.data - y.data
    layer.backpropagate_output(x, a, y, z)
    assert np.allclose(z.data, expected)
    assert layer.cost_type == CostFunctionType.LOG_LIKELIHOOD


def test_backpropagate_overwrites_previous_activity():
    hidden = FullyConnectedLayer(TensorInfo.linear(2), 2, 'identity', weights=np.eye(2))
    out = FullyConnectedLayer(TensorInfo.linear(2), 2, 'identity', weights=[[2, 0], [0, 3]])
    z, a = hidden.forward(Tensor.from_array([[1, 1]]))
    delta = Tensor.from_array([[1, 1]])
    result = out.backpropagate(a, delta, z, hidden.activation_prime)
    assert result is z
    assert np.allclose(z.data, [[2, 3]])


def test_cost_functions():
    y_hat = Tensor.from_array([[0.8, 0.2], [0.4, 0.6]])
    y = Tensor.from_array([[1.0, 0.0], [0.0, 1.0]])
    quadratic, _ = get_cost_functions('quadratic')
    assert np.isclose(quadratic(y_hat, y), 0.5 * (0.04 + 0.04 + 0.16 + 0.16) / 2)
    log_likelihood, _ = get_cost_functions('log_likelihood')
    assert np.isclose(log_likelihood(y_hat, y), -(np.log(0.8) + np.log(0.6)) / 2, rtol=1e-5)
    assert Accuracy()(y_hat, y) == 2
    with pytest.raises(ConfigurationError):
        get_cost_functions('hinge')


# ===========================
# Convolution and pooling layers
# ===========================

def test_convolutional_layer_shapes():
    layer = ConvolutionalLayer(TensorInfo(8, 8, 3), 3, 4, 'relu', ConvolutionInfo(1, 1, 1, 1))
    assert layer.output_info == TensorInfo(8, 8, 4)
    assert layer.weights.shape == (4, 27)
    z, a = layer.forward(Tensor.from_array(np.random.randn(2, 192)))
    assert z.shape == (2, 256)
    assert np.all(a.data >= 0)

    dx = layer.backward_data(Tensor.zeros(2, 192), Tensor.from_array(np.ones((2, 256))))
    assert dx.shape == (2, 192)
    dw, db = layer.compute_gradient(Tensor.from_array(np.random.randn(2, 192)), Tensor.from_array(np.ones((2, 256))))
    assert dw.shape == (4, 27)
    assert np.allclose(db.data, 2 * 64)


def test_convolutional_layer_errors():
    with pytest.raises(ConfigurationError):
        ConvolutionalLayer(TensorInfo(2, 2, 1), 3, 1, 'relu')
    layer = ConvolutionalLayer(TensorInfo(4, 4, 1), 3, 1, 'relu')
    with pytest.raises(ConfigurationError):
        layer.set_device('cuda')


def test_pooling_layer():
    layer = PoolingLayer(TensorInfo(4, 6, 2))
    assert layer.output_info == TensorInfo(2, 3, 2)
    z, a = layer.forward(Tensor.from_array(np.random.randn(3, 48)))
    assert a.shape == (3, 12)
    assert np.array_equal(z.data, a.data)


# ===========================
# Batch normalization layer
# ===========================

def test_batch_normalization_layer_statistics():
    layer = BatchNormalizationLayer(TensorInfo.linear(3), NormalizationMode.PER_ACTIVATION)
    x1 = Tensor.from_array(np.random.randn(16, 3) + 2)
    x2 = Tensor.from_array(np.random.randn(16, 3) - 2)
    layer.training = True
    layer.forward(x1)
    first = layer.mu.to_array()
    layer.forward(x2)
    second = layer.mu.to_array()
    assert layer.iteration == 2
    assert np.allclose(layer.running_mean.data, (first + second) / 2, atol=1e-5)

    layer.training = False
    z, _ = layer.forward(x1)
    expected = (x1.data - layer.running_mean.data) / np.sqrt(layer.running_var.data + np.finfo(np.float32).eps)
    assert np.allclose(z.data, expected, atol=1e-4)


def test_batch_normalization_layer_spatial_parameters():
    layer = BatchNormalizationLayer(TensorInfo(2, 2, 3), 'spatial')
    assert layer.weights.shape == (1, 3)
    assert layer.biases.shape == (1, 3)
    assert np.all(layer.weights.data == 1)
    with pytest.raises(ConfigurationError):
        BatchNormalizationLayer(TensorInfo(2, 2, 3), 'global')


def test_batch_normalization_layer_clone_and_state():
    layer = BatchNormalizationLayer(TensorInfo.linear(2), 'per_activation')
    layer.training = True
    layer.forward(Tensor.from_array(np.random.randn(8, 2)))
    copy = layer.clone()
    assert copy == layer
    assert copy.running_mean is not layer.running_mean

    other = BatchNormalizationLayer(TensorInfo.linear(2), 'per_activation')
    assert other != layer
    other.load_state_dict(layer.state_dict())
    assert other == layer


# ===========================
# Equality, cloning and state
# ===========================

def test_clone_is_equal_and_independent():
    layer = FullyConnectedLayer(TensorInfo.linear(4), 3, 'sigmoid')
    copy = layer.clone()
    assert copy == layer
    copy.weights.data[0, 0] += 1
    assert copy != layer


def test_load_state_dict():
    source = OutputLayer(TensorInfo.linear(4), 2, 'sigmoid', 'cross_entropy')
    target = OutputLayer(TensorInfo.linear(4), 2, 'sigmoid', 'cross_entropy')
    target.load_state_dict(source.state_dict())
    assert target == source

    mismatched = OutputLayer(TensorInfo.linear(4), 2, 'sigmoid', 'quadratic')
    with pytest.raises(ConfigurationError):
        mismatched.load_state_dict(source.state_dict())
    with pytest.raises(ConfigurationError):
        FullyConnectedLayer(TensorInfo.linear(4), 2, 'sigmoid').load_state_dict(source.state_dict())


def test_validate_weights():
    layer = FullyConnectedLayer(TensorInfo.linear(2), 2, 'sigmoid')
    assert layer.validate_weights()
    layer.weights.data[1, 1] = np.nan
    assert not layer.validate_weights()


def test_factories():
    info = TensorInfo(6, 6, 1)
    conv = layers.convolutional(3, 2, 'relu')(info)
    pool = layers.pooling()(conv.output_info)
    norm = layers.batch_normalization('spatial')(pool.output_info)
    dense = layers.fully_connected(5, 'tanh')(norm.output_info)
    out = layers.softmax(3)(dense.output_info)
    assert conv.output_info == TensorInfo(4, 4, 2)
    assert pool.output_info == TensorInfo(2, 2, 2)
    assert norm.output_info == pool.output_info
    assert dense.inputs == 8
    assert isinstance(out, SoftmaxLayer)
    assert isinstance(layers.output(2, 'sigmoid', 'cross_entropy')(info), OutputLayer)

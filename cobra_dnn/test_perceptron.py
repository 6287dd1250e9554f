import threading

import numpy as np
import pytest

from cobra_dnn.errors import ConfigurationError, ShapeMismatch
from cobra_dnn.perceptron import PerceptronNetwork, compute_trained_network

# Logical AND
X = np.array([[0, 0], [0, 1], [1, 0], [1, 1]], dtype=np.float64)
Y = np.array([[0], [0], [0], [1]], dtype=np.float64)


def _stop_after(iterations, reports=None):
    """Cancels the training after a number of iterations"""
    token = threading.Event()

    def progress(report):
        if reports is not None:
            reports.append(report)
        if report.iteration >= iterations:
            token.set()
    return token, progress


def test_forward_and_cost():
    network = PerceptronNetwork(np.zeros((2, 3)), np.zeros((3, 1)))
    assert np.allclose(network.forward(X), 0.5)
    assert np.isclose(network.calculate_cost(X, Y), 0.5 * (3 * 0.25 + 0.25))


def test_serialize():
    rng = np.random.default_rng(0)
    network = PerceptronNetwork(rng.standard_normal((2, 3)), rng.standard_normal((3, 1)))
    vector = network.serialize()
    assert vector.shape == (9,)
    assert PerceptronNetwork.deserialize(2, 3, 1, vector) == network
    with pytest.raises(ShapeMismatch):
        PerceptronNetwork.deserialize(2, 3, 2, vector)


def test_cost_function_prime_matches_finite_difference():
    rng = np.random.default_rng(1)
    network = PerceptronNetwork(rng.standard_normal((2, 3)), rng.standard_normal((3, 1)))
    gradient = network.cost_function_prime(X, Y)
    vector = network.serialize()
    h = 1e-6
    numeric = np.zeros_like(vector)
    for i in range(vector.size):
        plus, minus = vector.copy(), vector.copy()
        plus[i] += h
        minus[i] -= h
        numeric[i] = (PerceptronNetwork.deserialize(2, 3, 1, plus).calculate_cost(X, Y)
                      - PerceptronNetwork.deserialize(2, 3, 1, minus).calculate_cost(X, Y)) / (2 * h)
    assert np.allclose(gradient, numeric, atol=1e-6)


def test_compute_trained_network():
    np.random.seed(0)
    reports = []
    token, progress = _stop_after(300, reports)
    network = compute_trained_network(X, Y, size=4, token=token, progress=progress)
    assert (network.inputs, network.hidden, network.outputs) == (2, 4, 1)
    # Below the cost of a network that always answers 0.5
    assert network.calculate_cost(X, Y) < 0.3
    assert len(reports) > 0
    assert reports[-1].network.hidden == 4
    assert all(b.cost <= a.cost for a, b in zip(reports, reports[1:]))


def test_default_hidden_size():
    np.random.seed(1)
    token, progress = _stop_after(100)
    network = compute_trained_network(np.random.rand(5, 4), np.random.rand(5, 2), token=token, progress=progress)
    assert network.hidden == 3


def test_resume_from_solution():
    np.random.seed(2)
    token, progress = _stop_after(50)
    first = compute_trained_network(X, Y, size=2, token=token, progress=progress)
    token = threading.Event()
    token.set()
    resumed = compute_trained_network(X, Y, size=2, token=token, solution=first.serialize())
    assert resumed == first


def test_invalid_inputs():
    with pytest.raises(ConfigurationError):
        compute_trained_network(np.zeros((0, 2)), Y)
    with pytest.raises(ConfigurationError):
        compute_trained_network(X, np.zeros((0, 1)))
    with pytest.raises(ConfigurationError):
        compute_trained_network(X, Y[:3])
    with pytest.raises(ConfigurationError):
        compute_trained_network(X, Y, size=0)

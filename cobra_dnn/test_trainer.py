import threading

import numpy as np
import pytest

from cobra_dnn import layers
from cobra_dnn.batches import BatchesCollection, SamplesBatch
from cobra_dnn.errors import ConfigurationError
from cobra_dnn.optimizer import AdaMaxInfo, AdamInfo, StochasticGradientDescentInfo
from cobra_dnn.sequential import SequentialNetwork
from cobra_dnn.tensor import TensorInfo
from cobra_dnn.trainer import (RelativeConvergence, TestDataset, TrainingProgressSink, TrainingStopReason,
                               ValidationDataset, train_network)


def _setup(seed=0):
    np.random.seed(seed)
    rng = np.random.default_rng(seed)
    x = rng.random((40, 4)).astype(np.float32)
    # Two separable classes
    labels = (x[:, 0] + x[:, 1] > 1).astype(int)
    y = np.eye(2, dtype=np.float32)[labels]
    network = SequentialNetwork.new(TensorInfo.linear(4),
                                    layers.fully_connected(8, 'tanh'),
                                    layers.softmax(2))
    return network, x, y


class RecordingSink(TrainingProgressSink):
    def __init__(self):
        self.events = []

    def training_started(self, network):
        self.events.append('started')

    def training_stopped(self, network, result):
        self.events.append(result.stop_reason)


@pytest.fixture
def sink():
    return RecordingSink()


def test_epochs_completed(sink):
    network, x, y = _setup()
    batches, epochs = [], []
    result = train_network(network, BatchesCollection(x, y, 10), 3, StochasticGradientDescentInfo(eta=0.5),
                           batch_progress=batches.append, training_progress=epochs.append,
                           test_dataset=TestDataset(x, y), sink=sink)
    assert result.stop_reason == TrainingStopReason.EPOCHS_COMPLETED
    assert result.completed_epochs == 3
    assert len(result.test_reports) == 3
    assert result.validation_reports == []
    assert [e.iteration for e in epochs] == [1, 2, 3]
    assert len(batches) == 12
    assert batches[3].processed_items == 40
    assert np.isclose(batches[3].percentage, 100)
    assert sink.events == ['started', TrainingStopReason.EPOCHS_COMPLETED]


def test_training_improves_accuracy():
    network, x, y = _setup(1)
    train_network(network, (x, y, 8), 30, AdamInfo(eta=0.02))
    cost, _, accuracy = network.evaluate((x, y))
    assert accuracy > 80
    assert cost < np.log(2)


def test_cancellation():
    network, x, y = _setup()
    token = threading.Event()
    token.set()
    original = network.clone()
    result = train_network(network, [SamplesBatch(x, y)], 5, AdaMaxInfo(), token=token)
    assert result.stop_reason == TrainingStopReason.TRAINING_CANCELED
    assert result.completed_epochs == 0
    assert network == original


def test_numeric_overflow():
    network, x, y = _setup()
    network.layers[0].weights.data[0, 0] = np.nan
    with np.errstate(invalid='ignore', over='ignore'):
        result = train_network(network, (x, y, 20), 10, StochasticGradientDescentInfo())
    assert result.stop_reason == TrainingStopReason.NUMERIC_OVERFLOW
    assert result.completed_epochs == 0


def test_early_stopping():
    network, x, y = _setup()
    validation = ValidationDataset(x, y, tolerance=1e6, epochs_interval=2)
    result = train_network(network, (x, y, 20), 50, StochasticGradientDescentInfo(eta=0.01),
                           validation_dataset=validation)
    assert result.stop_reason == TrainingStopReason.EARLY_STOPPING
    # The reference epoch plus two unchanged ones
    assert len(result.validation_reports) == 3
    assert result.completed_epochs == 2


def test_test_dataset_callback():
    network, x, y = _setup()
    reports = []
    result = train_network(network, (x, y, 20), 2, StochasticGradientDescentInfo(),
                           test_dataset=TestDataset(x[:10], y[:10], reports.append))
    assert [r.iteration for r in reports] == [1, 2]
    assert result.test_reports[1].accuracy == reports[1].accuracy


def test_invalid_arguments():
    network, x, y = _setup()
    with pytest.raises(ConfigurationError):
        train_network(network, (x, y, 10), 0, StochasticGradientDescentInfo())
    with pytest.raises(ConfigurationError):
        train_network(network, (x, y, 10), 1, StochasticGradientDescentInfo(), dropout=1.0)
    with pytest.raises(ConfigurationError):
        ValidationDataset(x, y, tolerance=0)
    with pytest.raises(ConfigurationError):
        ValidationDataset(x, y, epochs_interval=0)


def test_relative_convergence():
    convergence = RelativeConvergence(0.01, 2)
    convergence.value = 50.0
    convergence.value = 50.2
    assert not convergence.has_converged
    convergence.value = 50.1
    assert convergence.has_converged
    convergence.value = 60.0
    assert not convergence.has_converged
    assert convergence.value == 60.0

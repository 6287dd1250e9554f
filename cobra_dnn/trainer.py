"""
Gradient descent training sessions.

train_network runs the epochs, the batches and the updater, and stops on the first of:
all epochs completed, cancellation, non-finite weights or validation convergence.
Every stop condition is reported in the returned TrainingSessionResult.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum

from .base import WeightedLayer
from .batches import BatchesCollection, SamplesBatch
from .errors import ConfigurationError
from .optimizer import create_updater
from .parallel import parallel_map

logger = logging.getLogger(__name__)


class TrainingStopReason(Enum):
    EPOCHS_COMPLETED = 'epochs_completed'
    EARLY_STOPPING = 'early_stopping'
    NUMERIC_OVERFLOW = 'numeric_overflow'
    TRAINING_CANCELED = 'training_canceled'


@dataclass(frozen=True)
class DatasetEvaluationResult:
    cost: float
    accuracy: float


@dataclass
class TrainingSessionResult:
    stop_reason: TrainingStopReason
    completed_epochs: int
    training_time: float
    validation_reports: list = field(default_factory=list)
    test_reports: list = field(default_factory=list)


@dataclass(frozen=True)
class TrainingProgress:
    iteration: int
    cost: float
    accuracy: float


@dataclass(frozen=True)
class BatchProgress:
    processed_items: int
    percentage: float


class TrainingProgressSink:
    """Receives the start and the end of every training session, the default does nothing"""

    def training_started(self, network):
        pass

    def training_stopped(self, network, result):
        pass


class ValidationDataset:
    """
    Dataset checked after each epoch to stop the training early.

    Args:
        tolerance: the largest relative accuracy change considered as no change
        epochs_interval: number of consecutive epochs with no change needed to stop
    """

    def __init__(self, x, y, tolerance=1e-2, epochs_interval=5):
        if tolerance <= 0:
            raise ConfigurationError("The tolerance must be positive")
        if epochs_interval < 1:
            raise ConfigurationError("The epochs interval must be at least 1")
        self.dataset = SamplesBatch(x, y)
        self.tolerance = tolerance
        self.epochs_interval = epochs_interval


class TestDataset:
    """Dataset evaluated after each epoch, with an optional progress callback"""
    __test__ = False

    def __init__(self, x, y, progress_callback=None):
        self.dataset = SamplesBatch(x, y)
        self.progress_callback = progress_callback


class RelativeConvergence:
    """Tracks a value across epochs and detects when it stops changing"""

    def __init__(self, tolerance, epochs_interval):
        self.tolerance = tolerance
        self.epochs_interval = epochs_interval
        self._values = []

    @property
    def value(self):
        return self._values[-1] if self._values else None

    @value.setter
    def value(self, value):
        self._values.append(value)
        # Only the reference value and the last interval are needed
        del self._values[:-(self.epochs_interval + 1)]

    @property
    def has_converged(self):
        if len(self._values) <= self.epochs_interval:
            return False
        reference = self._values[0]
        scale = max(abs(reference), 1.0)
        return all(abs(v - reference) / scale <= self.tolerance for v in self._values[1:])


class BatchProgressMonitor:
    """Turns completed batches into BatchProgress reports"""

    def __init__(self, total, callback):
        self.total = total
        self.callback = callback
        self.processed = 0

    def notify_completed_batch(self, size):
        self.processed += size
        self.callback(BatchProgress(self.processed, self.processed / self.total * 100))

    def reset(self):
        self.processed = 0


def _as_batches(batches):
    if isinstance(batches, BatchesCollection):
        return batches
    if isinstance(batches, tuple) and len(batches) == 3:
        x, y, size = batches
        return BatchesCollection(x, y, size)
    return BatchesCollection.from_batches(batches)


def train_network(network, batches, epochs, algorithm, dropout=0.0,
                  batch_progress=None, training_progress=None,
                  validation_dataset=None, test_dataset=None, token=None, sink=None):
    """
    Trains a network with gradient descent.

    Args:
        network: a SequentialNetwork or a ComputationGraphNetwork
        batches: a BatchesCollection, a list of SamplesBatch, or an (x, y, batch size) tuple
        epochs: number of passes over the training data
        algorithm: the training algorithm info (SGD, Adadelta, Adam or AdaMax)
        dropout: dropout probability for the hidden fully connected layers
        batch_progress: called with a BatchProgress after every batch
        training_progress: called with a TrainingProgress after every epoch
        validation_dataset: optional ValidationDataset for early stopping
        test_dataset: optional TestDataset evaluated after every epoch
        token: optional threading.Event, training stops once it is set
        sink: optional TrainingProgressSink

    Returns:
        TrainingSessionResult
    """
    if epochs < 1:
        raise ConfigurationError("The number of epochs must be at least 1")
    if not 0 <= dropout < 1:
        raise ConfigurationError("The dropout probability must be in [0, 1)")
    batches = _as_batches(batches)
    updater = create_updater(algorithm, network)
    sink = sink or TrainingProgressSink()
    sink.training_started(network)
    logger.info("Training started: %d epochs, %d batches, %s", epochs, len(batches), type(algorithm).__name__)
    result = _optimize(network, batches, epochs, dropout, updater, batch_progress, training_progress,
                       validation_dataset, test_dataset, token)
    logger.info("Training stopped after %d epochs: %s", result.completed_epochs, result.stop_reason.value)
    sink.training_stopped(network, result)
    return result


def _optimize(network, batches, epochs, dropout, updater, batch_progress, training_progress,
              validation_dataset, test_dataset, token):
    start = time.monotonic()
    validation_reports, test_reports = [], []

    def prepare_result(reason, loops):
        return TrainingSessionResult(reason, loops, round(time.monotonic() - start), validation_reports, test_reports)

    convergence = None if validation_dataset is None else \
        RelativeConvergence(validation_dataset.tolerance, validation_dataset.epochs_interval)
    monitor = None if batch_progress is None else BatchProgressMonitor(batches.count, batch_progress)
    weighted = [layer for layer in network.layers if isinstance(layer, WeightedLayer)]

    for i in range(epochs):
        batches.cross_shuffle()
        for batch in batches:
            if token is not None and token.is_set():
                return prepare_result(TrainingStopReason.TRAINING_CANCELED, i)
            network.backpropagate(batch, dropout, updater)
            if monitor is not None:
                monitor.notify_completed_batch(len(batch))
        if monitor is not None:
            monitor.reset()
        logger.debug("Completed epoch %d", i + 1)

        # Check for overflows
        if not all(parallel_map(lambda layer: layer.validate_weights(), weighted)):
            logger.warning("Non-finite weights detected after epoch %d", i + 1)
            return prepare_result(TrainingStopReason.NUMERIC_OVERFLOW, i)

        if training_progress is not None:
            cost, _, accuracy = network.evaluate(batches)
            training_progress(TrainingProgress(i + 1, cost, accuracy))

        if convergence is not None:
            cost, _, accuracy = network.evaluate([validation_dataset.dataset])
            validation_reports.append(DatasetEvaluationResult(cost, accuracy))
            convergence.value = accuracy
            if convergence.has_converged:
                return prepare_result(TrainingStopReason.EARLY_STOPPING, i)

        if test_dataset is not None:
            cost, _, accuracy = network.evaluate([test_dataset.dataset])
            test_reports.append(DatasetEvaluationResult(cost, accuracy))
            if test_dataset.progress_callback is not None:
                test_dataset.progress_callback(TrainingProgress(i + 1, cost, accuracy))
    return prepare_result(TrainingStopReason.EPOCHS_COMPLETED, epochs)

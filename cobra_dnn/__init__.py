"""
Cobra DNN - A neural network training engine
"""

# Core components
from .errors import ConfigurationError, ShapeMismatch, OptimizerDefect, TensorLifetimeError
from .tensor import Tensor, TensorInfo, TensorMap
from .parallel import parallel_for, set_worker_count, get_worker_count
from .activations import ActivationType
from .loss import CostFunctionType, Accuracy
from .cpu_dnn import ConvolutionInfo, PoolingInfo, NormalizationMode
from .base import NetworkLayer, WeightedLayer, ConstantLayer
from .dense import FullyConnectedLayer, OutputLayer, SoftmaxLayer
from .conv import ConvolutionalLayer, PoolingLayer
from .normalization import BatchNormalizationLayer
from . import layers
from .graph import NodeBuilder, NodeType, ComputationGraph
from .network import ComputationGraphNetwork
from .sequential import SequentialNetwork
from .batches import SamplesBatch, BatchesCollection
from .optimizer import *
from .trainer import *
from .lbfgs import BoundedLBFGS, BoundedLBFGSStatus
from .perceptron import PerceptronNetwork, compute_trained_network

# Version
__version__ = "0.1.0"

# Public API
__all__ = [
    'ConfigurationError', 'ShapeMismatch', 'OptimizerDefect', 'TensorLifetimeError',
    'Tensor', 'TensorInfo', 'TensorMap',
    'parallel_for', 'set_worker_count', 'get_worker_count',
    'ActivationType', 'CostFunctionType', 'Accuracy',
    'ConvolutionInfo', 'PoolingInfo', 'NormalizationMode',
    'NetworkLayer', 'WeightedLayer', 'ConstantLayer',
    'FullyConnectedLayer', 'OutputLayer', 'SoftmaxLayer',
    'ConvolutionalLayer', 'PoolingLayer', 'BatchNormalizationLayer',
    'layers',
    'NodeBuilder', 'NodeType', 'ComputationGraph',
    'ComputationGraphNetwork', 'SequentialNetwork',
    'SamplesBatch', 'BatchesCollection',
    'StochasticGradientDescentInfo', 'AdadeltaInfo', 'AdamInfo', 'AdaMaxInfo', 'create_updater',
    'TrainingStopReason', 'TrainingSessionResult', 'TrainingProgressSink', 'ValidationDataset',
    'TestDataset', 'train_network',
    'BoundedLBFGS', 'BoundedLBFGSStatus',
    'PerceptronNetwork', 'compute_trained_network',
]

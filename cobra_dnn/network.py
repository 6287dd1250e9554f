from abc import ABC, abstractmethod
from contextlib import contextmanager

import numpy as np

from .base import WeightedLayer, get_backend
from .batches import SamplesBatch
from .cpu_blas import multiply_elementwise, sum_tensors
from .dense import FullyConnectedLayer, OutputLayer
from .errors import ConfigurationError, ShapeMismatch
from .graph import ComputationGraph, NodeBuilder, NodeType
from .loss import Accuracy
from .normalization import BatchNormalizationLayer
from .parallel import parallel_map
from .tensor import Tensor, TensorMap


def dropout_mask(a, dropout):
    """Inverted dropout: kept units are scaled by 1 / (1 - dropout), dropped ones are 0"""
    xp = a.xp
    keep = 1.0 - dropout
    mask = (xp.random.random_sample(a.shape) < keep).astype(np.float32) / np.float32(keep)
    return Tensor(mask, True, a.device)


def uses_dropout(layer):
    """Dropout only applies to hidden fully connected layers"""
    return isinstance(layer, FullyConnectedLayer) and not isinstance(layer, OutputLayer)


class NetworkBase(ABC):
    """Operations shared by every network, built on top of the forward pass of each implementation"""

    def __init__(self, input_info, output_info):
        self.input_info = input_info
        self.output_info = output_info
        self.accuracy = Accuracy()

    @property
    @abstractmethod
    def layers(self):
        """Every layer, in the order they are evaluated"""

    @property
    @abstractmethod
    def output_layer(self):
        pass

    @property
    def device(self):
        return self.layers[0].device

    @property
    def weighted_layers_indexes(self):
        """Positions of the layers with trainable parameters"""
        return [i for i, layer in enumerate(self.layers) if isinstance(layer, WeightedLayer)]

    def _input(self, x):
        tensor = Tensor.from_array(x, self.device)
        if tensor.length != self.input_info.size:
            tensor.free()
            raise ShapeMismatch(f"The network expects {self.input_info.size} inputs, got {tensor.length}")
        return tensor

    @abstractmethod
    def _forward(self, x):
        """Forwards an input tensor and returns a new owned tensor with the network output"""

    def forward(self, x):
        """Forwards a batch of inputs, one sample per row"""
        x = self._input(x)
        try:
            y = self._forward(x)
        finally:
            x.free()
        result = y.to_array()
        y.free()
        return result

    def __call__(self, x):
        return self.forward(x)

    def calculate_cost(self, x, y):
        """Cost of the network output for a batch, using the output layer cost function"""
        batch = SamplesBatch(x, y)
        xt = self._input(batch.x)
        yt = Tensor.from_array(batch.y, self.device)
        try:
            y_hat = self._forward(xt)
            try:
                return self.output_layer.calculate_cost(y_hat, yt)
            finally:
                y_hat.free()
        finally:
            xt.free()
            yt.free()

    def evaluate(self, dataset):
        """
        Evaluates the network over a dataset.

        Args:
            dataset: an (x, y) pair of arrays, or an iterable of SamplesBatch

        Returns:
            (cost, classified, accuracy): the average cost, the number of correctly
            classified samples and the accuracy as a percentage
        """
        batches = [SamplesBatch(*dataset)] if isinstance(dataset, tuple) else list(dataset)
        total, cost, classified = 0, 0.0, 0
        for batch in batches:
            with TensorMap() as tensors:
                xt = tensors['x'] = self._input(batch.x)
                yt = tensors['y'] = Tensor.from_array(batch.y, self.device)
                y_hat = tensors['y_hat'] = self._forward(xt)
                cost += self.output_layer.calculate_cost(y_hat, yt) * len(batch)
                classified += self.accuracy(y_hat, yt)
            total += len(batch)
        return cost / total, classified, classified / total * 100

    @abstractmethod
    def extract_deep_features(self, x):
        """Returns the activations of every layer for a batch of inputs"""

    @abstractmethod
    def backpropagate(self, batch, dropout, updater):
        """
        Runs a training step on a batch.

        Args:
            batch: the SamplesBatch to train on
            dropout: probability of dropping a unit in the hidden fully connected layers
            updater: called as updater(i, dJdw, dJdb, samples, layer) for every weighted layer
        """

    @contextmanager
    def _training(self):
        """Switches the batch normalization layers to the batch statistics"""
        normalization = [layer for layer in self.layers if isinstance(layer, BatchNormalizationLayer)]
        for layer in normalization:
            layer.training = True
        try:
            yield
        finally:
            for layer in normalization:
                layer.training = False

    def _apply_updates(self, gradients, samples, updater):
        """Runs the updater on every weighted layer, gradients being a position -> (dJdw, dJdb) map"""
        layers = self.layers
        try:
            parallel_map(lambda i: updater(i, gradients[i][0], gradients[i][1], samples, layers[i]), sorted(gradients))
        finally:
            for dw, db in gradients.values():
                dw.free()
                db.free()

    def validate_weights(self):
        return all(layer.validate_weights() for layer in self.layers if isinstance(layer, WeightedLayer))

    @abstractmethod
    def clone(self):
        pass

    def state_dict(self):
        """Return model state as dictionary"""
        return {f'layer_{i}': layer.state_dict() for i, layer in enumerate(self.layers)}

    def load_state_dict(self, state_dict):
        """Load model state from dictionary"""
        for i, layer in enumerate(self.layers):
            layer.load_state_dict(state_dict[f'layer_{i}'])

    def __eq__(self, other):
        return type(self) is type(other) and self.input_info == other.input_info and self.layers == other.layers

    __hash__ = object.__hash__


class ComputationGraphNetwork(NetworkBase):
    """A network whose layers are arranged in a directed acyclic graph"""

    def __init__(self, graph):
        super().__init__(graph.input_node.info, graph.output_node.info)
        self.graph = graph
        self._positions = {id(node): i for i, node in enumerate(graph.processing_nodes)}

    @classmethod
    def new(cls, input_info, build):
        """
        Creates a graph network.

        Args:
            input_info: shape of a single input sample
            build: receives the NodeBuilder of the input and returns the one of the output layer
        """
        root = NodeBuilder.input()
        return cls(ComputationGraph.build(input_info, build(root)))

    @property
    def layers(self):
        return self.graph.layers

    @property
    def output_layer(self):
        return self.graph.output_node.layer

    def _merge(self, node, inputs):
        if node.node_type == NodeType.SUM:
            y = Tensor.like(inputs[0])
            sum_tensors(inputs, y)
        else:
            y = Tensor.new(inputs[0].entities, node.info.size, self.device)
            get_backend(self.device).depth_concatenation_forward(inputs, y)
        return y

    def _evaluate_node(self, node, inputs):
        """Forwards a single inference node, returns its (z, a) (z is None for merge nodes)"""
        if node.node_type == NodeType.PROCESSING:
            return node.layer.forward(inputs[0])
        if node.node_type in (NodeType.SUM, NodeType.DEPTH_CONCATENATION):
            return None, self._merge(node, inputs)
        raise ConfigurationError(f"Unsupported node type: {node.node_type}")

    def _run_inference(self, x, keep_all):
        graph = self.graph
        inference = {id(node) for node in graph.inference_nodes}
        remaining = {id(node): sum(1 for c in node.children if id(c) in inference) for node in graph.inference_nodes}
        activations = TensorMap()
        try:
            for node in graph.inference_nodes[1:]:
                inputs = [x if p is graph.input_node else activations[id(p)] for p in node.parents]
                z, a = self._evaluate_node(node, inputs)
                if z is not None:
                    z.free()
                activations[id(node)] = a
                if keep_all:
                    continue
                # Release each parent as soon as its last child has been evaluated
                for parent in node.parents:
                    if parent is graph.input_node:
                        continue
                    remaining[id(parent)] -= 1
                    if remaining[id(parent)] == 0:
                        activations.pop(id(parent)).free()
            if keep_all:
                return [activations[id(node)].to_array() for node in graph.inference_nodes[1:]
                        if node.node_type == NodeType.PROCESSING]
            return activations.pop(id(graph.output_node))
        finally:
            activations.close()

    def _forward(self, x):
        return self._run_inference(x, False)

    def extract_deep_features(self, x):
        x = self._input(x)
        try:
            return self._run_inference(x, True)
        finally:
            x.free()

    def _delta(self, node, incoming, deltas):
        """Sums the deltas every child sends back to a node, as a new tensor"""
        pieces, slices = [], []
        try:
            for child in node.children:
                if child.node_type == NodeType.PROCESSING:
                    pieces.append(incoming[id(child)])
                elif child.node_type == NodeType.DEPTH_CONCATENATION:
                    offset = 0
                    for parent in child.parents:
                        if parent is node:
                            break
                        offset += parent.info.size
                    dy = deltas[id(child)]
                    piece = Tensor.new(dy.entities, node.info.size, self.device)
                    slices.append(piece)
                    get_backend(self.device).depth_concatenation_backward(dy, offset, piece)
                    pieces.append(piece)
                elif child.node_type in (NodeType.SUM, NodeType.TRAINING_BRANCH):
                    pieces.append(deltas[id(child)])
                else:
                    raise ConfigurationError(f"Unsupported node type: {child.node_type}")
            delta = Tensor.like(pieces[0])
            sum_tensors(pieces, delta)
            return delta
        finally:
            for piece in slices:
                piece.free()

    def backpropagate(self, batch, dropout, updater):
        graph = self.graph
        x = self._input(batch.x)
        y = Tensor.from_array(batch.y, self.device)
        zs, activations, masks, deltas, incoming = TensorMap(), TensorMap(), TensorMap(), TensorMap(), TensorMap()
        gradients = {}
        try:
            with self._training():
                # Forward pass, including the training branches
                for node in graph.nodes[1:]:
                    inputs = [x if p is graph.input_node else activations[id(p)] for p in node.parents]
                    if node.node_type == NodeType.TRAINING_BRANCH:
                        activations[id(node)] = inputs[0].duplicate()
                        continue
                    z, a = self._evaluate_node(node, inputs)
                    if z is not None:
                        zs[id(node)] = z
                    activations[id(node)] = a
                    if dropout > 0 and uses_dropout(node.layer):
                        mask = dropout_mask(a, dropout)
                        masks[id(node)] = mask
                        multiply_elementwise(a, mask, a)

                # Backward pass, every node is reached after all of its children
                for node in reversed(graph.nodes[1:]):
                    if node.node_type != NodeType.PROCESSING:
                        deltas[id(node)] = self._delta(node, incoming, deltas)
                        continue
                    parent = node.parents[0]
                    x_in = x if parent is graph.input_node else activations[id(parent)]
                    layer = node.layer
                    position = self._positions[id(node)]
                    if isinstance(layer, OutputLayer):
                        dx = None if parent is graph.input_node else Tensor.new(x.entities, parent.info.size, self.device)
                        gradients[position] = layer.backpropagate_output(x_in, activations[id(node)], y, zs[id(node)], dx)
                        if dx is not None:
                            incoming[id(node)] = dx
                        continue
                    dy = self._delta(node, incoming, deltas)
                    deltas[id(node)] = dy
                    if id(node) in masks:
                        multiply_elementwise(dy, masks[id(node)], dy)
                    layer.backend.activation_backward(zs[id(node)], dy, layer.activation_prime, dy)
                    if isinstance(layer, WeightedLayer):
                        gradients[position] = layer.compute_gradient(x_in, dy)
                    if parent is not graph.input_node:
                        incoming[id(node)] = layer.backward_data(x_in, dy)
        except BaseException:
            for dw, db in gradients.values():
                dw.free()
                db.free()
            raise
        finally:
            for tensors in (zs, activations, masks, deltas, incoming):
                tensors.close()
            x.free()
            y.free()
        self._apply_updates(gradients, batch.x.shape[0], updater)

    def clone(self):
        return ComputationGraphNetwork(self.graph.clone())

    def __eq__(self, other):
        return isinstance(other, ComputationGraphNetwork) and self.graph == other.graph

    __hash__ = object.__hash__

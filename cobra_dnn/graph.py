"""
Computation graph structure.

A graph is described with NodeBuilder instances: starting from NodeBuilder.input(), layers,
merges and training branches are attached to existing nodes, and the node returned at the
end is the network output. ComputationGraph.build turns that description into a validated
graph of Node instances, each with its output shape and (for processing nodes) its layer.
"""

import logging
from enum import Enum

from .base import NetworkLayer
from .dense import OutputLayer
from .errors import ConfigurationError, ShapeMismatch
from .tensor import TensorInfo

logger = logging.getLogger(__name__)


class NodeType(Enum):
    INPUT = 'input'
    PROCESSING = 'processing'
    SUM = 'sum'
    DEPTH_CONCATENATION = 'depth_concatenation'
    TRAINING_BRANCH = 'training_branch'


MERGE_TYPES = (NodeType.SUM, NodeType.DEPTH_CONCATENATION)


class NodeBuilder:
    """A node of a graph being described, before the layers are created"""

    def __init__(self, node_type, parents=(), factory=None):
        parents = list(parents)
        if node_type in MERGE_TYPES:
            if len(parents) < 2:
                raise ConfigurationError("A merge node needs at least two parents")
            if len(set(map(id, parents))) != len(parents):
                raise ConfigurationError("A merge node can't use the same parent twice")
        self.node_type = node_type
        self.parents = parents
        self.children = []
        self.factory = factory
        for parent in parents:
            parent.children.append(self)

    @classmethod
    def input(cls):
        return cls(NodeType.INPUT)

    def layer(self, factory):
        """Attaches a new layer to this node, the factory receives the shape of this node's output"""
        return NodeBuilder(NodeType.PROCESSING, [self], factory)

    def training_branch(self):
        """Starts an auxiliary branch that is only evaluated while training"""
        return NodeBuilder(NodeType.TRAINING_BRANCH, [self])

    @classmethod
    def sum(cls, *nodes):
        return cls(NodeType.SUM, nodes)

    @classmethod
    def depth_concatenation(cls, *nodes):
        return cls(NodeType.DEPTH_CONCATENATION, nodes)


class Node:
    """A node of a built graph. Only processing nodes hold a layer"""

    def __init__(self, node_type, parents, info, layer=None):
        self.node_type = node_type
        self.parents = list(parents)
        self.children = []
        self.info = info
        self.layer = layer
        for parent in self.parents:
            parent.children.append(self)

    def __repr__(self):
        if self.layer is not None:
            return f"Node({self.node_type.value}, {self.layer!r})"
        return f"Node({self.node_type.value}, {self.info.size})"


def _concatenated_info(infos):
    first = infos[0]
    if all(info.height == first.height and info.width == first.width for info in infos):
        return TensorInfo(first.height, first.width, sum(info.channels for info in infos))
    if all(info.height == 1 and info.channels == 1 for info in infos):
        return TensorInfo.linear(sum(info.size for info in infos))
    raise ShapeMismatch("The depth concatenation inputs must have the same spatial size")


def _topological_order(root):
    """Kahn's algorithm over every node reachable from the root, ties broken by discovery order"""
    reachable, stack, seen = [], [root], {id(root)}
    while stack:
        node = stack.pop()
        reachable.append(node)
        for child in reversed(node.children):
            if id(child) not in seen:
                seen.add(id(child))
                stack.append(child)
    pending = {id(node): len(node.parents) for node in reachable}
    ready, order = [root], []
    while ready:
        node = ready.pop(0)
        order.append(node)
        for child in node.children:
            pending[id(child)] -= 1
            if pending[id(child)] == 0:
                ready.append(child)
    if len(order) != len(reachable):
        raise ConfigurationError("Every node must be reachable from the same input node")
    return order


class ComputationGraph:
    """
    A validated directed acyclic graph of nodes, in topological order.

    Attributes:
        nodes: every node, parents always before their children
        input_node: the single root
        output_node: the processing node holding the network output layer
        training_outputs: output nodes of the training branches
        inference_nodes: the nodes evaluated outside of training
    """

    def __init__(self, nodes, output_node):
        self.nodes = list(nodes)
        self.input_node = self.nodes[0]
        self.output_node = output_node
        self._validate()
        branch_nodes = self._training_branch_nodes()
        self.inference_nodes = [node for node in self.nodes if id(node) not in branch_nodes]
        self.training_outputs = [node for node in self.nodes
                                 if id(node) in branch_nodes and isinstance(node.layer, OutputLayer)]
        self.processing_nodes = [node for node in self.nodes if node.node_type == NodeType.PROCESSING]

    @classmethod
    def build(cls, input_info, output):
        """
        Creates the graph described by a NodeBuilder.

        Args:
            input_info: shape of a single network input
            output: the NodeBuilder of the network output layer

        Raises:
            ConfigurationError: invalid topology or layers
            ShapeMismatch: merge inputs with incompatible shapes
        """
        roots, stack, seen = [], [output], set()
        while stack:
            builder = stack.pop()
            if id(builder) in seen:
                continue
            seen.add(id(builder))
            if builder.node_type == NodeType.INPUT:
                roots.append(builder)
            stack.extend(builder.parents)
        if len(roots) != 1:
            raise ConfigurationError(f"The graph must have exactly one input node, found {len(roots)}")
        nodes = {}
        for builder in _topological_order(roots[0]):
            parents = [nodes[id(p)] for p in builder.parents]
            nodes[id(builder)] = _create_node(builder, parents, input_info)
        if id(output) not in nodes:
            raise ConfigurationError("The output node isn't connected to the input")
        graph = cls(nodes.values(), nodes[id(output)])
        logger.debug("Built graph with %d nodes and %d training outputs", len(graph.nodes), len(graph.training_outputs))
        return graph

    def _validate(self):
        if self.input_node.node_type != NodeType.INPUT:
            raise ConfigurationError("The first node must be the input node")
        if self.output_node.node_type != NodeType.PROCESSING or not isinstance(self.output_node.layer, OutputLayer):
            raise ConfigurationError("The graph output must be an output layer")
        if any(node.node_type == NodeType.TRAINING_BRANCH for node in _ancestors(self.output_node)):
            raise ConfigurationError("The network output can't be inside a training branch")
        for node in self.nodes[1:]:
            if node.node_type == NodeType.INPUT:
                raise ConfigurationError("The graph can only have one input node")
            if isinstance(node.layer, OutputLayer):
                if node.children:
                    raise ConfigurationError("An output layer can't have child nodes")
                if node is not self.output_node and not any(
                        n.node_type == NodeType.TRAINING_BRANCH for n in _ancestors(node)):
                    raise ConfigurationError("Additional output layers must be inside a training branch")
            elif not node.children:
                raise ConfigurationError(f"The {node!r} node must be followed by an output layer")

    def _training_branch_nodes(self):
        marked = set()
        for node in self.nodes:
            if node.node_type == NodeType.TRAINING_BRANCH or any(id(p) in marked for p in node.parents):
                marked.add(id(node))
        return marked

    @property
    def layers(self):
        return [node.layer for node in self.processing_nodes]

    def clone(self):
        mapping = {}
        for node in self.nodes:
            layer = node.layer.clone() if node.layer is not None else None
            mapping[id(node)] = Node(node.node_type, [mapping[id(p)] for p in node.parents], node.info, layer)
        return ComputationGraph(mapping.values(), mapping[id(self.output_node)])

    def _signature(self):
        position = {id(node): i for i, node in enumerate(self.nodes)}
        return [(node.node_type, node.info, tuple(position[id(p)] for p in node.parents)) for node in self.nodes]

    def __eq__(self, other):
        return (isinstance(other, ComputationGraph)
                and self._signature() == other._signature()
                and self.layers == other.layers)

    __hash__ = object.__hash__


def _create_node(builder, parents, input_info):
    node_type = builder.node_type
    if node_type == NodeType.INPUT:
        return Node(node_type, parents, input_info)
    if node_type == NodeType.PROCESSING:
        info = parents[0].info
        layer = builder.factory(info)
        if not isinstance(layer, NetworkLayer):
            raise ConfigurationError(f"The layer factory returned {type(layer).__name__} instead of a layer")
        if layer.input_info.size != info.size:
            raise ShapeMismatch(f"The layer expects {layer.input_info.size} inputs but receives {info.size}")
        return Node(node_type, parents, layer.output_info, layer)
    if node_type == NodeType.SUM:
        infos = [p.info for p in parents]
        if any(info.size != infos[0].size for info in infos):
            raise ShapeMismatch("The sum inputs must all have the same size")
        return Node(node_type, parents, infos[0])
    if node_type == NodeType.DEPTH_CONCATENATION:
        return Node(node_type, parents, _concatenated_info([p.info for p in parents]))
    if node_type == NodeType.TRAINING_BRANCH:
        return Node(node_type, parents, parents[0].info)
    raise ConfigurationError(f"Unsupported node type: {node_type}")


def _ancestors(node):
    stack, seen = list(node.parents), set()
    while stack:
        parent = stack.pop()
        if id(parent) in seen:
            continue
        seen.add(id(parent))
        yield parent
        stack.extend(parent.parents)

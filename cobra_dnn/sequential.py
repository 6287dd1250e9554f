from .base import NetworkLayer, WeightedLayer
from .cpu_blas import multiply_elementwise
from .dense import OutputLayer
from .errors import ConfigurationError
from .network import NetworkBase, dropout_mask, uses_dropout
from .tensor import Tensor


class SequentialNetwork(NetworkBase):
    """A linear stack of layers ending with an output layer"""

    def __init__(self, layers):
        """
        Initialize with a list of layers, each one receiving the output of the previous one.
        """
        layers = list(layers)
        if not layers:
            raise ConfigurationError("The network must have at least one layer")
        for i, layer in enumerate(layers):
            if not isinstance(layer, NetworkLayer):
                raise ConfigurationError(f"Invalid layer at position {i}: {type(layer).__name__}")
            if i > 0 and layer.input_info.size != layers[i - 1].output_info.size:
                raise ConfigurationError(f"The layer at position {i} doesn't match the output of the previous one")
            if isinstance(layer, OutputLayer) and i != len(layers) - 1:
                raise ConfigurationError("Only the last layer can be an output layer")
        if not isinstance(layers[-1], OutputLayer):
            raise ConfigurationError("The last layer must be an output layer")
        super().__init__(layers[0].input_info, layers[-1].output_info)
        self._layers = layers

    @classmethod
    def new(cls, input_info, *factories):
        """Creates the layers from a list of factories, each one receiving the output shape of the previous layer"""
        layers, info = [], input_info
        for factory in factories:
            layer = factory(info)
            layers.append(layer)
            info = layer.output_info
        return cls(layers)

    @property
    def layers(self):
        return self._layers

    @property
    def output_layer(self):
        return self._layers[-1]

    def _forward(self, x):
        a = x
        for layer in self._layers:
            z, next_a = layer.forward(a)
            z.free()
            if a is not x:
                a.free()
            a = next_a
        return a

    def extract_deep_features(self, x):
        x = self._input(x)
        features, a = [], x
        try:
            for layer in self._layers:
                z, next_a = layer.forward(a)
                z.free()
                if a is not x:
                    a.free()
                a = next_a
                features.append(a.to_array())
        finally:
            if a is not x:
                a.free()
            x.free()
        return features

    def backpropagate(self, batch, dropout, updater):
        layers = self._layers
        n = len(layers)
        x = self._input(batch.x)
        y = Tensor.from_array(batch.y, self.device)
        zs, activations, masks = [None] * n, [None] * n, [None] * n
        gradients = {}
        try:
            with self._training():
                # Feedforward
                a = x
                for i, layer in enumerate(layers):
                    zs[i], activations[i] = layer.forward(a)
                    if dropout > 0 and uses_dropout(layer):
                        masks[i] = dropout_mask(activations[i], dropout)
                        multiply_elementwise(activations[i], masks[i], activations[i])
                    a = activations[i]

                # The output delta replaces the output activity
                inputs = [x] + activations[:-1]
                gradients[n - 1] = layers[-1].backpropagate_output(inputs[-1], activations[-1], y, zs[-1])
                deltas = [None] * n
                deltas[-1] = zs[-1]

                # Each layer backpropagates its delta into the activity of the previous one
                for l in range(n - 2, -1, -1):
                    deltas[l] = layers[l + 1].backpropagate(activations[l], deltas[l + 1], zs[l], layers[l].activation_prime)
                    if masks[l] is not None:
                        multiply_elementwise(deltas[l], masks[l], deltas[l])
                    if isinstance(layers[l], WeightedLayer):
                        gradients[l] = layers[l].compute_gradient(inputs[l], deltas[l])
        except BaseException:
            for dw, db in gradients.values():
                dw.free()
                db.free()
            raise
        finally:
            for tensor in zs + activations + masks:
                if tensor is not None:
                    tensor.free()
            x.free()
            y.free()
        self._apply_updates(gradients, batch.x.shape[0], updater)

    def clone(self):
        return SequentialNetwork([layer.clone() for layer in self._layers])

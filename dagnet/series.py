"""
Series network: a chain of single-input, single-output layers
"""
from functools import partial
from typing import List, Optional, Sequence, Union

from .backend import ExecutionStrategy
from .errors import InvalidGraphError, WrongLayerSizeError, DataMismatchError
from .layers.base import Finalizable, InputLayer, Layer, OutputLayer, num_observations
from .recovery import execute_with_staged_oom_recovery
from .trainable import TrainableNetwork, wrap


class SeriesNetwork(TrainableNetwork):
    """
    Network whose layers run one after another

    Args:
        layers: Input layer, intermediate layers, output layer
        execution_strategy: Where tensors live; defaults to the host
    """

    def __init__(self, layers: Sequence[Layer], execution_strategy: Optional[ExecutionStrategy] = None):
        self.layers: List[Layer] = list(layers)
        self._check_layers()
        self.execution_strategy = execution_strategy or ExecutionStrategy(use_gpu=False)
        self.input_layer_indices = [0]
        self.output_layer_indices = [len(self.layers) - 1]
        self.input_sizes: List = []
        self.output_sizes: List = []
        self.infer_sizes()

    def __repr__(self):
        return f"SeriesNetwork(num_layers={self.num_layers})"

    def _check_layers(self):
        if len(self.layers) < 2:
            raise InvalidGraphError("A series network needs at least an input and an output layer")
        if not isinstance(self.layers[0], InputLayer):
            raise InvalidGraphError("The first layer of a series network must be an input layer")
        if not isinstance(self.layers[-1], OutputLayer):
            raise InvalidGraphError("The last layer of a series network must be an output layer")
        for layer in self.layers[1:-1]:
            if isinstance(layer, (InputLayer, OutputLayer)) or layer.num_inputs != 1 or layer.num_outputs != 1:
                raise InvalidGraphError(f"Layer '{layer.name}' cannot be used in a series network")
        names = [layer.name for layer in self.layers if layer.name]
        if len(set(names)) != len(names):
            raise InvalidGraphError("Layer names must be unique")

    @property
    def _output_index(self) -> int:
        return len(self.layers) - 1

    def _check_inputs(self, X):
        X = wrap(X)
        if len(X) != 1:
            raise DataMismatchError(f"A series network has one input layer, got {len(X)} inputs")
        X = X[0]
        expected = self.layers[0].input_size
        if tuple(X.shape[1:1 + len(expected)]) != tuple(expected):
            raise DataMismatchError(f"Input layer expects observations of size {tuple(expected)}, "
                                    f"got data of shape {tuple(X.shape)}")
        return X

    def infer_sizes(self):
        size = self.layers[0].input_size
        self.input_sizes = [size]
        self.output_sizes = [self.layers[0].forward_propagate_size(size)]
        for i, layer in enumerate(self.layers[1:], start=1):
            size = self.output_sizes[-1]
            try:
                if not layer.has_size_determined:
                    layer.infer_size(size)
            except ValueError as e:
                raise WrongLayerSizeError(i, layer.name, size, str(e)) from e
            if not layer.is_valid_input_size(size):
                raise WrongLayerSizeError(i, layer.name, size)
            self.input_sizes.append(size)
            self.output_sizes.append(layer.forward_propagate_size(size))
        return self

    def predict(self, X):
        Z = self._check_inputs(X)
        for layer in self.layers:
            Z = layer.predict(Z)
        return Z

    def activations(self, X, layer: Union[int, str], port: int = 0):
        index = self.names_to_indices([layer])[0] if isinstance(layer, str) else int(layer)
        Z = self._check_inputs(X)
        for current in self.layers[:index + 1]:
            Z = current.predict(Z)
        return Z[port] if isinstance(Z, (list, tuple)) else Z

    def forward_propagation(self, X):
        """Training forward pass keeping every layer output and memory"""
        layer_outputs = [None] * self.num_layers
        memory = [None] * self.num_layers
        strategy = self.execution_strategy

        def gather_outputs_and_memory():
            layer_outputs[:] = strategy.gather(layer_outputs)
            memory[:] = strategy.gather(memory)

        Z = self._check_inputs(X)
        for i, layer in enumerate(self.layers):
            Z, memory[i] = execute_with_staged_oom_recovery(partial(layer.forward, Z),
                                                            [gather_outputs_and_memory])
            layer_outputs[i] = Z
        return layer_outputs, memory

    def backward_propagation(self, layer_outputs, Y, memory):
        """
        Full backward pass over the outputs of forward_propagation

        Returns:
            (input gradient of each layer, parameter gradients of each layer)
        """
        out = self._output_index
        dx_layers = [None] * self.num_layers
        dw_layers = [[] for _ in self.layers]
        dZ = self.layers[out].backward_loss(layer_outputs[out - 1], Y)
        dx_layers[out] = dZ
        for i in range(out - 1, 0, -1):
            dZ, dw_layers[i] = self.layers[i].backward(layer_outputs[i - 1], layer_outputs[i], dZ, memory[i])
            dx_layers[i] = dZ
        return dx_layers, dw_layers

    def compute_gradients_for_training(self, X, Y):
        """
        Gradients of the loss with respect to every learnable parameter

        Layer outputs are dropped as soon as the backward pass is past them,
        and nothing before the first learning layer is back-propagated.

        Returns:
            (gradients, predictions, states); states is always empty
        """
        X = self._check_inputs(X)
        T = wrap(Y)
        if len(T) != 1:
            raise DataMismatchError(f"A series network has one output layer, got {len(T)} targets")
        Y = T[0]
        if num_observations(Y) != num_observations(X):
            raise DataMismatchError(f"Targets have {num_observations(Y)} observations, "
                                    f"inputs have {num_observations(X)}")
        out = self._output_index
        layer_outputs = [None] * out
        memory = [None] * out
        layer_gradients = [[None] * len(layer.learnable_parameters) for layer in self.layers]
        strategy = self.execution_strategy

        def gather_outputs_and_memory():
            layer_outputs[:] = strategy.gather(layer_outputs)
            memory[:] = strategy.gather(memory)

        def gather_gradients():
            for k, grads in enumerate(layer_gradients):
                layer_gradients[k] = strategy.gather(grads)

        recoveries = [gather_outputs_and_memory, gather_gradients]
        is_learning = [layer.is_learning for layer in self.layers]

        layer_outputs[0], memory[0] = execute_with_staged_oom_recovery(
            partial(self.layers[0].forward, X), recoveries)
        for i in range(1, out):
            layer_outputs[i], memory[i] = execute_with_staged_oom_recovery(
                partial(self.layers[i].forward, layer_outputs[i - 1]), recoveries)
            if not any(is_learning[:i + 1]):
                layer_outputs[i - 1] = None
                memory[i - 1] = None
        predictions = layer_outputs[out - 1]

        dZ = execute_with_staged_oom_recovery(
            partial(self.layers[out].backward_loss, predictions, Y), recoveries)

        def back_propagate(i):
            nonlocal dZ
            dX, dW = self.layers[i].backward(layer_outputs[i - 1], layer_outputs[i], dZ, memory[i],
                                             need_weight_gradients=is_learning[i])
            layer_outputs[i] = None
            memory[i] = None
            dZ = dX
            return list(dW) if is_learning[i] else [None] * len(self.layers[i].learnable_parameters)

        learning = [i for i, flag in enumerate(is_learning) if flag]
        earliest = learning[0] if learning else out
        for i in range(out - 1, earliest - 1, -1):
            layer_gradients[i] = execute_with_staged_oom_recovery(partial(back_propagate, i), recoveries)

        gradients = [g for grads in layer_gradients for g in grads]
        return gradients, predictions, []

    def finalize_network(self, X):
        Z = self._check_inputs(X)
        for layer in self.layers:
            if isinstance(layer, Finalizable):
                layer_input = Z
                Z, memory = layer.forward(layer_input)
                layer.finalize(layer_input, Z, memory)
            else:
                Z = layer.predict(Z)
        return self

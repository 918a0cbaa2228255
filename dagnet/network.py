"""
DAG network execution engine

Layers run in topological order over a flat activation buffer with one slot
per (layer, output port). Which slots feed which layer, and when each slot
can be dropped, is planned once at construction.
"""
from __future__ import annotations
import copy
from functools import partial
from typing import List, Optional, Sequence, Union
import numpy as np

from .backend import ExecutionStrategy, get_array_module
from .errors import DataMismatchError, InvalidGraphError, WrongLayerSizeError
from .graph import LayerGraph
from .layers.base import Finalizable, InputLayer, Layer, OutputLayer, num_observations
from .recovery import execute_with_staged_oom_recovery
from .trainable import TrainableNetwork, wrap


def _read(buffer, slots):
    """Tensor(s) stored at slots; a single slot gives a bare tensor"""
    if len(slots) == 1:
        return buffer[slots[0]]
    return [buffer[s] for s in slots]


def _write(buffer, slots, values):
    if len(slots) == 1:
        buffer[slots[0]] = values
        return
    values = list(values)
    if len(values) != len(slots):
        raise ValueError(f"Layer produced {len(values)} outputs for {len(slots)} buffer slots")
    for s, v in zip(slots, values):
        buffer[s] = v


def _increment(buffer, slots, values):
    """Add gradients into the buffer; None means no contribution"""
    values = [values] if len(slots) == 1 else list(values)
    for s, v in zip(slots, values):
        if v is None:
            continue
        buffer[s] = v if buffer[s] is None else buffer[s] + v


def _clear(buffer, slots):
    for s in slots:
        buffer[s] = None


def count_outputs(layers: Sequence[Layer], edges) -> List[int]:
    """
    Number of output slots per layer

    Variable-output layers get one slot per distinct output port that is
    connected; those ports must be numbered without gaps.
    """
    counts = []
    for i, layer in enumerate(layers):
        if not layer.has_variable_outputs:
            counts.append(layer.num_outputs)
            continue
        ports = sorted({sp for edge in edges if edge.source == i for sp, _ in edge.ports})
        if ports != list(range(len(ports))):
            raise InvalidGraphError(f"Outputs of layer '{layer.name}' must be connected without gaps, got {ports}")
        counts.append(max(len(ports), 1))
    return counts


def buffer_output_indices(counts: Sequence[int]) -> List[List[int]]:
    """Contiguous slot range owned by each layer"""
    indices = []
    offset = 0
    for n in counts:
        indices.append(list(range(offset, offset + n)))
        offset += n
    return indices


def buffer_input_indices(num_layers: int, edges, output_indices) -> List[List[int]]:
    """Slots feeding each layer, ordered by the layer's input port"""
    feeds = [[] for _ in range(num_layers)]
    for edge in edges:
        for sp, dp in edge.ports:
            feeds[edge.target].append((dp, output_indices[edge.source][sp]))
    return [[slot for _, slot in sorted(f, key=lambda pair: pair[0])] for f in feeds]


def forward_clearing_schedule(input_indices, output_indices, protected) -> List[List[int]]:
    """
    Slots that can be dropped right after each forward step

    Walking backward, a slot becomes clearable at step i once no layer after
    i reads it and it has been produced by step i. Walking forward, each slot
    is then kept only at the first step where it became clearable.
    """
    num_activations = sum(len(o) for o in output_indices)
    clearable = set(range(num_activations)) - set(protected)
    produced_end = np.cumsum([len(o) for o in output_indices])
    schedule = [None] * len(output_indices)
    for i in reversed(range(len(output_indices))):
        schedule[i] = {s for s in clearable if s < produced_end[i]}
        clearable -= set(input_indices[i])
    previous = set()
    for i, current in enumerate(schedule):
        schedule[i] = sorted(current - previous)
        previous = current
    return schedule


def backward_clearing_schedule(output_indices, protected) -> List[List[int]]:
    """
    Slots that can be dropped right after each backward step

    Walking forward, the slots of layers from i onwards are candidates at
    step i; walking backward, each slot is kept only at the last such step,
    which is its producer.
    """
    num_activations = sum(len(o) for o in output_indices)
    clearable = set(range(num_activations)) - set(protected)
    schedule = [None] * len(output_indices)
    for i, outputs in enumerate(output_indices):
        schedule[i] = set(clearable)
        clearable -= set(outputs)
    following = set()
    for i in reversed(range(len(schedule))):
        current = schedule[i]
        schedule[i] = sorted(current - following)
        following = current
    return schedule


class DAGNetwork(TrainableNetwork):
    """
    Network over a topologically sorted layer graph

    Args:
        sorted_layer_graph: LayerGraph whose layers are in topological order
        topological_order: Original index of each sorted layer
        execution_strategy: Where tensors live; defaults to the host
    """

    def __init__(self, sorted_layer_graph: LayerGraph, topological_order,
                 execution_strategy: Optional[ExecutionStrategy] = None):
        self.layers: List[Layer] = list(sorted_layer_graph.layers)
        self.sorted_connections = sorted_layer_graph.connections
        self.topological_order = np.asarray(topological_order, dtype=np.int64)
        self.execution_strategy = execution_strategy or ExecutionStrategy(use_gpu=False)

        self.edges = sorted(sorted_layer_graph.augmented_edges(), key=lambda e: (e.source, e.target))
        self.input_layer_indices = sorted_layer_graph.input_layer_indices
        self.output_layer_indices = sorted_layer_graph.output_layer_indices

        counts = count_outputs(self.layers, self.edges)
        for layer, n in zip(self.layers, counts):
            if layer.has_variable_outputs:
                layer.bind_num_outputs(n)
        self.num_activations = sum(counts)
        self.buffer_output_indices = buffer_output_indices(counts)
        self.buffer_input_indices = buffer_input_indices(len(self.layers), self.edges,
                                                         self.buffer_output_indices)
        protected = [s for k in self.output_layer_indices for s in self.buffer_output_indices[k]]
        self.clearing_forward = forward_clearing_schedule(self.buffer_input_indices,
                                                          self.buffer_output_indices, protected)
        self.clearing_backward = backward_clearing_schedule(self.buffer_output_indices, protected)

        self.input_sizes: List = []
        self.output_sizes: List = []
        self.infer_sizes()

    def __repr__(self):
        return (f"DAGNetwork(num_layers={self.num_layers}, num_activations={self.num_activations}, "
                f"inputs={len(self.input_layer_indices)}, outputs={len(self.output_layer_indices)})")

    @property
    def original_layers(self) -> List[Layer]:
        return LayerGraph.sorted_to_original_layers(self.layers, self.topological_order)

    @property
    def original_connections(self) -> np.ndarray:
        return LayerGraph.sorted_to_original_connections(self.sorted_connections, self.topological_order)

    @property
    def layer_graph(self) -> LayerGraph:
        """Graph in the user's layer order, holding the current parameter values"""
        return LayerGraph(self.original_layers, self.original_connections)

    # Inputs
    def _input_position(self, i: int) -> int:
        return self.input_layer_indices.index(i)

    def _wrap_inputs(self, X) -> list:
        X = wrap(X)
        if len(X) != len(self.input_layer_indices):
            raise DataMismatchError(f"Network has {len(self.input_layer_indices)} input layers, "
                                    f"got {len(X)} inputs")
        for i, x in zip(self.input_layer_indices, X):
            expected = self.layers[i].input_size
            if tuple(x.shape[1:1 + len(expected)]) != tuple(expected):
                raise DataMismatchError(f"Input layer '{self.layers[i].name}' expects observations of size "
                                        f"{tuple(expected)}, got data of shape {tuple(x.shape)}")
        counts = {num_observations(x) for x in X}
        if len(counts) > 1:
            raise DataMismatchError(f"Inputs have different numbers of observations: {sorted(counts)}")
        return X

    def _wrap_targets(self, T, X) -> list:
        T = wrap(T)
        if len(T) != len(self.output_layer_indices):
            raise DataMismatchError(f"Network has {len(self.output_layer_indices)} output layers, "
                                    f"got {len(T)} targets")
        for t in T:
            if num_observations(t) != num_observations(X):
                raise DataMismatchError(f"Targets have {num_observations(t)} observations, "
                                        f"inputs have {num_observations(X)}")
        return T

    def _layer_inputs(self, i, X, buffer):
        if isinstance(self.layers[i], InputLayer):
            return X[self._input_position(i)]
        return _read(buffer, self.buffer_input_indices[i])

    def _network_outputs(self, buffer):
        Y = [_read(buffer, self.buffer_output_indices[k]) for k in self.output_layer_indices]
        return Y[0] if len(Y) == 1 else Y

    # Forward
    def predict(self, X):
        """
        Inference forward pass

        Args:
            X: Tensor, or list with one tensor per input layer (in sorted input-layer order)

        Returns:
            Tensor, or list with one tensor per output layer
        """
        X = self._wrap_inputs(X)
        buffer = [None] * self.num_activations
        for i, layer in enumerate(self.layers):
            Z = layer.predict(self._layer_inputs(i, X, buffer))
            _write(buffer, self.buffer_output_indices[i], Z)
            _clear(buffer, self.clearing_forward[i])
        return self._network_outputs(buffer)

    def activations(self, X, layer: Union[int, str], port: int = 0):
        """Output of one layer, given by sorted index or name, at one of its output ports"""
        index = self.names_to_indices([layer])[0] if isinstance(layer, str) else int(layer)
        X = self._wrap_inputs(X)
        buffer = [None] * self.num_activations
        Z = None
        for i in range(index + 1):
            Z = self.layers[i].predict(self._layer_inputs(i, X, buffer))
            _write(buffer, self.buffer_output_indices[i], Z)
            if i < index:
                _clear(buffer, self.clearing_forward[i])
        return Z[port] if isinstance(Z, (list, tuple)) else Z

    def forward_propagation_with_memory(self, X):
        """
        Training forward pass

        Returns:
            (activation buffer, memory buffer, per-layer learning flags). Slots
            are only cleared while no learning layer has been reached, since
            everything after it is needed by the backward pass.
        """
        X = self._wrap_inputs(X)
        activations = [None] * self.num_activations
        memory = [None] * self.num_activations
        strategy = self.execution_strategy

        def gather_outputs_and_memory():
            activations[:] = strategy.gather(activations)
            memory[:] = strategy.gather(memory)

        recoveries = [gather_outputs_and_memory]
        layer_is_learning = [False] * self.num_layers
        for i, layer in enumerate(self.layers):
            layer_is_learning[i] = layer.is_learning
            layer_input = self._layer_inputs(i, X, activations)
            Z, layer_memory = execute_with_staged_oom_recovery(partial(layer.forward, layer_input), recoveries)
            outputs = self.buffer_output_indices[i]
            _write(activations, outputs, Z)
            # every output slot of a layer holds the same memory object; backward reads the first
            for s in outputs:
                memory[s] = layer_memory
            if not any(layer_is_learning):
                _clear(activations, self.clearing_forward[i])
                _clear(memory, self.clearing_forward[i])
        return activations, memory, layer_is_learning

    # Backward
    def compute_gradients_for_training(self, X, Y):
        """
        Gradients of the loss with respect to every learnable parameter

        Args:
            X: Input tensor(s)
            Y: Target tensor(s), one per output layer

        Returns:
            (gradients, predictions, states): gradients follow learnable_parameters
            order, with None for parameters that are not learning; predictions are
            the output-layer activations; states is always empty
        """
        X = self._wrap_inputs(X)
        T = self._wrap_targets(Y, X)
        activations, memory, layer_is_learning = self.forward_propagation_with_memory(X)
        gradient_buffer = [None] * self.num_activations
        layer_gradients: List[list] = [[None] * len(layer.learnable_parameters) for layer in self.layers]
        strategy = self.execution_strategy

        def gather_activations():
            activations[:] = strategy.gather(activations)

        def gather_buffers():
            memory[:] = strategy.gather(memory)
            gradient_buffer[:] = strategy.gather(gradient_buffer)

        def gather_gradients():
            for k, grads in enumerate(layer_gradients):
                layer_gradients[k] = strategy.gather(grads)

        recoveries = [gather_activations, gather_buffers, gather_gradients]

        learning = [i for i, flag in enumerate(layer_is_learning) if flag]
        earliest = learning[0] if learning else self.num_layers
        for i in reversed(range(earliest, self.num_layers)):
            layer_gradients[i] = execute_with_staged_oom_recovery(
                partial(self._back_propagate_layer, i, activations, memory, gradient_buffer, T,
                        layer_is_learning[i]),
                recoveries)
            for buffer in (activations, memory, gradient_buffer):
                _clear(buffer, self.clearing_backward[i])

        gradients = [g for grads in layer_gradients for g in grads]
        predictions = self._network_outputs(activations)
        return gradients, predictions, []

    def _back_propagate_layer(self, i, activations, memory, gradient_buffer, T, is_learning):
        layer = self.layers[i]
        inputs = self.buffer_input_indices[i]
        outputs = self.buffer_output_indices[i]
        if isinstance(layer, OutputLayer):
            Z = _read(activations, outputs)
            target = T[self.output_layer_indices.index(i)]
            _increment(gradient_buffer, inputs, layer.backward_loss(Z, target))
            return []
        if isinstance(layer, InputLayer):
            return [None] * len(layer.learnable_parameters)

        dZ = []
        for s in outputs:
            if gradient_buffer[s] is None:
                xp = get_array_module(activations[s])
                dZ.append(xp.zeros_like(activations[s]))
            else:
                dZ.append(gradient_buffer[s])
        dX, dW = layer.backward(_read(activations, inputs), _read(activations, outputs),
                                dZ[0] if len(dZ) == 1 else dZ, memory[outputs[0]],
                                need_weight_gradients=is_learning)
        _increment(gradient_buffer, inputs, dX)
        if not is_learning:
            return [None] * len(layer.learnable_parameters)
        return list(dW)

    # Sizes
    def infer_sizes(self):
        """Resolve automatic layer sizes and check every layer accepts its input size"""
        sizes = [None] * self.num_activations
        self.input_sizes = [None] * self.num_layers
        self.output_sizes = [None] * self.num_layers
        for i, layer in enumerate(self.layers):
            if isinstance(layer, InputLayer):
                input_size = layer.input_size
            else:
                input_size = _read(sizes, self.buffer_input_indices[i])
                original_index = int(self.topological_order[i])
                try:
                    if not layer.has_size_determined:
                        layer.infer_size(input_size)
                except ValueError as e:
                    raise WrongLayerSizeError(original_index, layer.name, input_size, str(e)) from e
                if not layer.is_valid_input_size(input_size):
                    raise WrongLayerSizeError(original_index, layer.name, input_size)
            output_size = layer.forward_propagate_size(input_size)
            _write(sizes, self.buffer_output_indices[i], output_size)
            self.input_sizes[i] = input_size
            self.output_sizes[i] = output_size
        return self

    def infer_output_sizes_given_input_sizes(self, input_sizes) -> list:
        """Output size of every layer for new input-layer sizes, without changing the layers"""
        if len(self.input_layer_indices) == 1 and not isinstance(input_sizes[0], (list, tuple)):
            input_sizes = [input_sizes]
        sizes = [None] * self.num_activations
        output_sizes = [None] * self.num_layers
        for i, layer in enumerate(self.layers):
            if isinstance(layer, InputLayer):
                output_size = tuple(input_sizes[self._input_position(i)])
            else:
                output_size = layer.forward_propagate_size(_read(sizes, self.buffer_input_indices[i]))
            _write(sizes, self.buffer_output_indices[i], output_size)
            output_sizes[i] = output_size
        return output_sizes

    def finalize_network(self, X):
        """
        Accumulate statistics of Finalizable layers over one batch

        Finalizable layers run their training forward pass so they see batch
        statistics; every other layer predicts.
        """
        X = self._wrap_inputs(X)
        buffer = [None] * self.num_activations
        for i, layer in enumerate(self.layers):
            layer_input = self._layer_inputs(i, X, buffer)
            if isinstance(layer, Finalizable):
                Z, memory = layer.forward(layer_input)
                layer.finalize(layer_input, Z, memory)
            else:
                Z = layer.predict(layer_input)
            _write(buffer, self.buffer_output_indices[i], Z)
            _clear(buffer, self.clearing_forward[i])
        return self


def assemble_network(layer_graph: Union[LayerGraph, Sequence[Layer]], precision: str = 'double',
                     execution_strategy: Optional[ExecutionStrategy] = None) -> DAGNetwork:
    """
    Build a DAGNetwork from a layer graph (or a list of layers to chain)

    The layers are copied, so the graph passed in is left untouched.
    Learnable parameters are initialized when they have no value yet.
    """
    if not isinstance(layer_graph, LayerGraph):
        layer_graph = LayerGraph.from_layers(layer_graph)
    layer_graph.validate()
    graph = LayerGraph(copy.deepcopy(layer_graph.layers), layer_graph.connections.copy())
    sorted_graph, order = graph.toposort()
    network = DAGNetwork(sorted_graph, order, execution_strategy)
    network.initialize_learnable_parameters(precision)
    return network

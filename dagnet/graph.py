"""
Layer graph: layers plus multi-port connections

Connections are an (E, 4) integer array of
[source_layer, source_port, target_layer, target_port], all 0-based.
"""
from __future__ import annotations
import heapq
from collections import namedtuple
from typing import Dict, List, Sequence, Tuple
import numpy as np

from .errors import CyclicGraphError, InvalidGraphError
from .layers.base import InputLayer, Layer, OutputLayer

# One edge per (source, target) layer pair, carrying every (source_port, target_port) between them
AugmentedEdge = namedtuple('AugmentedEdge', ['source', 'target', 'ports'])


def _as_connections(connections) -> np.ndarray:
    if connections is None:
        return np.zeros((0, 4), dtype=np.int64)
    return np.asarray(connections, dtype=np.int64).reshape(-1, 4)


class LayerGraph:
    """
    Directed graph of layers

    Args:
        layers: List of Layer objects
        connections: (E, 4) array of [source_layer, source_port, target_layer, target_port]
    """

    def __init__(self, layers: Sequence[Layer] = (), connections=None):
        self.layers: List[Layer] = list(layers)
        self.connections = _as_connections(connections)

    @classmethod
    def from_layers(cls, layers: Sequence[Layer]) -> 'LayerGraph':
        """Graph connecting each layer's first output to the next layer's first input"""
        return cls().add_layers(*layers)

    def __len__(self):
        return len(self.layers)

    def __repr__(self):
        return f"LayerGraph(num_layers={len(self.layers)}, num_connections={len(self.connections)})"

    @property
    def layer_names(self) -> List[str]:
        return [layer.name for layer in self.layers]

    @property
    def input_layer_indices(self) -> List[int]:
        return [i for i, layer in enumerate(self.layers) if isinstance(layer, InputLayer)]

    @property
    def output_layer_indices(self) -> List[int]:
        return [i for i, layer in enumerate(self.layers) if isinstance(layer, OutputLayer)]

    # Editing
    def add_layers(self, *layers: Layer) -> 'LayerGraph':
        """Append layers, chaining consecutive ones; unnamed layers get unique names"""
        first = len(self.layers)
        for layer in layers:
            if not layer.name:
                layer.name = self._unique_name(type(layer).__name__.lower())
            if layer.name in self.layer_names:
                raise InvalidGraphError(f"Layer name '{layer.name}' is already used")
            self.layers.append(layer)
        chain = [[i, 0, i + 1, 0] for i in range(first, len(self.layers) - 1)
                 if self.layers[i].num_outputs > 0 and self.layers[i + 1].num_inputs > 0]
        if chain:
            self.connections = np.vstack([self.connections, np.asarray(chain, dtype=np.int64)])
        return self

    def remove_layers(self, *names: str) -> 'LayerGraph':
        """Remove layers by name along with every connection touching them"""
        removed = {self.layer_index(name) for name in names}
        keep = [i for i in range(len(self.layers)) if i not in removed]
        new_index = {old: new for new, old in enumerate(keep)}
        rows = [[new_index[s], sp, new_index[d], dp] for s, sp, d, dp in self.connections.tolist()
                if s not in removed and d not in removed]
        self.layers = [self.layers[i] for i in keep]
        self.connections = _as_connections(rows)
        return self

    def connect_layers(self, source: str, target: str) -> 'LayerGraph':
        """
        Connect 'layer' or 'layer/output' to 'layer' or 'layer/input'

        A target input port may only be connected once.
        """
        s, sp = self._resolve(source, outputs=True)
        d, dp = self._resolve(target, outputs=False)
        taken = (self.connections[:, 2] == d) & (self.connections[:, 3] == dp)
        if taken.any():
            raise InvalidGraphError(f"Input '{target}' is already connected")
        self.connections = np.vstack([self.connections, np.asarray([[s, sp, d, dp]], dtype=np.int64)])
        return self

    def disconnect_layers(self, source: str, target: str) -> 'LayerGraph':
        s, sp = self._resolve(source, outputs=True)
        d, dp = self._resolve(target, outputs=False)
        match = np.all(self.connections == np.asarray([s, sp, d, dp]), axis=1)
        if not match.any():
            raise InvalidGraphError(f"'{source}' is not connected to '{target}'")
        self.connections = self.connections[~match]
        return self

    def layer_index(self, name: str) -> int:
        try:
            return self.layer_names.index(name)
        except ValueError:
            raise InvalidGraphError(f"No layer named '{name}'") from None

    def _unique_name(self, base: str) -> str:
        names = set(self.layer_names)
        k = 1
        while f'{base}_{k}' in names:
            k += 1
        return f'{base}_{k}'

    def _resolve(self, spec: str, outputs: bool) -> Tuple[int, int]:
        layer_name, _, port_name = spec.partition('/')
        index = self.layer_index(layer_name)
        layer = self.layers[index]
        names = layer.output_names if outputs else layer.input_names
        if not port_name:
            if len(names) != 1 and not (outputs and layer.has_variable_outputs):
                raise InvalidGraphError(f"Layer '{layer_name}' has several ports; name one of {list(names)}")
            return index, 0
        if port_name in names:
            return index, list(names).index(port_name)
        if outputs and layer.has_variable_outputs and port_name.startswith('out') and port_name[3:].isdigit():
            return index, int(port_name[3:]) - 1
        raise InvalidGraphError(f"Layer '{layer_name}' has no port '{port_name}'")

    # Checks
    def validate(self):
        """Raise InvalidGraphError if the graph cannot become a network"""
        names = self.layer_names
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise InvalidGraphError(f"Layer names must be unique, duplicated: {duplicates}")
        if not self.input_layer_indices:
            raise InvalidGraphError("The graph has no input layer")
        if not self.output_layer_indices:
            raise InvalidGraphError("The graph has no output layer")

        num_layers = len(self.layers)
        fed: Dict[Tuple[int, int], int] = {}
        for s, sp, d, dp in self.connections.tolist():
            if not (0 <= s < num_layers and 0 <= d < num_layers):
                raise InvalidGraphError(f"Connection {[s, sp, d, dp]} refers to a missing layer")
            source, target = self.layers[s], self.layers[d]
            if sp < 0 or (not source.has_variable_outputs and sp >= source.num_outputs):
                raise InvalidGraphError(f"Layer '{source.name}' has no output port {sp}")
            if not 0 <= dp < target.num_inputs:
                raise InvalidGraphError(f"Layer '{target.name}' has no input port {dp}")
            if (d, dp) in fed:
                raise InvalidGraphError(f"Input {dp} of layer '{target.name}' is connected more than once")
            fed[(d, dp)] = s
        for d, layer in enumerate(self.layers):
            missing = [layer.input_names[p] for p in range(layer.num_inputs) if (d, p) not in fed]
            if missing:
                raise InvalidGraphError(f"Layer '{layer.name}' has unconnected inputs: {missing}")

    # Sorting
    def augmented_edges(self) -> List[AugmentedEdge]:
        """Unique (source, target) pairs in first-seen order, each with all of its port pairs"""
        edges: Dict[Tuple[int, int], List[Tuple[int, int]]] = {}
        for s, sp, d, dp in self.connections.tolist():
            edges.setdefault((s, d), []).append((sp, dp))
        return [AugmentedEdge(s, d, ports) for (s, d), ports in edges.items()]

    def topological_sort(self) -> List[int]:
        """
        Stable topological order of layer indices

        Among layers that are ready, the one with the lowest index comes first,
        so the result only depends on the layer order and the connections.

        Raises:
            CyclicGraphError: if the graph has a cycle
        """
        num_layers = len(self.layers)
        successors: List[List[int]] = [[] for _ in range(num_layers)]
        in_degree = [0] * num_layers
        for edge in self.augmented_edges():
            successors[edge.source].append(edge.target)
            in_degree[edge.target] += 1

        ready = [i for i in range(num_layers) if in_degree[i] == 0]
        heapq.heapify(ready)
        order = []
        while ready:
            i = heapq.heappop(ready)
            order.append(i)
            for j in successors[i]:
                in_degree[j] -= 1
                if in_degree[j] == 0:
                    heapq.heappush(ready, j)
        if len(order) < num_layers:
            raise CyclicGraphError([i for i in range(num_layers) if in_degree[i] > 0])
        return order

    def toposort(self) -> Tuple['LayerGraph', np.ndarray]:
        """Return (graph with layers in topological order, topological order)"""
        order = np.asarray(self.topological_sort(), dtype=np.int64)
        sorted_graph = LayerGraph(self.original_to_sorted_layers(self.layers, order),
                                  self.original_to_sorted_connections(self.connections, order))
        return sorted_graph, order

    # Index conversion between user (original) and execution (sorted) order
    @staticmethod
    def original_to_sorted_indices(indices, order) -> np.ndarray:
        order = np.asarray(order, dtype=np.int64)
        position = np.empty_like(order)
        position[order] = np.arange(len(order))
        return position[np.asarray(indices, dtype=np.int64)]

    @staticmethod
    def sorted_to_original_indices(indices, order) -> np.ndarray:
        return np.asarray(order, dtype=np.int64)[np.asarray(indices, dtype=np.int64)]

    @staticmethod
    def original_to_sorted_layers(layers, order) -> list:
        return [layers[i] for i in order]

    @staticmethod
    def sorted_to_original_layers(sorted_layers, order) -> list:
        layers = [None] * len(sorted_layers)
        for position, original in enumerate(order):
            layers[original] = sorted_layers[position]
        return layers

    @staticmethod
    def original_to_sorted_connections(connections, order) -> np.ndarray:
        connections = _as_connections(connections).copy()
        connections[:, 0] = LayerGraph.original_to_sorted_indices(connections[:, 0], order)
        connections[:, 2] = LayerGraph.original_to_sorted_indices(connections[:, 2], order)
        return connections

    @staticmethod
    def sorted_to_original_connections(connections, order) -> np.ndarray:
        connections = _as_connections(connections).copy()
        connections[:, 0] = LayerGraph.sorted_to_original_indices(connections[:, 0], order)
        connections[:, 2] = LayerGraph.sorted_to_original_indices(connections[:, 2], order)
        return connections

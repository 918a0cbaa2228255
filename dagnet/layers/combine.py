"""
Layers that merge or split tensors: addition, concatenation and depth slicing
"""
from typing import Tuple

from .base import Layer
from ..backend import get_array_module


class Addition(Layer):
    """Elementwise sum of num_inputs tensors; inputs are named in1..inN"""

    def __init__(self, name: str = '', num_inputs: int = 2):
        super().__init__(name)
        if num_inputs < 2:
            raise ValueError(f"Addition needs at least 2 inputs, got {num_inputs}")
        self._num_inputs = int(num_inputs)

    @property
    def input_names(self) -> Tuple[str, ...]:
        return tuple(f'in{i + 1}' for i in range(self._num_inputs))

    def forward_propagate_size(self, input_size):
        return tuple(input_size[0])

    def is_valid_input_size(self, input_size):
        first = tuple(input_size[0])
        return all(tuple(size) == first for size in input_size)

    def predict(self, X):
        Z = X[0]
        for x in X[1:]:
            Z = Z + x
        return Z

    def backward(self, X, Z, dZ, memory, need_weight_gradients=True):
        return [dZ] * len(X), []


class Concatenation(Layer):
    """Concatenates num_inputs tensors along a tensor axis (channels by default)"""

    def __init__(self, name: str = '', num_inputs: int = 2, axis: int = 1):
        super().__init__(name)
        if num_inputs < 2:
            raise ValueError(f"Concatenation needs at least 2 inputs, got {num_inputs}")
        if axis < 1:
            raise ValueError("Cannot concatenate along the observation axis")
        self._num_inputs = int(num_inputs)
        self.axis = int(axis)

    @property
    def input_names(self) -> Tuple[str, ...]:
        return tuple(f'in{i + 1}' for i in range(self._num_inputs))

    def is_valid_input_size(self, input_size):
        dim = self.axis - 1
        first = tuple(input_size[0])
        if dim >= len(first):
            return False
        for size in input_size:
            size = tuple(size)
            if len(size) != len(first) or size[:dim] + size[dim + 1:] != first[:dim] + first[dim + 1:]:
                return False
        return True

    def forward_propagate_size(self, input_size):
        dim = self.axis - 1
        output_size = list(input_size[0])
        output_size[dim] = sum(size[dim] for size in input_size)
        return tuple(output_size)

    def predict(self, X):
        return get_array_module(X[0]).concatenate(X, axis=self.axis)

    def backward(self, X, Z, dZ, memory, need_weight_gradients=True):
        xp = get_array_module(dZ)
        bounds = []
        total = 0
        for x in X[:-1]:
            total += x.shape[self.axis]
            bounds.append(total)
        return xp.split(dZ, bounds, axis=self.axis), []


class DepthSlice(Layer):
    """
    Splits the channels into equal groups, one per connected output port

    The number of outputs is not fixed by the layer; the network binds it
    from the connections when it is assembled.
    """
    has_variable_outputs = True

    def __init__(self, name: str = ''):
        super().__init__(name)
        self._num_outputs = 1

    @property
    def output_names(self) -> Tuple[str, ...]:
        return tuple(f'out{i + 1}' for i in range(self._num_outputs))

    def bind_num_outputs(self, num_outputs: int):
        self._num_outputs = int(num_outputs)

    def is_valid_input_size(self, input_size):
        return input_size[0] % self._num_outputs == 0

    def forward_propagate_size(self, input_size):
        sliced = (input_size[0] // self._num_outputs,) + tuple(input_size[1:])
        if self._num_outputs == 1:
            return sliced
        return [sliced] * self._num_outputs

    def predict(self, X):
        if self._num_outputs == 1:
            return X
        return get_array_module(X).split(X, self._num_outputs, axis=1)

    def backward(self, X, Z, dZ, memory, need_weight_gradients=True):
        if self._num_outputs == 1:
            return dZ, []
        return get_array_module(X).concatenate(dZ, axis=1), []

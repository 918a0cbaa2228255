"""
Layer base classes and learnable parameters

A layer is an execution object: the network engine only talks to it through
predict/forward/backward and the size methods below. Tensors are channels-first
with the observation axis first; sizes passed to the size methods leave the
observation axis out.
"""
from __future__ import annotations
from typing import Dict, List, Sequence, Tuple
import numpy as np

from ..backend import gather, get_array_module, HAS_CUPY, cp


class LearnableParameter:
    """Tensor updated by training, with per-parameter learn-rate and L2 factors"""

    def __init__(self, value=None, learn_rate_factor: float = 1.0, l2_factor: float = 1.0):
        self.value = value
        self.learn_rate_factor = float(learn_rate_factor)
        self.l2_factor = float(l2_factor)

    @property
    def is_empty(self) -> bool:
        return self.value is None

    def __repr__(self):
        shape = None if self.value is None else tuple(self.value.shape)
        return (f"LearnableParameter(shape={shape}, learn_rate_factor={self.learn_rate_factor}, "
                f"l2_factor={self.l2_factor})")


class Layer:
    """
    Polymorphic network layer

    Subclasses override predict and backward, and the size methods when they
    change the shape of their input. LearnableParameter attributes are
    registered in assignment order, which fixes the order of their gradients.
    """
    input_names: Tuple[str, ...] = ('in',)
    output_names: Tuple[str, ...] = ('out',)
    has_variable_outputs = False

    def __init__(self, name: str = ''):
        self._learnables: Dict[str, LearnableParameter] = {}
        self.name = name
        self.is_training = False

    def __setattr__(self, name: str, value):
        if isinstance(value, LearnableParameter):
            self.__dict__.setdefault('_learnables', {})
            self._learnables[name] = value
        object.__setattr__(self, name, value)

    def __repr__(self):
        return f"{type(self).__name__}(name='{self.name}')"

    @property
    def num_inputs(self) -> int:
        return len(self.input_names)

    @property
    def num_outputs(self) -> int:
        return len(self.output_names)

    @property
    def learnable_parameters(self) -> List[LearnableParameter]:
        return list(self._learnables.values())

    @property
    def learnable_names(self) -> List[str]:
        return list(self._learnables.keys())

    @property
    def is_learning(self) -> bool:
        return any(p.learn_rate_factor != 0 for p in self._learnables.values())

    @property
    def has_size_determined(self) -> bool:
        return True

    # Computation
    def predict(self, X):
        raise NotImplementedError

    def forward(self, X):
        """Training-time forward; returns (Z, memory)"""
        return self.predict(X), None

    def backward(self, X, Z, dZ, memory, need_weight_gradients: bool = True):
        """Returns (dX, [dW for each learnable parameter])"""
        raise NotImplementedError

    # Sizes
    def forward_propagate_size(self, input_size):
        return input_size

    def infer_size(self, input_size):
        pass

    def is_valid_input_size(self, input_size) -> bool:
        return True

    # Lifecycle
    def initialize_learnable_parameters(self, precision):
        pass

    def prepare_for_training(self):
        self.is_training = True

    def prepare_for_prediction(self):
        self.is_training = False

    def move_to_host(self):
        for p in self._learnables.values():
            if p.value is not None:
                p.value = gather(p.value)
        self._move_state(gather)

    def move_to_gpu(self):
        if not HAS_CUPY:
            raise RuntimeError("CuPy is required to move layers to the GPU")
        for p in self._learnables.values():
            if p.value is not None:
                p.value = cp.asarray(p.value)
        self._move_state(cp.asarray)

    def _move_state(self, move):
        """Move non-learnable tensors (e.g. population statistics)"""

    def _no_weight_gradients(self) -> List[None]:
        return [None] * len(self._learnables)


class InputLayer(Layer):
    """Layer that receives external data"""
    input_names: Tuple[str, ...] = ()

    def __init__(self, name: str = '', input_size: Sequence[int] = ()):
        super().__init__(name)
        self.input_size = tuple(int(s) for s in input_size)

    def normalize(self, X):
        return X

    def predict(self, X):
        return X

    def backward(self, X, Z, dZ, memory, need_weight_gradients=True):
        return None, []

    def forward_propagate_size(self, input_size):
        return self.input_size


class OutputLayer(Layer):
    """Loss layer; passes its input through and seeds the backward pass"""
    output_names: Tuple[str, ...] = ('out',)

    def predict(self, X):
        return X

    def backward(self, X, Z, dZ, memory, need_weight_gradients=True):
        raise RuntimeError(f"Output layer '{self.name}' has no backward; use backward_loss")

    def forward_loss(self, Y, T) -> float:
        raise NotImplementedError

    def backward_loss(self, Y, T):
        raise NotImplementedError


class Finalizable:
    """Mixin for layers whose statistics are accumulated after training"""

    def finalize(self, X, Z, memory):
        raise NotImplementedError

    def reset_finalization(self):
        """Forget statistics from a previous finalize pass"""


def num_observations(X) -> int:
    if isinstance(X, (list, tuple)):
        X = X[0]
    return int(X.shape[0])


def observation_axes(X) -> Tuple[int, ...]:
    """Every axis except channels (axis 1)"""
    return (0,) + tuple(range(2, X.ndim))


def channel_shape(X) -> Tuple[int, ...]:
    """Shape that broadcasts a per-channel vector against X"""
    return (1, -1) + (1,) * (X.ndim - 2)


def xp_of(X):
    return get_array_module(X) if X is not None else np

"""
Adapter for user-defined layers

A user layer is any object with predict and backward methods. It does not
inherit from Layer; CustomLayer composes it, owns its learnable parameters
and checks what it returns.

    class Scale:
        name = 'scale'
        learnable_names = ['alpha']

        def __init__(self):
            self.alpha = np.ones(1)

        def predict(self, X):
            return X * self.alpha

        def backward(self, X, Z, dZ, memory):
            return dZ * self.alpha, np.sum(dZ * X, keepdims=True).reshape(1)
"""
from typing import Tuple
import numpy as np

from .base import Layer, LearnableParameter


class CustomLayer(Layer):
    """
    Wraps a user layer object

    The user object may define: name, input_names, output_names,
    learnable_names (attribute names holding arrays), forward(X) returning
    (Z, memory), and forward_propagate_size(size). backward(X, Z, dZ, memory)
    returns the input gradient(s) followed by one gradient per learnable.
    """

    def __init__(self, user_layer, name: str = ''):
        super().__init__(name or getattr(user_layer, 'name', '') or type(user_layer).__name__)
        for method in ('predict', 'backward'):
            if not callable(getattr(user_layer, method, None)):
                raise TypeError(f"Custom layer '{self.name}' must define {method}()")
        self.user_layer = user_layer
        for attr in getattr(user_layer, 'learnable_names', ()):
            setattr(self, attr, LearnableParameter(getattr(user_layer, attr)))

    @property
    def input_names(self) -> Tuple[str, ...]:
        return tuple(getattr(self.user_layer, 'input_names', ('in',)))

    @property
    def output_names(self) -> Tuple[str, ...]:
        return tuple(getattr(self.user_layer, 'output_names', ('out',)))

    def forward_propagate_size(self, input_size):
        if hasattr(self.user_layer, 'forward_propagate_size'):
            return self.user_layer.forward_propagate_size(input_size)
        return input_size

    def initialize_learnable_parameters(self, precision):
        for name, param in self._learnables.items():
            if param.value is None:
                raise ValueError(f"Custom layer '{self.name}' has no value for learnable '{name}'")
            param.value = precision.cast(param.value)

    def _sync(self):
        for name, param in self._learnables.items():
            setattr(self.user_layer, name, param.value)

    def _call(self, method, X, *args):
        if self.num_inputs > 1:
            return method(*X, *args)
        return method(X, *args)

    def predict(self, X):
        self._sync()
        return self._check_outputs(self._call(self.user_layer.predict, X), 'predict')

    def forward(self, X):
        self._sync()
        if hasattr(self.user_layer, 'forward'):
            Z, memory = self._call(self.user_layer.forward, X)
            return self._check_outputs(Z, 'forward'), memory
        return self.predict(X), None

    def backward(self, X, Z, dZ, memory, need_weight_gradients=True):
        self._sync()
        if self.num_inputs > 1:
            grads = self.user_layer.backward(*X, Z, dZ, memory)
        else:
            grads = self.user_layer.backward(X, Z, dZ, memory)
        if not isinstance(grads, (list, tuple)):
            grads = (grads,)
        grads = list(grads)
        expected = self.num_inputs + len(self._learnables)
        if len(grads) != expected:
            raise ValueError(f"Custom layer '{self.name}' backward returned {len(grads)} values, "
                             f"expected {expected}")
        dX = grads[:self.num_inputs]
        inputs = X if self.num_inputs > 1 else [X]
        for x, dx in zip(inputs, dX):
            self._check_shape(dx, x.shape, 'input gradient')
        dW = grads[self.num_inputs:]
        for (name, param), dw in zip(self._learnables.items(), dW):
            self._check_shape(dw, param.value.shape, f"gradient of '{name}'")
        if not need_weight_gradients:
            dW = self._no_weight_gradients()
        return (dX if self.num_inputs > 1 else dX[0]), dW

    def _check_outputs(self, Z, method):
        outputs = Z if self.num_outputs > 1 else [Z]
        if len(outputs) != self.num_outputs:
            raise ValueError(f"Custom layer '{self.name}' {method} returned {len(outputs)} outputs, "
                             f"expected {self.num_outputs}")
        for z in outputs:
            if not np.issubdtype(z.dtype, np.floating):
                raise TypeError(f"Custom layer '{self.name}' {method} must return floating point arrays, "
                                f"got {z.dtype}")
        return Z

    def _check_shape(self, value, shape, what):
        if tuple(value.shape) != tuple(shape):
            raise ValueError(f"Custom layer '{self.name}' returned {what} of shape "
                             f"{tuple(value.shape)}, expected {tuple(shape)}")

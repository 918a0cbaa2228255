"""
Elementwise activation layers and softmax
"""
from .base import Layer
from ..backend import get_array_module


class ReLU(Layer):
    def predict(self, X):
        return get_array_module(X).maximum(X, 0)

    def backward(self, X, Z, dZ, memory, need_weight_gradients=True):
        return dZ * (Z > 0), []


class LeakyReLU(Layer):
    """Leaky ReLU: x for x > 0, scale * x otherwise"""

    def __init__(self, name: str = '', scale: float = 0.01):
        super().__init__(name)
        self.scale = float(scale)

    def predict(self, X):
        xp = get_array_module(X)
        return xp.where(X > 0, X, X * self.scale)

    def backward(self, X, Z, dZ, memory, need_weight_gradients=True):
        xp = get_array_module(X)
        return xp.where(X > 0, dZ, dZ * self.scale), []


class ClippedReLU(Layer):
    """ReLU capped at a ceiling"""

    def __init__(self, name: str = '', ceiling: float = 6.0):
        super().__init__(name)
        if ceiling <= 0:
            raise ValueError(f"ceiling must be positive, got {ceiling}")
        self.ceiling = float(ceiling)

    def predict(self, X):
        return get_array_module(X).clip(X, 0, self.ceiling)

    def backward(self, X, Z, dZ, memory, need_weight_gradients=True):
        return dZ * ((X > 0) & (X < self.ceiling)), []


class Softmax(Layer):
    """Softmax over the channel axis"""

    def predict(self, X):
        xp = get_array_module(X)
        shifted = X - X.max(axis=1, keepdims=True)
        exp = xp.exp(shifted)
        return exp / exp.sum(axis=1, keepdims=True)

    def backward(self, X, Z, dZ, memory, need_weight_gradients=True):
        return Z * (dZ - (dZ * Z).sum(axis=1, keepdims=True)), []

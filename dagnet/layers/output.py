"""
Loss (output) layers
Losses are normalized by the number of observations
"""
from typing import Optional, Sequence

from .base import OutputLayer, num_observations
from ..backend import get_array_module
from ..errors import DataMismatchError


def _check_targets(layer, Y, T):
    if tuple(Y.shape) != tuple(T.shape):
        raise DataMismatchError(
            f"Targets for output layer '{layer.name}' have shape {tuple(T.shape)}, "
            f"predictions have shape {tuple(Y.shape)}")


def _bounded_away_from_zero(Y):
    xp = get_array_module(Y)
    return xp.maximum(Y, xp.finfo(Y.dtype).eps)


class CrossEntropy(OutputLayer):
    """
    Cross entropy loss for classification (usually after a Softmax layer)

    Args:
        name: Layer name
        classes: Class names, in channel order; inferred as '1'..'K' when omitted
    """

    def __init__(self, name: str = '', classes: Optional[Sequence[str]] = None):
        super().__init__(name)
        self.classes = None if classes is None else [str(c) for c in classes]

    @property
    def num_classes(self) -> Optional[int]:
        return None if self.classes is None else len(self.classes)

    @property
    def has_size_determined(self):
        return self.classes is not None

    def infer_size(self, input_size):
        if self.classes is None:
            self.classes = [str(k + 1) for k in range(input_size[0])]
        elif self.num_classes != input_size[0]:
            raise ValueError(f"expected {self.num_classes} classes, got {input_size[0]}")

    def is_valid_input_size(self, input_size):
        return input_size[0] == self.num_classes

    def forward_loss(self, Y, T):
        _check_targets(self, Y, T)
        xp = get_array_module(Y)
        return float(-xp.sum(T * xp.log(_bounded_away_from_zero(Y))) / num_observations(Y))

    def backward_loss(self, Y, T):
        _check_targets(self, Y, T)
        return -T / _bounded_away_from_zero(Y) / num_observations(Y)


class MeanSquaredError(OutputLayer):
    """Half mean squared error loss for regression"""

    def __init__(self, name: str = '', response_names: Optional[Sequence[str]] = None):
        super().__init__(name)
        self.response_names = None if response_names is None else list(response_names)

    def forward_loss(self, Y, T):
        _check_targets(self, Y, T)
        xp = get_array_module(Y)
        return float(0.5 * xp.sum((Y - T) ** 2) / num_observations(Y))

    def backward_loss(self, Y, T):
        _check_targets(self, Y, T)
        return (Y - T) / num_observations(Y)

"""
Input layers: images and sequences
"""
from typing import Sequence

from .base import InputLayer
from ..backend import get_array_module


class ImageInput(InputLayer):
    """
    Image input layer

    Args:
        name: Layer name
        input_size: (channels, height, width) of one observation
        normalization: 'zerocenter' subtracts the average training image, 'none' passes data through
        average_image: Precomputed average image with shape input_size
    """

    def __init__(self, name: str = '', input_size: Sequence[int] = (1, 1, 1),
                 normalization: str = 'zerocenter', average_image=None):
        if len(input_size) != 3:
            raise ValueError(f"Image input size must be (channels, height, width), got {tuple(input_size)}")
        if normalization not in ('zerocenter', 'none'):
            raise ValueError(f"Unknown normalization: '{normalization}'")
        super().__init__(name, input_size)
        self.normalization = normalization
        self.average_image = average_image

    @property
    def needs_average_image(self) -> bool:
        return self.normalization == 'zerocenter' and self.average_image is None

    def normalize(self, X):
        if self.normalization == 'zerocenter' and self.average_image is not None:
            xp = get_array_module(X)
            return X - xp.asarray(self.average_image, dtype=X.dtype)[None]
        return X

    def predict(self, X):
        return self.normalize(X)

    def _move_state(self, move):
        if self.average_image is not None:
            self.average_image = move(self.average_image)


class SequenceInput(InputLayer):
    """Sequence input layer; observations are (channels, time steps)"""

    def __init__(self, name: str = '', input_size: int = 1):
        super().__init__(name, (int(input_size),))

    def predict(self, X):
        if X.ndim != 3:
            raise ValueError(f"Sequence input expects (N, C, T) data, got shape {X.shape}")
        return X

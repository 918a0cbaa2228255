"""
Pooling and unpooling layers
"""
from typing import Tuple
import numpy as np

from .base import Layer
from .conv import col2im, im2col
from .padding import (PaddingSpec, calculate_same_padding, normalize_padding, output_spatial_size,
                      pad_spatial, pair, unpad_spatial)
from ..backend import gather, get_array_module


class _Pooling2D(Layer):
    """Shared window handling for 2D pooling"""

    def __init__(self, name: str = '', pool_size=2, stride=1, padding: PaddingSpec = 0):
        super().__init__(name)
        self.pool_size = pair(pool_size)
        self.stride = pair(stride)
        self.padding_mode = 'same' if normalize_padding(padding) == 'same' else 'manual'
        self.padding = None if self.padding_mode == 'same' else normalize_padding(padding)

    @property
    def has_size_determined(self):
        return self.padding is not None

    def _padding_for(self, hw):
        if self.padding_mode == 'same':
            return calculate_same_padding(self.pool_size, self.stride, hw)
        return self.padding

    def infer_size(self, input_size):
        self.padding = self._padding_for(input_size[1:])

    def is_valid_input_size(self, input_size):
        if len(input_size) != 3:
            return False
        top, bottom, left, right = self._padding_for(input_size[1:])
        return (input_size[1] + top + bottom >= self.pool_size[0]
                and input_size[2] + left + right >= self.pool_size[1])

    def _output_size(self, input_size):
        padding = self._padding_for(input_size[1:])
        oh, ow = output_spatial_size(input_size[1:], self.pool_size, self.stride, padding)
        return (input_size[0], oh, ow)

    def forward_propagate_size(self, input_size):
        return self._output_size(input_size)

    def _windows(self, X, pad_value):
        """Receptive fields as (N, C, kh*kw, out_h, out_w) plus the padded shape"""
        xp = get_array_module(X)
        Xp = pad_spatial(xp, X, self.padding, pad_value)
        oh, ow = output_spatial_size(X.shape[2:], self.pool_size, self.stride, self.padding)
        cols = im2col(xp, Xp, self.pool_size, self.stride, (oh, ow))
        N, C = X.shape[:2]
        return cols.reshape(N, C, -1, oh, ow), Xp.shape

    def _scatter(self, dcols, padded_shape):
        xp = get_array_module(dcols)
        N, C, _, oh, ow = dcols.shape
        kh, kw = self.pool_size
        dXp = col2im(xp, dcols.reshape(N, C, kh, kw, oh, ow), padded_shape, self.stride)
        return unpad_spatial(dXp, self.padding)


class MaxPooling2D(_Pooling2D):
    """
    2D max pooling

    With has_unpooling_outputs the layer has three outputs: the pooled tensor,
    the flat index of every maximum within the input batch, and the input
    shape. The last two feed a MaxUnpooling2D layer.
    """

    def __init__(self, name: str = '', pool_size=2, stride=1, padding: PaddingSpec = 0,
                 has_unpooling_outputs: bool = False):
        super().__init__(name, pool_size, stride, padding)
        self.has_unpooling_outputs = bool(has_unpooling_outputs)
        if self.has_unpooling_outputs and (self.stride[0] < self.pool_size[0] or self.stride[1] < self.pool_size[1]):
            raise ValueError("Unpooling outputs require non-overlapping pooling regions "
                             "(stride must be at least the pool size)")

    @property
    def output_names(self) -> Tuple[str, ...]:
        if self.has_unpooling_outputs:
            return ('out', 'indices', 'size')
        return ('out',)

    def forward_propagate_size(self, input_size):
        output_size = self._output_size(input_size)
        if self.has_unpooling_outputs:
            # the size output describes the pooled input
            return [output_size, output_size, tuple(input_size)]
        return output_size

    def predict(self, X):
        windows, _ = self._windows(X, -float('inf'))
        Z = windows.max(axis=2)
        if not self.has_unpooling_outputs:
            return Z
        return [Z, self._max_indices(X, windows), get_array_module(X).asarray(X.shape)]

    def _max_indices(self, X, windows):
        xp = get_array_module(X)
        N, C, H, W = X.shape
        _, _, _, oh, ow = windows.shape
        kw = self.pool_size[1]
        top, _, left, _ = self.padding
        arg = windows.argmax(axis=2)
        rows = xp.arange(oh).reshape(1, 1, oh, 1) * self.stride[0] + arg // kw - top
        cols = xp.arange(ow).reshape(1, 1, 1, ow) * self.stride[1] + arg % kw - left
        plane = (xp.arange(N).reshape(N, 1, 1, 1) * C + xp.arange(C).reshape(1, C, 1, 1)) * (H * W)
        return plane + rows * W + cols

    def backward(self, X, Z, dZ, memory, need_weight_gradients=True):
        if isinstance(dZ, (list, tuple)):
            dZ = dZ[0]
        xp = get_array_module(X)
        windows, padded_shape = self._windows(X, -float('inf'))
        arg = windows.argmax(axis=2)
        positions = xp.arange(windows.shape[2]).reshape(1, 1, -1, 1, 1)
        dcols = (positions == arg[:, :, None]) * dZ[:, :, None]
        return self._scatter(dcols.astype(dZ.dtype), padded_shape), []


class AveragePooling2D(_Pooling2D):
    """2D average pooling; padded values count towards the average"""

    def predict(self, X):
        windows, _ = self._windows(X, 0.0)
        return windows.mean(axis=2)

    def backward(self, X, Z, dZ, memory, need_weight_gradients=True):
        xp = get_array_module(X)
        area = self.pool_size[0] * self.pool_size[1]
        N, C, oh, ow = dZ.shape
        dcols = xp.broadcast_to((dZ / area)[:, :, None], (N, C, area, oh, ow))
        padded_shape = pad_spatial(xp, X, self.padding).shape
        return self._scatter(xp.ascontiguousarray(dcols), padded_shape), []


class MaxUnpooling2D(Layer):
    """Places values back at the positions recorded by a MaxPooling2D layer"""
    input_names = ('in', 'indices', 'size')

    def forward_propagate_size(self, input_size):
        return tuple(input_size[2])

    def is_valid_input_size(self, input_size):
        return tuple(input_size[0]) == tuple(input_size[1])

    def predict(self, X):
        values, indices, size = X
        xp = get_array_module(values)
        shape = tuple(int(s) for s in gather(size))
        Z = xp.zeros(int(np.prod(shape)), dtype=values.dtype)
        Z[indices.ravel()] = values.ravel()
        return Z.reshape(shape)

    def backward(self, X, Z, dZ, memory, need_weight_gradients=True):
        values, indices, _ = X
        dX = dZ.ravel()[indices.ravel()].reshape(values.shape)
        return [dX, None, None], []

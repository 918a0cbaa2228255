"""
Convolution and fully connected layers
Supports both NumPy (host) and CuPy (GPU) tensors
"""
import math
from typing import Optional, Tuple
import numpy as np

from .base import Layer, LearnableParameter
from .padding import (PaddingSpec, calculate_same_padding, normalize_padding, output_spatial_size,
                      pad_spatial, pair, unpad_spatial)
from ..backend import get_array_module
from ..errors import InvalidParameterSizeError


WEIGHT_INITIALIZERS = ('he', 'narrow-normal')


def init_weights(shape, fan_in: int, initializer: str, dtype):
    """Random weights; 'he' is Kaiming normal, 'narrow-normal' is N(0, 0.01)"""
    if initializer == 'he':
        W = np.random.randn(*shape) * math.sqrt(2.0 / fan_in)
    elif initializer == 'narrow-normal':
        W = np.random.randn(*shape) * 0.01
    else:
        raise ValueError(f"Unknown weights initializer: '{initializer}'")
    return W.astype(dtype)


def check_value(param: LearnableParameter, shape, what: str, precision):
    """Validate a user-provided learnable value and cast it"""
    if tuple(param.value.shape) != tuple(shape):
        raise InvalidParameterSizeError(
            f"{what} must have shape {tuple(shape)}, got {tuple(param.value.shape)}")
    param.value = precision.cast(param.value)


def im2col(xp, Xp, window, stride, out_hw):
    """
    Gather every receptive field of a padded input

    Returns:
        Array of shape (N, C, kh, kw, out_h, out_w)
    """
    N, C = Xp.shape[:2]
    kh, kw = window
    sh, sw = stride
    oh, ow = out_hw
    cols = xp.empty((N, C, kh, kw, oh, ow), dtype=Xp.dtype)
    for i in range(kh):
        i_end = i + sh * oh
        for j in range(kw):
            j_end = j + sw * ow
            cols[:, :, i, j] = Xp[:, :, i:i_end:sh, j:j_end:sw]
    return cols


def col2im(xp, cols, padded_shape, stride):
    """Scatter-add receptive-field gradients back onto the padded input"""
    _, _, kh, kw, oh, ow = cols.shape
    sh, sw = stride
    dXp = xp.zeros(padded_shape, dtype=cols.dtype)
    for i in range(kh):
        i_end = i + sh * oh
        for j in range(kw):
            j_end = j + sw * ow
            dXp[:, :, i:i_end:sh, j:j_end:sw] += cols[:, :, i, j]
    return dXp


def conv2d(X, W, b, stride: Tuple[int, int], padding: Tuple[int, int, int, int]):
    """
    2D convolution (cross-correlation)

    Args:
        X: Input (batch_size, in_channels, height, width)
        W: Filters (num_filters, in_channels, kh, kw)
        b: Bias (num_filters,)
        stride: (vertical, horizontal)
        padding: (top, bottom, left, right)

    Returns:
        Output (batch_size, num_filters, out_height, out_width)
    """
    xp = get_array_module(X)
    Xp = pad_spatial(xp, X, padding)
    N = X.shape[0]
    F, C, kh, kw = W.shape
    oh, ow = output_spatial_size(X.shape[2:], (kh, kw), stride, padding)
    cols = im2col(xp, Xp, (kh, kw), stride, (oh, ow)).reshape(N, C * kh * kw, oh * ow)
    Z = xp.matmul(W.reshape(F, -1), cols).reshape(N, F, oh, ow)
    return Z + b.reshape(1, F, 1, 1)


def conv2d_backward(X, dZ, W, stride, padding, need_weight_gradients=True):
    """Gradients of conv2d with respect to X, W and b"""
    xp = get_array_module(X)
    Xp = pad_spatial(xp, X, padding)
    N = X.shape[0]
    F, C, kh, kw = W.shape
    oh, ow = dZ.shape[2:]
    dZm = dZ.reshape(N, F, oh * ow)

    dcols = xp.matmul(W.reshape(F, -1).T, dZm).reshape(N, C, kh, kw, oh, ow)
    dX = unpad_spatial(col2im(xp, dcols, Xp.shape, stride), padding)

    if not need_weight_gradients:
        return dX, None, None
    cols = im2col(xp, Xp, (kh, kw), stride, (oh, ow)).reshape(N, C * kh * kw, oh * ow)
    dW = xp.einsum('nfl,nkl->fk', dZm, cols).reshape(W.shape)
    db = dZ.sum(axis=(0, 2, 3))
    return dX, dW, db


class Convolution2D(Layer):
    """
    2D convolution layer

    Args:
        name: Layer name
        filter_size: int or (height, width)
        num_filters: Number of output channels
        num_channels: Input channels, None to infer from the input
        stride: int or (vertical, horizontal)
        padding: int, (vertical, horizontal), (top, bottom, left, right) or 'same'
        weights_initializer: 'he' or 'narrow-normal'
    """

    def __init__(self, name: str = '', filter_size=3, num_filters: int = 1,
                 num_channels: Optional[int] = None, stride=1, padding: PaddingSpec = 0,
                 weights_initializer: str = 'he',
                 weight_learn_rate_factor: float = 1.0, weight_l2_factor: float = 1.0,
                 bias_learn_rate_factor: float = 1.0, bias_l2_factor: float = 0.0):
        super().__init__(name)
        self.filter_size = pair(filter_size)
        self.num_filters = int(num_filters)
        self.num_channels = num_channels
        self.stride = pair(stride)
        self.padding_mode = 'same' if normalize_padding(padding) == 'same' else 'manual'
        self.padding = None if self.padding_mode == 'same' else normalize_padding(padding)
        self.weights_initializer = weights_initializer
        self.weights = LearnableParameter(None, weight_learn_rate_factor, weight_l2_factor)
        self.bias = LearnableParameter(None, bias_learn_rate_factor, bias_l2_factor)

    @property
    def has_size_determined(self):
        return self.num_channels is not None and self.padding is not None

    def _padding_for(self, hw):
        if self.padding_mode == 'same':
            return calculate_same_padding(self.filter_size, self.stride, hw)
        return self.padding

    def infer_size(self, input_size):
        C, H, W = input_size
        if self.num_channels is None:
            self.num_channels = int(C)
        elif self.num_channels != C:
            raise ValueError(f"expected {self.num_channels} channels, got {C}")
        self.padding = self._padding_for((H, W))

    def is_valid_input_size(self, input_size):
        if len(input_size) != 3 or input_size[0] != self.num_channels:
            return False
        top, bottom, left, right = self._padding_for(input_size[1:])
        return (input_size[1] + top + bottom >= self.filter_size[0]
                and input_size[2] + left + right >= self.filter_size[1])

    def forward_propagate_size(self, input_size):
        padding = self._padding_for(input_size[1:])
        oh, ow = output_spatial_size(input_size[1:], self.filter_size, self.stride, padding)
        return (self.num_filters, oh, ow)

    def initialize_learnable_parameters(self, precision):
        shape = (self.num_filters, self.num_channels) + self.filter_size
        if self.weights.value is None:
            fan_in = self.num_channels * self.filter_size[0] * self.filter_size[1]
            self.weights.value = init_weights(shape, fan_in, self.weights_initializer, precision.dtype)
        else:
            check_value(self.weights, shape, 'Weights', precision)
        if self.bias.value is None:
            self.bias.value = precision.zeros((self.num_filters,))
        else:
            check_value(self.bias, (self.num_filters,), 'Bias', precision)

    def predict(self, X):
        return conv2d(X, self.weights.value, self.bias.value, self.stride, self.padding)

    def backward(self, X, Z, dZ, memory, need_weight_gradients=True):
        dX, dW, db = conv2d_backward(X, dZ, self.weights.value, self.stride, self.padding,
                                     need_weight_gradients)
        return dX, [dW, db]


class FullyConnected(Layer):
    """
    Fully connected layer

    Images are flattened per observation; sequences (N, C, T) are transformed at every time step.
    """

    def __init__(self, name: str = '', output_size: int = 1, input_size: Optional[int] = None,
                 weights_initializer: str = 'he',
                 weight_learn_rate_factor: float = 1.0, weight_l2_factor: float = 1.0,
                 bias_learn_rate_factor: float = 1.0, bias_l2_factor: float = 0.0):
        super().__init__(name)
        self.output_size = int(output_size)
        self.input_size = input_size
        self.weights_initializer = weights_initializer
        self.weights = LearnableParameter(None, weight_learn_rate_factor, weight_l2_factor)
        self.bias = LearnableParameter(None, bias_learn_rate_factor, bias_l2_factor)

    @property
    def has_size_determined(self):
        return self.input_size is not None

    def infer_size(self, input_size):
        features = int(np.prod(input_size))
        if self.input_size is None:
            self.input_size = features
        elif self.input_size != features:
            raise ValueError(f"expected {self.input_size} input features, got {features}")

    def is_valid_input_size(self, input_size):
        return int(np.prod(input_size)) == self.input_size

    def forward_propagate_size(self, input_size):
        return (self.output_size,)

    def initialize_learnable_parameters(self, precision):
        shape = (self.output_size, self.input_size)
        if self.weights.value is None:
            self.weights.value = init_weights(shape, self.input_size, self.weights_initializer,
                                              precision.dtype)
        else:
            check_value(self.weights, shape, 'Weights', precision)
        if self.bias.value is None:
            self.bias.value = precision.zeros((self.output_size,))
        else:
            check_value(self.bias, (self.output_size,), 'Bias', precision)

    def predict(self, X):
        xp = get_array_module(X)
        W, b = self.weights.value, self.bias.value
        if X.ndim == 3:
            return xp.einsum('kc,nct->nkt', W, X) + b[None, :, None]
        X2 = X.reshape(X.shape[0], -1)
        return X2 @ W.T + b

    def backward(self, X, Z, dZ, memory, need_weight_gradients=True):
        xp = get_array_module(X)
        W = self.weights.value
        if X.ndim == 3:
            dX = xp.einsum('kc,nkt->nct', W, dZ)
            if not need_weight_gradients:
                return dX, self._no_weight_gradients()
            return dX, [xp.einsum('nkt,nct->kc', dZ, X), dZ.sum(axis=(0, 2))]
        X2 = X.reshape(X.shape[0], -1)
        dX = (dZ @ W).reshape(X.shape)
        if not need_weight_gradients:
            return dX, self._no_weight_gradients()
        return dX, [dZ.T @ X2, dZ.sum(axis=0)]

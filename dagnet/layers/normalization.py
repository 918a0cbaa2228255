"""
Batch normalization, cross-channel normalization and dropout
"""
from typing import Optional

from .base import Finalizable, Layer, LearnableParameter, channel_shape, observation_axes
from .conv import check_value
from ..backend import get_array_module
from ..errors import NotFinalizedError


class BatchNormalization(Finalizable, Layer):
    """
    Batch normalization over the channel axis

    Training normalizes with mini-batch statistics. Population statistics used
    for prediction are merged batch by batch in a finalize pass after training.
    """

    def __init__(self, name: str = '', epsilon: float = 1e-5, num_channels: Optional[int] = None,
                 offset_learn_rate_factor: float = 1.0, offset_l2_factor: float = 1.0,
                 scale_learn_rate_factor: float = 1.0, scale_l2_factor: float = 1.0):
        super().__init__(name)
        if epsilon < 1e-5:
            raise ValueError(f"epsilon must be at least 1e-5, got {epsilon}")
        self.epsilon = float(epsilon)
        self.num_channels = num_channels
        self.offset = LearnableParameter(None, offset_learn_rate_factor, offset_l2_factor)
        self.scale = LearnableParameter(None, scale_learn_rate_factor, scale_l2_factor)
        self.trained_mean = None
        self.trained_variance = None
        self.num_finalized = 0

    @property
    def has_size_determined(self):
        return self.num_channels is not None

    def infer_size(self, input_size):
        if self.num_channels is None:
            self.num_channels = int(input_size[0])
        elif self.num_channels != input_size[0]:
            raise ValueError(f"expected {self.num_channels} channels, got {input_size[0]}")

    def is_valid_input_size(self, input_size):
        return input_size[0] == self.num_channels

    def initialize_learnable_parameters(self, precision):
        shape = (self.num_channels,)
        if self.offset.value is None:
            self.offset.value = precision.zeros(shape)
        else:
            check_value(self.offset, shape, 'Offset', precision)
        if self.scale.value is None:
            self.scale.value = precision.zeros(shape) + 1
        else:
            check_value(self.scale, shape, 'Scale', precision)

    def _normalize(self, X, mean, variance):
        xp = get_array_module(X)
        shape = channel_shape(X)
        inv_std = 1.0 / xp.sqrt(variance.reshape(shape) + self.epsilon)
        return ((X - mean.reshape(shape)) * inv_std * self.scale.value.reshape(shape)
                + self.offset.value.reshape(shape))

    def _batch_statistics(self, X):
        axes = observation_axes(X)
        return X.mean(axis=axes), X.var(axis=axes)

    def predict(self, X):
        if self.trained_mean is not None:
            xp = get_array_module(X)
            return self._normalize(X, xp.asarray(self.trained_mean), xp.asarray(self.trained_variance))
        if self.is_training:
            return self._normalize(X, *self._batch_statistics(X))
        raise NotFinalizedError(
            f"Batch normalization layer '{self.name}' has no population statistics; finalize the network first")

    def forward(self, X):
        mean, variance = self._batch_statistics(X)
        return self._normalize(X, mean, variance), (mean, variance)

    def backward(self, X, Z, dZ, memory, need_weight_gradients=True):
        xp = get_array_module(X)
        mean, variance = memory
        shape = channel_shape(X)
        axes = observation_axes(X)
        m = X.size // X.shape[1]
        inv_std = 1.0 / xp.sqrt(variance.reshape(shape) + self.epsilon)
        x_hat = (X - mean.reshape(shape)) * inv_std
        dx_hat = dZ * self.scale.value.reshape(shape)
        dX = (inv_std / m) * (m * dx_hat - dx_hat.sum(axis=axes, keepdims=True)
                              - x_hat * (dx_hat * x_hat).sum(axis=axes, keepdims=True))
        if not need_weight_gradients:
            return dX, self._no_weight_gradients()
        return dX, [dZ.sum(axis=axes), (dZ * x_hat).sum(axis=axes)]

    def finalize(self, X, Z, memory):
        """Merge the statistics of one batch into the population statistics"""
        mean, variance = memory
        n = X.size // X.shape[1]
        if self.trained_mean is None:
            self.trained_mean, self.trained_variance, self.num_finalized = mean, variance, n
            return
        total = self.num_finalized + n
        merged_mean = (self.num_finalized * self.trained_mean + n * mean) / total
        self.trained_variance = (self.num_finalized * (self.trained_variance + (self.trained_mean - merged_mean) ** 2)
                                 + n * (variance + (mean - merged_mean) ** 2)) / total
        self.trained_mean = merged_mean
        self.num_finalized = total

    def reset_finalization(self):
        self.trained_mean = None
        self.trained_variance = None
        self.num_finalized = 0

    def _move_state(self, move):
        if self.trained_mean is not None:
            self.trained_mean = move(self.trained_mean)
            self.trained_variance = move(self.trained_variance)


class Dropout(Layer):
    """Inverted dropout; the scaled mask is kept as memory for backward"""

    def __init__(self, name: str = '', probability: float = 0.5):
        super().__init__(name)
        if not 0 <= probability < 1:
            raise ValueError(f"probability must be in [0, 1), got {probability}")
        self.probability = float(probability)

    def predict(self, X):
        return X

    def forward(self, X):
        xp = get_array_module(X)
        mask = (xp.random.random_sample(X.shape) >= self.probability).astype(X.dtype)
        mask /= (1.0 - self.probability)
        return X * mask, mask

    def backward(self, X, Z, dZ, memory, need_weight_gradients=True):
        return dZ * memory, []


def _channel_window_sum(V, before, after):
    """Sum of V over channels c - before .. c + after, zero outside the channel range"""
    xp = get_array_module(V)
    C = V.shape[1]
    pad = [(0, 0)] * V.ndim
    pad[1] = (before, after)
    padded = xp.pad(V, pad, mode='constant')
    total = xp.zeros_like(V)
    for k in range(before + after + 1):
        total += padded[:, k:k + C]
    return total


class CrossChannelNormalization(Layer):
    """
    Local response normalization across neighbouring channels

        Z = X / (k + alpha * ss / window_channel_size) ** beta

    where ss is the sum of squares over the channel window around each
    element. An even window reaches one channel further forward than back.
    """

    def __init__(self, name: str = '', window_channel_size: int = 5, alpha: float = 1e-4,
                 beta: float = 0.75, k: float = 2.0):
        super().__init__(name)
        if not 1 <= window_channel_size <= 16:
            raise ValueError(f"window_channel_size must be between 1 and 16, got {window_channel_size}")
        if beta < 0.01:
            raise ValueError(f"beta must be at least 0.01, got {beta}")
        if k < 1e-5:
            raise ValueError(f"k must be at least 1e-5, got {k}")
        self.window_channel_size = int(window_channel_size)
        self.alpha = float(alpha)
        self.beta = float(beta)
        self.k = float(k)

    @property
    def _window(self):
        before = (self.window_channel_size - 1) // 2
        return before, self.window_channel_size - 1 - before

    def _denominator(self, X):
        before, after = self._window
        return self.k + self.alpha / self.window_channel_size * _channel_window_sum(X * X, before, after)

    def is_valid_input_size(self, input_size):
        return len(input_size) == 3

    def predict(self, X):
        return X * self._denominator(X) ** -self.beta

    def backward(self, X, Z, dZ, memory, need_weight_gradients=True):
        before, after = self._window
        S = self._denominator(X)
        # element j receives from every element whose window contains it
        spread = _channel_window_sum(dZ * Z / S, after, before)
        dX = dZ * S ** -self.beta - (2 * self.alpha * self.beta / self.window_channel_size) * X * spread
        return dX, []

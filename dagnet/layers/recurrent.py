"""
Long short-term memory layers
Sequences are (batch_size, channels, time_steps)
"""
import math
from typing import Optional
import numpy as np

from .base import Layer, LearnableParameter
from .conv import check_value
from ..backend import get_array_module


def sigmoid(xp, x):
    return 1.0 / (1.0 + xp.exp(-x))


def glorot(shape, fan_in, fan_out, dtype):
    limit = math.sqrt(6.0 / (fan_in + fan_out))
    return ((np.random.rand(*shape) * 2 - 1) * limit).astype(dtype)


def lstm_forward(X, W, R, b):
    """
    Run one LSTM over every time step

    Returns:
        (hidden, cells, gates) with shapes (N, H, T), (N, H, T), (N, 4H, T)
    """
    xp = get_array_module(X)
    N, _, T = X.shape
    H = R.shape[1]
    h = xp.zeros((N, H), dtype=X.dtype)
    c = xp.zeros((N, H), dtype=X.dtype)
    gates = xp.empty((N, 4 * H, T), dtype=X.dtype)
    cells = xp.empty((N, H, T), dtype=X.dtype)
    hidden = xp.empty((N, H, T), dtype=X.dtype)
    for t in range(T):
        a = X[:, :, t] @ W.T + h @ R.T + b
        i = sigmoid(xp, a[:, :H])
        f = sigmoid(xp, a[:, H:2 * H])
        g = xp.tanh(a[:, 2 * H:3 * H])
        o = sigmoid(xp, a[:, 3 * H:])
        c = f * c + i * g
        h = o * xp.tanh(c)
        gates[:, :, t] = xp.concatenate([i, f, g, o], axis=1)
        cells[:, :, t] = c
        hidden[:, :, t] = h
    return hidden, cells, gates


def lstm_backward(X, W, R, hidden, cells, gates, dH, need_weight_gradients=True):
    """
    Back propagate through time

    Args:
        dH: Loss gradient with respect to the hidden state at every step, (N, H, T)

    Returns:
        (dX, dW, dR, db); the weight gradients are None unless requested
    """
    xp = get_array_module(X)
    N, _, T = X.shape
    H = R.shape[1]
    dX = xp.empty_like(X)
    dW = xp.zeros_like(W) if need_weight_gradients else None
    dR = xp.zeros_like(R) if need_weight_gradients else None
    db = xp.zeros((4 * H,), dtype=X.dtype) if need_weight_gradients else None
    dh_next = xp.zeros((N, H), dtype=X.dtype)
    dc_next = xp.zeros((N, H), dtype=X.dtype)
    for t in reversed(range(T)):
        i, f, g, o = (gates[:, k * H:(k + 1) * H, t] for k in range(4))
        tanh_c = xp.tanh(cells[:, :, t])
        c_prev = cells[:, :, t - 1] if t > 0 else xp.zeros_like(tanh_c)
        dh = dH[:, :, t] + dh_next
        dc = dh * o * (1 - tanh_c ** 2) + dc_next
        da = xp.concatenate([dc * g * i * (1 - i),
                             dc * c_prev * f * (1 - f),
                             dc * i * (1 - g ** 2),
                             dh * tanh_c * o * (1 - o)], axis=1)
        dX[:, :, t] = da @ W
        dh_next = da @ R
        dc_next = dc * f
        if need_weight_gradients:
            dW += da.T @ X[:, :, t]
            if t > 0:
                dR += da.T @ hidden[:, :, t - 1]
            db += da.sum(axis=0)
    return dX, dW, dR, db


class LSTM(Layer):
    """
    LSTM layer with gates ordered input, forget, cell candidate, output

    Args:
        name: Layer name
        num_hidden_units: Size of the hidden state
        output_mode: 'sequence' returns every time step (N, H, T), 'last' returns (N, H)
        input_size: Input channels, None to infer from the input
    """

    num_directions = 1

    def __init__(self, name: str = '', num_hidden_units: int = 1, output_mode: str = 'sequence',
                 input_size: Optional[int] = None,
                 input_weights_learn_rate_factor: float = 1.0, input_weights_l2_factor: float = 1.0,
                 recurrent_weights_learn_rate_factor: float = 1.0, recurrent_weights_l2_factor: float = 1.0,
                 bias_learn_rate_factor: float = 1.0, bias_l2_factor: float = 0.0):
        super().__init__(name)
        if output_mode not in ('sequence', 'last'):
            raise ValueError(f"Unknown output mode: '{output_mode}'")
        self.num_hidden_units = int(num_hidden_units)
        self.output_mode = output_mode
        self.input_size = input_size
        self.input_weights = LearnableParameter(None, input_weights_learn_rate_factor, input_weights_l2_factor)
        self.recurrent_weights = LearnableParameter(None, recurrent_weights_learn_rate_factor,
                                                    recurrent_weights_l2_factor)
        self.bias = LearnableParameter(None, bias_learn_rate_factor, bias_l2_factor)

    @property
    def has_size_determined(self):
        return self.input_size is not None

    def infer_size(self, input_size):
        if self.input_size is None:
            self.input_size = int(input_size[0])
        elif self.input_size != input_size[0]:
            raise ValueError(f"expected {self.input_size} input channels, got {input_size[0]}")

    def is_valid_input_size(self, input_size):
        return len(input_size) == 1 and input_size[0] == self.input_size

    def forward_propagate_size(self, input_size):
        return (self.num_directions * self.num_hidden_units,)

    def initialize_learnable_parameters(self, precision):
        H, D, K = self.num_hidden_units, self.input_size, self.num_directions
        dtype = precision.dtype
        if self.input_weights.value is None:
            self.input_weights.value = np.concatenate([glorot((4 * H, D), D, 4 * H, dtype) for _ in range(K)])
        else:
            check_value(self.input_weights, (4 * H * K, D), 'InputWeights', precision)
        if self.recurrent_weights.value is None:
            self.recurrent_weights.value = np.concatenate([glorot((4 * H, H), H, 4 * H, dtype) for _ in range(K)])
        else:
            check_value(self.recurrent_weights, (4 * H * K, H), 'RecurrentWeights', precision)
        if self.bias.value is None:
            bias = precision.zeros((K, 4 * H))
            bias[:, H:2 * H] = 1  # unit forget gate
            self.bias.value = bias.reshape(-1)
        else:
            check_value(self.bias, (4 * H * K,), 'Bias', precision)

    def predict(self, X):
        return self.forward(X)[0]

    def forward(self, X):
        hidden, cells, gates = lstm_forward(X, self.input_weights.value, self.recurrent_weights.value,
                                            self.bias.value)
        Z = hidden if self.output_mode == 'sequence' else hidden[:, :, -1]
        return Z, (hidden, cells, gates)

    def _hidden_gradient(self, dZ, hidden):
        if self.output_mode == 'sequence':
            return dZ
        xp = get_array_module(hidden)
        dH = xp.zeros_like(hidden)
        dH[:, :, -1] = dZ
        return dH

    def backward(self, X, Z, dZ, memory, need_weight_gradients=True):
        hidden, cells, gates = memory
        dX, dW, dR, db = lstm_backward(X, self.input_weights.value, self.recurrent_weights.value,
                                       hidden, cells, gates, self._hidden_gradient(dZ, hidden),
                                       need_weight_gradients)
        if not need_weight_gradients:
            return dX, self._no_weight_gradients()
        return dX, [dW, dR, db]


class BiLSTM(LSTM):
    """
    Bidirectional LSTM

    One LSTM reads the sequence forwards and a second one reads it backwards.
    Their hidden states are stacked on the channel axis, forward direction
    first, so the output has 2 * num_hidden_units channels. Weights and bias
    hold the forward direction in their first half. With output_mode 'last'
    the output is the stacked hidden state at the final time step.
    """

    num_directions = 2

    def _split(self):
        half = 4 * self.num_hidden_units
        W, R, b = self.input_weights.value, self.recurrent_weights.value, self.bias.value
        return (W[:half], R[:half], b[:half]), (W[half:], R[half:], b[half:])

    def forward(self, X):
        xp = get_array_module(X)
        forward_weights, backward_weights = self._split()
        state_f = lstm_forward(X, *forward_weights)
        state_b = lstm_forward(X[:, :, ::-1], *backward_weights)
        hidden = xp.concatenate([state_f[0], state_b[0][:, :, ::-1]], axis=1)
        Z = hidden if self.output_mode == 'sequence' else hidden[:, :, -1]
        return Z, (hidden, state_f, state_b)

    def backward(self, X, Z, dZ, memory, need_weight_gradients=True):
        xp = get_array_module(X)
        hidden, state_f, state_b = memory
        H = self.num_hidden_units
        dH = self._hidden_gradient(dZ, hidden)
        (W_f, R_f, _), (W_b, R_b, _) = self._split()
        dX_f, dW_f, dR_f, db_f = lstm_backward(X, W_f, R_f, *state_f, dH[:, :H],
                                               need_weight_gradients)
        dX_b, dW_b, dR_b, db_b = lstm_backward(X[:, :, ::-1], W_b, R_b, *state_b, dH[:, H:, ::-1],
                                               need_weight_gradients)
        dX = dX_f + dX_b[:, :, ::-1]
        if not need_weight_gradients:
            return dX, self._no_weight_gradients()
        return dX, [xp.concatenate([dW_f, dW_b]), xp.concatenate([dR_f, dR_b]),
                    xp.concatenate([db_f, db_b])]

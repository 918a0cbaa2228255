"""
Public layer factories

Each factory checks its arguments and returns a configured layer object.
Sizes follow the channels-first convention: images are (channels, height, width).
"""
from numbers import Integral, Real
from typing import Optional, Sequence

from . import layers as L


def _check_name(name):
    if not isinstance(name, str):
        raise TypeError(f"Layer name must be a string, got {type(name).__name__}")
    return name


def _check_positive_int(value, what):
    if isinstance(value, bool) or not isinstance(value, Integral) or value < 1:
        raise ValueError(f"{what} must be a positive integer, got {value!r}")
    return int(value)


def _check_size(value, what, length=None):
    """Positive integer, or sequence of positive integers of the given length"""
    if isinstance(value, Integral) and not isinstance(value, bool):
        return _check_positive_int(value, what)
    values = tuple(value)
    if length is not None and len(values) != length:
        raise ValueError(f"{what} must have {length} elements, got {values}")
    for v in values:
        _check_positive_int(v, what)
    return tuple(int(v) for v in values)


def _check_factor(value, what):
    if isinstance(value, bool) or not isinstance(value, Real) or value < 0 or value != value:
        raise ValueError(f"{what} must be a nonnegative number, got {value!r}")
    return float(value)


def _check_padding(padding):
    if isinstance(padding, str):
        if padding != 'same':
            raise ValueError(f"padding must be 'same', an integer or a tuple, got '{padding}'")
        return padding
    values = (padding,) if isinstance(padding, Integral) else tuple(padding)
    if len(values) not in (1, 2, 4) or any(int(v) != v or v < 0 for v in values):
        raise ValueError(f"padding must be nonnegative integers (1, 2 or 4 of them), got {padding!r}")
    return padding


def _factors(kwargs, *names):
    for name in names:
        if name in kwargs:
            kwargs[name] = _check_factor(kwargs[name], name)
    return kwargs


# Inputs
def image_input_layer(input_size: Sequence[int], name: str = '', normalization: str = 'zerocenter',
                      average_image=None) -> L.ImageInput:
    return L.ImageInput(_check_name(name), _check_size(input_size, 'input_size', 3),
                        normalization=normalization, average_image=average_image)


def sequence_input_layer(input_size: int, name: str = '') -> L.SequenceInput:
    return L.SequenceInput(_check_name(name), _check_positive_int(input_size, 'input_size'))


# Learnable layers
def convolution2d_layer(filter_size, num_filters: int, name: str = '', stride=1, padding=0,
                        num_channels: Optional[int] = None, **kwargs) -> L.Convolution2D:
    """
    Args:
        filter_size: Height and width of the filters (int or pair)
        num_filters: Number of output channels
        stride: Step between filter applications (int or pair)
        padding: 'same', int, (vertical, horizontal) or (top, bottom, left, right)
        num_channels: Input channels; inferred from the network when omitted
        **kwargs: weights_initializer and learn-rate / L2 factors
    """
    if num_channels is not None:
        num_channels = _check_positive_int(num_channels, 'num_channels')
    _factors(kwargs, 'weight_learn_rate_factor', 'weight_l2_factor', 'bias_learn_rate_factor', 'bias_l2_factor')
    return L.Convolution2D(_check_name(name), filter_size=_check_size(filter_size, 'filter_size'),
                           num_filters=_check_positive_int(num_filters, 'num_filters'),
                           num_channels=num_channels, stride=_check_size(stride, 'stride'),
                           padding=_check_padding(padding), **kwargs)


def fully_connected_layer(output_size: int, name: str = '', input_size: Optional[int] = None,
                          **kwargs) -> L.FullyConnected:
    if input_size is not None:
        input_size = _check_positive_int(input_size, 'input_size')
    _factors(kwargs, 'weight_learn_rate_factor', 'weight_l2_factor', 'bias_learn_rate_factor', 'bias_l2_factor')
    return L.FullyConnected(_check_name(name), _check_positive_int(output_size, 'output_size'),
                            input_size=input_size, **kwargs)


def batch_normalization_layer(name: str = '', epsilon: float = 1e-5, **kwargs) -> L.BatchNormalization:
    _factors(kwargs, 'offset_learn_rate_factor', 'offset_l2_factor', 'scale_learn_rate_factor', 'scale_l2_factor')
    return L.BatchNormalization(_check_name(name), epsilon=epsilon, **kwargs)


def lstm_layer(num_hidden_units: int, name: str = '', output_mode: str = 'sequence', **kwargs) -> L.LSTM:
    if output_mode not in ('sequence', 'last'):
        raise ValueError(f"output_mode must be 'sequence' or 'last', got '{output_mode}'")
    _factors(kwargs, 'input_weights_learn_rate_factor', 'input_weights_l2_factor',
             'recurrent_weights_learn_rate_factor', 'recurrent_weights_l2_factor',
             'bias_learn_rate_factor', 'bias_l2_factor')
    return L.LSTM(_check_name(name), _check_positive_int(num_hidden_units, 'num_hidden_units'),
                  output_mode=output_mode, **kwargs)


def bilstm_layer(num_hidden_units: int, name: str = '', output_mode: str = 'sequence', **kwargs) -> L.BiLSTM:
    if output_mode not in ('sequence', 'last'):
        raise ValueError(f"output_mode must be 'sequence' or 'last', got '{output_mode}'")
    _factors(kwargs, 'input_weights_learn_rate_factor', 'input_weights_l2_factor',
             'recurrent_weights_learn_rate_factor', 'recurrent_weights_l2_factor',
             'bias_learn_rate_factor', 'bias_l2_factor')
    return L.BiLSTM(_check_name(name), _check_positive_int(num_hidden_units, 'num_hidden_units'),
                    output_mode=output_mode, **kwargs)


# Pooling
def max_pooling2d_layer(pool_size, name: str = '', stride=1, padding=0,
                        has_unpooling_outputs: bool = False) -> L.MaxPooling2D:
    return L.MaxPooling2D(_check_name(name), _check_size(pool_size, 'pool_size'), _check_size(stride, 'stride'),
                          _check_padding(padding), has_unpooling_outputs=has_unpooling_outputs)


def average_pooling2d_layer(pool_size, name: str = '', stride=1, padding=0) -> L.AveragePooling2D:
    return L.AveragePooling2D(_check_name(name), _check_size(pool_size, 'pool_size'),
                              _check_size(stride, 'stride'), _check_padding(padding))


def max_unpooling2d_layer(name: str = '') -> L.MaxUnpooling2D:
    return L.MaxUnpooling2D(_check_name(name))


# Activations
def relu_layer(name: str = '') -> L.ReLU:
    return L.ReLU(_check_name(name))


def leaky_relu_layer(scale: float = 0.01, name: str = '') -> L.LeakyReLU:
    return L.LeakyReLU(_check_name(name), scale=_check_factor(scale, 'scale'))


def clipped_relu_layer(ceiling: float, name: str = '') -> L.ClippedReLU:
    return L.ClippedReLU(_check_name(name), ceiling=ceiling)


def softmax_layer(name: str = '') -> L.Softmax:
    return L.Softmax(_check_name(name))


def cross_channel_normalization_layer(window_channel_size: int, name: str = '', alpha: float = 1e-4,
                                      beta: float = 0.75, k: float = 2.0) -> L.CrossChannelNormalization:
    """
    Args:
        window_channel_size: Channels in each normalization window, 1 to 16
        alpha: Multiplier of the windowed sum of squares
        beta: Exponent of the normalizer, at least 0.01
        k: Additive constant of the normalizer, at least 1e-5
    """
    window_channel_size = _check_positive_int(window_channel_size, 'window_channel_size')
    return L.CrossChannelNormalization(_check_name(name), window_channel_size, alpha=_check_factor(alpha, 'alpha'),
                                       beta=_check_factor(beta, 'beta'), k=_check_factor(k, 'k'))


def dropout_layer(probability: float = 0.5, name: str = '') -> L.Dropout:
    return L.Dropout(_check_name(name), probability=probability)


# Combination
def addition_layer(num_inputs: int, name: str = '') -> L.Addition:
    return L.Addition(_check_name(name), _check_positive_int(num_inputs, 'num_inputs'))


def concatenation_layer(axis: int, num_inputs: int, name: str = '') -> L.Concatenation:
    return L.Concatenation(_check_name(name), _check_positive_int(num_inputs, 'num_inputs'),
                           axis=_check_positive_int(axis, 'axis'))


def depth_concatenation_layer(num_inputs: int, name: str = '') -> L.Concatenation:
    return concatenation_layer(1, num_inputs, name)


def depth_slice_layer(name: str = '') -> L.DepthSlice:
    return L.DepthSlice(_check_name(name))


# Outputs
def classification_layer(name: str = '', classes: Optional[Sequence] = None) -> L.CrossEntropy:
    return L.CrossEntropy(_check_name(name), classes=classes)


def regression_layer(name: str = '', response_names: Optional[Sequence[str]] = None) -> L.MeanSquaredError:
    return L.MeanSquaredError(_check_name(name), response_names=response_names)


def custom_layer(user_layer, name: str = '') -> L.CustomLayer:
    return L.CustomLayer(user_layer, _check_name(name))

import os
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
from dagnet import InvalidParameterSizeError, api, check_layer
from dagnet import layers as L
from dagnet.backend import Precision
from dagnet.checklayer import all_passed, numeric_gradient


class Scale:
    name = 'scale'
    learnable_names = ['alpha']

    def __init__(self, alpha=1.5):
        self.alpha = np.full(1, alpha)

    def predict(self, X):
        return X * self.alpha

    def backward(self, X, Z, dZ, memory):
        return dZ * self.alpha, np.sum(dZ * X, keepdims=True).reshape(1)


class WrongScale(Scale):
    def backward(self, X, Z, dZ, memory):
        return 2 * dZ * self.alpha, np.sum(dZ * X, keepdims=True).reshape(1)


class Swap:
    """Two inputs, two outputs"""
    input_names = ('a', 'b')
    output_names = ('first', 'second')

    def predict(self, A, B):
        return [B * 1.0, A * 2.0]

    def backward(self, A, B, Z, dZ, memory):
        return dZ[1] * 2.0, dZ[0]


def _assert_passes(results):
    failed = [r.name for r in results if not r.passed]
    assert not failed, failed
    assert results


def _bound_slice(num_outputs):
    layer = L.DepthSlice('slice')
    layer.bind_num_outputs(num_outputs)
    return layer


@pytest.mark.parametrize('layer, input_size', [
    (L.Convolution2D('conv', 3, 2, padding='same'), (3, 5, 5)),
    (L.Convolution2D('conv', (2, 3), 2, stride=(2, 1), padding=(1, 0, 2, 1)), (2, 5, 6)),
    (L.FullyConnected('fc', 3), (2, 2, 2)),
    (L.BatchNormalization('bn'), (2, 3, 3)),
    (L.CrossChannelNormalization('norm', 3, alpha=0.5, k=1.0), (5, 2, 2)),
    (L.CrossChannelNormalization('norm', 4, alpha=1.0, beta=0.6, k=1.0), (5, 2, 2)),
    (L.ReLU('relu'), (2, 3, 3)),
    (L.LeakyReLU('leaky', scale=0.2), (2, 3, 3)),
    (L.ClippedReLU('clipped', ceiling=0.5), (2, 3, 3)),
    (L.Softmax('softmax'), (4,)),
    (L.Dropout('dropout', probability=0.3), (2, 3, 3)),
    (L.MaxPooling2D('maxpool', 2, stride=2), (2, 4, 4)),
    (L.MaxPooling2D('maxpool', 3, stride=1, padding='same'), (1, 4, 5)),
    (L.AveragePooling2D('avgpool', 2, stride=1, padding=1), (2, 3, 3)),
    (L.Addition('add', 3), [(2, 2, 2)] * 3),
    (L.Concatenation('cat', 2, axis=1), [(2, 3, 3), (1, 3, 3)]),
    (L.Concatenation('cat', 2, axis=3), [(1, 2, 2), (1, 2, 3)]),
    (_bound_slice(2), (4, 2, 2)),
    (L.CustomLayer(Scale()), (2, 3, 3)),
    (L.CustomLayer(Swap(), name='swap'), [(1, 2, 2), (1, 2, 2)]),
])
def test_layers_pass_check_layer(layer, input_size):
    np.random.seed(0)
    _assert_passes(check_layer(layer, input_size))


@pytest.mark.parametrize('layer, input_size', [
    (L.LSTM('lstm', 3), (2,)),
    (L.LSTM('lstm', 3, output_mode='last'), (2,)),
    (L.BiLSTM('bilstm', 3), (2,)),
    (L.BiLSTM('bilstm', 2, output_mode='last'), (3,)),
    (L.FullyConnected('fc', 3), (4,)),
    (L.Softmax('softmax'), (3,)),
])
def test_sequence_layers_pass_check_layer(layer, input_size):
    np.random.seed(0)
    _assert_passes(check_layer(layer, input_size, sequence_length=4))


def test_check_layer_catches_wrong_gradient():
    results = check_layer(L.CustomLayer(WrongScale()), (2, 2, 2))
    failed = [r.name for r in results if not r.passed]
    assert failed == ['gradient with respect to input 0 is numerically correct']
    assert not all_passed(results)


def test_check_layer_reports_errors():
    class WrongCount(Scale):
        def backward(self, X, Z, dZ, memory):
            return dZ * self.alpha

    results = check_layer(L.CustomLayer(WrongCount()), (1, 2, 2))
    assert results[-1].name == 'backward does not error'
    assert not results[-1].passed
    assert 'expected 2' in results[-1].message


def test_check_layer_does_not_modify_layer():
    layer = L.FullyConnected('fc', 2)
    check_layer(layer, (3,))
    assert layer.input_size is None
    assert layer.weights.value is None


def test_custom_layer_requires_methods():
    class NoBackward:
        def predict(self, X):
            return X

    with pytest.raises(TypeError):
        L.CustomLayer(NoBackward())


def test_custom_layer_rejects_integer_outputs():
    class Rounding:
        def predict(self, X):
            return np.round(X).astype(np.int64)

        def backward(self, X, Z, dZ, memory):
            return dZ

    layer = L.CustomLayer(Rounding())
    with pytest.raises(TypeError):
        layer.predict(np.ones((1, 2)))


def test_numeric_gradient_of_quadratic():
    x = np.array([1.0, -2.0, 3.0])
    grad = numeric_gradient(lambda v: v ** 2, x, np.ones(3))
    np.testing.assert_allclose(grad, 2 * x, rtol=1e-8)
    np.testing.assert_array_equal(x, [1.0, -2.0, 3.0])


def test_user_weights_are_checked():
    conv = L.Convolution2D('conv', 3, 2, num_channels=1)
    conv.infer_size((1, 5, 5))
    conv.weights.value = np.zeros((2, 1, 2, 2))
    with pytest.raises(InvalidParameterSizeError):
        conv.initialize_learnable_parameters(Precision('double'))


def test_same_padding_keeps_spatial_size():
    assert L.calculate_same_padding((3, 3), (1, 1), (5, 5)) == (1, 1, 1, 1)
    assert L.calculate_same_padding((2, 2), (2, 2), (5, 5)) == (0, 1, 0, 1)
    conv = L.Convolution2D('conv', 3, 2, stride=2, padding='same')
    conv.infer_size((1, 5, 5))
    assert conv.forward_propagate_size((1, 5, 5)) == (2, 3, 3)


def test_cross_entropy_loss():
    layer = L.CrossEntropy('out', classes=['a', 'b'])
    Y = np.array([[0.8, 0.2], [0.4, 0.6]])
    T = np.array([[1.0, 0.0], [0.0, 1.0]])
    assert layer.forward_loss(Y, T) == pytest.approx(-(np.log(0.8) + np.log(0.6)) / 2)
    np.testing.assert_allclose(layer.backward_loss(Y, T), -T / Y / 2)
    assert not layer.is_valid_input_size((3,))


def test_mean_squared_error_loss():
    layer = L.MeanSquaredError('out')
    Y = np.array([[1.0, 2.0], [3.0, 4.0]])
    T = np.zeros((2, 2))
    assert layer.forward_loss(Y, T) == pytest.approx(0.5 * 30 / 2)
    with pytest.raises(ValueError):
        layer.forward_loss(Y, np.zeros((2, 3)))


def test_zero_center_input():
    layer = L.ImageInput('in', (1, 2, 2), average_image=np.full((1, 2, 2), 2.0))
    np.testing.assert_allclose(layer.predict(np.full((3, 1, 2, 2), 5.0)), 3.0)
    assert not layer.needs_average_image
    assert L.ImageInput('in', (1, 2, 2)).needs_average_image


def test_api_builds_layers():
    conv = api.convolution2d_layer(3, 16, name='conv', padding='same', weight_learn_rate_factor=2)
    assert isinstance(conv, L.Convolution2D)
    assert conv.filter_size == (3, 3)
    assert conv.weights.learn_rate_factor == 2.0
    assert api.depth_concatenation_layer(3, name='cat').input_names == ('in1', 'in2', 'in3')
    assert api.max_pooling2d_layer(2, stride=2, has_unpooling_outputs=True).output_names == ('out', 'indices', 'size')
    assert api.lstm_layer(8, output_mode='last').output_mode == 'last'
    assert api.bilstm_layer(8, output_mode='last').forward_propagate_size((3,)) == (16,)
    norm = api.cross_channel_normalization_layer(5, k=1)
    assert (norm.window_channel_size, norm.alpha, norm.beta, norm.k) == (5, 1e-4, 0.75, 1.0)
    assert isinstance(api.custom_layer(Scale()), L.CustomLayer)


@pytest.mark.parametrize('build, error', [
    (lambda: api.image_input_layer((1, 2)), ValueError),
    (lambda: api.image_input_layer((1, 2, 2), name=3), TypeError),
    (lambda: api.image_input_layer((1, 2, 2), normalization='rescale'), ValueError),
    (lambda: api.convolution2d_layer(0, 2), ValueError),
    (lambda: api.convolution2d_layer(3, 2, padding='valid'), ValueError),
    (lambda: api.convolution2d_layer(3, 2, padding=(1, 2, 3)), ValueError),
    (lambda: api.convolution2d_layer(3, 2, bias_l2_factor=-1), ValueError),
    (lambda: api.fully_connected_layer(2.5), ValueError),
    (lambda: api.lstm_layer(4, output_mode='all'), ValueError),
    (lambda: api.bilstm_layer(4, output_mode='all'), ValueError),
    (lambda: api.cross_channel_normalization_layer(17), ValueError),
    (lambda: api.cross_channel_normalization_layer(5, beta=0.001), ValueError),
    (lambda: api.cross_channel_normalization_layer(5, alpha=-1), ValueError),
    (lambda: api.max_pooling2d_layer(2, stride=1, has_unpooling_outputs=True), ValueError),
    (lambda: api.dropout_layer(1.0), ValueError),
    (lambda: api.clipped_relu_layer(0), ValueError),
    (lambda: api.addition_layer(1), ValueError),
    (lambda: api.batch_normalization_layer(epsilon=1e-8), ValueError),
])
def test_api_rejects_bad_arguments(build, error):
    with pytest.raises(error):
        build()


def test_bilstm_stacks_forward_and_reversed_lstm():
    np.random.seed(0)
    bilstm = L.BiLSTM('bilstm', 3, input_size=2)
    bilstm.initialize_learnable_parameters(Precision('double'))
    assert bilstm.input_weights.value.shape == (24, 2)
    assert bilstm.recurrent_weights.value.shape == (24, 3)
    directions = [L.LSTM('forward', 3, input_size=2), L.LSTM('backward', 3, input_size=2)]
    for layer, half in zip(directions, (slice(0, 12), slice(12, 24))):
        layer.input_weights.value = bilstm.input_weights.value[half]
        layer.recurrent_weights.value = bilstm.recurrent_weights.value[half]
        layer.bias.value = bilstm.bias.value[half]

    X = np.random.RandomState(1).randn(2, 2, 5)
    Z = bilstm.predict(X)
    assert Z.shape == (2, 6, 5)
    np.testing.assert_allclose(Z[:, :3], directions[0].predict(X))
    np.testing.assert_allclose(Z[:, 3:], directions[1].predict(X[:, :, ::-1])[:, :, ::-1])

    bilstm.output_mode = 'last'
    np.testing.assert_allclose(bilstm.predict(X), Z[:, :, -1])


def test_cross_channel_normalization_windows():
    X = np.arange(1.0, 5.0).reshape(1, 4, 1, 1)
    centered = L.CrossChannelNormalization('norm', 3, alpha=0.3, beta=0.5, k=1.0)
    squares = np.array([1 + 4, 1 + 4 + 9, 4 + 9 + 16, 9 + 16])
    np.testing.assert_allclose(centered.predict(X).ravel(), X.ravel() / np.sqrt(1 + 0.3 * squares / 3))

    # an even window reaches one channel further forward
    even = L.CrossChannelNormalization('norm', 2, alpha=0.3, beta=0.5, k=1.0)
    squares = np.array([1 + 4, 4 + 9, 9 + 16, 16])
    np.testing.assert_allclose(even.predict(X).ravel(), X.ravel() / np.sqrt(1 + 0.3 * squares / 2))

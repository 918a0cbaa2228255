import copy
import os
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
from dagnet import (DataMismatchError, InvalidGraphError, SeriesNetwork, WrongLayerSizeError,
                    assemble_network)
from dagnet import layers as L
from dagnet.checklayer import numeric_gradient


def _image_layers():
    return [
        L.ImageInput('in', (1, 6, 6), normalization='none'),
        L.Convolution2D('conv', 3, 4, padding='same'),
        L.BatchNormalization('bn'),
        L.ReLU('relu'),
        L.MaxPooling2D('pool', 2, stride=2),
        L.FullyConnected('fc', 3),
        L.Softmax('softmax'),
        L.CrossEntropy('output'),
    ]


def test_series_matches_dag():
    np.random.seed(0)
    layers = _image_layers()
    series = SeriesNetwork(copy.deepcopy(layers)).initialize_learnable_parameters('double')
    dag = assemble_network(layers)
    for p, q in zip(dag.learnable_parameters, series.learnable_parameters):
        p.value = q.value.copy()
    series.prepare_network_for_training('cpu')
    dag.prepare_network_for_training('cpu')

    rng = np.random.RandomState(1)
    X = rng.randn(4, 1, 6, 6)
    T = np.eye(3)[[0, 1, 2, 1]]

    np.testing.assert_allclose(series.predict(X), dag.predict(X))
    series_gradients, series_predictions, _ = series.compute_gradients_for_training(X, T)
    dag_gradients, dag_predictions, _ = dag.compute_gradients_for_training(X, T)
    np.testing.assert_allclose(series_predictions, dag_predictions)
    assert len(series_gradients) == len(dag_gradients) == 6
    for g, h in zip(series_gradients, dag_gradients):
        np.testing.assert_allclose(g, h, rtol=1e-10, atol=1e-12)


def test_series_accepts_wrapped_data():
    np.random.seed(1)
    series = SeriesNetwork([
        L.ImageInput('in', (2, 1, 1), normalization='none'),
        L.FullyConnected('fc', 1),
        L.MeanSquaredError('out'),
    ]).initialize_learnable_parameters()
    X = np.random.randn(3, 2, 1, 1)
    T = np.random.randn(3, 1)
    plain, _, _ = series.compute_gradients_for_training(X, T)
    wrapped, _, _ = series.compute_gradients_for_training([X], [T])
    for g, h in zip(plain, wrapped):
        np.testing.assert_allclose(g, h)
    with pytest.raises(DataMismatchError):
        series.compute_gradients_for_training(X, T[:2])


def test_lstm_sequence_gradients():
    np.random.seed(2)
    series = SeriesNetwork([
        L.SequenceInput('seq', 3),
        L.LSTM('lstm', 4, output_mode='last'),
        L.FullyConnected('fc', 2),
        L.MeanSquaredError('out'),
    ]).initialize_learnable_parameters('double')
    rng = np.random.RandomState(3)
    X = rng.randn(5, 3, 7)
    T = rng.randn(5, 2)
    assert series.predict(X).shape == (5, 2)
    assert series.activations(X, 'lstm').shape == (5, 4)

    gradients, _, _ = series.compute_gradients_for_training(X, T)
    lstm = series.layers[1]
    for k, param in enumerate(lstm.learnable_parameters):
        expected = numeric_gradient(lambda _: series.loss(series.predict(X), T), param.value, 1.0)
        np.testing.assert_allclose(gradients[k], expected, rtol=1e-5, atol=1e-8)


def test_invalid_series():
    with pytest.raises(InvalidGraphError):
        SeriesNetwork([L.ReLU('relu'), L.MeanSquaredError('out')])
    with pytest.raises(InvalidGraphError):
        SeriesNetwork([L.ImageInput('in', (1, 2, 2)), L.ReLU('relu')])
    with pytest.raises(InvalidGraphError):
        SeriesNetwork([L.ImageInput('in', (1, 2, 2)), L.Addition('add', 2), L.MeanSquaredError('out')])
    with pytest.raises(InvalidGraphError):
        SeriesNetwork([L.ImageInput('x', (1, 2, 2)), L.ReLU('x'), L.MeanSquaredError('out')])


def test_series_wrong_layer_size():
    with pytest.raises(WrongLayerSizeError) as info:
        SeriesNetwork([
            L.ImageInput('in', (1, 4, 4)),
            L.FullyConnected('fc', 3, input_size=5),
            L.MeanSquaredError('out'),
        ])
    assert info.value.layer_index == 1


def test_series_finalize_batch_normalization():
    series = SeriesNetwork([
        L.ImageInput('in', (3, 2, 2), normalization='none'),
        L.BatchNormalization('bn'),
        L.MeanSquaredError('out'),
    ]).initialize_learnable_parameters()
    X = np.random.RandomState(4).randn(6, 3, 2, 2) + 5
    series.finalize_network(X)
    np.testing.assert_allclose(series.layers[1].trained_mean, X.mean(axis=(0, 2, 3)))

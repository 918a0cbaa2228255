import copy
import os
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import dagnet.trainer as trainer_module
from dagnet import (ArrayDispatcher, DataMismatchError, LayerGraph, SeriesNetwork, Trainer, TrainingOptions,
                    assemble_network, load_learnables, save_learnables, train_network)
from dagnet import layers as L
from dagnet.trainer import mini_batch_accuracy, mini_batch_metrics, mini_batch_rmse


def make_blobs(n_samples=100, random_state=0):
    """Two well separated 2D blobs as (N, 2, 1, 1) images"""
    rng = np.random.RandomState(random_state)
    y = np.arange(n_samples) % 2
    centers = np.where(y[:, None] == 0, -2.0, 2.0)
    X = centers + rng.randn(n_samples, 2) * 0.5
    return X.reshape(n_samples, 2, 1, 1), y


def classifier_layers():
    return [
        L.ImageInput('in', (2, 1, 1)),
        L.FullyConnected('fc1', 8),
        L.ReLU('relu'),
        L.FullyConnected('fc2', 2),
        L.Softmax('softmax'),
        L.CrossEntropy('output'),
    ]


def bn_layers():
    return [
        L.ImageInput('in', (1, 2, 2), normalization='none'),
        L.Convolution2D('conv', 1, 2),
        L.BatchNormalization('bn'),
        L.ReLU('relu'),
        L.FullyConnected('fc', 2),
        L.Softmax('softmax'),
        L.CrossEntropy('output'),
    ]


def quiet_options(**kwargs):
    config = dict(verbose=False, execution_environment='cpu', precision='double')
    config.update(kwargs)
    return TrainingOptions(**config)


def test_default_options():
    options = TrainingOptions()
    assert options.solver == 'sgdm'
    assert options.squared_gradient_decay_factor == 0.9
    assert options.max_epochs == 30
    assert TrainingOptions(solver='adam').squared_gradient_decay_factor == 0.999
    assert 'adam' in repr(TrainingOptions(solver='adam'))


@pytest.mark.parametrize('kwargs', [
    {'max_epochs': 0},
    {'mini_batch_size': 2.5},
    {'solver': 'sgd'},
    {'momentum': 1.5},
    {'initial_learn_rate': 0},
    {'shuffle': 'always'},
    {'gradient_threshold': -1},
    {'batch_size': 32},
])
def test_invalid_options(kwargs):
    with pytest.raises(ValueError):
        TrainingOptions(**kwargs)


def test_options_from_yaml(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text("solver: adam\ngradient_threshold: .inf\nmax_epochs: 3\nshuffle: every-epoch\n")
    options = TrainingOptions.from_yaml(str(path))
    assert options.solver == 'adam'
    assert options.gradient_threshold == float('inf')
    assert options.max_epochs == 3
    assert options.initial_learn_rate == 0.01

    empty = tmp_path / 'empty.yaml'
    empty.write_text("")
    assert TrainingOptions.from_yaml(str(empty)).to_dict() == TrainingOptions().to_dict()

    listing = tmp_path / 'list.yaml'
    listing.write_text("- adam\n- sgdm\n")
    with pytest.raises(ValueError):
        TrainingOptions.from_yaml(str(listing))


def test_series_classifier_converges():
    np.random.seed(0)
    X, y = make_blobs(100)
    options = quiet_options(max_epochs=20, mini_batch_size=16, initial_learn_rate=0.1, shuffle='every-epoch')
    net, history = train_network(X, y, classifier_layers(), options)

    assert isinstance(net, SeriesNetwork)
    assert net.layers[-1].classes == ['0', '1']
    np.testing.assert_allclose(net.layers[0].average_image, X.mean(axis=0))
    assert len(history['loss']) == 20 * 7
    assert history['iteration'][-1] == 140
    assert history['epoch'][-1] == 20
    assert history['rmse'][0] is None

    X_test, y_test = make_blobs(50, random_state=1)
    predictions = net.predict(X_test).argmax(axis=1)
    assert np.mean(predictions == y_test) > 0.95
    assert np.mean(history['accuracy'][-7:]) > 95


def test_dag_regression_loss_decreases():
    np.random.seed(1)
    rng = np.random.RandomState(2)
    X = rng.randn(200, 4, 1, 1)
    y = X.reshape(200, 4) @ np.array([1.0, -2.0, 0.5, 1.0])

    graph = LayerGraph.from_layers([
        L.ImageInput('in', (4, 1, 1), normalization='none'),
        L.FullyConnected('fc1', 8),
        L.ReLU('relu'),
        L.FullyConnected('fc2', 4),
        L.Addition('add', 2),
        L.FullyConnected('head', 1),
        L.MeanSquaredError('out'),
    ])
    graph.add_layers(L.FullyConnected('skip', 4))
    graph.connect_layers('in', 'skip')
    graph.connect_layers('skip', 'add/in2')

    options = quiet_options(solver='adam', max_epochs=30, mini_batch_size=20, initial_learn_rate=0.01)
    net, history = train_network(X, y, graph, options)
    assert history['loss'][-1] < 0.1 * history['loss'][0]
    assert history['accuracy'][-1] is None
    assert history['rmse'][-1] < history['rmse'][0]
    assert net.predict(X).shape == (200, 1)


def test_target_count_must_match_outputs():
    X, y = make_blobs(20)
    with pytest.raises(DataMismatchError):
        train_network(X, [y, y], classifier_layers(), quiet_options(max_epochs=1))


def test_stop_ends_training_after_current_iteration():
    np.random.seed(2)
    X, y = make_blobs(40)
    net = assemble_network(classifier_layers())
    net.prepare_network_for_training('cpu')
    trainer = Trainer(quiet_options(max_epochs=5, mini_batch_size=10))
    dispatcher = ArrayDispatcher(X, y, 10)
    compute = net.compute_gradients_for_training

    def compute_and_stop(X, Y):
        trainer.stop()
        return compute(X, Y)

    net.compute_gradients_for_training = compute_and_stop
    trainer.train(net, dispatcher)
    assert trainer.history['iteration'] == [1]


def test_nan_loss_stops_training(capsys):
    X, y = make_blobs(20)
    net = assemble_network(classifier_layers())
    net.layers[1].weights.value[:] = np.nan
    net.prepare_network_for_training('cpu')
    trainer = Trainer(quiet_options(max_epochs=3, mini_batch_size=5))
    trainer.train(net, ArrayDispatcher(X, y, 5))
    assert len(trainer.history['loss']) == 1
    assert "WARNING: Training loss is NaN" in capsys.readouterr().out


def test_batch_normalization_is_finalized_after_training():
    np.random.seed(3)
    X, y = make_blobs(24)
    X = np.repeat(np.repeat(X[:, :1], 2, axis=2), 2, axis=3)
    net, _ = train_network(X, y, bn_layers(), quiet_options(max_epochs=2, mini_batch_size=10))
    bn = net.layers[2]
    assert bn.trained_mean is not None
    assert bn.num_finalized == 24 * 4
    assert not bn.is_training
    assert net.predict(X).shape == (24, 2)


def test_checkpoint_round_trip(tmp_path):
    np.random.seed(4)
    X, y = make_blobs(24)
    X = np.repeat(np.repeat(X[:, :1], 2, axis=2), 2, axis=3)
    net, _ = train_network(X, y, bn_layers(), quiet_options(max_epochs=2, mini_batch_size=10))
    path = str(tmp_path / 'weights.npz')
    save_learnables(net, path, verbose=False)

    fresh = SeriesNetwork(copy.deepcopy(bn_layers())).initialize_learnable_parameters('double')
    load_learnables(fresh, path, verbose=False)
    np.testing.assert_allclose(fresh.predict(X), net.predict(X))
    assert fresh.layers[2].num_finalized == net.layers[2].num_finalized

    other = SeriesNetwork(classifier_layers()).initialize_learnable_parameters('double')
    with pytest.raises(ValueError):
        load_learnables(other, path, verbose=False)


def test_checkpoints_written_every_epoch(tmp_path):
    X, y = make_blobs(20)
    checkpoint_dir = tmp_path / 'checkpoints'
    train_network(X, y, classifier_layers(),
                  quiet_options(max_epochs=2, mini_batch_size=10, checkpoint_path=str(checkpoint_dir)))
    assert sorted(os.listdir(checkpoint_dir)) == ['checkpoint_epoch_1.npz', 'checkpoint_epoch_2.npz']


def test_verbose_progress_table(capsys):
    X, y = make_blobs(20)
    options = TrainingOptions(max_epochs=1, mini_batch_size=5, verbose_frequency=2,
                              execution_environment='cpu', precision='double')
    train_network(X, y, classifier_layers(), options)
    out = capsys.readouterr().out
    assert "Training on single CPU." in out
    assert "Initializing input data normalization for 'in'." in out
    assert "Mini-batch Accuracy" in out
    # header, then iterations 1, 2 and 4
    rows = [line for line in out.splitlines() if line.startswith('|') and '=' not in line]
    assert len(rows) == 4


def test_gpu_request_falls_back_to_cpu(monkeypatch, capsys):
    monkeypatch.setattr(trainer_module, 'is_gpu_available', lambda: False)
    trainer = Trainer(TrainingOptions(execution_environment='gpu', verbose=False))
    assert trainer.execution_environment == 'cpu'
    assert "WARNING" in capsys.readouterr().out


def test_mini_batch_metrics():
    Y = np.array([[0.9, 0.1], [0.3, 0.7], [0.6, 0.4]])
    T = np.array([[1.0, 0.0], [1.0, 0.0], [1.0, 0.0]])
    assert mini_batch_accuracy(Y, T) == pytest.approx(200 / 3)
    assert mini_batch_rmse(np.array([[3.0], [4.0]]), np.zeros((2, 1))) == pytest.approx(np.sqrt(25 / 2))


def test_metrics_follow_each_output_head():
    Y = np.array([[0.9, 0.1], [0.2, 0.8]])
    T = np.array([[1.0, 0.0], [1.0, 0.0]])
    R = np.array([[3.0], [4.0]])
    accuracy, rmse = mini_batch_metrics([R, Y], [np.zeros((2, 1)), T], [False, True])
    assert accuracy == pytest.approx(50.0)
    assert rmse == pytest.approx(np.sqrt(25 / 2))
    assert mini_batch_metrics(Y, T, [True]) == (pytest.approx(50.0), None)
    assert mini_batch_metrics(R, np.zeros((2, 1)), [False])[0] is None


def test_mixed_heads_record_accuracy_and_rmse(capsys):
    np.random.seed(5)
    X, y = make_blobs(40)
    responses = X.reshape(40, 2).sum(axis=1)
    graph = LayerGraph.from_layers(classifier_layers())
    graph.add_layers(L.FullyConnected('response', 1), L.MeanSquaredError('response_out'))
    graph.connect_layers('relu', 'response')

    options = TrainingOptions(max_epochs=2, mini_batch_size=10, verbose_frequency=1,
                              execution_environment='cpu', precision='double')
    net, history = train_network(X, [y, responses], graph, options)
    assert all(a is not None for a in history['accuracy'])
    assert all(r is not None for r in history['rmse'])
    assert net.layers[net.output_layer_indices[0]].classes == ['0', '1']
    assert "Mini-batch Accuracy" in capsys.readouterr().out

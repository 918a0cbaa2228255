import os
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
from dagnet import ArrayDispatcher, DataMismatchError, ExecutionStrategy


def _batch_sizes(dispatcher):
    return [len(indices) for _, _, indices in dispatcher]


def test_truncate_and_discard_last():
    X = np.random.RandomState(0).randn(10, 1, 2, 2)
    y = np.arange(10) % 3
    truncate = ArrayDispatcher(X, y, mini_batch_size=4, end_of_epoch='truncateLast')
    assert _batch_sizes(truncate) == [4, 4, 2]
    assert len(truncate) == 3
    discard = ArrayDispatcher(X, y, mini_batch_size=4, end_of_epoch='discardLast')
    assert _batch_sizes(discard) == [4, 4]
    assert len(discard) == 2


def test_mini_batch_size_is_clamped():
    dispatcher = ArrayDispatcher(np.zeros((3, 2)), mini_batch_size=128)
    assert dispatcher.mini_batch_size == 3
    assert _batch_sizes(dispatcher) == [3]
    with pytest.raises(ValueError):
        ArrayDispatcher(np.zeros((3, 2)), mini_batch_size=0)


def test_labels_are_one_hot_encoded():
    X = np.zeros((4, 1, 1, 1))
    y = np.array(['cat', 'dog', 'cat', 'bird'])
    dispatcher = ArrayDispatcher(X, y, mini_batch_size=4, precision='single')
    assert dispatcher.class_names == ['bird', 'cat', 'dog']
    batch_X, batch_Y, indices = dispatcher.next()
    assert batch_X.dtype == np.float32 and batch_Y.dtype == np.float32
    np.testing.assert_array_equal(batch_Y, [[0, 1, 0], [0, 0, 1], [0, 1, 0], [1, 0, 0]])
    np.testing.assert_array_equal(indices, [0, 1, 2, 3])


def test_unknown_labels_are_rejected():
    dispatcher = ArrayDispatcher(np.zeros((2, 1)), np.array([0, 3]), classes=[0, 1, 2])
    with pytest.raises(DataMismatchError):
        dispatcher.next()


def test_responses_become_columns():
    dispatcher = ArrayDispatcher(np.zeros((5, 2)), np.linspace(0, 1, 5), mini_batch_size=5)
    _, Y, _ = dispatcher.next()
    assert Y.shape == (5, 1)
    assert dispatcher.class_names == []


def test_multiple_inputs_and_responses():
    X1, X2 = np.zeros((6, 1, 2, 2)), np.ones((6, 3))
    Y1, Y2 = np.arange(6) % 2, np.random.RandomState(1).randn(6, 2)
    dispatcher = ArrayDispatcher([X1, X2], [Y1, Y2], mini_batch_size=4)
    (b1, b2), (t1, t2), _ = dispatcher.next()
    assert b1.shape == (4, 1, 2, 2) and b2.shape == (4, 3)
    assert t1.shape == (4, 2) and t2.shape == (4, 2)
    np.testing.assert_allclose(t2, Y2[:4])


def test_observation_counts_must_match():
    with pytest.raises(DataMismatchError):
        ArrayDispatcher(np.zeros((5, 2)), np.zeros(4))
    with pytest.raises(DataMismatchError):
        ArrayDispatcher([np.zeros((5, 2)), np.zeros((6, 2))])


def test_shuffle_covers_every_observation():
    np.random.seed(3)
    X = np.arange(10.0).reshape(10, 1)
    dispatcher = ArrayDispatcher(X, mini_batch_size=3)
    dispatcher.shuffle()
    seen = np.concatenate([batch_X.ravel() for batch_X, _, _ in dispatcher])
    assert sorted(seen.tolist()) == list(range(10))
    assert seen.tolist() != list(range(10))


def test_next_after_epoch_end_raises():
    dispatcher = ArrayDispatcher(np.zeros((2, 1)), mini_batch_size=2)
    dispatcher.next()
    assert dispatcher.is_done
    with pytest.raises(RuntimeError):
        dispatcher.next()
    dispatcher.start()
    assert not dispatcher.is_done


def test_reorder_and_get_observations():
    X = np.arange(4.0).reshape(4, 1)
    dispatcher = ArrayDispatcher(X, np.array([0, 1, 0, 1]))
    dispatcher.reorder([3, 2, 1, 0])
    batch_X, batch_Y, indices = dispatcher.get_observations([0, 1])
    np.testing.assert_array_equal(batch_X.ravel(), [3.0, 2.0])
    np.testing.assert_array_equal(indices, [3, 2])
    np.testing.assert_array_equal(batch_Y, [[0, 1], [1, 0]])
    with pytest.raises(ValueError):
        dispatcher.reorder([0, 0, 1, 2])


def test_average_image_over_batches():
    X = np.random.RandomState(2).randn(7, 2, 3, 3)
    dispatcher = ArrayDispatcher(X, mini_batch_size=3)
    average = ExecutionStrategy(use_gpu=False).compute_accum_image(dispatcher)
    np.testing.assert_allclose(average, X.mean(axis=0))

    both = ArrayDispatcher([X, X * 2], mini_batch_size=3)
    average = ExecutionStrategy(use_gpu=False).compute_accum_image(both, input_index=1)
    np.testing.assert_allclose(average, 2 * X.mean(axis=0))

import math
import os
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
from dagnet import (GradientThresholder, NullSchedule, PiecewiseSchedule, RegularizerL2, SolverAdam,
                    SolverRMSProp, SolverSGDM, TrainingOptions, create_solver)
from dagnet.layers import LearnableParameter
from dagnet.schedules import create_schedule


def _params(*factors):
    return [LearnableParameter(np.ones(2), learn_rate_factor=f) for f in factors]


def test_sgdm_accumulates_velocity():
    solver = SolverSGDM(_params(1.0), momentum=0.9)
    gradient = np.full(2, 2.0)
    step = solver.calculate_update([gradient], 0.1)[0]
    np.testing.assert_allclose(step, -0.2)
    step = solver.calculate_update([gradient], 0.1)[0]
    np.testing.assert_allclose(step, -0.38)


def test_local_learn_rates_and_missing_gradients():
    solver = SolverSGDM(_params(2.0, 0.0, 1.0), momentum=0.0)
    steps = solver.calculate_update([np.ones(2), np.ones(2), None], 0.5)
    np.testing.assert_allclose(steps[0], -1.0)
    assert steps[1] is None
    assert steps[2] is None
    with pytest.raises(ValueError):
        solver.calculate_update([np.ones(2)], 0.5)


def test_adam_first_step_is_learn_rate():
    solver = SolverAdam(_params(1.0))
    step = solver.calculate_update([np.array([0.5, -3.0])], 0.01)[0]
    np.testing.assert_allclose(step, [-0.01, 0.01], rtol=1e-5)
    assert solver.num_updates == 1


def test_rmsprop_first_step():
    solver = SolverRMSProp(_params(1.0), decay=0.9)
    step = solver.calculate_update([np.array([1.0, -4.0])], 0.01)[0]
    np.testing.assert_allclose(step, [-0.01 / math.sqrt(0.1), 0.01 / math.sqrt(0.1)], rtol=1e-6)


def test_create_solver_from_options():
    params = _params(1.0)
    assert isinstance(create_solver(params, TrainingOptions(solver='sgdm', momentum=0.5)), SolverSGDM)
    adam = create_solver(params, TrainingOptions(solver='adam'))
    assert isinstance(adam, SolverAdam)
    assert adam.beta2 == 0.999
    rmsprop = create_solver(params, TrainingOptions(solver='rmsprop'))
    assert isinstance(rmsprop, SolverRMSProp)
    assert rmsprop.decay == 0.9


def test_l2_regularization():
    params = [LearnableParameter(np.array([1.0, 2.0]), l2_factor=1.0),
              LearnableParameter(np.array([3.0]), l2_factor=0.0),
              LearnableParameter(np.array([1.0]), learn_rate_factor=0.0)]
    regularizer = RegularizerL2(params, l2=0.1)
    assert regularizer.regularize_loss(0.0) == pytest.approx(0.5 * 0.1 * 5 + 0.5 * 0.1 * 1)

    gradients = regularizer.regularize_gradients([np.zeros(2), np.zeros(1), np.zeros(1)])
    np.testing.assert_allclose(gradients[0], [0.1, 0.2])
    np.testing.assert_allclose(gradients[1], [0.0])
    np.testing.assert_allclose(gradients[2], [0.0])
    assert regularizer.regularize_gradients([None, None, None]) == [None, None, None]


def test_l2norm_threshold():
    thresholder = GradientThresholder('l2norm', 1.0)
    gradients = thresholder.threshold_gradients([np.array([3.0, 4.0]), np.array([0.1]), None])
    np.testing.assert_allclose(gradients[0], [0.6, 0.8])
    np.testing.assert_allclose(gradients[1], [0.1])
    assert gradients[2] is None


def test_global_l2norm_threshold():
    thresholder = GradientThresholder('global-l2norm', 2.5)
    gradients = thresholder.threshold_gradients([np.array([3.0]), np.array([4.0])])
    np.testing.assert_allclose(gradients[0], [1.5])
    np.testing.assert_allclose(gradients[1], [2.0])


def test_absolute_value_threshold():
    thresholder = GradientThresholder('absolute-value', 0.5)
    original = np.array([-2.0, 0.25, 3.0])
    gradients = thresholder.threshold_gradients([original])
    np.testing.assert_allclose(gradients[0], [-0.5, 0.25, 0.5])
    np.testing.assert_allclose(original, [-2.0, 0.25, 3.0])


def test_threshold_validation():
    with pytest.raises(ValueError):
        GradientThresholder('max', 1.0)
    with pytest.raises(ValueError):
        GradientThresholder('l2norm', 0.0)
    gradient = np.array([100.0])
    assert GradientThresholder().threshold_gradients([gradient])[0] is gradient


def test_piecewise_schedule():
    schedule = PiecewiseSchedule(drop_factor=0.5, drop_period=2)
    rates = []
    learn_rate = 1.0
    for epoch in range(1, 7):
        learn_rate = schedule.update(learn_rate, epoch)
        rates.append(learn_rate)
    assert rates == [1.0, 0.5, 0.5, 0.25, 0.25, 0.125]
    assert NullSchedule().update(0.3, 10) == 0.3
    assert isinstance(create_schedule(TrainingOptions(learn_rate_schedule='piecewise')), PiecewiseSchedule)
    with pytest.raises(ValueError):
        PiecewiseSchedule(drop_factor=2.0)

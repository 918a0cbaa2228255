"""
Solvers turning gradients into parameter steps
"""
from __future__ import annotations
from typing import List, Sequence
import numpy as np

from .backend import get_array_module
from .layers.base import LearnableParameter


class Solver:
    """
    Base solver; one local learn rate per learnable parameter

    Args:
        learnable_parameters: Parameters in network order
    """

    def __init__(self, learnable_parameters: Sequence[LearnableParameter]):
        self.learnable_parameters: List[LearnableParameter] = list(learnable_parameters)
        self.local_learn_rates = [float(p.learn_rate_factor) for p in self.learnable_parameters]
        self.initialize_state()

    @property
    def num_learnable_parameters(self) -> int:
        return len(self.learnable_parameters)

    def initialize_state(self):
        pass

    def _active(self, i: int, gradient) -> bool:
        return self.local_learn_rates[i] != 0 and gradient is not None

    def calculate_update(self, gradients: Sequence, global_learn_rate: float) -> list:
        """
        Steps to add to each parameter

        Entries are None where the gradient is missing or the local learn rate is 0.
        """
        raise NotImplementedError


class SolverSGDM(Solver):
    """Stochastic gradient descent with momentum"""

    def __init__(self, learnable_parameters, momentum: float = 0.9):
        self.momentum = float(momentum)
        super().__init__(learnable_parameters)

    def initialize_state(self):
        self.velocity = [None] * self.num_learnable_parameters

    def calculate_update(self, gradients, global_learn_rate):
        if len(gradients) != self.num_learnable_parameters:
            raise ValueError(f"Expected {self.num_learnable_parameters} gradients, got {len(gradients)}")
        steps = [None] * self.num_learnable_parameters
        for i, gradient in enumerate(gradients):
            if not self._active(i, gradient):
                continue
            previous = self.velocity[i] if self.velocity[i] is not None else 0.0
            learn_rate = global_learn_rate * self.local_learn_rates[i]
            self.velocity[i] = self.momentum * previous - learn_rate * gradient
            steps[i] = self.velocity[i]
        return steps


class SolverAdam(Solver):
    """Adaptive moment estimation"""

    def __init__(self, learnable_parameters, beta1: float = 0.9, beta2: float = 0.999, epsilon: float = 1e-8):
        self.beta1 = float(beta1)
        self.beta2 = float(beta2)
        self.epsilon = float(epsilon)
        super().__init__(learnable_parameters)

    def initialize_state(self):
        self.gradient_moving_average = [0.0] * self.num_learnable_parameters
        self.squared_gradient_moving_average = [0.0] * self.num_learnable_parameters
        self.num_updates = 0

    def calculate_update(self, gradients, global_learn_rate):
        if len(gradients) != self.num_learnable_parameters:
            raise ValueError(f"Expected {self.num_learnable_parameters} gradients, got {len(gradients)}")
        self.num_updates += 1
        t = self.num_updates
        shrink = np.sqrt(1 - self.beta2 ** t) / (1 - self.beta1 ** t)
        steps = [None] * self.num_learnable_parameters
        for i, gradient in enumerate(gradients):
            if not self._active(i, gradient):
                continue
            xp = get_array_module(gradient)
            m = self.beta1 * self.gradient_moving_average[i] + (1 - self.beta1) * gradient
            v = self.beta2 * self.squared_gradient_moving_average[i] + (1 - self.beta2) * gradient ** 2
            self.gradient_moving_average[i] = m
            self.squared_gradient_moving_average[i] = v
            learn_rate = shrink * global_learn_rate * self.local_learn_rates[i]
            steps[i] = -learn_rate * (m / (xp.sqrt(v) + self.epsilon))
        return steps


class SolverRMSProp(Solver):
    """Root mean square propagation"""

    def __init__(self, learnable_parameters, decay: float = 0.9, epsilon: float = 1e-8):
        self.decay = float(decay)
        self.epsilon = float(epsilon)
        super().__init__(learnable_parameters)

    def initialize_state(self):
        self.squared_gradient_moving_average = [0.0] * self.num_learnable_parameters

    def calculate_update(self, gradients, global_learn_rate):
        if len(gradients) != self.num_learnable_parameters:
            raise ValueError(f"Expected {self.num_learnable_parameters} gradients, got {len(gradients)}")
        steps = [None] * self.num_learnable_parameters
        for i, gradient in enumerate(gradients):
            if not self._active(i, gradient):
                continue
            xp = get_array_module(gradient)
            v = self.decay * self.squared_gradient_moving_average[i] + (1 - self.decay) * gradient ** 2
            self.squared_gradient_moving_average[i] = v
            learn_rate = global_learn_rate * self.local_learn_rates[i]
            steps[i] = -learn_rate * (gradient / (xp.sqrt(v) + self.epsilon))
        return steps


def create_solver(learnable_parameters, options) -> Solver:
    """Build the solver named by options.solver"""
    name = options.solver.lower()
    if name == 'sgdm':
        return SolverSGDM(learnable_parameters, momentum=options.momentum)
    elif name == 'adam':
        return SolverAdam(learnable_parameters, beta1=options.gradient_decay_factor,
                          beta2=options.squared_gradient_decay_factor, epsilon=options.epsilon)
    elif name == 'rmsprop':
        return SolverRMSProp(learnable_parameters, decay=options.squared_gradient_decay_factor,
                             epsilon=options.epsilon)
    else:
        raise ValueError(f"Unknown solver: {options.solver}")

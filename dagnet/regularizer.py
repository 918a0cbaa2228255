"""
L2 weight regularization and gradient thresholding
"""
from typing import Sequence
import math

from .backend import get_array_module
from .layers.base import LearnableParameter


class RegularizerL2:
    """
    L2 penalty scaled per parameter by its l2_factor

    Args:
        learnable_parameters: Parameters in network order
        l2: Global L2 regularization factor
    """

    def __init__(self, learnable_parameters: Sequence[LearnableParameter], l2: float = 1e-4):
        self.learnable_parameters = list(learnable_parameters)
        self.global_l2_factor = float(l2)
        self.local_l2_factors = [float(p.l2_factor) for p in self.learnable_parameters]

    def regularize_loss(self, loss):
        regularized = loss
        for param, local in zip(self.learnable_parameters, self.local_l2_factors):
            factor = local * self.global_l2_factor
            if factor == 0:
                continue
            regularized = regularized + 0.5 * factor * float((param.value ** 2).sum())
        return regularized

    def regularize_gradients(self, gradients):
        regularized = list(gradients)
        for i, param in enumerate(self.learnable_parameters):
            if param.learn_rate_factor != 0 and regularized[i] is not None:
                factor = self.local_l2_factors[i] * self.global_l2_factor
                regularized[i] = factor * param.value + regularized[i]
        return regularized


class GradientThresholder:
    """
    Clip gradients before the solver sees them

    Args:
        method: 'l2norm' (per parameter), 'global-l2norm' or 'absolute-value'
        threshold: Norm or value bound; inf disables thresholding
    """

    METHODS = ('l2norm', 'global-l2norm', 'absolute-value')

    def __init__(self, method: str = 'l2norm', threshold: float = math.inf):
        if method not in self.METHODS:
            raise ValueError(f"Unknown gradient threshold method: {method}. Expected one of {self.METHODS}")
        if not threshold > 0:
            raise ValueError("Gradient threshold must be positive")
        self.method = method
        self.threshold = float(threshold)

    def threshold_gradients(self, gradients):
        if math.isinf(self.threshold):
            return list(gradients)
        thresholded = list(gradients)
        present = [i for i, g in enumerate(thresholded) if g is not None]

        if self.method == 'l2norm':
            for i in present:
                norm = float(get_array_module(thresholded[i]).sqrt((thresholded[i] ** 2).sum()))
                if norm > self.threshold:
                    thresholded[i] = thresholded[i] * (self.threshold / norm)
        elif self.method == 'global-l2norm':
            norm = math.sqrt(sum(float((thresholded[i] ** 2).sum()) for i in present))
            if norm > self.threshold:
                scale = self.threshold / norm
                for i in present:
                    thresholded[i] = thresholded[i] * scale
        else:
            for i in present:
                thresholded[i] = get_array_module(thresholded[i]).clip(thresholded[i], -self.threshold, self.threshold)
        return thresholded

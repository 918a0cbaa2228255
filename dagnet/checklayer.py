"""
Validity checks for layers, including finite-difference gradient checks
"""
import copy
from collections import namedtuple
from typing import Callable, List, Optional, Sequence
import numpy as np

from .backend import Precision

CheckResult = namedtuple('CheckResult', ['name', 'passed', 'message'])


def numeric_gradient(fcn: Callable, x: np.ndarray, dZ) -> np.ndarray:
    """
    Five-point finite-difference estimate of d(sum(fcn(x) * dZ))/dx

    x is perturbed in place and restored; fcn must read it on every call.
    """
    epsilon = np.finfo(np.float64).eps ** (1.0 / 3.0)
    largest = float(np.max(np.abs(x))) if x.size else 0.0
    h = largest * epsilon if largest > 0 else epsilon
    flat = x.reshape(-1)
    grad = np.zeros(x.size, dtype=np.float64)
    for i in range(flat.size):
        original = flat[i]
        values = []
        for step in (2 * h, h, -h, -2 * h):
            flat[i] = original + step
            values.append(_inner(fcn(x), dZ))
        flat[i] = original
        grad[i] = (-values[0] + 8 * values[1] - 8 * values[2] + values[3]) / (12 * h)
    return grad.reshape(x.shape)


def _inner(Z, dZ) -> float:
    if isinstance(Z, (list, tuple)):
        return sum(float(np.sum(z * dz)) for z, dz in zip(Z, dZ))
    return float(np.sum(Z * dZ))


def _as_list(X) -> list:
    return list(X) if isinstance(X, (list, tuple)) else [X]


def _close(actual, expected, rtol, atol) -> bool:
    return actual is not None and actual.shape == expected.shape and np.allclose(actual, expected, rtol=rtol, atol=atol)


def _prepare(layer, input_size, precision: Precision):
    layer = copy.deepcopy(layer)
    sizes = input_size if layer.num_inputs > 1 else [input_size]
    if not layer.has_size_determined:
        layer.infer_size(input_size)
    if not layer.is_valid_input_size(input_size):
        raise ValueError(f"Layer '{layer.name}' does not accept input size {input_size}")
    layer.initialize_learnable_parameters(precision)
    for param in layer.learnable_parameters:
        param.value = precision.cast(param.value)
    layer.prepare_for_training()
    return layer, [tuple(s) for s in sizes]


def _random_inputs(sizes, num_observations, precision, rng, sequence_length=None):
    steps = () if sequence_length is None else (int(sequence_length),)
    return [precision.cast(rng.standard_normal((num_observations,) + s + steps)) for s in sizes]


def _seeded(fcn, seed):
    # Stochastic layers (dropout) draw from the global NumPy generator
    def call(*args):
        np.random.seed(seed)
        return fcn(*args)
    return call


def check_layer(layer, input_size, num_observations: int = 2, sequence_length: Optional[int] = None, seed: int = 0,
                rtol: float = 1e-6, atol: float = 1e-6, verbose: bool = False) -> List[CheckResult]:
    """
    Check a layer's predict, forward and backward against its sizes, dtypes and numeric gradients

    Args:
        layer: Layer to check; it is copied, not modified
        input_size: Per-observation input size, or a list of sizes for layers with several inputs
        num_observations: Observations in the generated data
        sequence_length: Time steps of generated sequence data; None for non-sequence layers
        seed: Seed for the generated data
        rtol, atol: Tolerances of the gradient comparison
        verbose: Print one line per check

    Returns:
        List of CheckResult(name, passed, message)
    """
    results: List[CheckResult] = []

    def record(name, passed, message=''):
        results.append(CheckResult(name, bool(passed), message))
        if verbose:
            print(f"  {'PASSED' if passed else 'FAILED'}  {name}" + (f": {message}" if message else ''))

    rng = np.random.RandomState(seed)
    for precision_name in ('single', 'double'):
        precision = Precision(precision_name)
        checked, sizes = _prepare(layer, input_size, precision)
        inputs = _random_inputs(sizes, num_observations, precision, rng, sequence_length)
        X = inputs if checked.num_inputs > 1 else inputs[0]
        try:
            Z = checked.predict(X)
            wrong = [z.dtype for z in _as_list(Z) if z.dtype != precision.dtype]
            record(f'predict is consistent in type ({precision_name})', not wrong,
                   f'got {wrong}' if wrong else '')
            Z, memory = checked.forward(X)
            wrong = [z.dtype for z in _as_list(Z) if z.dtype != precision.dtype]
            record(f'forward is consistent in type ({precision_name})', not wrong,
                   f'got {wrong}' if wrong else '')
        except Exception as e:
            record(f'predict and forward do not error ({precision_name})', False, repr(e))
            return results

    checked, sizes = _prepare(layer, input_size, Precision('double'))
    inputs = _random_inputs(sizes, num_observations, Precision('double'), rng, sequence_length)
    X = inputs if checked.num_inputs > 1 else inputs[0]
    forward = _seeded(checked.forward, seed)
    Z, memory = forward(X)
    dZ = [rng.standard_normal(z.shape) for z in _as_list(Z)]
    dZ = dZ if isinstance(Z, (list, tuple)) else dZ[0]
    try:
        dX, dW = checked.backward(X, Z, dZ, memory)
    except Exception as e:
        record('backward does not error', False, repr(e))
        return results

    dX = _as_list(dX)
    sizes_ok = len(dX) == len(inputs) and all(d.shape == x.shape for d, x in zip(dX, inputs))
    record('backward is consistent in size (inputs)', sizes_ok)
    params = checked.learnable_parameters
    sizes_ok = len(dW) == len(params) and all(w.shape == p.value.shape for w, p in zip(dW, params))
    record('backward is consistent in size (learnables)', sizes_ok,
           '' if sizes_ok else f'expected {len(params)} gradients')

    for k, x in enumerate(inputs):
        expected = numeric_gradient(lambda _: forward(X)[0], x, dZ)
        record(f'gradient with respect to input {k} is numerically correct',
               _close(dX[k] if k < len(dX) else None, expected, rtol, atol))

    for name, param, grad in zip(checked.learnable_names, params, dW):
        param.value = np.array(param.value)
        expected = numeric_gradient(lambda _: forward(X)[0], param.value, dZ)
        record(f"gradient with respect to '{name}' is numerically correct", _close(grad, expected, rtol, atol))
    return results


def all_passed(results: Sequence[CheckResult]) -> bool:
    return all(r.passed for r in results)

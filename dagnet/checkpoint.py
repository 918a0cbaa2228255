"""
Saving and loading network learnables (NumPy .npz)
"""
import json
import numpy as np

from .backend import gather
from .layers.base import Finalizable


def _parameter_names(net) -> list:
    return [f'{layer.name}/{name}' for layer in net.layers for name in layer.learnable_names]


def save_learnables(net, filepath: str, verbose: bool = True):
    """
    Save every learnable parameter, and the population statistics of finalized layers

    Args:
        net: DAGNetwork or SeriesNetwork
        filepath: Path to save to (.npz file)
    """
    arrays = {f'param_{i}': gather(p.value) for i, p in enumerate(net.learnable_parameters)}
    for i, layer in enumerate(net.layers):
        if isinstance(layer, Finalizable) and getattr(layer, 'trained_mean', None) is not None:
            arrays[f'mean_{i}'] = gather(layer.trained_mean)
            arrays[f'variance_{i}'] = gather(layer.trained_variance)
            arrays[f'count_{i}'] = np.asarray(layer.num_finalized)

    np.savez(filepath, names=json.dumps(_parameter_names(net)), **arrays)
    if verbose:
        print(f"Network learnables saved to: {filepath}")


def load_learnables(net, filepath: str, verbose: bool = True):
    """
    Load learnables saved by save_learnables into a network with the same layers

    Raises:
        ValueError: if the saved parameter names do not match the network
    """
    with np.load(filepath, allow_pickle=False) as data:
        saved_names = json.loads(str(data['names']))
        current_names = _parameter_names(net)
        if saved_names != current_names:
            raise ValueError(f"Saved learnables do not match the network.\n"
                             f"Saved: {saved_names}\nCurrent: {current_names}")

        strategy = net.execution_strategy
        for i, param in enumerate(net.learnable_parameters):
            value = data[f'param_{i}']
            if param.value is not None and tuple(param.value.shape) != value.shape:
                raise ValueError(f"Parameter {saved_names[i]} has shape {value.shape}, "
                                 f"expected {tuple(param.value.shape)}")
            param.value = strategy.environment(value)

        for i, layer in enumerate(net.layers):
            if isinstance(layer, Finalizable) and f'mean_{i}' in data:
                layer.trained_mean = strategy.environment(data[f'mean_{i}'])
                layer.trained_variance = strategy.environment(data[f'variance_{i}'])
                layer.num_finalized = int(data[f'count_{i}'])

    if verbose:
        print(f"Network learnables loaded from: {filepath}")
    return net

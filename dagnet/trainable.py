"""
Behaviour shared by every trainable network: parameters, lifecycle and device placement
"""
from typing import List, Sequence, Union

from .backend import ExecutionStrategy, Precision
from .errors import DataMismatchError
from .layers.base import Finalizable, Layer, LearnableParameter


def wrap(X) -> list:
    if isinstance(X, (list, tuple)):
        return list(X)
    return [X]


class TrainableNetwork:
    """Base class; subclasses set self.layers and self.execution_strategy"""
    layers: List[Layer]
    execution_strategy: ExecutionStrategy

    @property
    def num_layers(self) -> int:
        return len(self.layers)

    @property
    def learnable_parameters(self) -> List[LearnableParameter]:
        return [p for layer in self.layers for p in layer.learnable_parameters]

    def names_to_indices(self, names: Sequence[str]) -> List[int]:
        layer_names = [layer.name for layer in self.layers]
        indices = []
        for name in names:
            if name not in layer_names:
                raise ValueError(f"No layer named '{name}'")
            indices.append(layer_names.index(name))
        return indices

    def predict(self, X):
        raise NotImplementedError

    def compute_gradients_for_training(self, X, Y):
        raise NotImplementedError

    def loss(self, Y, T) -> float:
        """Sum of the losses of every output layer"""
        Y = wrap(Y)
        T = wrap(T)
        output_layers = self.output_layer_indices
        if len(Y) != len(output_layers) or len(T) != len(Y):
            raise DataMismatchError(f"Expected {len(output_layers)} predictions and targets, "
                                    f"got {len(Y)} and {len(T)}")
        return sum(self.layers[k].forward_loss(y, t) for k, y, t in zip(output_layers, Y, T))

    def update_learnable_parameters(self, deltas):
        """Add each delta to its parameter; None leaves the parameter unchanged"""
        params = self.learnable_parameters
        if len(deltas) != len(params):
            raise ValueError(f"Expected {len(params)} deltas, got {len(deltas)}")
        for param, delta in zip(params, deltas):
            if delta is not None:
                param.value = param.value + delta
        return self

    def initialize_learnable_parameters(self, precision: Union[str, Precision] = 'double'):
        if isinstance(precision, str):
            precision = Precision(precision)
        for layer in self.layers:
            layer.initialize_learnable_parameters(precision)
        return self

    def prepare_network_for_training(self, execution_environment: str = 'cpu'):
        for layer in self.layers:
            layer.prepare_for_training()
        if execution_environment == 'gpu':
            return self.setup_network_for_gpu_training()
        return self.setup_network_for_host_training()

    def prepare_network_for_prediction(self):
        for layer in self.layers:
            layer.prepare_for_prediction()
        return self

    def setup_network_for_host_training(self):
        self.execution_strategy = ExecutionStrategy(use_gpu=False)
        for layer in self.layers:
            layer.move_to_host()
        return self

    def setup_network_for_gpu_training(self):
        self.execution_strategy = ExecutionStrategy(use_gpu=True)
        if self.execution_strategy.use_gpu:
            for layer in self.layers:
                layer.move_to_gpu()
        return self

    def setup_network_for_host_prediction(self):
        return self.setup_network_for_host_training().prepare_network_for_prediction()

    def setup_network_for_gpu_prediction(self):
        return self.setup_network_for_gpu_training().prepare_network_for_prediction()

    def reset_finalization(self):
        for layer in self.layers:
            if isinstance(layer, Finalizable):
                layer.reset_finalization()
        return self

"""
Exceptions raised by dagnet
Configuration and data errors are fatal; only out-of-memory is retried (see recovery.py)
"""


class DagNetError(Exception):
    """Base class for dagnet errors"""


class WrongLayerSizeError(DagNetError, ValueError):
    """A layer cannot accept the size of its input"""

    def __init__(self, layer_index, layer_name=None, input_size=None, reason=None):
        self.layer_index = layer_index
        self.layer_name = layer_name
        self.input_size = input_size
        message = f"Layer {layer_index}"
        if layer_name:
            message += f" ('{layer_name}')"
        message += " expects an input of a different size"
        if input_size is not None:
            message += f", got {input_size}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class CyclicGraphError(DagNetError, ValueError):
    """The layer graph has a cycle, so it has no topological order"""

    def __init__(self, layer_indices=()):
        self.layer_indices = list(layer_indices)
        super().__init__(f"Layer graph is not acyclic; layers on a cycle: {self.layer_indices}")


class InvalidGraphError(DagNetError, ValueError):
    """The layer graph is inconsistent (ports, names or connectivity)"""


class InvalidParameterSizeError(DagNetError, ValueError):
    """A learnable parameter value has the wrong shape"""


class DataMismatchError(DagNetError, ValueError):
    """Predictors and responses do not agree"""


class NotFinalizedError(DagNetError, RuntimeError):
    """A layer needs a finalize pass before it can predict"""

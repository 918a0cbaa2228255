"""
dagnet: directed acyclic graph neural networks on NumPy / CuPy
"""
from .backend import ExecutionStrategy, Precision, is_gpu_available
from .errors import (DagNetError, WrongLayerSizeError, CyclicGraphError, InvalidGraphError,
                     InvalidParameterSizeError, DataMismatchError, NotFinalizedError)
from .graph import LayerGraph
from .network import DAGNetwork, assemble_network
from .series import SeriesNetwork
from .solver import SolverSGDM, SolverAdam, SolverRMSProp, create_solver
from .regularizer import RegularizerL2, GradientThresholder
from .schedules import NullSchedule, PiecewiseSchedule
from .dispatch import DataDispatcher, ArrayDispatcher
from .options import TrainingOptions
from .trainer import Trainer, train_network
from .checkpoint import save_learnables, load_learnables
from .checklayer import check_layer
from . import api, layers

__version__ = '0.1.0'

__all__ = [
    'ExecutionStrategy', 'Precision', 'is_gpu_available',
    'DagNetError', 'WrongLayerSizeError', 'CyclicGraphError', 'InvalidGraphError',
    'InvalidParameterSizeError', 'DataMismatchError', 'NotFinalizedError',
    'LayerGraph', 'DAGNetwork', 'assemble_network', 'SeriesNetwork',
    'SolverSGDM', 'SolverAdam', 'SolverRMSProp', 'create_solver',
    'RegularizerL2', 'GradientThresholder', 'NullSchedule', 'PiecewiseSchedule',
    'DataDispatcher', 'ArrayDispatcher', 'TrainingOptions', 'Trainer', 'train_network',
    'save_learnables', 'load_learnables', 'check_layer',
    'api', 'layers',
]

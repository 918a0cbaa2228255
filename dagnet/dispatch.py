"""
Mini-batch dispatch for training and finalization
"""
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence, Tuple, Union
import numpy as np

from .backend import Precision
from .errors import DataMismatchError


class DataDispatcher(ABC):
    """
    Yields mini-batches of (X, Y, indices) until is_done

    Subclasses set num_observations, mini_batch_size, end_of_epoch and is_done.
    end_of_epoch is 'truncateLast' (keep the short final batch) or
    'discardLast' (drop it).
    """

    END_OF_EPOCH = ('truncateLast', 'discardLast')

    num_observations: int
    mini_batch_size: int
    end_of_epoch: str
    is_done: bool

    @abstractmethod
    def start(self):
        """Rewind to the first mini-batch"""

    @abstractmethod
    def next(self):
        """Return (X, Y, indices) for the current mini-batch and advance"""

    @abstractmethod
    def shuffle(self):
        """Reorder the observations for the following epochs"""

    def __iter__(self):
        self.start()
        while not self.is_done:
            yield self.next()

    def __len__(self) -> int:
        """Number of mini-batches per epoch"""
        if self.mini_batch_size == 0:
            return 0
        full, rest = divmod(self.num_observations, self.mini_batch_size)
        if rest and self.end_of_epoch == 'truncateLast':
            full += 1
        return full


def _one_hot(labels: np.ndarray, classes: np.ndarray) -> np.ndarray:
    lookup = {c: k for k, c in enumerate(classes.tolist())}
    unknown = [l for l in np.unique(labels).tolist() if l not in lookup]
    if unknown:
        raise DataMismatchError(f"Labels {unknown} are not among the classes {classes.tolist()}")
    encoded = np.zeros((len(labels), len(classes)))
    encoded[np.arange(len(labels)), [lookup[l] for l in labels.tolist()]] = 1
    return encoded


def _is_label_array(Y: np.ndarray) -> bool:
    return Y.ndim == 1 and (np.issubdtype(Y.dtype, np.integer) or Y.dtype.kind in 'bUSO')


class ArrayDispatcher(DataDispatcher):
    """
    In-memory dispatcher over arrays with observations along the first axis

    Args:
        X: Array, or list of arrays for networks with several inputs
        Y: Class labels (1-D integer or string array, one-hot encoded on dispatch),
            a response array, a list of those for several outputs, or None
        mini_batch_size: Observations per mini-batch, clamped to the number of observations
        end_of_epoch: 'truncateLast' or 'discardLast'
        precision: 'single', 'double' or a Precision
        classes: Class names for label targets; defaults to the sorted unique labels
    """

    def __init__(self, X, Y=None, mini_batch_size: int = 128, end_of_epoch: str = 'truncateLast',
                 precision: Union[str, Precision] = 'double', classes: Optional[Sequence] = None):
        if end_of_epoch not in self.END_OF_EPOCH:
            raise ValueError(f"end_of_epoch should be one of {self.END_OF_EPOCH}, got '{end_of_epoch}'")
        if int(mini_batch_size) < 1:
            raise ValueError("mini_batch_size must be a positive integer")
        self.precision = Precision(precision) if isinstance(precision, str) else precision
        self.end_of_epoch = end_of_epoch
        self._multiple_inputs = isinstance(X, (list, tuple))
        self.data: List[np.ndarray] = [np.asarray(x) for x in (X if self._multiple_inputs else [X])]

        self._multiple_responses = isinstance(Y, (list, tuple))
        responses = [] if Y is None else (Y if self._multiple_responses else [Y])
        self.responses: List[np.ndarray] = [np.asarray(y) for y in responses]

        counts = {len(x) for x in self.data} | {len(y) for y in self.responses}
        if len(counts) > 1:
            raise DataMismatchError(f"Inputs and responses have different numbers of observations: {sorted(counts)}")
        self.num_observations = counts.pop() if counts else 0

        self.classes: List[Optional[np.ndarray]] = []
        for y in self.responses:
            if _is_label_array(y):
                self.classes.append(np.asarray(classes) if classes is not None else np.unique(y))
            else:
                self.classes.append(None)

        self.mini_batch_size = min(int(mini_batch_size), self.num_observations)
        self.ordered_indices = np.arange(self.num_observations)
        self.start()

    @property
    def class_names(self) -> list:
        for classes in self.classes:
            if classes is not None:
                return classes.tolist()
        return []

    def start(self):
        self._start = 0
        self.is_done = self.num_observations == 0 or (
            self.end_of_epoch == 'discardLast' and self.num_observations < self.mini_batch_size)

    def shuffle(self):
        self.ordered_indices = np.random.permutation(self.num_observations)

    def reorder(self, indices):
        indices = np.asarray(indices, dtype=np.int64)
        if sorted(indices.tolist()) != list(range(self.num_observations)):
            raise ValueError("reorder expects a permutation of the observation indices")
        self.ordered_indices = indices

    def _read(self, indices: np.ndarray) -> Tuple:
        X = [self.precision.cast(x[indices]) for x in self.data]
        Y = []
        for y, classes in zip(self.responses, self.classes):
            if classes is not None:
                Y.append(self.precision.cast(_one_hot(y[indices], classes)))
            else:
                response = y[indices]
                if response.ndim == 1:
                    response = response.reshape(-1, 1)
                Y.append(self.precision.cast(response))
        X = X if self._multiple_inputs else X[0]
        if not self.responses:
            Y = None
        elif not self._multiple_responses:
            Y = Y[0]
        return X, Y

    def next(self):
        if self.is_done:
            raise RuntimeError("The dispatcher is at the end of the epoch; call start()")
        end = min(self._start + self.mini_batch_size, self.num_observations)
        indices = self.ordered_indices[self._start:end]
        X, Y = self._read(indices)

        self._start = end
        remaining = self.num_observations - end
        if remaining == 0 or (self.end_of_epoch == 'discardLast' and remaining < self.mini_batch_size):
            self.is_done = True
        return X, Y, indices

    def get_observations(self, indices):
        indices = self.ordered_indices[np.asarray(indices, dtype=np.int64)]
        X, Y = self._read(indices)
        return X, Y, indices

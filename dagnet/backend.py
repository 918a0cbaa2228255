"""
Execution strategy for host (NumPy) and GPU (CuPy) computation
Decides where tensors live; the network engine only calls environment/gather
"""
# Try to import CuPy
try:
    import cupy as cp
    HAS_CUPY = True
    GPU_AVAILABLE = cp.cuda.is_available()
except ImportError:
    HAS_CUPY = False
    GPU_AVAILABLE = False
    cp = None

import numpy as np


class ExecutionStrategy:
    """Places tensors on the host or on a GPU"""

    def __init__(self, use_gpu=None, verbose=False):
        """
        Initialize execution strategy

        Args:
            use_gpu: True to force the GPU, False to force the host, None for auto-detect
            verbose: Print the selected device
        """
        if use_gpu is None:
            self.use_gpu = GPU_AVAILABLE
        else:
            if use_gpu and not GPU_AVAILABLE:
                print("WARNING: GPU requested but CuPy not available or no CUDA device found. Falling back to host.")
                self.use_gpu = False
            else:
                self.use_gpu = use_gpu

        if self.use_gpu:
            self.xp = cp
            self.device = 'gpu'
            if verbose:
                print(f"Using CuPy execution (GPU) - Device: {cp.cuda.Device().compute_capability}")
        else:
            self.xp = np
            self.device = 'host'
            if verbose:
                print("Using NumPy execution (host)")

    def environment(self, data):
        """Move a tensor (or a list of tensors) to the current device"""
        if isinstance(data, (list, tuple)):
            return [self.environment(x) for x in data]
        if data is None:
            return None
        if self.use_gpu:
            return cp.asarray(data)
        return gather(data)

    def gather(self, data):
        """Move a tensor (or a list of tensors) to the host"""
        return gather(data)

    def compute_accum_image(self, dispatcher, input_index=0):
        """
        Average image over every observation a dispatcher yields

        Args:
            dispatcher: DataDispatcher; it is restarted and left at the end of an epoch
            input_index: Which input to average when the dispatcher yields several

        Returns:
            Per-observation mean with shape (C, H, W), on the host
        """
        accum = None
        count = 0
        dispatcher.start()
        while not dispatcher.is_done:
            X, _, _ = dispatcher.next()
            if isinstance(X, (list, tuple)):
                X = X[input_index]
            X = self.environment(X)
            batch_sum = X.sum(axis=0, dtype=self.xp.float64)
            accum = batch_sum if accum is None else accum + batch_sum
            count += X.shape[0]
        if count == 0:
            raise ValueError("Cannot compute an average image from an empty dispatcher")
        return gather(accum / count)


def gather(data):
    """Move a tensor (or a list of tensors) to the host, leaving host data untouched"""
    if isinstance(data, (list, tuple)):
        return [gather(x) for x in data]
    if HAS_CUPY and isinstance(data, cp.ndarray):
        return cp.asnumpy(data)
    return data


def get_array_module(array):
    """Get the array module (numpy or cupy) for given array"""
    if HAS_CUPY:
        return cp.get_array_module(array)
    return np


class Precision:
    """Floating point precision used for learnables and data"""

    _TYPES = {'single': np.float32, 'double': np.float64}

    def __init__(self, name='double'):
        if name not in self._TYPES:
            raise ValueError(f"Unknown precision: {name}. Expected 'single' or 'double'.")
        self.name = name
        self.dtype = self._TYPES[name]

    def cast(self, data):
        xp = get_array_module(data)
        return xp.asarray(data, dtype=self.dtype)

    def zeros(self, shape):
        return np.zeros(shape, dtype=self.dtype)

    def __repr__(self):
        return f"Precision('{self.name}')"


def is_gpu_available():
    """Check if a GPU is available"""
    return GPU_AVAILABLE

"""
Staged recovery from GPU out-of-memory errors
"""
from typing import Callable, Sequence

# CuPy's OutOfMemoryError subclasses MemoryError
OUT_OF_MEMORY_ERRORS = (MemoryError,)

_warned_low_memory = False


def low_memory_one_time_warning():
    """Print the low-memory warning the first time it is needed"""
    global _warned_low_memory
    if not _warned_low_memory:
        print("WARNING: GPU low on memory. Moving buffers to host memory, performance may be degraded.")
        _warned_low_memory = True


def reset_low_memory_warning():
    global _warned_low_memory
    _warned_low_memory = False


def execute_with_staged_oom_recovery(compute: Callable, recoveries: Sequence[Callable]):
    """
    Run compute(), trying each recovery in turn whenever it runs out of memory

    Args:
        compute: Zero-argument callable doing the work
        recoveries: Callables ordered from least to most invasive; each frees
            device memory before compute() is retried

    Returns:
        Whatever compute() returns

    Raises:
        MemoryError: if compute() still fails after every recovery ran
    """
    attempt = 0
    while True:
        try:
            return compute()
        except OUT_OF_MEMORY_ERRORS:
            if attempt >= len(recoveries):
                raise
            low_memory_one_time_warning()
            recoveries[attempt]()
            attempt += 1

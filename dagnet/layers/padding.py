"""
Padding helpers shared by convolution and pooling layers
Padding is always stored as (top, bottom, left, right)
"""
import math
from typing import Sequence, Tuple, Union

PaddingSpec = Union[int, str, Sequence[int]]


def pair(value) -> Tuple[int, int]:
    """Expand an int or a 2-sequence to (height, width)"""
    if isinstance(value, int):
        return (value, value)
    value = tuple(int(v) for v in value)
    if len(value) != 2:
        raise ValueError(f"Expected an int or a pair, got {value}")
    return value


def normalize_padding(padding: PaddingSpec):
    """
    Convert a user padding specification to (top, bottom, left, right)

    Returns 'same' unchanged; it is resolved once the input size is known.
    """
    if isinstance(padding, str):
        if padding != 'same':
            raise ValueError(f"Unknown padding: '{padding}'. Use 'same' or explicit sizes.")
        return 'same'
    if isinstance(padding, int):
        values = (padding,) * 4
    else:
        values = tuple(int(p) for p in padding)
        if len(values) == 2:
            values = (values[0], values[0], values[1], values[1])
    if len(values) != 4 or any(p < 0 for p in values):
        raise ValueError(f"Padding must be non-negative and have 1, 2 or 4 elements, got {padding}")
    return values


def calculate_same_padding(filter_size, stride, input_size) -> Tuple[int, int, int, int]:
    """
    Padding that makes the output size equal ceil(input_size / stride)

    Args:
        filter_size: (height, width) of the filter or pooling region
        stride: (vertical, horizontal) stride
        input_size: (height, width) of the input

    Returns:
        (top, bottom, left, right); the extra row/column goes to the bottom/right
    """
    padding = []
    for k, s, n in zip(filter_size, stride, input_size):
        out = math.ceil(n / s)
        total = max((out - 1) * s + k - n, 0)
        padding.extend([total // 2, total - total // 2])
    return tuple(padding)


def pad_spatial(xp, X, padding, value=0.0):
    top, bottom, left, right = padding
    if not any(padding):
        return X
    return xp.pad(X, ((0, 0), (0, 0), (top, bottom), (left, right)),
                  mode='constant', constant_values=value)


def unpad_spatial(X, padding):
    top, bottom, left, right = padding
    H, W = X.shape[2], X.shape[3]
    return X[:, :, top:H - bottom, left:W - right]


def output_spatial_size(input_hw, window, stride, padding) -> Tuple[int, int]:
    top, bottom, left, right = padding
    h = (input_hw[0] + top + bottom - window[0]) // stride[0] + 1
    w = (input_hw[1] + left + right - window[1]) // stride[1] + 1
    return h, w

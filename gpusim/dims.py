import math
import operator
from typing import NamedTuple

import torch

from .errors import InvalidLaunchConfig


class Dim3(NamedTuple):
    x: int = 1
    y: int = 1
    z: int = 1

    @property
    def volume(self) -> int:
        return self.x * self.y * self.z


def to_dim3(value: "int | tuple | Dim3", name: str = "dims") -> Dim3:
    if isinstance(value, Dim3):
        dims = tuple(value)
    elif isinstance(value, int):
        dims = (value,)
    else:
        dims = tuple(value)

    if not 1 <= len(dims) <= 3:
        raise InvalidLaunchConfig(f"{name} must have 1 to 3 dimensions, got {value!r}")

    for d in dims:
        if not isinstance(d, int) or isinstance(d, bool) or d < 1:
            raise InvalidLaunchConfig(f"{name} must be positive integers, got {value!r}")

    return Dim3(*dims)


def normalize_shape(shape: "int | tuple") -> tuple[int, ...]:
    if isinstance(shape, int):
        shape = (shape,)
    shape = tuple(operator.index(s) for s in shape)
    if not shape or any(s < 1 for s in shape):
        raise ValueError(f"shape must be non-empty with positive extents, got {shape}")
    return shape


def contiguous_strides(shape: tuple[int, ...]) -> tuple[int, ...]:
    strides = []
    step = 1
    for extent in reversed(shape):
        strides.append(step)
        step *= extent
    return tuple(reversed(strides))


def flat_index(index, shape: tuple[int, ...], strides: tuple[int, ...]) -> int:
    if not isinstance(index, tuple):
        index = (index,)
    if len(index) != len(shape):
        raise IndexError(f"expected {len(shape)} indices, got {len(index)}")

    flat = 0
    for i, extent, stride in zip(index, shape, strides):
        i = operator.index(i)
        if not 0 <= i < extent:
            raise IndexError(f"index {i} out of range for extent {extent}")
        flat += i * stride
    return flat


def dtype_itemsize(dtype: torch.dtype) -> int:
    return torch.empty((), dtype=dtype).element_size()


def numel(shape: tuple[int, ...]) -> int:
    return math.prod(shape)

"""
Helpers for turning flat model buffers into nested Python lists.

The model collaborator hands back every output as a flat buffer plus a
shape.  Postprocessors work on nested lists instead, so everything goes
through :func:`reshape` first.
"""

from __future__ import annotations

from itertools import product
from math import prod
from typing import Any, List, Sequence, Tuple, TypeVar

from .errors import ShapeMismatchError

T = TypeVar("T")


def _empty(dims: Sequence[int]) -> List[Any]:
    if len(dims) == 1 or dims[0] == 0:
        return []
    return [_empty(dims[1:]) for _ in range(dims[0])]


def reshape(data: Sequence[T], dims: Sequence[int]) -> List[Any]:
    """
    Reshape a flat buffer into nested lists, outermost dimension first.

    Dimensions are folded from the innermost to the outermost: each pass
    regroups the current sequence into groups of exactly ``dims[i]``
    elements.  The last dimension varies fastest (row-major).  A zero-sized
    dimension yields empty lists below it, e.g. ``[2, 0]`` -> ``[[], []]``.

    Raises ShapeMismatchError when ``prod(dims) != len(data)``.
    """
    dims = [int(d) for d in dims]
    if not dims or prod(dims) != len(data):
        raise ShapeMismatchError.for_shape(len(data), dims)
    if 0 in dims:
        return _empty(dims)

    reshaped: List[Any] = list(data)
    for size in reversed(dims):
        groups: List[List[Any]] = [[]]
        for val in reshaped:
            last = groups[-1]
            if len(last) < size:
                last.append(val)
            else:
                groups.append([val])
        reshaped = groups

    # the outermost pass leaves a single wrapping group
    return reshaped[0]


def cartesian_product(*sequences: Sequence[T]) -> List[Tuple[T, ...]]:
    """Every combination of one element per sequence, first sequence slowest."""
    return list(product(*sequences))


def index_of(seq: Sequence[T], value: T) -> int:
    """First position of ``value`` in ``seq``, or -1 when absent."""
    try:
        return list(seq).index(value)
    except ValueError:
        return -1

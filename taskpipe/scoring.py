from __future__ import annotations

from typing import Iterable, List, Optional, Sequence

import numpy as np

from .pipeline_types import ScoredCandidate


def softmax(values: Sequence[float]) -> List[float]:
    """
    Exponentially normalise ``values`` into a probability distribution.

    The max is subtracted before exponentiating so large logits do not
    overflow.
    """
    arr = np.asarray(values, dtype="float64")
    if arr.size == 0:
        return []
    shifted = np.exp(arr - arr.max())
    return (shifted / shifted.sum()).tolist()


def scored_candidates(values: Iterable[float]) -> List[ScoredCandidate]:
    """Pair every value with its original position."""
    return [ScoredCandidate(value=float(v), index=i) for i, v in enumerate(values)]


def top_k(scored: Iterable[ScoredCandidate], k: Optional[int]) -> List[ScoredCandidate]:
    """
    Return the ``k`` highest candidates, descending by value.

    ``sorted`` is stable, so equal values keep their original order.
    ``k=None`` returns every candidate.
    """
    ranked = sorted(scored, key=lambda c: -c.value)
    if k is None:
        return ranked
    return ranked[: max(int(k), 0)]

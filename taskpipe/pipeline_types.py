"""Typed containers shared across pipeline modules."""

from __future__ import annotations

from dataclasses import dataclass
from math import prod
from enum import Enum
from typing import Dict, Iterator, Mapping, Optional, Sequence, Tuple

from .errors import ShapeMismatchError


@dataclass(frozen=True)
class RawTensor:
    """Flat numeric buffer plus its shape, as handed back by the model."""

    data: Tuple[float, ...]
    dims: Tuple[int, ...]

    def __post_init__(self) -> None:
        if not self.dims or prod(self.dims) != len(self.data):
            raise ShapeMismatchError.for_shape(len(self.data), self.dims)

    @classmethod
    def from_values(cls, data: Sequence[float], dims: Sequence[int]) -> "RawTensor":
        return cls(data=tuple(data), dims=tuple(int(d) for d in dims))


class RawModelOutput(Mapping[str, RawTensor]):
    """
    Named raw tensors returned by a forward pass.

    Supports both ``output["logits"]`` and ``output.logits`` access.
    """

    def __init__(self, tensors: Mapping[str, RawTensor]):
        self._tensors: Dict[str, RawTensor] = dict(tensors)

    def __getitem__(self, name: str) -> RawTensor:
        return self._tensors[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._tensors)

    def __len__(self) -> int:
        return len(self._tensors)

    def __getattr__(self, name: str) -> RawTensor:
        try:
            return self.__dict__["_tensors"][name]
        except KeyError:
            raise AttributeError(name) from None

    def __repr__(self) -> str:
        shapes = ", ".join(f"{k}={v.dims}" for k, v in self._tensors.items())
        return f"RawModelOutput({shapes})"


@dataclass(frozen=True)
class ScoredCandidate:
    """A probability-like value and the position it came from."""

    value: float
    index: int


@dataclass(frozen=True)
class AnswerSpan:
    """Inclusive token span proposed as an extractive answer."""

    start: int
    end: int
    score: float


class PostprocessorKind(str, Enum):
    TEXT_CLASSIFICATION = "text-classification"
    QUESTION_ANSWERING = "question-answering"
    FILL_MASK = "fill-mask"
    TEXT2TEXT_GENERATION = "text2text-generation"
    TEXT_GENERATION = "text-generation"


class ModelKind(str, Enum):
    SEQUENCE_CLASSIFICATION = "sequence-classification"
    QUESTION_ANSWERING = "question-answering"
    MASKED_LM = "masked-lm"
    SEQ2SEQ_LM = "seq2seq-lm"
    CAUSAL_LM = "causal-lm"


@dataclass(frozen=True)
class TaskConfig:
    """
    Static description of a supported task.

    ``default_models`` is keyed by sub-variant (e.g. ``"en_to_de"`` for
    translation); tasks without variants use the ``"default"`` key.
    """

    postprocessor: PostprocessorKind
    model_kind: ModelKind
    default_models: Mapping[str, str]
    modality: str = "text"
    result_key: Optional[str] = None

    @property
    def variants(self) -> Tuple[str, ...]:
        return tuple(k for k in self.default_models if k != "default")

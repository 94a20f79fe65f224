"""
Task pipelines: tokenize -> infer -> decode.

Every pipeline owns a tokenizer handle, a model handle and the task name it
was resolved for.  :class:`Pipeline` implements the shared tokenize/infer
step; the subclasses turn raw model tensors into task-shaped results:

* TextClassificationPipeline   -> {label, score}
* QuestionAnsweringPipeline    -> {answer, score}
* FillMaskPipeline             -> {score, token, token_str, sequence}
* Text2TextGenerationPipeline  -> {<result_key>: text}
* TextGenerationPipeline       -> {generated_text}

Pipelines are awaited: ``await pipe(inputs, **options)``.  Nothing here
retries; a tokenizer or model failure aborts the whole call.
"""

from __future__ import annotations

from typing import Any, Dict, List, Sequence, Tuple, Union

from loguru import logger

from .config import (
    ClassificationOptions,
    FillMaskOptions,
    GenerationOptions,
    QuestionAnsweringOptions,
)
from .errors import InvalidInputError, MissingMaskTokenError, NoAnswerFoundError, ShapeMismatchError
from .pipeline_types import AnswerSpan, RawModelOutput, RawTensor, ScoredCandidate
from .scoring import scored_candidates, softmax, top_k
from .tensor_utils import cartesian_product, index_of, reshape

TextInput = Union[str, Sequence[str]]


def _is_batch(texts: TextInput) -> bool:
    return not isinstance(texts, str)


def _as_text_batch(texts: TextInput) -> List[str]:
    return [texts] if isinstance(texts, str) else list(texts)


def _as_id_batch(ids: Any) -> List[List[int]]:
    """Tokenizers return a flat id list for a single text; normalise to a batch."""
    if ids and isinstance(ids[0], int):
        return [list(ids)]
    return [list(x) for x in ids]


def _batch_rows(tensor: RawTensor, batch_size: int, name: str) -> List[Any]:
    """Reshape ``tensor``, requiring exactly one leading row per input."""
    if not tensor.dims or tensor.dims[0] != batch_size:
        raise ShapeMismatchError(
            f"model returned {name} of shape {tensor.dims} for {batch_size} inputs"
        )
    return reshape(tensor.data, tensor.dims)


def _check_generations(outputs: Sequence[Any], batch_size: int) -> None:
    if len(outputs) != batch_size:
        raise ShapeMismatchError(
            f"model returned generations for {len(outputs)} of {batch_size} inputs"
        )


class Pipeline:
    """Base pipeline: owns the collaborators and runs tokenize -> infer."""

    def __init__(self, tokenizer, model, task: str):
        self.tokenizer = tokenizer
        self.model = model
        self.task = task

    def __repr__(self) -> str:
        return f"{type(self).__name__}(task={self.task!r})"

    async def infer(self, texts: TextInput) -> Tuple[Dict[str, Any], RawModelOutput]:
        """
        Tokenize with padding and truncation, then await the model.

        Returns the tokenized inputs alongside the raw output, since several
        postprocessors need the token ids for index arithmetic.
        """
        inputs = self.tokenizer(texts, padding=True, truncation=True)
        outputs = await self.model(inputs)
        return inputs, outputs

    async def __call__(self, texts: TextInput, **options: Any):
        inputs, outputs = await self.infer(texts)
        return inputs, outputs


class TextClassificationPipeline(Pipeline):

    async def __call__(self, texts: TextInput, **options: Any):
        opts = ClassificationOptions(**options)
        _, outputs = await self.infer(texts)

        logits = _batch_rows(outputs.logits, len(_as_text_batch(texts)), "logits")
        id2label = self.model.config.id2label

        results: List[Any] = []
        for row in logits:
            best = top_k(scored_candidates(softmax(row)), opts.topk)
            records = [{"label": id2label[c.index], "score": c.value} for c in best]
            if opts.topk == 1:
                results.extend(records)
            else:
                results.append(records)

        logger.debug("Classified {} inputs (topk={})", len(logits), opts.topk)
        if _is_batch(texts):
            return results
        return results[0]


class QuestionAnsweringPipeline(Pipeline):
    """
    Extractive question answering over a single (question, context) pair.

    Span selection: softmax start and end logits over the whole sequence,
    keep positions after the first separator (the context side), pair every
    start with every end, drop pairs with start > end and rank the rest by
    ``p_start * p_end``.
    """

    async def __call__(self, question: str, context: str, **options: Any):
        opts = QuestionAnsweringOptions(**options)
        inputs = self.tokenizer(question, text_pair=context)
        outputs = await self.model(inputs)

        batch_ids = _as_id_batch(inputs["input_ids"])
        start_logits = _batch_rows(outputs.start_logits, len(batch_ids), "start_logits")
        end_logits = _batch_rows(outputs.end_logits, len(batch_ids), "end_logits")

        answers: List[Dict[str, Any]] = []
        for ids, starts, ends in zip(batch_ids, start_logits, end_logits):
            spans = self.rank_spans(ids, starts, ends)
            for span in spans[: opts.topk]:
                answer = self.tokenizer.decode(
                    ids[span.start : span.end + 1], skip_special_tokens=True
                )
                answers.append({"answer": answer, "score": span.score})

        if opts.topk == 1:
            if not answers:
                logger.warning("No valid answer span for question: {!r}", question)
                raise NoAnswerFoundError(
                    f"No answer span with start <= end found for question {question!r}"
                )
            return answers[0]
        return answers

    def rank_spans(
        self,
        ids: Sequence[int],
        start_logits: Sequence[float],
        end_logits: Sequence[float],
    ) -> List[AnswerSpan]:
        sep_index = index_of(ids, self.tokenizer.sep_token_id)

        starts = [c for c in scored_candidates(softmax(start_logits)) if c.index > sep_index]
        ends = [c for c in scored_candidates(softmax(end_logits)) if c.index > sep_index]

        spans = [
            AnswerSpan(start=s.index, end=e.index, score=s.value * e.value)
            for s, e in cartesian_product(starts, ends)
            if s.index <= e.index
        ]
        spans.sort(key=lambda span: -span.score)
        logger.debug("{} candidate spans after separator index {}", len(spans), sep_index)
        return spans


class FillMaskPipeline(Pipeline):

    async def __call__(self, texts: TextInput, **options: Any):
        opts = FillMaskOptions(**options)
        inputs, outputs = await self.infer(texts)

        batch_ids = _as_id_batch(inputs["input_ids"])
        mask_id = self.tokenizer.mask_token_id
        mask_positions = [index_of(ids, mask_id) for ids in batch_ids]
        for i, pos in enumerate(mask_positions):
            if pos < 0:
                raise MissingMaskTokenError(f"Input {i} does not contain the mask token")

        logits = _batch_rows(outputs.logits, len(batch_ids), "logits")
        vocab = self.tokenizer.vocab

        results: List[List[Dict[str, Any]]] = []
        for ids, pos, item_logits in zip(batch_ids, mask_positions, logits):
            best = top_k(scored_candidates(softmax(item_logits[pos])), opts.topk)
            results.append([self._fill(ids, pos, c, vocab) for c in best])

        if _is_batch(texts):
            return results
        return results[0]

    def _fill(self, ids: Sequence[int], pos: int, candidate: ScoredCandidate, vocab) -> Dict[str, Any]:
        sequence = list(ids)
        sequence[pos] = candidate.index
        return {
            "score": candidate.value,
            "token": candidate.index,
            "token_str": vocab.get(candidate.index),
            "sequence": self.tokenizer.decode(sequence, skip_special_tokens=True),
        }


class Text2TextGenerationPipeline(Pipeline):
    """
    Prefix-aware text-to-text generation.

    One class serves summarization, translation and plain text2text tasks;
    they differ only in ``result_key``.
    """

    def __init__(self, tokenizer, model, task: str, result_key: str = "generated_text"):
        super().__init__(tokenizer, model, task)
        self.result_key = result_key

    def _prefix(self) -> str:
        params = getattr(self.model.config, "task_specific_params", None) or {}
        return (params.get(self.task) or {}).get("prefix") or ""

    async def __call__(self, texts: TextInput, **options: Any) -> List[Dict[str, str]]:
        opts = GenerationOptions(**options)
        batch = _as_text_batch(texts)

        prefix = self._prefix()
        if prefix:
            batch = [prefix + text for text in batch]

        input_ids = _as_id_batch(self.tokenizer(batch)["input_ids"])
        outputs = await self.model.generate(input_ids, **opts.to_kwargs())
        _check_generations(outputs, len(input_ids))

        results: List[Dict[str, str]] = []
        for candidates in outputs:
            for seq in _as_id_batch(candidates):
                text = self.tokenizer.decode(seq, skip_special_tokens=True)
                results.append({self.result_key: text})
        return results


class TextGenerationPipeline(Pipeline):
    """Free-form continuation; the stripped prompt is prepended to each output."""

    async def __call__(self, texts: TextInput, **options: Any):
        opts = GenerationOptions(**options)
        batch = _as_text_batch(texts)

        input_ids = _as_id_batch(self.tokenizer(batch)["input_ids"])
        outputs = await self.model.generate(input_ids, **opts.to_kwargs())
        _check_generations(outputs, len(input_ids))

        results: List[List[Dict[str, str]]] = []
        for prompt, candidates in zip(batch, outputs):
            start_text = prompt.strip()
            results.append(
                [
                    {"generated_text": start_text + self.tokenizer.decode(seq, skip_special_tokens=True)}
                    for seq in _as_id_batch(candidates)
                ]
            )

        if _is_batch(texts):
            return results
        return results[0]


async def run_task(pipe: Pipeline, inputs: TextInput, context: str | None = None, **options: Any):
    """
    Call ``pipe`` with the argument framing its task expects.

    Question answering takes ``inputs`` as the question and requires
    ``context``; every other pipeline takes ``inputs`` directly.
    """
    if isinstance(pipe, QuestionAnsweringPipeline):
        if context is None or not isinstance(inputs, str):
            raise InvalidInputError("question-answering needs a single question and a context")
        return await pipe(inputs, context, **options)
    return await pipe(inputs, **options)

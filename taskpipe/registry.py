"""
Task registry and pipeline resolution.

``SUPPORTED_TASKS`` is the closed set of tasks this package can serve.
:func:`resolve_pipeline` turns a task name (alias or ``task_variant``) into
a ready pipeline, loading tokenizer and model concurrently.
"""

from __future__ import annotations

import asyncio
from typing import Dict, Optional, Tuple

from loguru import logger

from . import config
from .errors import UnsupportedTaskError
from .loaders import ProgressCallback, load_model, load_tokenizer
from .pipeline_types import ModelKind, PostprocessorKind, TaskConfig
from .pipelines import (
    FillMaskPipeline,
    Pipeline,
    QuestionAnsweringPipeline,
    Text2TextGenerationPipeline,
    TextClassificationPipeline,
    TextGenerationPipeline,
)

SUPPORTED_TASKS: Dict[str, TaskConfig] = {
    "text-classification": TaskConfig(
        postprocessor=PostprocessorKind.TEXT_CLASSIFICATION,
        model_kind=ModelKind.SEQUENCE_CLASSIFICATION,
        default_models={"default": "distilbert-base-uncased-finetuned-sst-2-english"},
    ),
    "question-answering": TaskConfig(
        postprocessor=PostprocessorKind.QUESTION_ANSWERING,
        model_kind=ModelKind.QUESTION_ANSWERING,
        default_models={"default": "distilbert-base-cased-distilled-squad"},
    ),
    "fill-mask": TaskConfig(
        postprocessor=PostprocessorKind.FILL_MASK,
        model_kind=ModelKind.MASKED_LM,
        default_models={"default": "distilroberta-base"},
    ),
    "summarization": TaskConfig(
        postprocessor=PostprocessorKind.TEXT2TEXT_GENERATION,
        model_kind=ModelKind.SEQ2SEQ_LM,
        default_models={"default": "sshleifer/distilbart-cnn-12-6"},
        result_key="summary_text",
    ),
    "translation": TaskConfig(
        postprocessor=PostprocessorKind.TEXT2TEXT_GENERATION,
        model_kind=ModelKind.SEQ2SEQ_LM,
        default_models={
            "en_to_de": "t5-small",
            "en_to_fr": "t5-small",
            "en_to_ro": "t5-small",
        },
        result_key="translation_text",
    ),
    "text2text-generation": TaskConfig(
        postprocessor=PostprocessorKind.TEXT2TEXT_GENERATION,
        model_kind=ModelKind.SEQ2SEQ_LM,
        default_models={"default": "t5-small"},
        result_key="generated_text",
    ),
    "text-generation": TaskConfig(
        postprocessor=PostprocessorKind.TEXT_GENERATION,
        model_kind=ModelKind.CAUSAL_LM,
        default_models={"default": "gpt2"},
    ),
}

# Pipeline name -> exported folder name, where they differ
TASK_NAME_MAPPING: Dict[str, str] = {
    "text-classification": "sequence-classification",
}

TASK_ALIASES: Dict[str, str] = {
    "sentiment-analysis": "text-classification",
    "qa": "question-answering",
}


def split_task(task: str) -> Tuple[str, Optional[str]]:
    """``"translation_en_to_de"`` -> ``("translation", "en_to_de")``."""
    base, sep, variant = task.partition("_")
    return base, (variant if sep else None)


def get_task_config(task: str) -> Tuple[str, TaskConfig]:
    """Resolve aliases and return ``(canonical_task, config)``."""
    task = TASK_ALIASES.get(task, task)
    base, _ = split_task(task)
    task_config = SUPPORTED_TASKS.get(base)
    if task_config is None:
        raise UnsupportedTaskError(
            f"Unsupported pipeline: {task}. Must be one of [{', '.join(SUPPORTED_TASKS)}]"
        )
    return task, task_config


def default_model_for(task: str, task_config: TaskConfig) -> str:
    _, variant = split_task(task)
    if not task_config.variants:
        return task_config.default_models["default"]
    if variant not in task_config.default_models:
        options = ", ".join(f"{split_task(task)[0]}_{v}" for v in task_config.variants)
        raise UnsupportedTaskError(
            f"Task {task} needs a variant. Must be one of [{options}]"
        )
    return task_config.default_models[variant]


def default_model_path(task: str, task_config: TaskConfig, template: Optional[str] = None) -> str:
    template = template or config.MODEL_PATH_TEMPLATE
    return template.replace("{model}", default_model_for(task, task_config)).replace(
        "{task}", TASK_NAME_MAPPING.get(task, task)
    )


def build_pipeline(task_config: TaskConfig, tokenizer, model, task: str) -> Pipeline:
    """Construct the pipeline for a postprocessor kind."""
    kind = task_config.postprocessor
    if kind is PostprocessorKind.TEXT_CLASSIFICATION:
        return TextClassificationPipeline(tokenizer, model, task)
    if kind is PostprocessorKind.QUESTION_ANSWERING:
        return QuestionAnsweringPipeline(tokenizer, model, task)
    if kind is PostprocessorKind.FILL_MASK:
        return FillMaskPipeline(tokenizer, model, task)
    if kind is PostprocessorKind.TEXT2TEXT_GENERATION:
        return Text2TextGenerationPipeline(
            tokenizer, model, task, result_key=task_config.result_key or "generated_text"
        )
    if kind is PostprocessorKind.TEXT_GENERATION:
        return TextGenerationPipeline(tokenizer, model, task)
    raise UnsupportedTaskError(f"No pipeline for postprocessor kind {kind!r}")


async def resolve_pipeline(
    task: str,
    model: Optional[str] = None,
    *,
    model_path_template: Optional[str] = None,
    progress_callback: Optional[ProgressCallback] = None,
) -> Pipeline:
    """
    Build a ready-to-call pipeline for ``task``.

    When ``model`` is omitted the task's default model is located through
    ``model_path_template`` (``{model}`` and ``{task}`` placeholders).
    """
    task, task_config = get_task_config(task)

    model_path = model or default_model_path(task, task_config, model_path_template)
    logger.info("Resolving pipeline {} with model {}", task, model_path)

    tokenizer, loaded_model = await asyncio.gather(
        load_tokenizer(model_path),
        load_model(task_config.model_kind, model_path, progress_callback),
    )

    pipe = build_pipeline(task_config, tokenizer, loaded_model, task)
    logger.info("Pipeline ready: {}", pipe)
    return pipe

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------
# Paths
# ---------------------------

PROJECT_ROOT = Path(__file__).resolve().parents[1]

MODELS_DIR = Path(os.getenv("TASKPIPE_MODELS_DIR", str(PROJECT_ROOT / "models")))


# ---------------------------
# Model location templates
# ---------------------------

# {model} is the default model id, {task} the (remapped) task name
DEFAULT_MODEL_PATH_TEMPLATE = str(MODELS_DIR / "{model}" / "{task}")
HF_HUB_MODEL_PATH_TEMPLATE = "{model}"

MODEL_PATH_TEMPLATE = os.getenv("TASKPIPE_MODEL_PATH_TEMPLATE", HF_HUB_MODEL_PATH_TEMPLATE)

HF_HOME_DIR = MODELS_DIR / ".hf_cache"

# HF cache / offline mode (applied with setdefault semantics before loading)
HF_ENV_VARS = {
    "HF_HUB_ENABLE_HF_TRANSFER": "1",
    "HF_HOME": str(HF_HOME_DIR),
    # HF_HUB_OFFLINE to be optionally set to "1" by the runtime after first pull
}


# ---------------------------
# Task option defaults
# ---------------------------

DEFAULT_CLASSIFICATION_TOPK = 1
DEFAULT_QA_TOPK = 1
DEFAULT_FILL_MASK_TOPK = 5


# ---------------------------
# API warmup / pipeline cache
# ---------------------------

API_PRELOAD_TASKS: List[str] = [
    t.strip() for t in os.getenv("TASKPIPE_PRELOAD_TASKS", "").split(",") if t.strip()
]

# max (task, model) pipelines kept in memory; least recently used is dropped
API_PIPELINE_CACHE_SIZE = max(1, int(os.getenv("TASKPIPE_PIPELINE_CACHE_SIZE", "4")))

# explicit models a client may request; empty means only the task defaults
API_ALLOWED_MODELS: List[str] = [
    m.strip() for m in os.getenv("TASKPIPE_ALLOWED_MODELS", "").split(",") if m.strip()
]


# ---------------------------
# Per-operation option structs
# ---------------------------

class ClassificationOptions(BaseModel):
    """Options for text classification."""

    model_config = ConfigDict(extra="forbid")

    # number of labels to return per input
    topk: int = Field(DEFAULT_CLASSIFICATION_TOPK, ge=1)


class QuestionAnsweringOptions(BaseModel):
    """Options for extractive question answering."""

    model_config = ConfigDict(extra="forbid")

    # number of answer spans to return
    topk: int = Field(DEFAULT_QA_TOPK, ge=1)


class FillMaskOptions(BaseModel):
    """Options for mask filling."""

    model_config = ConfigDict(extra="forbid")

    # number of substitution candidates per input
    topk: int = Field(DEFAULT_FILL_MASK_TOPK, ge=1)


class GenerationOptions(BaseModel):
    """
    Generation options forwarded to the model's ``generate``.

    The common knobs are declared so they are validated; anything else the
    backend understands is accepted as an extra field.  Unset fields are
    not forwarded, letting the model's own generation config apply.
    """

    model_config = ConfigDict(extra="allow")

    max_new_tokens: Optional[int] = Field(None, ge=1)
    min_new_tokens: Optional[int] = Field(None, ge=0)
    num_beams: Optional[int] = Field(None, ge=1)
    num_return_sequences: Optional[int] = Field(None, ge=1)
    do_sample: Optional[bool] = None
    temperature: Optional[float] = Field(None, gt=0)
    top_k: Optional[int] = Field(None, ge=0)
    top_p: Optional[float] = Field(None, gt=0, le=1)
    repetition_penalty: Optional[float] = Field(None, gt=0)

    def to_kwargs(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


# ---------------------------
# Pydantic models shared around the app
# ---------------------------

class PipelineRequest(BaseModel):
    """
    Request body for POST /pipelines/{task}.

    ``context`` is only used by question answering, where ``inputs`` is the
    question.
    """

    inputs: Union[str, List[str]]
    context: Optional[str] = None
    model: Optional[str] = None
    options: Dict[str, Any] = Field(default_factory=dict)


class PipelineResponse(BaseModel):
    """Response body for POST /pipelines/{task}."""

    task: str
    model: Optional[str] = None
    result: Any


class TaskListResponse(BaseModel):
    """Response body for GET /tasks."""

    tasks: List[str]
    aliases: Dict[str, str]
    modalities: Dict[str, str] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    """
    Response body for GET /health.
    """

    status: str
    loaded_pipelines: int = 0

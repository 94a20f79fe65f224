"""
FastAPI application exposing the task pipelines over HTTP.

- GET  /health            liveness + number of warm pipelines
- GET  /tasks             supported task names and aliases
- POST /pipelines/{task}  run a task; pipelines are cached per (task, model)
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from typing import Dict, Optional, Tuple

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from pydantic import ValidationError

from .config import (
    API_ALLOWED_MODELS,
    API_PIPELINE_CACHE_SIZE,
    API_PRELOAD_TASKS,
    HealthResponse,
    PipelineRequest,
    PipelineResponse,
    TaskListResponse,
)
from .errors import (
    InvalidInputError,
    MissingMaskTokenError,
    NoAnswerFoundError,
    ShapeMismatchError,
    UnsupportedTaskError,
)
from .pipelines import Pipeline, run_task
from .registry import SUPPORTED_TASKS, TASK_ALIASES, resolve_pipeline


# -----------------------
# Pipeline cache
# -----------------------

PipelineKey = Tuple[str, Optional[str]]

# least recently used first
_PIPELINES: "OrderedDict[PipelineKey, Pipeline]" = OrderedDict()
# one lock per key being loaded, so a slow load only blocks requests for that key
_LOAD_LOCKS: Dict[PipelineKey, asyncio.Lock] = {}


def _model_allowed(model: Optional[str]) -> bool:
    if model is None or model in API_ALLOWED_MODELS:
        return True
    return any(model in cfg.default_models.values() for cfg in SUPPORTED_TASKS.values())


def _cache_pipeline(key: PipelineKey, pipe: Pipeline) -> None:
    _PIPELINES[key] = pipe
    while len(_PIPELINES) > API_PIPELINE_CACHE_SIZE:
        evicted, _ = _PIPELINES.popitem(last=False)
        logger.info("Evicted pipeline {} from cache", evicted)


async def get_pipeline(task: str, model: Optional[str] = None) -> Pipeline:
    key = (task, model)
    pipe = _PIPELINES.get(key)
    if pipe is not None:
        _PIPELINES.move_to_end(key)
        return pipe
    lock = _LOAD_LOCKS.setdefault(key, asyncio.Lock())
    try:
        async with lock:
            pipe = _PIPELINES.get(key)
            if pipe is None:
                pipe = await resolve_pipeline(task, model)
                _cache_pipeline(key, pipe)
    finally:
        _LOAD_LOCKS.pop(key, None)
    return pipe


# -----------------------
# FastAPI app + startup
# -----------------------

app = FastAPI()
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup_event() -> None:
    if not API_PRELOAD_TASKS:
        return
    logger.info("Starting app warmup for tasks: {}", API_PRELOAD_TASKS)
    for task in API_PRELOAD_TASKS:
        try:
            await get_pipeline(task)
        except Exception as e:
            logger.warning("Warmup failed for task {}: {}", task, e)
    logger.info("Warmup complete.")


@app.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(status="healthy", loaded_pipelines=len(_PIPELINES))


@app.get("/tasks", response_model=TaskListResponse)
def tasks() -> TaskListResponse:
    return TaskListResponse(
        tasks=list(SUPPORTED_TASKS),
        aliases=dict(TASK_ALIASES),
        modalities={name: cfg.modality for name, cfg in SUPPORTED_TASKS.items()},
    )


@app.post("/pipelines/{task}", response_model=PipelineResponse)
async def run_pipeline(task: str, req: PipelineRequest) -> PipelineResponse:
    logger.info("Running task {} (model={})", task, req.model)
    if not _model_allowed(req.model):
        logger.warning("Rejected model {} for task {}", req.model, task)
        raise HTTPException(status_code=403, detail=f"Model {req.model} is not allowed")
    try:
        pipe = await get_pipeline(task, req.model)
    except UnsupportedTaskError as e:
        raise HTTPException(status_code=404, detail=str(e))

    try:
        result = await run_task(pipe, req.inputs, context=req.context, **req.options)
    except NoAnswerFoundError as e:
        logger.warning("No answer for task {}: {}", task, e)
        raise HTTPException(status_code=404, detail=str(e))
    except (InvalidInputError, MissingMaskTokenError, ValidationError) as e:
        logger.warning("Bad request for task {}: {}", task, e)
        raise HTTPException(status_code=422, detail=str(e))
    except ShapeMismatchError as e:
        logger.error("Model output contract broken for task {}: {}", task, e)
        raise HTTPException(status_code=500, detail="Model returned output of an unexpected shape")

    return PipelineResponse(task=pipe.task, model=req.model, result=result)

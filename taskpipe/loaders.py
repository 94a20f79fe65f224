# taskpipe/loaders.py
from __future__ import annotations

import asyncio
import inspect
import os
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from loguru import logger

from . import config
from .errors import ModelLoadError
from .pipeline_types import ModelKind, RawModelOutput, RawTensor

def _ensure_hf_env() -> None:
    """
    Set HF environment variables unless the user already did.

    huggingface_hub reads these into module constants on import, so this runs
    once before the backend import below and again before every load.
    """
    for key, val in config.HF_ENV_VARS.items():
        if key not in os.environ:
            os.environ[key] = val
    if os.getenv("HF_HUB_ENABLE_HF_TRANSFER") == "1":
        try:
            import hf_transfer  # type: ignore  # noqa: F401
        except Exception:
            os.environ.pop("HF_HUB_ENABLE_HF_TRANSFER", None)
            logger.warning("Disabled hf_transfer acceleration (package not installed).")

def _hub_cache_dir() -> str:
    """Hub cache passed explicitly to ``from_pretrained``, whatever the import order was."""
    hub_cache = os.getenv("HF_HUB_CACHE")
    if hub_cache:
        return hub_cache
    return os.path.join(os.getenv("HF_HOME", str(config.HF_HOME_DIR)), "hub")

_import_err: Optional[Exception] = None

_ensure_hf_env()
try:
    import torch  # type: ignore
    import transformers  # type: ignore
except Exception as e:
    torch = None
    transformers = None
    _import_err = e

# ---------------------------------------------------------------------------
# HF model handling
# ---------------------------------------------------------------------------

MODEL_CLASS_NAMES: Dict[ModelKind, str] = {
    ModelKind.SEQUENCE_CLASSIFICATION: "AutoModelForSequenceClassification",
    ModelKind.QUESTION_ANSWERING: "AutoModelForQuestionAnswering",
    ModelKind.MASKED_LM: "AutoModelForMaskedLM",
    ModelKind.SEQ2SEQ_LM: "AutoModelForSeq2SeqLM",
    ModelKind.CAUSAL_LM: "AutoModelForCausalLM",
}

# raw tensors copied out of a forward pass, when the model produces them
OUTPUT_TENSOR_NAMES = ("logits", "start_logits", "end_logits")

ProgressCallback = Callable[[Dict[str, Any]], None]

def _require_backend() -> None:
    if transformers is None or torch is None:
        logger.warning("transformers/torch not available: {}", _import_err)
        raise ModelLoadError(f"transformers backend is not installed: {_import_err}")

def _notify(progress_callback: Optional[ProgressCallback], status: str, **info: Any) -> None:
    if progress_callback is not None:
        progress_callback({"status": status, **info})

def _to_raw_tensor(t) -> RawTensor:
    flat = t.detach().to("cpu").float().reshape(-1).tolist()
    return RawTensor.from_values(flat, tuple(t.shape))

def _as_batch(ids: Union[Sequence[int], Sequence[Sequence[int]]]) -> List[List[int]]:
    if ids and isinstance(ids[0], int):
        return [list(ids)]  # type: ignore[list-item]
    return [list(x) for x in ids]  # type: ignore[union-attr]

class HFTokenizer:
    """
    Tokenizer collaborator backed by a ``transformers`` tokenizer.

    Returns plain Python lists so postprocessors can do index arithmetic
    without touching torch.
    """

    def __init__(self, tokenizer):
        self._tokenizer = tokenizer
        self._vocab: Optional[Dict[int, str]] = None

    @classmethod
    def from_pretrained(cls, path: str) -> "HFTokenizer":
        _require_backend()
        return cls(transformers.AutoTokenizer.from_pretrained(path, cache_dir=_hub_cache_dir()))

    def __call__(
        self,
        texts: Union[str, List[str]],
        text_pair: Union[str, List[str], None] = None,
        padding: bool = False,
        truncation: bool = False,
    ) -> Dict[str, Any]:
        encoded = self._tokenizer(
            texts,
            text_pair=text_pair,
            padding=padding,
            truncation=truncation,
        )
        return {k: v for k, v in encoded.items()}

    def decode(self, token_ids: Sequence[int], skip_special_tokens: bool = False) -> str:
        return self._tokenizer.decode(list(token_ids), skip_special_tokens=skip_special_tokens)

    @property
    def mask_token_id(self) -> Optional[int]:
        return self._tokenizer.mask_token_id

    @property
    def sep_token_id(self) -> Optional[int]:
        return self._tokenizer.sep_token_id

    @property
    def vocab(self) -> Dict[int, str]:
        if self._vocab is None:
            self._vocab = {i: tok for tok, i in self._tokenizer.get_vocab().items()}
        return self._vocab

class HFModel:
    """
    Model collaborator backed by a ``transformers`` ``AutoModelFor*`` class.

    Forward passes and generation run in a worker thread so the event loop
    stays responsive while torch works.
    """

    def __init__(self, model, kind: ModelKind):
        self._model = model
        self.kind = kind
        self._forward_params = set(inspect.signature(model.forward).parameters)

    @classmethod
    def from_pretrained(cls, kind: ModelKind, path: str) -> "HFModel":
        _require_backend()
        model_cls = getattr(transformers, MODEL_CLASS_NAMES[kind])
        model = model_cls.from_pretrained(path, cache_dir=_hub_cache_dir())
        model.eval()
        return cls(model, kind)

    @property
    def config(self):
        return self._model.config

    def _forward(self, inputs: Dict[str, Any]) -> RawModelOutput:
        tensors = {
            name: torch.tensor(_as_batch(value))
            for name, value in inputs.items()
            if name in self._forward_params
        }
        with torch.no_grad():
            out = self._model(**tensors)
        return RawModelOutput(
            {
                name: _to_raw_tensor(getattr(out, name))
                for name in OUTPUT_TENSOR_NAMES
                if getattr(out, name, None) is not None
            }
        )

    async def __call__(self, inputs: Dict[str, Any]) -> RawModelOutput:
        return await asyncio.to_thread(self._forward, inputs)

    def _generate(self, input_ids: Sequence[Sequence[int]], options: Dict[str, Any]) -> List[List[List[int]]]:
        decoder_only = not getattr(self._model.config, "is_encoder_decoder", False)
        results: List[List[List[int]]] = []
        for ids in _as_batch(input_ids):
            prompt = torch.tensor([ids])
            with torch.no_grad():
                out = self._model.generate(
                    input_ids=prompt,
                    attention_mask=torch.ones_like(prompt),
                    **options,
                )
            if decoder_only:
                # causal models echo the prompt; keep only the continuation
                out = out[:, prompt.shape[1]:]
            results.append(out.tolist())
        return results

    async def generate(self, input_ids: Sequence[Sequence[int]], **options: Any) -> List[List[List[int]]]:
        """Per input, one or more generated token-id sequences."""
        return await asyncio.to_thread(self._generate, input_ids, options)

async def load_tokenizer(path: str) -> HFTokenizer:
    _ensure_hf_env()
    logger.info("Loading tokenizer from {}", path)
    tokenizer = await asyncio.to_thread(HFTokenizer.from_pretrained, path)
    logger.info("Loaded tokenizer from {}", path)
    return tokenizer

async def load_model(
    kind: ModelKind,
    path: str,
    progress_callback: Optional[ProgressCallback] = None,
) -> HFModel:
    _ensure_hf_env()
    logger.info("Loading {} model from {}", kind.value, path)
    _notify(progress_callback, "initiate", name=path, kind=kind.value)
    model = await asyncio.to_thread(HFModel.from_pretrained, kind, path)
    _notify(progress_callback, "done", name=path, kind=kind.value)
    logger.info("Loaded {} model from {}", kind.value, path)
    return model

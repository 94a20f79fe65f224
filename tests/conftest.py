"""
Shared test fixtures.

Fake tokenizer/model collaborators with the same interface as
``taskpipe.loaders.HFTokenizer`` / ``HFModel`` so no real model is loaded.

Available fixtures:
- tokenizer: whitespace DummyTokenizer over a tiny fixed vocabulary
- make_model: factory for DummyModel (forward outputs and/or generations)
"""

from types import SimpleNamespace

import numpy as np
import pytest

from taskpipe.pipeline_types import RawModelOutput, RawTensor

VOCAB = [
    "[PAD]", "[CLS]", "[SEP]", "[MASK]", "[UNK]",
    "the", "cat", "sat", "on", "mat", "dog", "who", "where",
    "hello", "world", "good", "bad", "movie", "paris", "is",
]

PAD, CLS, SEP, MASK, UNK = 0, 1, 2, 3, 4


class DummyTokenizer:
    """
    Lower-cased whitespace tokenizer: ``[CLS] text [SEP] (pair [SEP])``.

    Records every call so tests can inspect what was tokenized.
    """

    pad_token_id = PAD
    sep_token_id = SEP
    mask_token_id = MASK

    def __init__(self):
        self.token_to_id = {tok: i for i, tok in enumerate(VOCAB)}
        self.vocab = dict(enumerate(VOCAB))
        self.calls = []

    def encode(self, text):
        words = text.replace("[MASK]", " [MASK] ").split()
        return [MASK if w == "[MASK]" else self.token_to_id.get(w.lower(), UNK) for w in words]

    def _single(self, text, pair=None):
        ids = [CLS] + self.encode(text) + [SEP]
        if pair:
            ids += self.encode(pair) + [SEP]
        return ids

    def __call__(self, texts, text_pair=None, padding=False, truncation=False):
        self.calls.append({"texts": texts, "text_pair": text_pair, "padding": padding, "truncation": truncation})
        if isinstance(texts, str):
            ids = self._single(texts, text_pair)
            return {"input_ids": ids, "attention_mask": [1] * len(ids)}

        batch = [self._single(t) for t in texts]
        if padding:
            width = max(len(ids) for ids in batch)
            batch = [ids + [PAD] * (width - len(ids)) for ids in batch]
        return {
            "input_ids": batch,
            "attention_mask": [[int(i != PAD) for i in ids] for ids in batch],
        }

    def decode(self, token_ids, skip_special_tokens=False):
        tokens = [
            self.vocab[i]
            for i in token_ids
            if not (skip_special_tokens and i in (PAD, CLS, SEP, MASK))
        ]
        return " ".join(tokens)


def raw_tensor(nested):
    arr = np.asarray(nested, dtype="float64")
    return RawTensor.from_values(arr.ravel().tolist(), arr.shape)


class DummyModel:
    """
    Fake model.

    ``outputs(inputs)`` returns ``{name: nested list}`` for forward passes;
    ``generations(input_ids, options)`` returns per-input token id sequences.
    """

    def __init__(self, outputs=None, generations=None, config=None):
        self.config = config or SimpleNamespace(id2label={}, task_specific_params=None)
        self._outputs = outputs
        self._generations = generations
        self.calls = []
        self.generate_calls = []

    async def __call__(self, inputs):
        self.calls.append(inputs)
        return RawModelOutput({name: raw_tensor(v) for name, v in self._outputs(inputs).items()})

    async def generate(self, input_ids, **options):
        self.generate_calls.append((input_ids, options))
        return self._generations(input_ids, options)


@pytest.fixture
def tokenizer():
    return DummyTokenizer()


@pytest.fixture
def make_model():
    def factory(outputs=None, generations=None, **config):
        cfg = SimpleNamespace(id2label={}, task_specific_params=None)
        for key, value in config.items():
            setattr(cfg, key, value)
        return DummyModel(outputs=outputs, generations=generations, config=cfg)

    return factory

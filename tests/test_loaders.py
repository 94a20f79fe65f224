import asyncio
import os
import sys
from types import ModuleType, SimpleNamespace

import pytest

from taskpipe import loaders
from taskpipe.errors import ModelLoadError
from taskpipe.loaders import HFModel, HFTokenizer, load_model, load_tokenizer
from taskpipe.pipeline_types import ModelKind, RawModelOutput, RawTensor


class FakeBackendTokenizer:
    mask_token_id = 3
    sep_token_id = 2

    def __init__(self):
        self.vocab_calls = 0

    def __call__(self, texts, text_pair=None, padding=False, truncation=False):
        return {"input_ids": [1, 5, 2], "attention_mask": [1, 1, 1]}

    def decode(self, ids, skip_special_tokens=False):
        return f"decoded:{ids}:{skip_special_tokens}"

    def get_vocab(self):
        self.vocab_calls += 1
        return {"[CLS]": 1, "[SEP]": 2, "[MASK]": 3, "cat": 5}


def test_hf_tokenizer_wraps_backend():
    backend = FakeBackendTokenizer()
    tok = HFTokenizer(backend)

    assert tok("the cat") == {"input_ids": [1, 5, 2], "attention_mask": [1, 1, 1]}
    assert tok.decode((1, 5), skip_special_tokens=True) == "decoded:[1, 5]:True"
    assert tok.mask_token_id == 3
    assert tok.sep_token_id == 2


def test_hf_tokenizer_vocab_is_inverted_and_cached():
    backend = FakeBackendTokenizer()
    tok = HFTokenizer(backend)
    assert tok.vocab[5] == "cat"
    assert tok.vocab.get(99) is None
    assert backend.vocab_calls == 1


def test_as_batch():
    assert loaders._as_batch([1, 2, 3]) == [[1, 2, 3]]
    assert loaders._as_batch([[1, 2], [3]]) == [[1, 2], [3]]


def test_raw_model_output_access():
    logits = RawTensor.from_values([0.1, 0.9], [1, 2])
    out = RawModelOutput({"logits": logits})
    assert out["logits"] is out.logits is logits
    assert list(out) == ["logits"]
    assert len(out) == 1
    with pytest.raises(AttributeError):
        out.start_logits


def test_missing_backend_raises_model_load_error(monkeypatch):
    monkeypatch.setattr(loaders, "transformers", None)
    monkeypatch.setattr(loaders, "_import_err", ImportError("no transformers"))
    with pytest.raises(ModelLoadError):
        HFTokenizer.from_pretrained("gpt2")


def test_hf_env_does_not_override_user_settings(monkeypatch):
    monkeypatch.setitem(sys.modules, "hf_transfer", ModuleType("hf_transfer"))
    monkeypatch.setenv("HF_HOME", "/custom/hf")
    monkeypatch.delenv("HF_HUB_ENABLE_HF_TRANSFER", raising=False)
    loaders._ensure_hf_env()
    assert os.environ["HF_HOME"] == "/custom/hf"
    assert os.environ["HF_HUB_ENABLE_HF_TRANSFER"] == "1"


def test_hf_transfer_flag_dropped_when_package_missing(monkeypatch):
    # a None entry makes ``import hf_transfer`` fail
    monkeypatch.setitem(sys.modules, "hf_transfer", None)
    monkeypatch.setenv("HF_HUB_ENABLE_HF_TRANSFER", "1")
    loaders._ensure_hf_env()
    assert "HF_HUB_ENABLE_HF_TRANSFER" not in os.environ


def test_hf_env_applied_before_hub_import():
    constants = pytest.importorskip("huggingface_hub.constants")
    assert constants.HF_HOME == os.path.expanduser(os.environ["HF_HOME"])


class _FakeAuto:
    calls = []

    @classmethod
    def from_pretrained(cls, path, **kwargs):
        cls.calls.append((path, kwargs))
        return cls()

    def eval(self):
        return self

    def forward(self, input_ids, attention_mask=None):
        return None


@pytest.fixture
def fake_backend(monkeypatch):
    _FakeAuto.calls = []
    monkeypatch.setattr(loaders, "torch", SimpleNamespace())
    monkeypatch.setattr(
        loaders,
        "transformers",
        SimpleNamespace(AutoTokenizer=_FakeAuto, AutoModelForMaskedLM=_FakeAuto),
    )
    return _FakeAuto.calls


def test_from_pretrained_uses_configured_cache(monkeypatch, fake_backend):
    monkeypatch.setenv("HF_HOME", "/srv/models/.hf_cache")
    monkeypatch.delenv("HF_HUB_CACHE", raising=False)

    HFTokenizer.from_pretrained("distilroberta-base")
    model = HFModel.from_pretrained(ModelKind.MASKED_LM, "distilroberta-base")

    expected = os.path.join("/srv/models/.hf_cache", "hub")
    assert fake_backend == [
        ("distilroberta-base", {"cache_dir": expected}),
        ("distilroberta-base", {"cache_dir": expected}),
    ]
    assert model.kind is ModelKind.MASKED_LM


def test_explicit_hub_cache_wins(monkeypatch, fake_backend):
    monkeypatch.setenv("HF_HUB_CACHE", "/mnt/hub")
    HFTokenizer.from_pretrained("gpt2")
    assert fake_backend == [("gpt2", {"cache_dir": "/mnt/hub"})]


def test_load_model_reports_progress(monkeypatch):
    sentinel = object()
    monkeypatch.setattr(loaders, "_ensure_hf_env", lambda: None)
    monkeypatch.setattr(HFModel, "from_pretrained", classmethod(lambda cls, kind, path: sentinel))

    events = []
    model = asyncio.run(load_model(ModelKind.MASKED_LM, "distilroberta-base", events.append))

    assert model is sentinel
    assert [e["status"] for e in events] == ["initiate", "done"]
    assert events[0] == {"status": "initiate", "name": "distilroberta-base", "kind": "masked-lm"}


def test_load_tokenizer(monkeypatch):
    monkeypatch.setattr(loaders, "_ensure_hf_env", lambda: None)
    monkeypatch.setattr(
        HFTokenizer, "from_pretrained", classmethod(lambda cls, path: cls(FakeBackendTokenizer()))
    )
    tok = asyncio.run(load_tokenizer("some/path"))
    assert isinstance(tok, HFTokenizer)


def test_hf_model_forward_filters_inputs_and_flattens_outputs():
    torch = pytest.importorskip("torch")

    class TinyClassifier:
        config = SimpleNamespace(id2label={0: "NEG", 1: "POS"})

        def __init__(self):
            self.seen = None

        def forward(self, input_ids, attention_mask=None):
            self.seen = {"input_ids": input_ids, "attention_mask": attention_mask}
            batch = input_ids.shape[0]
            return SimpleNamespace(logits=torch.arange(batch * 2, dtype=torch.float32).reshape(batch, 2))

        __call__ = forward

    backend = TinyClassifier()
    model = HFModel(backend, ModelKind.SEQUENCE_CLASSIFICATION)

    out = asyncio.run(
        model({"input_ids": [[1, 5, 2], [1, 6, 2]], "attention_mask": [[1, 1, 1]] * 2, "token_type_ids": [[0] * 3] * 2})
    )

    assert set(backend.seen) == {"input_ids", "attention_mask"}
    assert out.logits.dims == (2, 2)
    assert out.logits.data == (0.0, 1.0, 2.0, 3.0)
    assert model.config.id2label[1] == "POS"


class TinyGenerator:
    """Backend ``generate`` returning ``num_return_sequences`` rows per prompt."""

    def __init__(self, torch, is_encoder_decoder):
        self.torch = torch
        self.config = SimpleNamespace(is_encoder_decoder=is_encoder_decoder)
        self.calls = []

    def forward(self, input_ids, attention_mask=None):
        return None

    def generate(self, input_ids, attention_mask=None, **options):
        self.calls.append({"input_ids": input_ids.tolist(), "attention_mask": attention_mask.tolist(), **options})
        prompt = input_ids[0].tolist()
        rows = []
        for k in range(options.get("num_return_sequences", 1)):
            continuation = [100 + k, 200 + k]
            # decoder-only models echo the prompt ahead of the continuation
            rows.append(continuation if self.config.is_encoder_decoder else prompt + continuation)
        return self.torch.tensor(rows)


def test_generate_strips_echoed_prompt_for_decoder_only_models():
    torch = pytest.importorskip("torch")
    backend = TinyGenerator(torch, is_encoder_decoder=False)
    model = HFModel(backend, ModelKind.CAUSAL_LM)

    out = asyncio.run(model.generate([[13, 14, 19], [5, 6]], num_return_sequences=2))

    assert out == [
        [[100, 200], [101, 201]],
        [[100, 200], [101, 201]],
    ]
    assert backend.calls[0]["input_ids"] == [[13, 14, 19]]
    assert backend.calls[0]["attention_mask"] == [[1, 1, 1]]
    assert backend.calls[1]["num_return_sequences"] == 2


def test_generate_keeps_encoder_decoder_output():
    torch = pytest.importorskip("torch")
    backend = TinyGenerator(torch, is_encoder_decoder=True)
    model = HFModel(backend, ModelKind.SEQ2SEQ_LM)

    out = asyncio.run(model.generate([13, 14], num_return_sequences=3, max_new_tokens=2))

    # a flat id list is a single prompt
    assert out == [[[100, 200], [101, 201], [102, 202]]]
    assert backend.calls[0]["max_new_tokens"] == 2

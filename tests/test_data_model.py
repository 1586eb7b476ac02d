import pytest
import torch

from loralab.config import AdapterConfig
from loralab.data import BatchCursor, create_training_sequences, split_inputs_labels, tokenize_dataset
from loralab.errors import ConfigError, SetupError
from loralab.layers import LayerArena
from loralab.model import (
    ByteTokenizer,
    TinyCausalLM,
    TorchModelProvider,
    estimate_training_time,
    format_training_time,
    resolve_model_source,
)


class TestData:
    """Tokenizing, windowing and batch selection."""

    def test_tokenize_forms(self):
        tokenizer = ByteTokenizer()
        assert tokenize_dataset("ab", tokenizer) == [97, 98]
        assert tokenize_dataset({"text": "a"}, tokenizer) == [97]
        assert tokenize_dataset({"tokens": [1, 2]}, tokenizer) == [1, 2]
        assert tokenize_dataset(torch.tensor([[3, 4]]), tokenizer) == [3, 4]
        with pytest.raises(ConfigError):
            tokenize_dataset({"rows": []}, tokenizer)
        with pytest.raises(ConfigError):
            tokenize_dataset(3.5, tokenizer)

    def test_disjoint_windows_drop_tail(self):
        sequences = create_training_sequences(list(range(10)), 4)
        assert sequences.tolist() == [[0, 1, 2, 3], [4, 5, 6, 7]]

    def test_overlapping_windows(self):
        sequences = create_training_sequences(list(range(6)), 4, stride=1)
        assert sequences.shape == (3, 4)
        assert sequences[2].tolist() == [2, 3, 4, 5]

    def test_short_corpus(self):
        with pytest.raises(SetupError):
            create_training_sequences([1, 2, 3], 4)

    def test_cursor_wraps(self):
        cursor = BatchCursor(torch.arange(15).view(5, 3), batch_size=2)
        assert cursor.indices(0) == [0, 1]
        assert cursor.indices(2) == [4, 0]
        assert cursor.batch(3).tolist() == [[3, 4, 5], [6, 7, 8]]

    def test_split_inputs_labels(self):
        inputs, labels = split_inputs_labels(torch.tensor([[1, 2, 3]]))
        assert inputs.tolist() == [[1, 2]]
        assert labels.tolist() == [[2, 3]]


class TestProvider:
    """Adapter hooks on a torch module."""

    def test_target_layers(self):
        provider = TorchModelProvider(TinyCausalLM(), ByteTokenizer())
        specs = provider.target_layers(("q_proj", "v_proj"))
        assert sorted(specs) == ["q_proj", "v_proj"]
        assert specs["q_proj"].in_dim == 64
        with pytest.raises(SetupError):
            provider.target_layers(("gate_proj",))

    def test_hook_adds_branch(self):
        model = TinyCausalLM(seed=1)
        provider = TorchModelProvider(model, ByteTokenizer())
        provider.prepare(torch.device("cpu"))
        specs = provider.target_layers(("q_proj",))
        arena = LayerArena.build(specs, 2, torch.device("cpu"))
        inputs = torch.randint(0, 256, (2, 8), generator=torch.Generator().manual_seed(0))

        baseline = provider.logits(inputs)
        provider.attach(arena, scaling=1.0)
        arena["q_proj"].lora_b.fill_(0.5)
        adapted = provider.logits(inputs)

        x, intermediate = provider.captured("q_proj")
        assert x.shape == (16, 64)
        assert intermediate.shape == (16, 2)
        assert not torch.allclose(baseline, adapted)

        provider.detach()
        assert torch.allclose(provider.logits(inputs), baseline)
        with pytest.raises(RuntimeError):
            provider.captured("q_proj")

    def test_pseudo_gradient_width(self):
        provider = TorchModelProvider(TinyCausalLM(), ByteTokenizer())
        provider.target_layers(("q_proj",))
        dlogits = torch.randn(5, 256)
        grad = provider.pseudo_gradient("q_proj", dlogits)
        expected = dlogits @ provider.output_embedding()
        assert grad.shape == (5, 64)
        assert torch.allclose(grad, expected, atol=1e-6)

    def test_resolve_model_source(self):
        provider = resolve_model_source(TinyCausalLM())
        assert provider.name == "TinyCausalLM"
        assert resolve_model_source(provider) is provider
        with pytest.raises(ConfigError):
            resolve_model_source(42)


class TestArena:
    def test_release_and_rebuild(self):
        specs = TorchModelProvider(TinyCausalLM(), ByteTokenizer()).target_layers(
            AdapterConfig(target_modules=("q_proj", "k_proj")).target_modules
        )
        arena = LayerArena.build(specs, 4, torch.device("cpu"))
        assert arena.nbytes > 0
        assert torch.count_nonzero(arena["k_proj"].lora_b) == 0

        arena.release()
        assert arena.nbytes == 0
        with pytest.raises(RuntimeError):
            arena["q_proj"]


def test_training_time_estimates():
    assert format_training_time(42) == "42s"
    assert format_training_time(600) == "10m"
    assert format_training_time(5400) == "1h 30m"
    estimate = estimate_training_time(1_000_000)
    assert estimate["tokens_per_second"] == round(2.0 * 0.4 * 1000.0 / 1.2)
    assert estimate["confidence"] == "medium"
    with pytest.raises(ConfigError):
        estimate_training_time(1000, mode="distill")

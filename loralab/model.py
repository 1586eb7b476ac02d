"""Base-model and tokenizer collaborators.

The training loop treats the base model as an opaque logits oracle. The
adapter branch is injected with forward hooks on the target ``nn.Linear``
modules, which run the LoRA forward kernel on the layer output and keep the
layer input and ``x @ A`` for the backward kernel.

Backward is an approximation: the cross-entropy gradient on the logits is
projected through the output embedding and folded to each target layer's
output width, and that pseudo-gradient is fed to the LoRA backward kernel.
Nothing is back-propagated through the rest of the base model.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from typing import Any

import torch
from torch import nn

from loralab.errors import ConfigError, SetupError
from loralab.kernels import lora_forward_pass, quantized_matmul
from loralab.kernels.quant import QuantizedBuffer, quant4_pack
from loralab.layers import LayerArena, LayerSpec


class ByteTokenizer:
    """UTF-8 bytes as token ids 0..255."""

    vocab_size = 256

    def encode(self, text: str) -> list[int]:
        return list(text.encode("utf-8"))

    def decode(self, ids: Iterable[int]) -> str:
        return bytes(int(i) & 0xFF for i in ids).decode("utf-8", errors="replace")


class TinyCausalLM(nn.Module):
    """Single-block causal transformer used by tests and demos.

    Projections are top-level modules (``q_proj``, ``k_proj``, ``v_proj``,
    ``o_proj``) so adapter layer names are the bare projection names.
    """

    def __init__(self, vocab_size: int = 256, hidden_size: int = 64, seed: int = 0) -> None:
        super().__init__()
        self.hidden_size = hidden_size
        self.embed = nn.Embedding(vocab_size, hidden_size)
        self.q_proj = nn.Linear(hidden_size, hidden_size)
        self.k_proj = nn.Linear(hidden_size, hidden_size)
        self.v_proj = nn.Linear(hidden_size, hidden_size)
        self.o_proj = nn.Linear(hidden_size, hidden_size)
        self.norm = nn.LayerNorm(hidden_size)
        self.lm_head = nn.Linear(hidden_size, vocab_size, bias=False)

        generator = torch.Generator().manual_seed(seed)
        with torch.no_grad():
            for module in (self.embed, self.q_proj, self.k_proj, self.v_proj, self.o_proj, self.lm_head):
                module.weight.copy_(torch.randn(module.weight.shape, generator=generator) * 0.02)
                bias = getattr(module, "bias", None)
                if bias is not None:
                    bias.zero_()

    def get_output_embeddings(self) -> nn.Module:
        return self.lm_head

    def forward(self, input_ids: torch.Tensor) -> torch.Tensor:
        hidden = self.embed(input_ids)
        q = self.q_proj(hidden)
        k = self.k_proj(hidden)
        v = self.v_proj(hidden)
        seq_len = input_ids.shape[-1]
        scores = q @ k.transpose(-1, -2) / math.sqrt(self.hidden_size)
        causal = torch.ones(seq_len, seq_len, dtype=torch.bool, device=input_ids.device).triu(1)
        scores = scores.masked_fill(causal, float("-inf"))
        attended = scores.softmax(dim=-1) @ v
        hidden = self.norm(hidden + self.o_proj(attended))
        return self.lm_head(hidden)


class TorchModelProvider:
    """Wraps a causal-LM module and its tokenizer for adapter training."""

    def __init__(self, module: nn.Module, tokenizer: Any, name: str = "unknown") -> None:
        self.module = module
        self.tokenizer = tokenizer
        self.name = name
        self._linears: dict[str, nn.Linear] = {}
        self._hooks: list[Any] = []
        self._captured: dict[str, tuple[torch.Tensor, torch.Tensor]] = {}
        self._quantized: dict[str, QuantizedBuffer] = {}
        self._arena: LayerArena | None = None
        self._scaling = 0.0
        self._tile_size = 64

    def prepare(self, device: torch.device) -> None:
        self.module.to(device)
        self.module.eval()
        for param in self.module.parameters():
            param.requires_grad_(False)

    @property
    def parameter_bytes(self) -> int:
        total = 0
        for tensor in list(self.module.parameters()) + list(self.module.buffers()):
            total += tensor.numel() * tensor.element_size()
        return total

    @property
    def hidden_size(self) -> int:
        return self.output_embedding().shape[1]

    def target_layers(self, target_modules: Iterable[str]) -> dict[str, LayerSpec]:
        """Eligible layers: ``nn.Linear`` whose full or final name is a target."""
        targets = set(target_modules)
        found: dict[str, LayerSpec] = {}
        self._linears = {}
        for name, sub in self.module.named_modules():
            if not isinstance(sub, nn.Linear):
                continue
            if name in targets or name.rsplit(".", 1)[-1] in targets:
                found[name] = LayerSpec(name, sub.in_features, sub.out_features)
                self._linears[name] = sub
        if not found:
            raise SetupError(f"No eligible target layers found for {sorted(targets)}")
        return found

    def output_embedding(self) -> torch.Tensor:
        getter = getattr(self.module, "get_output_embeddings", None)
        embedding = getter() if callable(getter) else getattr(self.module, "lm_head", None)
        weight = getattr(embedding, "weight", None)
        if not isinstance(weight, torch.Tensor):
            raise SetupError("model exposes no output embedding")
        return weight

    def attach(
        self,
        arena: LayerArena,
        scaling: float,
        tile_size: int = 64,
        quantize_base: bool = False,
    ) -> None:
        if not self._linears:
            raise SetupError("target_layers() must run before attach()")
        self.detach()
        self._tile_size = int(tile_size)
        self.set_arena(arena, scaling)
        for name, linear in self._linears.items():
            if quantize_base:
                weight = linear.weight.detach().t().contiguous().float()
                self._quantized[name] = quant4_pack(weight, device=weight.device)
            self._hooks.append(linear.register_forward_hook(self._make_hook(name)))

    def set_arena(self, arena: LayerArena, scaling: float) -> None:
        self._arena = arena
        self._scaling = float(scaling)

    def _make_hook(self, name: str):
        def hook(module: nn.Linear, inputs: tuple[torch.Tensor, ...], output: torch.Tensor):
            if self._arena is None:
                return output
            x = inputs[0]
            base = output
            packed = self._quantized.get(name)
            if packed is not None:
                base = quantized_matmul(x.float(), packed, self._tile_size).to(output.dtype)
                if module.bias is not None:
                    base = base + module.bias
            layer = self._arena[name]
            result, intermediate = lora_forward_pass(
                x, layer.lora_a, layer.lora_b, base, self._scaling, self._tile_size
            )
            self._captured[name] = (x.detach().reshape(-1, x.shape[-1]), intermediate)
            return result

        return hook

    def detach(self) -> None:
        for handle in self._hooks:
            handle.remove()
        self._hooks = []
        self._captured.clear()
        self._quantized.clear()
        self._arena = None

    @torch.no_grad()
    def logits(self, input_ids: torch.Tensor) -> torch.Tensor:
        self._captured.clear()
        output = self.module(input_ids)
        return getattr(output, "logits", output)

    def captured(self, name: str) -> tuple[torch.Tensor, torch.Tensor]:
        """Layer input ``[tokens, in]`` and ``x @ A`` ``[tokens, rank]`` from the last forward."""
        try:
            return self._captured[name]
        except KeyError:
            raise RuntimeError(f"no activations captured for layer '{name}'") from None

    @torch.no_grad()
    def pseudo_gradient(self, name: str, dlogits: torch.Tensor) -> torch.Tensor:
        """Approximate dL/d(layer output) from dL/d(logits), shape ``[tokens, out]``."""
        weight = self.output_embedding()
        flat = dlogits.reshape(-1, dlogits.shape[-1]).to(weight.dtype)
        hidden_grad = (flat @ weight).float()
        out_dim = self._linears[name].out_features
        width = hidden_grad.shape[1]
        if width >= out_dim:
            return hidden_grad[:, :out_dim]
        return torch.cat([hidden_grad, hidden_grad.new_zeros(hidden_grad.shape[0], out_dim - width)], dim=1)


def load_hf_model(model_name: str) -> TorchModelProvider:
    from transformers import AutoModelForCausalLM, AutoTokenizer

    tokenizer = AutoTokenizer.from_pretrained(model_name, use_fast=True)
    model = AutoModelForCausalLM.from_pretrained(model_name)
    return TorchModelProvider(model, tokenizer, name=model_name)


def resolve_model_source(source: Any) -> TorchModelProvider:
    if isinstance(source, TorchModelProvider):
        return source
    if isinstance(source, nn.Module):
        return TorchModelProvider(source, ByteTokenizer(), name=type(source).__name__)
    if isinstance(source, str):
        return load_hf_model(source)
    raise ConfigError(f"Unsupported model source: {type(source).__name__}")


def format_training_time(seconds: float) -> str:
    if seconds < 60:
        return f"{round(seconds)}s"
    if seconds < 3600:
        return f"{round(seconds / 60)}m"
    hours = int(seconds // 3600)
    minutes = round((seconds % 3600) / 60)
    return f"{hours}h {minutes}m"


def estimate_training_time(
    token_count: int,
    estimated_tflops: float = 2.0,
    accelerated: bool = True,
    mode: str = "adapter",
) -> dict[str, Any]:
    """Rough wall-clock estimate from a throughput figure; feeds ETA displays only."""
    if mode == "adapter":
        gflops_per_token = 1.2
        efficiency = 0.4 if accelerated else 0.1
    elif mode == "full":
        gflops_per_token = 42.0
        efficiency = 0.35 if accelerated else 0.05
    else:
        raise ConfigError(f"Unknown training mode '{mode}'. Choose from: ['adapter', 'full']")

    tokens_per_second = (estimated_tflops * efficiency * 1000.0) / gflops_per_token
    total_seconds = token_count / max(tokens_per_second, 1.0)
    return {
        "tokens_per_second": round(tokens_per_second),
        "total_seconds": round(total_seconds),
        "total_minutes": round(total_seconds / 60),
        "total_hours": round(total_seconds / 3600),
        "formatted_time": format_training_time(total_seconds),
        "confidence": "medium" if accelerated else "low",
    }


__all__ = [
    "ByteTokenizer",
    "TinyCausalLM",
    "TorchModelProvider",
    "estimate_training_time",
    "format_training_time",
    "load_hf_model",
    "resolve_model_source",
]

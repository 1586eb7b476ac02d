"""Thin typed entry points for the compute kernels."""

from __future__ import annotations

from collections.abc import Sequence

import torch

from loralab.kernels.adam8 import Adam8State, adam8_fused_step
from loralab.kernels.device import acquire_device, device_memory_gb, synchronize
from loralab.kernels.lora import lora_backward, lora_forward, tiled_matmul
from loralab.kernels.packed import PackedByteBuffer, PackedNibbleBuffer
from loralab.kernels.quant import (
    QuantizedBuffer,
    quant4_pack,
    quant4_requantize,
    quant4_unpack,
    quant4_unpack_all,
    quantized_matmul,
)


def pack4(
    values: torch.Tensor | Sequence[float],
    scale: float | None = None,
    zero_point: int = 0,
) -> QuantizedBuffer:
    if not isinstance(values, (torch.Tensor, Sequence)):
        raise TypeError("pack4 expects a torch.Tensor or a sequence of floats")
    return quant4_pack(values, scale=scale, zero_point=zero_point)


def unpack4(buffer: QuantizedBuffer, index: int) -> float:
    if not isinstance(buffer, QuantizedBuffer):
        raise TypeError("unpack4 expects a QuantizedBuffer")
    return quant4_unpack(buffer, int(index))


def lora_forward_pass(
    x: torch.Tensor,
    lora_a: torch.Tensor,
    lora_b: torch.Tensor,
    base_output: torch.Tensor,
    scaling: float,
    tile_size: int = 64,
) -> tuple[torch.Tensor, torch.Tensor]:
    if not all(isinstance(t, torch.Tensor) for t in (x, lora_a, lora_b, base_output)):
        raise TypeError("lora_forward_pass expects torch.Tensor operands")
    return lora_forward(x, lora_a, lora_b, base_output, float(scaling), int(tile_size))


def lora_backward_pass(
    grad_output: torch.Tensor,
    x: torch.Tensor,
    intermediate: torch.Tensor,
    lora_b: torch.Tensor,
    scaling: float,
    tile_size: int = 64,
    grad_a_out: torch.Tensor | None = None,
    grad_b_out: torch.Tensor | None = None,
) -> tuple[torch.Tensor, torch.Tensor]:
    if not all(isinstance(t, torch.Tensor) for t in (grad_output, x, intermediate, lora_b)):
        raise TypeError("lora_backward_pass expects torch.Tensor operands")
    return lora_backward(
        grad_output,
        x,
        intermediate,
        lora_b,
        float(scaling),
        int(tile_size),
        grad_a_out=grad_a_out,
        grad_b_out=grad_b_out,
    )


def fused_adam8_step(
    params: list[torch.Tensor],
    grads: list[torch.Tensor],
    states: list[Adam8State],
    lr: float,
    beta1: float,
    beta2: float,
    eps: float,
    weight_decay: float,
    step: int,
) -> None:
    """Fused 8-bit Adam step; ``step`` is 1-indexed and 0 is rejected."""
    if not all(isinstance(t, torch.Tensor) for t in params):
        raise TypeError("fused_adam8_step expects a list of torch.Tensor params")
    if not all(isinstance(s, Adam8State) for s in states):
        raise TypeError("fused_adam8_step expects a list of Adam8State")
    adam8_fused_step(
        params,
        grads,
        states,
        float(lr),
        float(beta1),
        float(beta2),
        float(eps),
        float(weight_decay),
        int(step),
    )


__all__ = [
    "Adam8State",
    "PackedByteBuffer",
    "PackedNibbleBuffer",
    "QuantizedBuffer",
    "acquire_device",
    "device_memory_gb",
    "fused_adam8_step",
    "lora_backward_pass",
    "lora_forward_pass",
    "pack4",
    "quant4_requantize",
    "quant4_unpack_all",
    "quantized_matmul",
    "synchronize",
    "tiled_matmul",
    "unpack4",
]

"""Per-layer LoRA buffers and the arena that owns them for one rank epoch.

A ``LayerArena`` holds every target layer's buffers at a single rank. A rank
change never resizes buffers in place: a new arena is built in full, swapped
in, and only then is the old arena released. A failure while building leaves
the old arena untouched.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass, field

import torch

from loralab.kernels import Adam8State


@dataclass(frozen=True)
class LayerSpec:
    name: str
    in_dim: int
    out_dim: int


@dataclass
class LoRALayerBuffers:
    name: str
    rank: int
    lora_a: torch.Tensor
    lora_b: torch.Tensor
    grad_a: torch.Tensor
    grad_b: torch.Tensor
    state_a: Adam8State
    state_b: Adam8State
    released: bool = field(default=False)

    @classmethod
    def allocate(
        cls,
        spec: LayerSpec,
        rank: int,
        device: torch.device,
        generator: torch.Generator,
        dtype: torch.dtype = torch.float32,
    ) -> LoRALayerBuffers:
        # A: uniform(-1/sqrt(in), 1/sqrt(in)), B: zeros, so the branch starts as a no-op.
        bound = 1.0 / math.sqrt(spec.in_dim) if spec.in_dim > 0 else 0.0
        init_a = torch.rand((spec.in_dim, rank), generator=generator, dtype=dtype)
        lora_a = init_a.mul_(2.0 * bound).sub_(bound).to(device)
        lora_b = torch.zeros((rank, spec.out_dim), dtype=dtype, device=device)
        return cls(
            name=spec.name,
            rank=rank,
            lora_a=lora_a,
            lora_b=lora_b,
            grad_a=torch.zeros_like(lora_a),
            grad_b=torch.zeros_like(lora_b),
            state_a=Adam8State.zeros(lora_a.numel(), device=device),
            state_b=Adam8State.zeros(lora_b.numel(), device=device),
        )

    @property
    def in_dim(self) -> int:
        return self.lora_a.shape[0]

    @property
    def out_dim(self) -> int:
        return self.lora_b.shape[1]

    @property
    def optimizer_step(self) -> int:
        return self.state_a.step

    @property
    def nbytes(self) -> int:
        if self.released:
            return 0
        dense = sum(
            t.numel() * t.element_size()
            for t in (self.lora_a, self.lora_b, self.grad_a, self.grad_b)
        )
        return dense + self.state_a.nbytes + self.state_b.nbytes

    def check_live(self) -> None:
        if self.released:
            raise RuntimeError(f"buffers for layer '{self.name}' have been released")

    def readback(self) -> dict[str, dict[str, object]]:
        """Copy A and B off the device."""
        self.check_live()
        return {
            "A": {"data": self.lora_a.detach().cpu().clone(), "shape": list(self.lora_a.shape)},
            "B": {"data": self.lora_b.detach().cpu().clone(), "shape": list(self.lora_b.shape)},
        }

    def optimizer_state(self) -> dict[str, torch.Tensor]:
        """Dequantized Adam moments keyed ``lora_A.exp_avg``, ``lora_B.exp_avg_sq`` and so on."""
        self.check_live()
        moments: dict[str, torch.Tensor] = {}
        pairs = (("lora_A", self.state_a, self.lora_a), ("lora_B", self.state_b, self.lora_b))
        for kind, state, param in pairs:
            exp_avg, exp_avg_sq = state.moments()
            moments[f"{kind}.exp_avg"] = exp_avg.view_as(param).cpu()
            moments[f"{kind}.exp_avg_sq"] = exp_avg_sq.view_as(param).cpu()
        return moments

    def release(self) -> None:
        if self.released:
            return
        empty = torch.empty(0)
        self.lora_a = self.lora_b = self.grad_a = self.grad_b = empty
        self.state_a = Adam8State.zeros(0)
        self.state_b = Adam8State.zeros(0)
        self.released = True


class LayerArena:
    """All target layers' buffers for one rank epoch."""

    def __init__(self, epoch: int, rank: int, layers: dict[str, LoRALayerBuffers]) -> None:
        self.epoch = epoch
        self.rank = rank
        self.layers = layers
        self.released = False

    @classmethod
    def build(
        cls,
        specs: Mapping[str, LayerSpec],
        rank: int,
        device: torch.device,
        seed: int = 0,
        epoch: int = 0,
    ) -> LayerArena:
        if rank < 0:
            raise ValueError("rank must be >= 0")
        generator = torch.Generator().manual_seed(int(seed) + epoch)
        built: dict[str, LoRALayerBuffers] = {}
        try:
            for name in sorted(specs):
                built[name] = LoRALayerBuffers.allocate(specs[name], rank, device, generator)
        except BaseException:
            for buffers in built.values():
                buffers.release()
            raise
        return cls(epoch=epoch, rank=rank, layers=built)

    def __getitem__(self, name: str) -> LoRALayerBuffers:
        if self.released:
            raise RuntimeError(f"arena epoch {self.epoch} has been released")
        return self.layers[name]

    def __iter__(self):
        return iter(self.layers.values())

    def __len__(self) -> int:
        return len(self.layers)

    @property
    def nbytes(self) -> int:
        return sum(buffers.nbytes for buffers in self.layers.values())

    def readback(self) -> dict[str, dict[str, dict[str, object]]]:
        return {name: buffers.readback() for name, buffers in self.layers.items()}

    def optimizer_state(self) -> dict[str, dict[str, torch.Tensor]]:
        return {name: buffers.optimizer_state() for name, buffers in self.layers.items()}

    def release(self) -> None:
        for buffers in self.layers.values():
            buffers.release()
        self.released = True


__all__ = ["LayerArena", "LayerSpec", "LoRALayerBuffers"]

"""Quantized tensor codec: 4-bit packed tensors and 8-bit optimizer state.

4-bit contract (lossy, clamping rather than rejecting):

    q = clamp(round(v / scale) + zero_point, -8, 7)
    v' = (q - zero_point) * scale

For ``zero_point == 0`` every decoded value lies in ``[-8*scale, 7*scale]``
and ``|v' - v| <= scale / 2`` for inputs inside that range. Re-encoding a
decoded value at the same scale reproduces the stored code exactly.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

import torch

from loralab.errors import ConfigError
from loralab.kernels.packed import PackedByteBuffer, PackedNibbleBuffer

QMIN4 = -8
QMAX4 = 7
QMAX8_SIGNED = 127
QMAX8_UNSIGNED = 255


@dataclass
class QuantizedBuffer:
    packed: PackedNibbleBuffer
    scale: float
    zero_point: int
    shape: tuple[int, ...]

    @property
    def numel(self) -> int:
        return self.packed.numel

    @property
    def nbytes(self) -> int:
        return self.packed.nbytes


def _as_tensor(values: torch.Tensor | Sequence[float]) -> torch.Tensor:
    if isinstance(values, torch.Tensor):
        return values.detach().to(torch.float32)
    return torch.as_tensor(list(values), dtype=torch.float32)


def _check_zero_point(zero_point: int) -> int:
    zero_point = int(zero_point)
    if not QMIN4 <= zero_point <= QMAX4:
        raise ConfigError(f"zero_point must be in [{QMIN4}, {QMAX4}]")
    return zero_point


def choose_scale4(values: torch.Tensor, zero_point: int = 0) -> float:
    """Smallest scale that maps the value range into the 4-bit code range."""
    if values.numel() == 0:
        return 1.0
    high = max(float(values.max().item()), 0.0)
    low = min(float(values.min().item()), 0.0)
    candidates = []
    if QMAX4 - zero_point > 0:
        candidates.append(high / (QMAX4 - zero_point))
    if zero_point - QMIN4 > 0:
        candidates.append(-low / (zero_point - QMIN4))
    scale = max(candidates) if candidates else 0.0
    return scale if scale > 0.0 else 1.0


def quantize4(values: torch.Tensor, scale: float, zero_point: int = 0) -> torch.Tensor:
    if scale <= 0:
        raise ConfigError("scale must be positive")
    codes = torch.round(values.to(torch.float32) / scale) + zero_point
    return codes.clamp_(QMIN4, QMAX4).to(torch.int64)


def dequantize4(codes: torch.Tensor, scale: float, zero_point: int = 0) -> torch.Tensor:
    return (codes.to(torch.float32) - zero_point) * scale


def quant4_pack(
    values: torch.Tensor | Sequence[float],
    scale: float | None = None,
    zero_point: int = 0,
    device: torch.device | str | None = None,
) -> QuantizedBuffer:
    """Quantize ``values`` to signed 4-bit codes packed eight per int32 word.

    Decoded values lie in ``[(-8 - zero_point) * scale, (7 - zero_point) * scale]``.
    With a nonzero ``zero_point`` that window shifts; ``zero_point=3`` stores
    code -8 as ``-11 * scale``. When ``scale`` is omitted it is chosen so the
    input range fits the window.
    """
    tensor = _as_tensor(values)
    zero_point = _check_zero_point(zero_point)
    if scale is None:
        scale = choose_scale4(tensor, zero_point)
    codes = quantize4(tensor, float(scale), zero_point)
    target = device if device is not None else tensor.device
    packed = PackedNibbleBuffer(tensor.numel(), signed=True, device=target)
    packed.store(codes)
    return QuantizedBuffer(
        packed=packed,
        scale=float(scale),
        zero_point=zero_point,
        shape=tuple(tensor.shape),
    )


def quant4_unpack(buffer: QuantizedBuffer, index: int) -> float:
    return (buffer.packed.get(index) - buffer.zero_point) * buffer.scale


def quant4_unpack_all(buffer: QuantizedBuffer) -> torch.Tensor:
    codes = buffer.packed.load()
    return dequantize4(codes, buffer.scale, buffer.zero_point).view(buffer.shape)


def quant4_requantize(buffer: QuantizedBuffer) -> QuantizedBuffer:
    return quant4_pack(
        quant4_unpack_all(buffer),
        scale=buffer.scale,
        zero_point=buffer.zero_point,
        device=buffer.packed.device,
    )


def quant8_store(buffer: PackedByteBuffer, values: torch.Tensor) -> float:
    """Quantize ``values`` into ``buffer`` with one per-tensor scale; returns the scale."""
    flat = values.reshape(-1).to(torch.float32)
    limit = QMAX8_SIGNED if buffer.signed else QMAX8_UNSIGNED
    peak = float(flat.abs().max().item()) if flat.numel() else 0.0
    scale = peak / limit if peak > 0.0 else 1.0
    low = -limit if buffer.signed else 0
    codes = torch.round(flat / scale).clamp_(low, limit).to(torch.int64)
    buffer.store(codes)
    return scale


def quant8_load(buffer: PackedByteBuffer, scale: float) -> torch.Tensor:
    return buffer.load().to(torch.float32) * scale


def quantized_matmul(
    x: torch.Tensor,
    weight: QuantizedBuffer,
    tile_size: int = 64,
) -> torch.Tensor:
    """``x @ W`` for a 4-bit packed ``W`` of shape ``[in, out]``."""
    if len(weight.shape) != 2:
        raise ValueError("quantized_matmul expects a 2-D packed weight")
    in_dim, _out_dim = weight.shape
    if x.shape[-1] != in_dim:
        raise ValueError(f"input width {x.shape[-1]} does not match weight rows {in_dim}")
    codes = weight.packed.load().view(weight.shape).to(x.device)
    out = None
    for start in range(0, in_dim, tile_size):
        stop = min(start + tile_size, in_dim)
        w_tile = dequantize4(codes[start:stop], weight.scale, weight.zero_point).to(x.dtype)
        part = x[..., start:stop] @ w_tile
        out = part if out is None else out + part
    if out is None:
        return x.new_zeros((*x.shape[:-1], weight.shape[1]))
    return out


__all__ = [
    "QuantizedBuffer",
    "choose_scale4",
    "dequantize4",
    "quant4_pack",
    "quant4_requantize",
    "quant4_unpack",
    "quant4_unpack_all",
    "quant8_load",
    "quant8_store",
    "quantize4",
    "quantized_matmul",
]

"""LoRA forward and backward kernels.

Forward:  h = x @ A,  delta = h @ B,  y = base + scaling * delta
Backward: dB = scaling * h^T @ g,  dA = scaling * x^T @ (g @ B^T)

Every reduction runs through ``tiled_matmul``, which walks the reduced
dimension in fixed-size tiles in ascending order, so identical inputs give
bit-identical results regardless of how large the reduced dimension is.
"""

from __future__ import annotations

import torch


def tiled_matmul(a: torch.Tensor, b: torch.Tensor, tile_size: int = 64) -> torch.Tensor:
    """``a @ b`` with the inner dimension accumulated tile by tile in order."""
    inner = a.shape[-1]
    if b.shape[0] != inner:
        raise ValueError(f"inner dimensions differ: {inner} vs {b.shape[0]}")
    if tile_size < 1:
        raise ValueError("tile_size must be >= 1")
    out = a.new_zeros((*a.shape[:-1], b.shape[-1]))
    for start in range(0, inner, tile_size):
        stop = min(start + tile_size, inner)
        out.add_(a[..., start:stop] @ b[start:stop])
    return out


def _flatten_tokens(x: torch.Tensor) -> torch.Tensor:
    return x.reshape(-1, x.shape[-1])


def lora_forward(
    x: torch.Tensor,
    lora_a: torch.Tensor,
    lora_b: torch.Tensor,
    base_output: torch.Tensor,
    scaling: float,
    tile_size: int = 64,
) -> tuple[torch.Tensor, torch.Tensor]:
    """Apply the low-rank branch to ``base_output``.

    Args:
        x: Layer input, shape ``[*, in]``
        lora_a: ``[in, rank]``
        lora_b: ``[rank, out]``
        base_output: Frozen layer output, shape ``[*, out]``
        scaling: ``alpha / rank``
        tile_size: Reduction tile width

    Returns:
        ``(output, intermediate)`` where ``intermediate`` is ``x @ A`` flattened
        to ``[tokens, rank]`` and kept for the backward pass.
    """
    rank = lora_a.shape[1]
    if lora_b.shape[0] != rank:
        raise ValueError(f"A has {rank} columns but B has {lora_b.shape[0]} rows")
    flat_x = _flatten_tokens(x).to(lora_a.dtype)
    if rank == 0:
        return base_output, flat_x.new_zeros((flat_x.shape[0], 0))

    intermediate = tiled_matmul(flat_x, lora_a, tile_size)
    delta = tiled_matmul(intermediate, lora_b, tile_size)
    delta = delta.view(*base_output.shape[:-1], lora_b.shape[1])
    output = base_output + (scaling * delta).to(base_output.dtype)
    return output, intermediate


def lora_backward(
    grad_output: torch.Tensor,
    x: torch.Tensor,
    intermediate: torch.Tensor,
    lora_b: torch.Tensor,
    scaling: float,
    tile_size: int = 64,
    grad_a_out: torch.Tensor | None = None,
    grad_b_out: torch.Tensor | None = None,
) -> tuple[torch.Tensor, torch.Tensor]:
    """Gradients of the low-rank branch given ``dL/d(output)``.

    Gradients are summed over every token position. When ``grad_a_out`` /
    ``grad_b_out`` are given the results are written into them.
    """
    rank = lora_b.shape[0]
    flat_g = _flatten_tokens(grad_output).to(lora_b.dtype)
    flat_x = _flatten_tokens(x).to(lora_b.dtype)
    if flat_g.shape[0] != flat_x.shape[0]:
        raise ValueError("grad_output and x disagree on the number of tokens")

    if rank == 0:
        grad_a = flat_x.new_zeros((flat_x.shape[1], 0))
        grad_b = flat_g.new_zeros((0, flat_g.shape[1]))
    else:
        grad_b = tiled_matmul(intermediate.t(), flat_g, tile_size).mul_(scaling)
        grad_h = tiled_matmul(flat_g, lora_b.t(), tile_size)
        grad_a = tiled_matmul(flat_x.t(), grad_h, tile_size).mul_(scaling)

    if grad_a_out is not None:
        grad_a_out.copy_(grad_a)
        grad_a = grad_a_out
    if grad_b_out is not None:
        grad_b_out.copy_(grad_b)
        grad_b = grad_b_out
    return grad_a, grad_b


__all__ = ["lora_backward", "lora_forward", "tiled_matmul"]

"""Fused Adam step over 8-bit packed moment state.

Per element, in one pass:

1. Dequantize the stored first moment (signed 8-bit) and second moment
2. Fold L2 weight decay into the gradient: g = grad + weight_decay * w
3. m = beta1 * m + (1 - beta1) * g,  v = beta2 * v + (1 - beta2) * g^2
4. w -= lr * m_hat / (sqrt(v_hat) + eps) with 1-indexed bias correction
5. Re-quantize m and v with fresh per-tensor scales

The second moment is stored as ``sqrt(v)`` in an unsigned 8-bit buffer, which
keeps small-but-nonzero variances from collapsing to zero next to large ones.
"""

from __future__ import annotations

from dataclasses import dataclass

import torch

from loralab.errors import ConfigError
from loralab.kernels.packed import PackedByteBuffer
from loralab.kernels.quant import quant8_load, quant8_store


@dataclass
class Adam8State:
    exp_avg: PackedByteBuffer
    exp_avg_sq: PackedByteBuffer
    exp_avg_scale: float = 1.0
    exp_avg_sq_scale: float = 1.0
    step: int = 0

    @classmethod
    def zeros(cls, numel: int, device: torch.device | str | None = None) -> Adam8State:
        return cls(
            exp_avg=PackedByteBuffer(numel, signed=True, device=device),
            exp_avg_sq=PackedByteBuffer(numel, signed=False, device=device),
        )

    @property
    def nbytes(self) -> int:
        return self.exp_avg.nbytes + self.exp_avg_sq.nbytes

    def moments(self) -> tuple[torch.Tensor, torch.Tensor]:
        exp_avg = quant8_load(self.exp_avg, self.exp_avg_scale)
        root = quant8_load(self.exp_avg_sq, self.exp_avg_sq_scale)
        return exp_avg, root * root


def _check_hparams(lr: float, beta1: float, beta2: float, eps: float, step: int) -> None:
    if step < 1:
        raise ConfigError(f"step must be >= 1 for bias correction, got {step}")
    if lr <= 0:
        raise ConfigError("lr must be positive")
    if not 0.0 <= beta1 < 1.0:
        raise ConfigError("beta1 must be in [0, 1)")
    if not 0.0 <= beta2 < 1.0:
        raise ConfigError("beta2 must be in [0, 1)")
    if eps <= 0:
        raise ConfigError("eps must be positive")


@torch.no_grad()
def adam8_fused_step(
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
    """Update ``params`` in place and re-quantize their moment ``states``.

    Args:
        params: Full-precision parameter tensors
        grads: Gradient tensors, same shapes as ``params``
        states: Packed moment state, one per parameter
        lr: Learning rate
        beta1: First moment decay
        beta2: Second moment decay
        eps: Numerical stability term
        weight_decay: L2 coefficient folded into the gradient
        step: Current step (1-indexed)
    """
    _check_hparams(lr, beta1, beta2, eps, step)
    if not len(params) == len(grads) == len(states):
        raise ValueError("params, grads and states must have the same length")

    bias_correction1 = 1.0 - beta1**step
    bias_correction2 = 1.0 - beta2**step

    for param, grad, state in zip(params, grads, states, strict=True):
        if param.numel() != state.exp_avg.numel:
            raise ValueError("optimizer state does not match parameter size")
        if param.numel() == 0:
            state.step = step
            continue
        exp_avg, exp_avg_sq = state.moments()
        exp_avg = exp_avg.view_as(param).to(param.dtype)
        exp_avg_sq = exp_avg_sq.view_as(param).to(param.dtype)

        update_grad = grad.to(param.dtype)
        if weight_decay != 0:
            update_grad = update_grad.add(param, alpha=weight_decay)

        exp_avg.mul_(beta1).add_(update_grad, alpha=1.0 - beta1)
        exp_avg_sq.mul_(beta2).addcmul_(update_grad, update_grad, value=1.0 - beta2)

        denom = (exp_avg_sq / bias_correction2).sqrt_().add_(eps)
        param.addcdiv_(exp_avg, denom, value=-lr / bias_correction1)

        state.exp_avg_scale = quant8_store(state.exp_avg, exp_avg)
        state.exp_avg_sq_scale = quant8_store(state.exp_avg_sq, exp_avg_sq.sqrt())
        state.step = step


__all__ = ["Adam8State", "adam8_fused_step"]

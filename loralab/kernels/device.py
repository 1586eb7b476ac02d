"""Acquire the compute device the kernels dispatch to."""

from __future__ import annotations

import os
from functools import lru_cache

import torch

from loralab.errors import SetupError

_DEVICE_ENV = "LORALAB_DEVICE"


def _mps_available() -> bool:
    backend = getattr(torch.backends, "mps", None)
    return bool(backend is not None and backend.is_available())


@lru_cache(maxsize=None)
def acquire_device(preferred: str | None = None) -> torch.device:
    """Resolve the compute device, honouring an explicit request first.

    Resolution order: ``preferred``, ``LORALAB_DEVICE``, CUDA, MPS, CPU. An
    explicitly requested accelerator that is not present is a ``SetupError``
    rather than a silent fallback.
    """
    requested = preferred or os.environ.get(_DEVICE_ENV)
    if requested:
        try:
            device = torch.device(requested)
        except RuntimeError as exc:
            raise SetupError(f"Unknown compute device '{requested}'") from exc
        if device.type == "cuda" and not torch.cuda.is_available():
            raise SetupError("CUDA device requested but no CUDA runtime is available")
        if device.type == "mps" and not _mps_available():
            raise SetupError("MPS device requested but MPS is not available")
        return device

    if torch.cuda.is_available():
        return torch.device("cuda")
    if _mps_available():
        return torch.device("mps")
    return torch.device("cpu")


def synchronize(device: torch.device) -> None:
    """Block until queued work on ``device`` has completed."""
    if device.type == "cuda":
        torch.cuda.synchronize(device)
    elif device.type == "mps":
        torch.mps.synchronize()


def device_memory_gb(device: torch.device) -> float | None:
    if device.type == "cuda":
        return torch.cuda.memory_allocated(device) / float(1 << 30)
    return None

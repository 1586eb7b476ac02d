"""Token windowing and the cyclic batch cursor."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

import torch

from loralab.errors import ConfigError, SetupError


def tokenize_dataset(dataset: Any, tokenizer) -> list[int]:
    """Accepts raw text, ``{"text": ...}``, ``{"tokens": [...]}`` or a token sequence."""
    if isinstance(dataset, str):
        return list(tokenizer.encode(dataset))
    if isinstance(dataset, Mapping):
        if "tokens" in dataset:
            return [int(t) for t in dataset["tokens"]]
        if "text" in dataset:
            return list(tokenizer.encode(dataset["text"]))
        raise ConfigError("dataset mapping must provide 'text' or 'tokens'")
    if isinstance(dataset, torch.Tensor):
        return [int(t) for t in dataset.reshape(-1).tolist()]
    if isinstance(dataset, Sequence):
        return [int(t) for t in dataset]
    raise ConfigError(f"Unsupported dataset type: {type(dataset).__name__}")


def create_training_sequences(
    tokens: Sequence[int] | torch.Tensor,
    sequence_length: int,
    stride: int | None = None,
) -> torch.Tensor:
    """Cut ``tokens`` into windows of ``sequence_length``; returns ``[num_windows, sequence_length]``.

    ``stride`` defaults to ``sequence_length`` (disjoint windows). A smaller
    stride gives overlapping windows. A trailing partial window is dropped.
    """
    if sequence_length < 2:
        raise ConfigError("sequence_length must be >= 2")
    stride = sequence_length if stride is None else stride
    if stride < 1:
        raise ConfigError("stride must be >= 1")

    flat = torch.as_tensor(tokens, dtype=torch.long).reshape(-1)
    if flat.numel() < sequence_length:
        raise SetupError(
            f"corpus has {flat.numel()} tokens, fewer than one sequence of {sequence_length}"
        )
    return flat.unfold(0, sequence_length, stride).contiguous()


class BatchCursor:
    """Deterministic batch selection: batch ``i`` starts at ``i * batch_size`` and wraps."""

    def __init__(self, sequences: torch.Tensor, batch_size: int) -> None:
        if batch_size < 1:
            raise ConfigError("batch_size must be >= 1")
        if sequences.ndim != 2 or sequences.shape[0] == 0:
            raise SetupError("no training sequences available")
        self.sequences = sequences
        self.batch_size = int(batch_size)

    def __len__(self) -> int:
        return self.sequences.shape[0]

    def indices(self, step: int) -> list[int]:
        n = len(self)
        start = (step * self.batch_size) % n
        return [(start + i) % n for i in range(self.batch_size)]

    def batch(self, step: int) -> torch.Tensor:
        return self.sequences[self.indices(step)]


def split_inputs_labels(batch: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
    """Inputs are each window minus its last token; labels are shifted left by one."""
    return batch[:, :-1], batch[:, 1:]


__all__ = [
    "BatchCursor",
    "create_training_sequences",
    "split_inputs_labels",
    "tokenize_dataset",
]

"""Sub-word packed integer storage on 32-bit machine words.

``PackedNibbleBuffer`` stores eight 4-bit values per word and
``PackedByteBuffer`` stores four 8-bit values per word. Callers only see
``get``/``set`` for single elements and ``load``/``store`` for whole tensors;
the bit layout stays in this module.

Layout: element ``i`` lives in word ``i // per_word`` at bit offset
``bits * (i % per_word)`` (little-endian within the word). Signed views use
two's complement within the slot.

Single-element ``set`` is a read-modify-write of the containing word (clear
the slot, OR in the new value) under the buffer lock, so concurrent writers
to neighbouring elements of the same word never lose each other's updates.
"""

from __future__ import annotations

import threading

import torch

_WORD_BITS = 32
_WORD_MASK = (1 << _WORD_BITS) - 1


def _to_int32_words(words64: torch.Tensor) -> torch.Tensor:
    wrapped = torch.where(words64 >= (1 << 31), words64 - (1 << _WORD_BITS), words64)
    return wrapped.to(torch.int32)


class _PackedWordBuffer:
    bits: int = 8

    def __init__(
        self,
        numel: int,
        signed: bool = True,
        device: torch.device | str | None = None,
    ) -> None:
        if numel < 0:
            raise ValueError("numel must be non-negative")
        self.numel = int(numel)
        self.signed = bool(signed)
        self.per_word = _WORD_BITS // self.bits
        self._mask = (1 << self.bits) - 1
        num_words = (self.numel + self.per_word - 1) // self.per_word
        self.words = torch.zeros(num_words, dtype=torch.int32, device=device)
        self._lock = threading.Lock()

    @classmethod
    def wrap(cls, words: torch.Tensor, numel: int, signed: bool = True) -> _PackedWordBuffer:
        """View an existing int32 word tensor as a packed buffer without copying."""
        per_word = _WORD_BITS // cls.bits
        if words.dtype != torch.int32:
            raise TypeError("packed words must be an int32 tensor")
        if words.numel() != (numel + per_word - 1) // per_word:
            raise ValueError(f"{words.numel()} words cannot hold exactly {numel} values")
        buffer = cls(0, signed=signed, device=words.device)
        buffer.numel = int(numel)
        buffer.words = words
        return buffer

    @property
    def min_value(self) -> int:
        return -(1 << (self.bits - 1)) if self.signed else 0

    @property
    def max_value(self) -> int:
        return (1 << (self.bits - 1)) - 1 if self.signed else self._mask

    @property
    def device(self) -> torch.device:
        return self.words.device

    @property
    def nbytes(self) -> int:
        return self.words.numel() * self.words.element_size()

    def __len__(self) -> int:
        return self.numel

    def _locate(self, index: int) -> tuple[int, int]:
        if not 0 <= index < self.numel:
            raise IndexError(f"index {index} out of range for buffer of {self.numel} values")
        return index // self.per_word, self.bits * (index % self.per_word)

    def _check_range(self, low: int, high: int) -> None:
        if low < self.min_value or high > self.max_value:
            raise ValueError(
                f"values must lie in [{self.min_value}, {self.max_value}], got [{low}, {high}]"
            )

    def get(self, index: int) -> int:
        word_index, shift = self._locate(int(index))
        word = int(self.words[word_index].item()) & _WORD_MASK
        raw = (word >> shift) & self._mask
        if self.signed and raw > self.max_value:
            raw -= 1 << self.bits
        return raw

    def set(self, index: int, value: int) -> None:
        word_index, shift = self._locate(int(index))
        value = int(value)
        self._check_range(value, value)
        with self._lock:
            word = int(self.words[word_index].item()) & _WORD_MASK
            word &= ~(self._mask << shift) & _WORD_MASK
            word |= (value & self._mask) << shift
            if word >= 1 << 31:
                word -= 1 << _WORD_BITS
            self.words[word_index] = word

    def load(self) -> torch.Tensor:
        """Unpack every value into an int64 tensor of length ``numel``."""
        if self.numel == 0:
            return torch.zeros(0, dtype=torch.int64, device=self.device)
        shifts = torch.arange(self.per_word, device=self.device, dtype=torch.int64) * self.bits
        words64 = self.words.to(torch.int64) & _WORD_MASK
        raw = (words64.unsqueeze(1) >> shifts) & self._mask
        values = raw.reshape(-1)[: self.numel]
        if self.signed:
            values = values - (values > self.max_value).to(torch.int64) * (1 << self.bits)
        return values

    def store(self, values: torch.Tensor) -> None:
        """Pack an integer tensor of exactly ``numel`` values, replacing all words."""
        flat = values.reshape(-1).to(device=self.device, dtype=torch.int64)
        if flat.numel() != self.numel:
            raise ValueError(f"expected {self.numel} values, got {flat.numel()}")
        if self.numel == 0:
            return
        self._check_range(int(flat.min().item()), int(flat.max().item()))
        padded_len = self.words.numel() * self.per_word
        if padded_len != self.numel:
            flat = torch.cat([flat, flat.new_zeros(padded_len - self.numel)])
        shifts = torch.arange(self.per_word, device=self.device, dtype=torch.int64) * self.bits
        slots = (flat.view(-1, self.per_word) & self._mask) << shifts
        with self._lock:
            self.words.copy_(_to_int32_words(slots.sum(dim=1)))

    def zero_(self) -> None:
        with self._lock:
            self.words.zero_()

    def __repr__(self) -> str:
        kind = "signed" if self.signed else "unsigned"
        return f"{type(self).__name__}(numel={self.numel}, {kind}, device={self.device})"


class PackedNibbleBuffer(_PackedWordBuffer):
    """Eight 4-bit values per 32-bit word."""

    bits = 4


class PackedByteBuffer(_PackedWordBuffer):
    """Four 8-bit values per 32-bit word."""

    bits = 8


__all__ = ["PackedByteBuffer", "PackedNibbleBuffer"]

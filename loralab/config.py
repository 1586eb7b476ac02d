"""Adapter, rank-scheduler and training configuration.

All configuration objects are frozen dataclasses validated on construction.
The adapter rank is the only field that changes during a run, and it changes
by replacing the ``AdapterConfig`` (``with_rank``) between steps.

Presets:
- "safe": small fixed rank, conservative learning rate
- "fast": hardware-aware rank with a short cooldown
- "memory": 4-bit frozen base layers and a low rank ceiling
"""

from __future__ import annotations

import dataclasses
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from loralab.errors import ConfigError


class RankStrategy(str, Enum):
    FIXED = "fixed"
    PROGRESSIVE = "progressive"
    ADAPTIVE = "adaptive"
    HARDWARE_AWARE = "hardware_aware"


@dataclass(frozen=True)
class AdapterConfig:
    rank: int = 4
    alpha: float = 8.0
    target_modules: tuple[str, ...] = ("q_proj", "v_proj")
    min_rank: int = 2
    max_rank: int = 64

    def __post_init__(self) -> None:
        targets = (self.target_modules,) if isinstance(self.target_modules, str) else self.target_modules
        object.__setattr__(self, "target_modules", normalize_targets(targets))
        if not self.target_modules:
            raise ConfigError("target_modules must name at least one layer")
        if self.min_rank < 0:
            raise ConfigError("min_rank must be >= 0")
        if self.max_rank < self.min_rank:
            raise ConfigError("max_rank must be >= min_rank")
        if not self.min_rank <= self.rank <= self.max_rank:
            raise ConfigError(
                f"rank {self.rank} outside configured bounds [{self.min_rank}, {self.max_rank}]"
            )
        if self.alpha <= 0:
            raise ConfigError("alpha must be positive")

    @property
    def scaling(self) -> float:
        if self.rank == 0:
            return 0.0
        return self.alpha / self.rank

    def with_rank(self, rank: int) -> AdapterConfig:
        return dataclasses.replace(self, rank=int(rank))


@dataclass(frozen=True)
class RankSchedulerConfig:
    strategy: RankStrategy = RankStrategy.ADAPTIVE
    initial_rank: int = 4
    min_rank: int = 2
    max_rank: int = 64
    target_memory_usage_gb: float = 4.0
    performance_threshold: float = 0.95
    convergence_window: int = 100
    adaptation_cooldown: int = 50
    progressive_horizon: int = 1000
    history_cap: int = 1000
    history_keep: int = 500

    def __post_init__(self) -> None:
        try:
            object.__setattr__(self, "strategy", RankStrategy(self.strategy))
        except ValueError as exc:
            choices = [s.value for s in RankStrategy]
            raise ConfigError(f"Unknown rank strategy '{self.strategy}'. Choose from: {choices}") from exc
        if self.max_rank < self.min_rank:
            raise ConfigError("max_rank must be >= min_rank")
        if not self.min_rank <= self.initial_rank <= self.max_rank:
            raise ConfigError("initial_rank must lie within [min_rank, max_rank]")
        if self.target_memory_usage_gb <= 0:
            raise ConfigError("target_memory_usage_gb must be positive")
        if self.adaptation_cooldown < 0:
            raise ConfigError("adaptation_cooldown must be >= 0")
        if self.convergence_window < 1:
            raise ConfigError("convergence_window must be >= 1")
        if self.progressive_horizon < 1:
            raise ConfigError("progressive_horizon must be >= 1")
        if not 0 < self.history_keep <= self.history_cap:
            raise ConfigError("history_keep must be in (0, history_cap]")


PRESETS: dict[str, dict[str, object]] = {
    "safe": {
        "learning_rate": 5e-4,
        "rank_strategy": "fixed",
        "adapter": {"rank": 4, "alpha": 8.0},
    },
    "fast": {
        "learning_rate": 2e-3,
        "rank_strategy": "hardware_aware",
        "scheduler": {"adaptation_cooldown": 20},
    },
    "memory": {
        "learning_rate": 1e-3,
        "rank_strategy": "hardware_aware",
        "quantize_base": True,
        "adapter": {"rank": 4, "max_rank": 16},
    },
}


@dataclass(frozen=True)
class TrainingConfig:
    adapter: AdapterConfig = field(default_factory=AdapterConfig)
    sequence_length: int = 128
    stride: int | None = None
    batch_size: int = 4
    max_steps: int = 1000
    learning_rate: float = 1e-3
    weight_decay: float = 0.0
    beta1: float = 0.9
    beta2: float = 0.999
    eps: float = 1e-8
    rank_strategy: RankStrategy = RankStrategy.HARDWARE_AWARE
    scheduler: Mapping[str, Any] = field(default_factory=dict)
    tile_size: int = 64
    quantize_base: bool = False
    seed: int = 0
    device: str | None = None
    model_name: str = "unknown"

    def __post_init__(self) -> None:
        try:
            object.__setattr__(self, "rank_strategy", RankStrategy(self.rank_strategy))
        except ValueError as exc:
            choices = [s.value for s in RankStrategy]
            raise ConfigError(
                f"Unknown rank strategy '{self.rank_strategy}'. Choose from: {choices}"
            ) from exc
        if self.sequence_length < 2:
            raise ConfigError("sequence_length must be >= 2")
        if self.stride is not None and self.stride < 1:
            raise ConfigError("stride must be >= 1")
        if self.batch_size < 1:
            raise ConfigError("batch_size must be >= 1")
        if self.max_steps < 1:
            raise ConfigError("max_steps must be >= 1")
        if self.learning_rate <= 0:
            raise ConfigError("learning_rate must be positive")
        if self.weight_decay < 0:
            raise ConfigError("weight_decay must be non-negative")
        if not 0.0 <= self.beta1 < 1.0:
            raise ConfigError("beta1 must be in [0, 1)")
        if not 0.0 <= self.beta2 < 1.0:
            raise ConfigError("beta2 must be in [0, 1)")
        if self.eps <= 0:
            raise ConfigError("eps must be positive")
        if self.tile_size < 1:
            raise ConfigError("tile_size must be >= 1")

    @property
    def window_stride(self) -> int:
        return self.stride if self.stride is not None else self.sequence_length

    def scheduler_config(self) -> RankSchedulerConfig:
        overrides = dict(self.scheduler)
        overrides.setdefault("strategy", self.rank_strategy)
        overrides.setdefault("initial_rank", self.adapter.rank)
        overrides.setdefault("min_rank", self.adapter.min_rank)
        overrides.setdefault("max_rank", self.adapter.max_rank)
        return RankSchedulerConfig(**overrides)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], preset: str | None = None) -> TrainingConfig:
        """Build a config from plain (JSON-like) data, optionally layered on a preset."""
        merged: dict[str, Any] = {}
        if preset is not None:
            if preset not in PRESETS:
                raise ConfigError(f"Unknown preset '{preset}'. Choose from: {list(PRESETS.keys())}")
            merged = _deep_merge(merged, PRESETS[preset])
        merged = _deep_merge(merged, data)

        known = {f.name for f in dataclasses.fields(cls)}
        unknown = set(merged) - known
        if unknown:
            raise ConfigError(f"Unknown training config fields: {sorted(unknown)}")

        adapter = merged.pop("adapter", None)
        if isinstance(adapter, Mapping):
            merged["adapter"] = AdapterConfig(**adapter)
        elif adapter is not None:
            merged["adapter"] = adapter
        return cls(**merged)

    def to_dict(self) -> dict[str, Any]:
        payload = dataclasses.asdict(self)
        payload["rank_strategy"] = self.rank_strategy.value
        payload["adapter"]["target_modules"] = list(self.adapter.target_modules)
        payload["scheduler"] = dict(self.scheduler)
        return payload


def _deep_merge(base: Mapping[str, Any], extra: Mapping[str, Any]) -> dict[str, Any]:
    result = dict(base)
    for key, value in extra.items():
        current = result.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            result[key] = _deep_merge(current, value)
        else:
            result[key] = value
    return result


def normalize_targets(targets: Iterable[str]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(str(t) for t in targets))

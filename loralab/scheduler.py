"""Rank scheduler: resizes the LoRA adapter from observed training metrics.

Strategies:
- fixed: never changes rank
- progressive: ramps from min_rank to max_rank over ``progressive_horizon`` steps
- adaptive: slope analysis of a sliding loss / gradient-norm window; grows the
  rank when improvement stalls with healthy gradients, shrinks it on vanishing
  or exploding gradients
- hardware_aware: grows below 70% of the memory target with healthy
  throughput, shrinks above 90%

Every strategy except fixed is subject to the cooldown: a change proposed
within ``adaptation_cooldown`` steps of the previous one comes back with
``should_apply=False`` and the suppression noted in ``reason``.

``update`` only proposes. The caller applies the new layout and then calls
``commit`` so ``current_rank`` always describes buffers that actually exist.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from typing import Any

from loralab.config import RankSchedulerConfig, RankStrategy
from loralab.errors import ConfigError


@dataclass(frozen=True)
class StepMetrics:
    step: int
    loss: float
    gradient_norm: float
    memory_usage_gb: float = 0.0
    throughput_tokens_per_sec: float = 0.0
    validation_loss: float | None = None


@dataclass(frozen=True)
class RankDecision:
    recommended_rank: int
    should_apply: bool
    reason: str
    confidence: float
    current_rank: int = 0
    metrics: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class _HistoryEntry:
    step: int
    loss: float
    gradient_norm: float
    memory_usage_gb: float
    throughput_tokens_per_sec: float
    validation_loss: float | None
    rank: int


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def compute_trend(data: list[float]) -> float:
    """Least-squares slope of ``data`` against its index."""
    n = len(data)
    if n < 2:
        return 0.0
    x_mean = (n - 1) / 2.0
    y_mean = sum(data) / n
    numerator = 0.0
    denominator = 0.0
    for i, y in enumerate(data):
        numerator += (i - x_mean) * (y - y_mean)
        denominator += (i - x_mean) ** 2
    return 0.0 if denominator == 0 else numerator / denominator


def compute_variance(data: list[float]) -> float:
    if len(data) < 2:
        return 0.0
    mean = sum(data) / len(data)
    return sum((x - mean) ** 2 for x in data) / len(data)


class RankScheduler:
    """Proposes rank changes; see module docstring for the strategies."""

    def __init__(self, config: RankSchedulerConfig | None = None, **overrides: Any) -> None:
        if config is None:
            config = RankSchedulerConfig(**overrides)
        elif overrides:
            raise ConfigError("pass either a RankSchedulerConfig or keyword overrides, not both")
        self.config = config
        self._current_rank = config.initial_rank
        self._history: list[_HistoryEntry] = []
        self._last_adaptation: int | None = None
        self._adaptation_count = 0

    @property
    def current_rank(self) -> int:
        return self._current_rank

    @property
    def history_length(self) -> int:
        return len(self._history)

    def _clamp(self, rank: int) -> int:
        return max(self.config.min_rank, min(self.config.max_rank, int(rank)))

    def update(self, metrics: StepMetrics | Mapping[str, Any]) -> RankDecision:
        if not isinstance(metrics, StepMetrics):
            metrics = StepMetrics(**metrics)

        self._history.append(
            _HistoryEntry(
                step=metrics.step,
                loss=float(metrics.loss),
                gradient_norm=float(metrics.gradient_norm),
                memory_usage_gb=float(metrics.memory_usage_gb),
                throughput_tokens_per_sec=float(metrics.throughput_tokens_per_sec),
                validation_loss=metrics.validation_loss,
                rank=self._current_rank,
            )
        )
        if len(self._history) > self.config.history_cap:
            self._history = self._history[-self.config.history_keep :]

        recommended, should_apply, reason, confidence = self._decide(metrics)
        recommended = self._clamp(recommended)
        if recommended == self._current_rank:
            should_apply = False

        if (
            should_apply
            and self.config.strategy is not RankStrategy.FIXED
            and self._in_cooldown(metrics.step)
        ):
            should_apply = False
            reason = f"{reason} (cooldown active)"

        return RankDecision(
            recommended_rank=recommended,
            should_apply=should_apply,
            reason=reason,
            confidence=confidence,
            current_rank=self._current_rank,
            metrics=self._performance_metrics(),
        )

    def _in_cooldown(self, step: int) -> bool:
        if self._last_adaptation is None:
            return False
        return step - self._last_adaptation < self.config.adaptation_cooldown

    def _decide(self, metrics: StepMetrics) -> tuple[int, bool, str, float]:
        strategy = self.config.strategy
        if strategy is RankStrategy.FIXED:
            return self._current_rank, False, "Fixed rank strategy", 1.0
        if strategy is RankStrategy.PROGRESSIVE:
            return self._progressive(metrics.step)
        if strategy is RankStrategy.HARDWARE_AWARE:
            return self._hardware_aware(metrics)
        return self._adaptive()

    def _progressive(self, step: int) -> tuple[int, bool, str, float]:
        ratio = min(max(step, 0) / float(self.config.progressive_horizon), 1.0)
        span = self.config.max_rank - self.config.min_rank
        target = _round_half_up(self.config.min_rank + span * ratio)
        return target, target != self._current_rank, f"Progressive increase to rank {target}", 0.8

    def _adaptive(self) -> tuple[int, bool, str, float]:
        rank = self._current_rank
        if len(self._history) < 10:
            return rank, False, "Insufficient history for adaptation", 0.5

        window = min(self.config.convergence_window, len(self._history))
        recent = self._history[-window:]
        if len(recent) < 20:
            return rank, False, "Insufficient history for trend analysis", 0.4

        loss_trend = compute_trend([h.loss for h in recent])
        gradient_trend = compute_trend([h.gradient_norm for h in recent])
        is_converging = loss_trend < -0.001
        has_gradient_flow = recent[-1].gradient_norm > 1e-8

        recent_loss = sum(h.loss for h in recent[-5:]) / 5.0
        early_loss = sum(h.loss for h in recent[:5]) / 5.0
        improvement = (early_loss - recent_loss) / early_loss if early_loss != 0 else 0.0

        cfg = self.config
        if (
            not is_converging
            and has_gradient_flow
            and improvement < 0.05
            and rank < cfg.max_rank
        ):
            return (
                rank + 2,
                True,
                f"Increasing rank - potential underfitting (improvement: {improvement * 100:.2f}%)",
                0.8,
            )
        if (not has_gradient_flow or (gradient_trend > 0.1 and loss_trend > 0)) and rank > cfg.min_rank:
            if gradient_trend > 0.1:
                reason = "Reducing rank - gradient explosion detected"
            else:
                reason = "Reducing rank - vanishing gradients"
            return rank - 1, True, reason, 0.9
        if has_gradient_flow and is_converging:
            avg_grad_norm = sum(h.gradient_norm for h in recent[-10:]) / 10.0
            if avg_grad_norm < 1e-6 and rank > cfg.min_rank:
                return rank - 1, True, "Reducing rank - gradients very small", 0.7
            if avg_grad_norm > 1e-2 and rank < cfg.max_rank:
                return rank + 1, True, "Increasing rank - strong gradients detected", 0.7
        return rank, False, "Performance metrics stable", 0.7

    def _hardware_aware(self, metrics: StepMetrics) -> tuple[int, bool, str, float]:
        cfg = self.config
        rank = self._current_rank
        utilization = metrics.memory_usage_gb / cfg.target_memory_usage_gb
        recent = self._history[-10:]
        avg_throughput = sum(h.throughput_tokens_per_sec for h in recent) / len(recent)

        if utilization > 0.9 and rank > cfg.min_rank:
            return (
                rank - 2,
                True,
                f"Reducing rank due to memory pressure ({utilization * 100:.1f}%)",
                0.9,
            )
        if (
            utilization < 0.7
            and avg_throughput > cfg.performance_threshold * metrics.throughput_tokens_per_sec
            and rank < cfg.max_rank
        ):
            return (
                rank + 2,
                True,
                f"Increasing rank with available resources ({utilization * 100:.1f}% memory)",
                0.9,
            )
        return rank, False, "Hardware metrics stable", 0.9

    def _performance_metrics(self) -> dict[str, float]:
        if len(self._history) < 10:
            return {"convergence_rate": 0.0, "stability": 0.0, "efficiency": 0.0}
        recent = self._history[-50:]
        losses = [h.loss for h in recent]
        avg_throughput = sum(h.throughput_tokens_per_sec for h in recent) / len(recent)
        rank_sq = self._current_rank * self._current_rank
        return {
            "convergence_rate": max(0.0, -compute_trend(losses)),
            "stability": 1.0 / (1.0 + compute_variance(losses)),
            "efficiency": avg_throughput / rank_sq if rank_sq else 0.0,
            "avg_throughput": avg_throughput,
            "current_loss": losses[-1],
        }

    def commit(self, rank: int, step: int | None = None) -> None:
        """Record that the caller now runs at ``rank``.

        A change applied at ``step`` starts the adaptation cooldown from there.
        """
        previous = self._current_rank
        self.set_rank(rank)
        if self._current_rank != previous:
            self._adaptation_count += 1
            if step is not None:
                self._last_adaptation = step

    def set_rank(self, rank: int) -> None:
        rank = int(rank)
        if not self.config.min_rank <= rank <= self.config.max_rank:
            raise ConfigError(
                f"rank {rank} outside configured bounds "
                f"[{self.config.min_rank}, {self.config.max_rank}]"
            )
        self._current_rank = rank

    def get_statistics(self) -> dict[str, Any]:
        return {
            "current_rank": self._current_rank,
            "strategy": self.config.strategy.value,
            "training_steps": len(self._history),
            "last_adaptation": self._last_adaptation,
            "adaptation_count": self._adaptation_count,
            "performance_metrics": self._performance_metrics(),
        }

    def reset(self) -> None:
        self._current_rank = self.config.initial_rank
        self._history = []
        self._last_adaptation = None
        self._adaptation_count = 0


def create_rank_scheduler(strategy: RankStrategy | str, **config: Any) -> RankScheduler:
    return RankScheduler(RankSchedulerConfig(strategy=strategy, **config))


def estimate_optimal_rank(
    model_size: float, memory_budget_gb: float, target_throughput: float
) -> int:
    """Heuristic starting rank from parameter count, memory budget and throughput goal."""
    if model_size > 7e9:
        base_rank = 8
    elif model_size > 3e9:
        base_rank = 6
    elif model_size > 1e9:
        base_rank = 4
    else:
        base_rank = 2

    memory_multiplier = min(memory_budget_gb / 4.0, 2.0)
    base_rank = _round_half_up(base_rank * memory_multiplier)

    if target_throughput > 1000:
        base_rank = max(2, base_rank - 1)

    return max(2, min(64, base_rank))


__all__ = [
    "RankDecision",
    "RankScheduler",
    "RankStrategy",
    "StepMetrics",
    "compute_trend",
    "create_rank_scheduler",
    "estimate_optimal_rank",
]

"""Synchronous training session: state machine, step and reporting payloads.

Lifecycle::

    Idle -> Initializing -> Running <-> Paused -> Completed | Aborted | Error

``initialize`` acquires the device, resolves target layers, windows the
corpus and builds the first buffer arena. ``run_step`` executes one full
step: batch, forward with the adapter hooks, cross-entropy, backward through
the LoRA kernels, fused 8-bit Adam, scheduler consultation and, if a rank
change is accepted, reallocation into a fresh arena.

Any failure inside a step moves the session to Error, releases every buffer
and raises ``StepError`` carrying the step index.
"""

from __future__ import annotations

import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import torch

from loralab._logging import get_logger, log_event, log_warning
from loralab.config import AdapterConfig, TrainingConfig
from loralab.data import BatchCursor, create_training_sequences, split_inputs_labels
from loralab.errors import ConfigError, LoraLabError, SetupError, StepError
from loralab.kernels import (
    acquire_device,
    device_memory_gb,
    fused_adam8_step,
    lora_backward_pass,
    synchronize,
)
from loralab.layers import LayerArena, LayerSpec
from loralab.model import TorchModelProvider
from loralab.scheduler import RankDecision, RankScheduler, StepMetrics

_GIB = float(1 << 30)
_LOSS_WINDOW = 50
_THROUGHPUT_WINDOW = 10


class TrainingStatus(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ABORTED = "aborted"
    ERROR = "error"


ACTIVE_STATUSES = frozenset(
    {TrainingStatus.INITIALIZING, TrainingStatus.RUNNING, TrainingStatus.PAUSED}
)

_TRANSITIONS: dict[TrainingStatus, frozenset[TrainingStatus]] = {
    TrainingStatus.IDLE: frozenset({TrainingStatus.INITIALIZING}),
    TrainingStatus.INITIALIZING: frozenset(
        {TrainingStatus.RUNNING, TrainingStatus.ABORTED, TrainingStatus.ERROR}
    ),
    TrainingStatus.RUNNING: frozenset(
        {
            TrainingStatus.PAUSED,
            TrainingStatus.COMPLETED,
            TrainingStatus.ABORTED,
            TrainingStatus.ERROR,
        }
    ),
    TrainingStatus.PAUSED: frozenset(
        {TrainingStatus.RUNNING, TrainingStatus.ABORTED, TrainingStatus.ERROR}
    ),
    TrainingStatus.COMPLETED: frozenset(),
    TrainingStatus.ABORTED: frozenset(),
    TrainingStatus.ERROR: frozenset(),
}


@dataclass
class TrainingState:
    current_step: int = 0
    total_steps: int = 0
    status: TrainingStatus = TrainingStatus.IDLE
    loss_history: list[float] = field(default_factory=list)
    throughput_history: list[float] = field(default_factory=list)
    memory_usage: float = 0.0
    start_time: float | None = None
    active_seconds: float = 0.0

    @property
    def current_loss(self) -> float:
        return self.loss_history[-1] if self.loss_history else 0.0

    @property
    def average_loss(self) -> float:
        recent = self.loss_history[-_LOSS_WINDOW:]
        return sum(recent) / len(recent) if recent else 0.0

    @property
    def average_throughput(self) -> float:
        recent = self.throughput_history[-_THROUGHPUT_WINDOW:]
        return sum(recent) / len(recent) if recent else 0.0

    @property
    def progress(self) -> float:
        if self.total_steps <= 0:
            return 0.0
        return self.current_step / self.total_steps * 100.0

    @property
    def eta(self) -> float:
        """Seconds remaining, from the mean active time per completed step."""
        if self.current_step == 0:
            return 0.0
        per_step = self.active_seconds / self.current_step
        return max(self.total_steps - self.current_step, 0) * per_step


@dataclass(frozen=True)
class StepResult:
    step: int
    loss: float
    gradient_norm: float
    throughput: float
    memory_usage: float
    decision: RankDecision
    rank_change: tuple[int, int] | None = None


def should_report(step: int) -> bool:
    """Progress cadence: every step to 10, every 5th to 100, every 10th after."""
    if step <= 10:
        return True
    if step <= 100:
        return step % 5 == 0
    return step % 10 == 0


def cross_entropy_with_grad(
    logits: torch.Tensor, labels: torch.Tensor
) -> tuple[float, torch.Tensor]:
    """Mean token cross-entropy and its gradient w.r.t. the logits, ``[tokens, vocab]``."""
    flat_logits = logits.reshape(-1, logits.shape[-1]).float()
    flat_labels = labels.reshape(-1).to(flat_logits.device)
    log_probs = torch.log_softmax(flat_logits, dim=-1)
    loss = -log_probs.gather(1, flat_labels.unsqueeze(1)).mean()
    grad = log_probs.exp()
    grad[torch.arange(flat_labels.numel(), device=grad.device), flat_labels] -= 1.0
    grad /= flat_labels.numel()
    return float(loss.item()), grad


class TrainingSession:
    def __init__(
        self,
        provider: TorchModelProvider,
        tokens: Sequence[int] | torch.Tensor,
        config: TrainingConfig,
    ) -> None:
        self.provider = provider
        self.tokens = tokens
        self.config = config
        self.adapter: AdapterConfig = config.adapter
        self.state = TrainingState()
        self.scheduler: RankScheduler | None = None
        self.arena: LayerArena | None = None
        self.cursor: BatchCursor | None = None
        self.device: torch.device | None = None
        self._specs: dict[str, LayerSpec] = {}
        self._logger = get_logger("loralab.session")

    @property
    def status(self) -> TrainingStatus:
        return self.state.status

    @property
    def current_step(self) -> int:
        return self.state.current_step

    @property
    def total_steps(self) -> int:
        return self.state.total_steps

    @property
    def current_rank(self) -> int:
        return self.adapter.rank

    @property
    def dataset_size(self) -> int:
        return len(self.cursor) if self.cursor is not None else 0

    @property
    def is_active(self) -> bool:
        return self.state.status in ACTIVE_STATUSES

    @property
    def is_finished(self) -> bool:
        return self.state.current_step >= self.state.total_steps

    def _transition(self, target: TrainingStatus) -> None:
        current = self.state.status
        if target not in _TRANSITIONS[current]:
            raise ConfigError(f"cannot move training session from {current.value} to {target.value}")
        self.state.status = target

    def initialize(self) -> None:
        self._transition(TrainingStatus.INITIALIZING)
        cfg = self.config
        try:
            self.device = acquire_device(cfg.device)
            log_event(self._logger, "device_acquired", device=str(self.device))
            self.provider.prepare(self.device)
            self._specs = self.provider.target_layers(self.adapter.target_modules)
            self.provider.output_embedding()

            sequences = create_training_sequences(self.tokens, cfg.sequence_length, cfg.window_stride)
            self.cursor = BatchCursor(sequences, cfg.batch_size)
            self.state.total_steps = min(cfg.max_steps, len(self.cursor))

            self.scheduler = RankScheduler(cfg.scheduler_config())
            self.arena = LayerArena.build(
                self._specs, self.adapter.rank, self.device, seed=cfg.seed, epoch=0
            )
            self.provider.attach(
                self.arena,
                self.adapter.scaling,
                tile_size=cfg.tile_size,
                quantize_base=cfg.quantize_base,
            )
            log_event(
                self._logger,
                "buffers_allocated",
                epoch=self.arena.epoch,
                rank=self.arena.rank,
                layers=sorted(self._specs),
                nbytes=self.arena.nbytes,
            )
        except Exception as exc:
            self.release()
            self.state.status = TrainingStatus.ERROR
            if isinstance(exc, (SetupError, ConfigError)):
                raise
            raise SetupError(f"training setup failed: {exc}") from exc

        self.state.start_time = time.time()
        self._transition(TrainingStatus.RUNNING)
        log_event(
            self._logger,
            "training_started",
            total_steps=self.state.total_steps,
            dataset_size=self.dataset_size,
            rank=self.adapter.rank,
        )

    def run_step(self) -> StepResult:
        if self.state.status is not TrainingStatus.RUNNING:
            raise ConfigError(f"cannot run a step while {self.state.status.value}")
        step = self.state.current_step
        try:
            result = self._compute_step(step)
        except Exception as exc:
            self.fail(exc)
            raise StepError(f"Training step {step} failed: {exc}", step=step) from exc

        self.state.current_step += 1
        if should_report(self.state.current_step):
            log_event(
                self._logger,
                "training_step",
                step=self.state.current_step,
                loss=result.loss,
                gradient_norm=result.gradient_norm,
                rank=self.adapter.rank,
            )
        return result

    def _compute_step(self, step: int) -> StepResult:
        assert self.cursor is not None and self.arena is not None and self.scheduler is not None
        cfg = self.config
        started = time.perf_counter()

        batch = self.cursor.batch(step).to(self.device)
        inputs, labels = split_inputs_labels(batch)
        logits = self.provider.logits(inputs)
        loss, dlogits = cross_entropy_with_grad(logits, labels)

        scaling = self.adapter.scaling
        squared_norm = 0.0
        for layer in self.arena:
            x, intermediate = self.provider.captured(layer.name)
            grad_output = self.provider.pseudo_gradient(layer.name, dlogits)
            lora_backward_pass(
                grad_output,
                x,
                intermediate,
                layer.lora_b,
                scaling,
                cfg.tile_size,
                grad_a_out=layer.grad_a,
                grad_b_out=layer.grad_b,
            )
            squared_norm += float(layer.grad_a.pow(2).sum().item())
            squared_norm += float(layer.grad_b.pow(2).sum().item())
            fused_adam8_step(
                [layer.lora_a, layer.lora_b],
                [layer.grad_a, layer.grad_b],
                [layer.state_a, layer.state_b],
                cfg.learning_rate,
                cfg.beta1,
                cfg.beta2,
                cfg.eps,
                cfg.weight_decay,
                layer.optimizer_step + 1,
            )
        synchronize(self.device)

        elapsed = max(time.perf_counter() - started, 1e-9)
        throughput = batch.numel() / elapsed
        gradient_norm = squared_norm**0.5
        memory = self.memory_usage_gb()

        state = self.state
        state.loss_history.append(loss)
        state.throughput_history.append(throughput)
        state.memory_usage = memory
        state.active_seconds += elapsed

        decision = self.scheduler.update(
            StepMetrics(
                step=step,
                loss=loss,
                gradient_norm=gradient_norm,
                memory_usage_gb=memory,
                throughput_tokens_per_sec=throughput,
            )
        )
        rank_change = None
        if decision.should_apply:
            rank_change = self._reallocate(decision.recommended_rank, step)

        return StepResult(
            step=step,
            loss=loss,
            gradient_norm=gradient_norm,
            throughput=throughput,
            memory_usage=memory,
            decision=decision,
            rank_change=rank_change,
        )

    def _reallocate(self, new_rank: int, step: int) -> tuple[int, int] | None:
        """Build the new arena fully, swap it in, then release the old one."""
        assert self.arena is not None and self.scheduler is not None
        old_rank = self.adapter.rank
        old_arena = self.arena
        try:
            adapter = self.adapter.with_rank(new_rank)
            new_arena = LayerArena.build(
                self._specs,
                new_rank,
                self.device,
                seed=self.config.seed,
                epoch=old_arena.epoch + 1,
            )
        except (LoraLabError, RuntimeError, ValueError) as exc:
            log_warning(
                self._logger,
                "rank_change_failed",
                step=step,
                old_rank=old_rank,
                new_rank=new_rank,
                error=str(exc),
            )
            return None

        self.adapter = adapter
        self.arena = new_arena
        self.provider.set_arena(new_arena, adapter.scaling)
        old_arena.release()
        self.scheduler.commit(new_rank, step)
        log_event(
            self._logger,
            "rank_changed",
            step=step,
            old_rank=old_rank,
            new_rank=new_rank,
            epoch=new_arena.epoch,
        )
        return old_rank, new_rank

    def memory_usage_gb(self) -> float:
        """Device-reported usage where available, otherwise a footprint estimate."""
        reported = device_memory_gb(self.device) if self.device is not None else None
        if reported is not None:
            return reported
        cfg = self.config
        arena_bytes = self.arena.nbytes if self.arena is not None else 0
        activation_bytes = cfg.batch_size * cfg.sequence_length * self.provider.hidden_size * 4 * 8
        return (self.provider.parameter_bytes + arena_bytes + activation_bytes) / _GIB

    def pause(self) -> None:
        self._transition(TrainingStatus.PAUSED)
        log_event(self._logger, "training_paused", step=self.state.current_step)

    def resume(self) -> None:
        self._transition(TrainingStatus.RUNNING)
        log_event(self._logger, "training_resumed", step=self.state.current_step)

    def complete(self) -> dict[str, Any]:
        """Read back every layer, release buffers and return the completion payload."""
        assert self.arena is not None and self.scheduler is not None
        state = self.state
        adapter_data = {
            "rank": self.adapter.rank,
            "alpha": self.adapter.alpha,
            "scaling": self.adapter.scaling,
            "targetModules": list(self.adapter.target_modules),
            "layers": self.arena.readback(),
            "optimizerState": self.arena.optimizer_state(),
            "modelName": self.provider.name,
        }
        self._transition(TrainingStatus.COMPLETED)
        training_time = time.time() - state.start_time if state.start_time is not None else 0.0
        throughputs = state.throughput_history
        payload = {
            "totalSteps": state.current_step,
            "finalLoss": state.current_loss,
            "averageLoss": sum(state.loss_history) / len(state.loss_history)
            if state.loss_history
            else 0.0,
            "averageThroughput": sum(throughputs) / len(throughputs) if throughputs else 0.0,
            "trainingTime": training_time,
            "rankSchedulerStats": self.scheduler.get_statistics(),
            "adapterData": adapter_data,
        }
        self.release()
        log_event(
            self._logger,
            "training_completed",
            total_steps=state.current_step,
            final_loss=state.current_loss,
            training_time=training_time,
        )
        return payload

    def abort(self) -> None:
        self.release()
        if self.state.status in ACTIVE_STATUSES:
            self._transition(TrainingStatus.ABORTED)
        log_event(self._logger, "training_stopped", step=self.state.current_step)

    def fail(self, exc: BaseException) -> None:
        self.release()
        if self.state.status in ACTIVE_STATUSES:
            self.state.status = TrainingStatus.ERROR
        log_warning(
            self._logger,
            "training_failed",
            step=self.state.current_step,
            error=str(exc),
        )

    def release(self) -> None:
        self.provider.detach()
        if self.arena is not None and not self.arena.released:
            epoch = self.arena.epoch
            self.arena.release()
            log_event(self._logger, "buffers_released", epoch=epoch)

    def progress_payload(self, result: StepResult) -> dict[str, Any]:
        state = self.state
        return {
            "step": state.current_step,
            "totalSteps": state.total_steps,
            "progress": state.progress,
            "loss": result.loss,
            "averageLoss": state.average_loss,
            "throughput": state.average_throughput,
            "eta": state.eta,
            "memoryUsage": state.memory_usage,
            "currentRank": self.adapter.rank,
            "rankDecision": result.decision.reason,
        }

    def status_payload(self) -> dict[str, Any]:
        state = self.state
        return {
            "isTraining": state.status is TrainingStatus.RUNNING,
            "isPaused": state.status is TrainingStatus.PAUSED,
            "status": state.status.value,
            "currentStep": state.current_step,
            "totalSteps": state.total_steps,
            "progress": state.progress,
            "currentLoss": state.current_loss,
            "memoryUsage": state.memory_usage,
            "eta": state.eta,
            "currentRank": self.adapter.rank,
        }


def idle_status_payload(rank: int = 4) -> dict[str, Any]:
    return {
        "isTraining": False,
        "isPaused": False,
        "status": TrainingStatus.IDLE.value,
        "currentStep": 0,
        "totalSteps": 0,
        "progress": 0.0,
        "currentLoss": 0.0,
        "memoryUsage": 0.0,
        "eta": 0.0,
        "currentRank": rank,
    }


__all__ = [
    "StepResult",
    "TrainingSession",
    "TrainingState",
    "TrainingStatus",
    "cross_entropy_with_grad",
    "idle_status_payload",
    "should_report",
]

"""Asynchronous training worker.

The worker owns at most one ``TrainingSession`` and talks to the host only
through two ``asyncio.Queue`` objects: commands arrive on ``inbox``, events
leave on ``outbox``. ``serve`` handles commands one at a time while the step
loop runs as a separate task; each step executes in a thread via
``asyncio.to_thread`` so commands stay responsive while a step is in flight.

Pause and stop are cooperative. Both are observed only between steps; a
stop additionally releases every buffer before ``TRAINING_STOPPED`` is sent.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any

from loralab._logging import get_logger, log_event, log_warning
from loralab.config import TrainingConfig
from loralab.data import tokenize_dataset
from loralab.errors import ConfigError, StepError
from loralab.model import resolve_model_source
from loralab.protocol import HOST_COMMANDS, Message, MessageType
from loralab.session import (
    TrainingSession,
    TrainingStatus,
    idle_status_payload,
    should_report,
)


def _coerce_config(raw: Any) -> TrainingConfig:
    if raw is None:
        return TrainingConfig()
    if isinstance(raw, TrainingConfig):
        return raw
    if isinstance(raw, Mapping):
        data = dict(raw)
        preset = data.pop("preset", None)
        return TrainingConfig.from_dict(data, preset=preset)
    raise ConfigError(f"Unsupported training config type: {type(raw).__name__}")


class TrainingWorker:
    def __init__(
        self,
        inbox: asyncio.Queue | None = None,
        outbox: asyncio.Queue | None = None,
    ) -> None:
        self.inbox: asyncio.Queue = inbox if inbox is not None else asyncio.Queue()
        self.outbox: asyncio.Queue = outbox if outbox is not None else asyncio.Queue()
        self.session: TrainingSession | None = None
        self._loop_task: asyncio.Task | None = None
        self._pause_requested = False
        self._stop_requested = False
        self._resume_event = asyncio.Event()
        self._logger = get_logger("loralab.worker")

    @property
    def has_active_session(self) -> bool:
        return self.session is not None and self.session.is_active

    async def post(self, kind: MessageType, **data: Any) -> None:
        await self.outbox.put(Message(type=kind, data=data))

    async def serve(self) -> None:
        """Consume commands until ``SHUTDOWN``."""
        while True:
            raw = await self.inbox.get()
            try:
                message = raw if isinstance(raw, Message) else Message.from_dict(raw)
            except ConfigError as exc:
                await self.post(MessageType.ERROR, message=str(exc), step=None)
                continue
            if message.type is MessageType.SHUTDOWN:
                if self.has_active_session:
                    await self._stop()
                return
            await self.handle(message)

    async def handle(self, message: Message) -> None:
        handlers = {
            MessageType.INITIALIZE_AND_START: self._on_initialize_and_start,
            MessageType.PAUSE_TRAINING: self._on_pause,
            MessageType.RESUME_TRAINING: self._on_resume,
            MessageType.STOP_TRAINING: self._on_stop,
            MessageType.GET_STATUS: self._on_get_status,
        }
        handler = handlers.get(message.type) if message.type in HOST_COMMANDS else None
        if handler is None:
            await self.post(
                MessageType.ERROR, message=f"Unknown message type: {message.type.value}", step=None
            )
            return
        try:
            await handler(message.data)
        except Exception as exc:
            log_warning(self._logger, "command_failed", command=message.type.value, error=str(exc))
            step = exc.step if isinstance(exc, StepError) else None
            await self.post(MessageType.ERROR, message=str(exc), step=step)

    async def _on_initialize_and_start(self, data: Mapping[str, Any]) -> None:
        if self.has_active_session:
            assert self.session is not None
            log_warning(
                self._logger,
                "session_rejected",
                status=self.session.status.value,
                step=self.session.current_step,
            )
            await self.post(MessageType.ERROR, message="Training already in progress", step=None)
            return

        config = _coerce_config(data.get("trainingConfig"))
        provider = await asyncio.to_thread(resolve_model_source, data.get("modelSource"))
        if config.model_name != "unknown":
            provider.name = config.model_name
        tokens = tokenize_dataset(data.get("dataset"), provider.tokenizer)

        session = TrainingSession(provider, tokens, config)
        self.session = session
        self._pause_requested = False
        self._stop_requested = False
        self._resume_event.clear()

        await asyncio.to_thread(session.initialize)
        await self.post(
            MessageType.TRAINING_STARTED,
            totalSteps=session.total_steps,
            datasetSize=session.dataset_size,
            config=config.to_dict(),
        )
        self._loop_task = asyncio.create_task(self._run_loop(session))

    async def _run_loop(self, session: TrainingSession) -> None:
        try:
            while True:
                if self._stop_requested:
                    return
                if self._pause_requested:
                    if session.status is TrainingStatus.RUNNING:
                        session.pause()
                        await self.post(
                            MessageType.TRAINING_PAUSED,
                            step=session.current_step,
                            totalSteps=session.total_steps,
                        )
                    await self._resume_event.wait()
                    continue
                if session.is_finished:
                    break

                result = await asyncio.to_thread(session.run_step)
                if result.rank_change is not None:
                    old_rank, new_rank = result.rank_change
                    await self.post(
                        MessageType.RANK_UPDATED,
                        oldRank=old_rank,
                        newRank=new_rank,
                        step=result.step,
                    )
                if should_report(session.current_step):
                    await self.post(MessageType.TRAINING_PROGRESS, **session.progress_payload(result))

            payload = await asyncio.to_thread(session.complete)
            await self.post(MessageType.TRAINING_COMPLETED, **payload)
        except StepError as exc:
            await self.post(MessageType.ERROR, message=str(exc), step=exc.step)
        except Exception as exc:
            session.fail(exc)
            await self.post(MessageType.ERROR, message=str(exc), step=session.current_step)

    def _require_session(self, action: str) -> TrainingSession:
        if not self.has_active_session:
            raise ConfigError(f"No active training to {action}")
        assert self.session is not None
        return self.session

    async def _on_pause(self, data: Mapping[str, Any]) -> None:
        session = self._require_session("pause")
        if self._pause_requested or session.status is TrainingStatus.PAUSED:
            return
        self._pause_requested = True
        self._resume_event.clear()

    async def _on_resume(self, data: Mapping[str, Any]) -> None:
        session = self._require_session("resume")
        if not self._pause_requested:
            raise ConfigError("Training is not paused")
        self._pause_requested = False
        if session.status is TrainingStatus.PAUSED:
            session.resume()
            await self.post(
                MessageType.TRAINING_RESUMED,
                step=session.current_step,
                totalSteps=session.total_steps,
            )
        self._resume_event.set()

    async def _on_stop(self, data: Mapping[str, Any]) -> None:
        self._require_session("stop")
        await self._stop()

    async def _stop(self) -> None:
        session = self.session
        assert session is not None
        self._stop_requested = True
        self._resume_event.set()
        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None
        self._pause_requested = False
        if not session.is_active:
            # the loop already reported completion or failure
            log_event(self._logger, "stop_after_finish", status=session.status.value)
            return
        session.abort()
        await self.post(
            MessageType.TRAINING_STOPPED,
            step=session.current_step,
            totalSteps=session.total_steps,
        )
        log_event(self._logger, "session_closed", status=session.status.value)

    async def _on_get_status(self, data: Mapping[str, Any]) -> None:
        if self.session is None:
            await self.post(MessageType.STATUS_UPDATE, **idle_status_payload())
            return
        await self.post(MessageType.STATUS_UPDATE, **self.session.status_payload())


__all__ = ["TrainingWorker"]

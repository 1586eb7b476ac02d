"""Host-side controller for a ``TrainingWorker``.

The engine posts commands to the worker's inbox and pumps its outbox,
tracking coarse training state and dispatching each event to registered
listeners. Event names are the lower-cased message types, for example
``"training_progress"`` or ``"rank_updated"``.

Example:
    >>> async with TrainingEngine() as engine:
    ...     await engine.start_training(TinyCausalLM(), corpus_text, {"max_steps": 20})
    ...     result = await engine.wait_for("training_completed")
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import Callable
from typing import Any

from loralab._logging import get_logger, log_warning
from loralab.protocol import Message, MessageType
from loralab.worker import TrainingWorker

Listener = Callable[[dict[str, Any]], Any]


class TrainingEngine:
    def __init__(self, worker: TrainingWorker | None = None) -> None:
        self.worker = worker if worker is not None else TrainingWorker()
        self.is_training = False
        self.is_paused = False
        self.training_state: dict[str, Any] = {}
        self._listeners: dict[str, list[Listener]] = defaultdict(list)
        self._waiters: dict[str, list[asyncio.Future]] = defaultdict(list)
        self._serve_task: asyncio.Task | None = None
        self._pump_task: asyncio.Task | None = None
        self._logger = get_logger("loralab.engine")

    async def __aenter__(self) -> TrainingEngine:
        self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def start(self) -> None:
        """Spawn the worker's message loop and the event pump on the running loop."""
        if self._serve_task is None:
            self._serve_task = asyncio.create_task(self.worker.serve())
        if self._pump_task is None:
            self._pump_task = asyncio.create_task(self._pump())

    async def _send(self, kind: MessageType, **data: Any) -> None:
        self.start()
        await self.worker.inbox.put(Message(type=kind, data=data))

    async def start_training(
        self,
        model_source: Any,
        dataset: Any,
        training_config: Any = None,
    ) -> None:
        await self._send(
            MessageType.INITIALIZE_AND_START,
            modelSource=model_source,
            dataset=dataset,
            trainingConfig=training_config,
        )

    async def pause_training(self) -> None:
        await self._send(MessageType.PAUSE_TRAINING)

    async def resume_training(self) -> None:
        await self._send(MessageType.RESUME_TRAINING)

    async def stop_training(self) -> None:
        await self._send(MessageType.STOP_TRAINING)

    async def request_status(self) -> None:
        await self._send(MessageType.GET_STATUS)

    def on(self, event: str, callback: Listener) -> None:
        self._listeners[event].append(callback)

    def off(self, event: str, callback: Listener) -> None:
        callbacks = self._listeners.get(event)
        if callbacks and callback in callbacks:
            callbacks.remove(callback)

    def emit(self, event: str, data: dict[str, Any]) -> None:
        for callback in list(self._listeners.get(event, ())):
            try:
                callback(data)
            except Exception as exc:
                log_warning(self._logger, "listener_failed", event_name=event, error=str(exc))
        for future in self._waiters.pop(event, []):
            if not future.done():
                future.set_result(data)

    async def wait_for(self, event: str, timeout: float | None = None) -> dict[str, Any]:
        """Resolve with the payload of the next ``event``."""
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._waiters[event].append(future)
        return await asyncio.wait_for(future, timeout)

    def _track(self, message: Message) -> None:
        kind = message.type
        data = message.data
        if kind is MessageType.TRAINING_STARTED:
            self.is_training, self.is_paused = True, False
            self.training_state = {"currentStep": 0, "totalSteps": data.get("totalSteps", 0)}
        elif kind is MessageType.TRAINING_PROGRESS:
            self.training_state.update(
                currentStep=data.get("step"),
                currentLoss=data.get("loss"),
                averageLoss=data.get("averageLoss"),
                throughput=data.get("throughput"),
                memoryUsage=data.get("memoryUsage"),
                eta=data.get("eta"),
            )
        elif kind is MessageType.TRAINING_PAUSED:
            self.is_paused = True
        elif kind is MessageType.TRAINING_RESUMED:
            self.is_paused = False
        elif kind in (MessageType.TRAINING_COMPLETED, MessageType.TRAINING_STOPPED):
            self.is_training, self.is_paused = False, False
        elif kind is MessageType.ERROR and data.get("step") is not None:
            # loop failures carry the failing step; rejected commands carry none
            self.is_training, self.is_paused = False, False

    async def _pump(self) -> None:
        while True:
            message: Message = await self.worker.outbox.get()
            self._track(message)
            self.emit(message.type.event_name, message.data)

    async def close(self) -> None:
        if self._serve_task is not None:
            await self.worker.inbox.put(Message(type=MessageType.SHUTDOWN))
            await self._serve_task
            self._serve_task = None
        if self._pump_task is not None:
            while not self.worker.outbox.empty():
                message = self.worker.outbox.get_nowait()
                self._track(message)
                self.emit(message.type.event_name, message.data)
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass
            self._pump_task = None
        for futures in self._waiters.values():
            for future in futures:
                future.cancel()
        self._waiters.clear()
        self._listeners.clear()


__all__ = ["TrainingEngine"]

"""Control protocol between the host and the training worker.

Host -> worker: ``INITIALIZE_AND_START``, ``PAUSE_TRAINING``,
``RESUME_TRAINING``, ``STOP_TRAINING``, ``GET_STATUS`` and ``SHUTDOWN``
(ends the worker's message loop).

Worker -> host: ``TRAINING_STARTED``, ``TRAINING_PROGRESS``,
``TRAINING_PAUSED``, ``TRAINING_RESUMED``, ``TRAINING_STOPPED``,
``RANK_UPDATED``, ``TRAINING_COMPLETED``, ``ERROR`` and ``STATUS_UPDATE``.

Payload keys are camelCase, matching the wire names hosts already consume.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from loralab.errors import ConfigError


class MessageType(str, Enum):
    INITIALIZE_AND_START = "INITIALIZE_AND_START"
    PAUSE_TRAINING = "PAUSE_TRAINING"
    RESUME_TRAINING = "RESUME_TRAINING"
    STOP_TRAINING = "STOP_TRAINING"
    GET_STATUS = "GET_STATUS"
    SHUTDOWN = "SHUTDOWN"

    TRAINING_STARTED = "TRAINING_STARTED"
    TRAINING_PROGRESS = "TRAINING_PROGRESS"
    TRAINING_PAUSED = "TRAINING_PAUSED"
    TRAINING_RESUMED = "TRAINING_RESUMED"
    TRAINING_STOPPED = "TRAINING_STOPPED"
    RANK_UPDATED = "RANK_UPDATED"
    TRAINING_COMPLETED = "TRAINING_COMPLETED"
    ERROR = "ERROR"
    STATUS_UPDATE = "STATUS_UPDATE"

    @property
    def event_name(self) -> str:
        return self.value.lower()


HOST_COMMANDS = frozenset(
    {
        MessageType.INITIALIZE_AND_START,
        MessageType.PAUSE_TRAINING,
        MessageType.RESUME_TRAINING,
        MessageType.STOP_TRAINING,
        MessageType.GET_STATUS,
        MessageType.SHUTDOWN,
    }
)


@dataclass(frozen=True)
class Message:
    type: MessageType
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Message:
        try:
            kind = MessageType(payload["type"])
        except (KeyError, ValueError) as exc:
            raise ConfigError(f"Unknown message type: {payload.get('type')!r}") from exc
        return cls(type=kind, data=dict(payload.get("data") or {}))

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "data": dict(self.data)}


__all__ = ["HOST_COMMANDS", "Message", "MessageType"]

"""Error taxonomy shared by the kernels, the session and the adapter codec."""

from __future__ import annotations


class LoraLabError(Exception):
    """Base class for all loralab errors."""


class ConfigError(LoraLabError, ValueError):
    """Invalid configuration or argument, rejected at the point of use."""


class SetupError(LoraLabError, RuntimeError):
    """Session could not be brought up; no step has run."""


class StepError(LoraLabError, RuntimeError):
    """A training step failed and the session cannot continue."""

    def __init__(self, message: str, step: int | None = None) -> None:
        super().__init__(message)
        self.step = step


class AdapterValidationError(LoraLabError, ValueError):
    """Adapter file rejected on import."""

    def __init__(
        self,
        message: str,
        errors: list[str] | None = None,
        warnings: list[str] | None = None,
    ) -> None:
        super().__init__(message)
        self.errors = list(errors or [])
        self.warnings = list(warnings or [])


__all__ = [
    "AdapterValidationError",
    "ConfigError",
    "LoraLabError",
    "SetupError",
    "StepError",
]

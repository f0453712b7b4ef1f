"""
Error taxonomy for the rollout controller.

``AdapterError`` is transient and absorbed by the retry policy. The remaining
errors are returned synchronously to the caller and never affect other runs.
``ConfigError`` lives with the configuration loader and is re-exported here.
"""

from model_rollout.config.loader import ConfigError


class RolloutError(Exception):
    """Base class for rollout controller errors."""


class AdapterError(RolloutError):
    """Transient failure of the metrics gateway, traffic router or a timeout."""

    def __init__(self, message: str, adapter: str = "unknown") -> None:
        super().__init__(message)
        self.adapter = adapter


class PersistenceError(AdapterError):
    """The run store could not be read or written in time."""

    def __init__(self, message: str) -> None:
        super().__init__(message, adapter="store")


class ConflictError(RolloutError):
    """An active run already exists for the candidate version."""


class StaleWriteError(ConflictError):
    """A run was saved from an out-of-date copy."""


class InvalidStateError(RolloutError):
    """The operation is not valid for the run's current phase."""


class RunNotFoundError(RolloutError):
    """No run with the given id exists."""


__all__ = [
    "AdapterError",
    "ConfigError",
    "ConflictError",
    "InvalidStateError",
    "PersistenceError",
    "RolloutError",
    "RunNotFoundError",
    "StaleWriteError",
]

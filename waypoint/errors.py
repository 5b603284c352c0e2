"""Error taxonomy for the orchestration core."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Classification recorded on failed step executions."""

    VALIDATION = "validation"
    EXECUTOR = "executor"
    TIMEOUT = "timeout"
    INFRASTRUCTURE = "infrastructure"
    CONFIGURATION = "configuration"
    INTERRUPTED = "interrupted"


# Failures an operator may re-run from the failed step.
RECOVERABLE_KINDS = {ErrorKind.EXECUTOR, ErrorKind.TIMEOUT, ErrorKind.INTERRUPTED}


class WaypointError(Exception):
    """Base class for all waypoint errors."""

    kind: ErrorKind = ErrorKind.EXECUTOR


class ValidationError(WaypointError):
    """Trigger or workflow configuration was rejected before activation."""

    kind = ErrorKind.VALIDATION


class ExecutorError(WaypointError):
    """A step executor failed; subject to the workflow's retry policy."""

    kind = ErrorKind.EXECUTOR

    def __init__(self, message: str, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class StepTimeoutError(ExecutorError):
    """A step exceeded its deadline."""

    kind = ErrorKind.TIMEOUT


class InfrastructureError(WaypointError):
    """Persistence or transport failure. Retried with backoff, never dropped."""

    kind = ErrorKind.INFRASTRUCTURE


class ConcurrencyError(InfrastructureError):
    """A save was rejected because the stored version moved on."""


class ConfigurationError(WaypointError):
    """The graph references something that does not exist. Never retried."""

    kind = ErrorKind.CONFIGURATION


class IllegalTransitionError(WaypointError, ValueError):
    """Requested status change is not allowed from the current status."""


class NotFoundError(WaypointError, LookupError):
    """Requested workflow, execution or trigger does not exist."""

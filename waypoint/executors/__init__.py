"""Step executors."""

from .base import (
    Completed,
    ExecutorRegistry,
    Failed,
    StepContext,
    StepExecutor,
    StepResult,
    Suspended,
)
from .builtin import (
    CaptureExecutor,
    DecisionExecutor,
    NotifyExecutor,
    UpdateExecutor,
    default_registry,
)

__all__ = [
    "CaptureExecutor",
    "Completed",
    "DecisionExecutor",
    "ExecutorRegistry",
    "Failed",
    "NotifyExecutor",
    "StepContext",
    "StepExecutor",
    "StepResult",
    "Suspended",
    "UpdateExecutor",
    "default_registry",
]

"""Step executor contract and kind-based registry."""

from __future__ import annotations

import abc
import asyncio
from typing import Any, Dict, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from ..errors import ConfigurationError, ErrorKind
from ..graph import StepKind


class Completed(BaseModel):
    status: Literal["completed"] = "completed"
    output: Any = None


class Failed(BaseModel):
    status: Literal["failed"] = "failed"
    error: str
    kind: ErrorKind = ErrorKind.EXECUTOR
    retryable: bool = True


class Suspended(BaseModel):
    status: Literal["suspended"] = "suspended"
    resume_token: str
    details: Dict[str, Any] = Field(default_factory=dict)


StepResult = Union[Completed, Failed, Suspended]


class StepContext(BaseModel):
    """What an executor sees of the running execution."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    execution_id: str
    workflow_id: str
    step_id: str
    attempt: int = 1
    visit: int = 1
    data: Dict[str, Any] = Field(default_factory=dict)
    cancelled: asyncio.Event = Field(default_factory=asyncio.Event)

    @property
    def is_cancelled(self) -> bool:
        return self.cancelled.is_set()


class StepExecutor(metaclass=abc.ABCMeta):
    """Performs the work of one step kind."""

    @abc.abstractmethod
    async def execute(self, config: Mapping[str, Any], context: StepContext) -> StepResult:
        """Run the step. May return :class:`Suspended` to wait for external input."""
        raise NotImplementedError

    async def resume(
        self,
        resume_token: str,
        input: Mapping[str, Any],
        config: Mapping[str, Any],
        context: StepContext,
    ) -> StepResult:
        """Re-enter a suspended step with the externally supplied input."""
        return Completed(output=dict(input))


class ExecutorRegistry:
    """Executors looked up by step kind."""

    def __init__(self, executors: Optional[Mapping[StepKind, StepExecutor]] = None) -> None:
        self._executors: Dict[StepKind, StepExecutor] = dict(executors or {})

    def register(self, kind: Union[StepKind, str], executor: StepExecutor) -> None:
        self._executors[StepKind(kind)] = executor

    def get(self, kind: Union[StepKind, str]) -> StepExecutor:
        try:
            return self._executors[StepKind(kind)]
        except (KeyError, ValueError):
            raise ConfigurationError(f"No executor registered for step kind '{kind}'") from None

    def kinds(self) -> list[StepKind]:
        return list(self._executors)

"""Repository abstraction for orchestration state persistence."""

from __future__ import annotations

from typing import Optional, Protocol

from ..graph import WorkflowDefinition
from ..models import (
    AuditEvent,
    ExecutionStatus,
    StepExecution,
    TriggerEvent,
    WorkflowExecution,
    WorkflowTrigger,
)


class WorkflowRepository(Protocol):
    """Protocol for persistence backends.

    Executions and triggers are saved under optimistic concurrency: a save
    whose ``expected_version`` differs from the stored one raises
    ``ConcurrencyError``. Backend failures surface as ``InfrastructureError``.
    """

    # Workflow definitions
    async def publish_workflow(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Store ``definition`` as a new version (latest + 1) and return it."""

    async def get_workflow(
        self, workflow_id: str, version: Optional[int] = None
    ) -> WorkflowDefinition | None:
        """Return a specific version, or the latest when ``version`` is None."""

    async def get_published_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        """Return the currently published (latest) version."""

    async def list_workflows(self) -> list[WorkflowDefinition]:
        """Return the latest version of every workflow."""

    # Executions
    async def create_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        """Persist a new execution at version 1."""

    async def save_execution(
        self, execution: WorkflowExecution, expected_version: int
    ) -> WorkflowExecution:
        """Persist ``execution`` if the stored version is ``expected_version``."""

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        """Retrieve an execution by id."""

    async def list_executions(
        self,
        status: Optional[list[ExecutionStatus]] = None,
        organization_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
    ) -> list[WorkflowExecution]:
        """Return executions matching the given filters."""

    # Step history
    async def save_step_execution(self, step: StepExecution) -> None:
        """Insert or update one step execution row."""

    async def list_step_executions(self, execution_id: str) -> list[StepExecution]:
        """Return step rows of an execution in creation order."""

    async def claim_dispatch(self, dispatch_key: str) -> bool:
        """Record a dispatch key. Returns False if it was already claimed."""

    # Triggers
    async def create_trigger(self, trigger: WorkflowTrigger) -> WorkflowTrigger:
        """Persist a new trigger at version 1."""

    async def save_trigger(
        self, trigger: WorkflowTrigger, expected_version: int
    ) -> WorkflowTrigger:
        """Persist ``trigger`` if the stored version is ``expected_version``."""

    async def get_trigger(self, trigger_id: str) -> WorkflowTrigger | None:
        """Retrieve a trigger by id."""

    async def list_triggers(
        self, organization_id: Optional[str] = None, active: Optional[bool] = None
    ) -> list[WorkflowTrigger]:
        """Return triggers matching the given filters."""

    async def save_trigger_event(self, event: TriggerEvent) -> None:
        """Insert or update a trigger event."""

    async def list_trigger_events(self, trigger_id: str) -> list[TriggerEvent]:
        """Return a trigger's events in creation order."""

    async def claim_trigger_event_key(self, trigger_id: str, dedup_key: str) -> bool:
        """Record a de-duplication key. Returns False if already seen."""

    async def release_trigger_event_key(self, trigger_id: str, dedup_key: str) -> None:
        """Forget a claimed key so a failed firing can be delivered again."""

    # Audit
    async def append_audit_event(self, event: AuditEvent) -> None:
        """Append an audit event."""

    async def list_audit_events(
        self, execution_id: Optional[str] = None, trigger_id: Optional[str] = None
    ) -> list[AuditEvent]:
        """Return audit events in append order."""

"""In-memory implementation of the workflow repository."""

from __future__ import annotations

from typing import Dict, Optional

from ..errors import ConcurrencyError, NotFoundError
from ..graph import WorkflowDefinition
from ..models import (
    AuditEvent,
    ExecutionStatus,
    StepExecution,
    TriggerEvent,
    WorkflowExecution,
    WorkflowTrigger,
    utcnow,
)
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store orchestration state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, Dict[int, WorkflowDefinition]] = {}
        self._executions: Dict[str, WorkflowExecution] = {}
        self._steps: Dict[str, StepExecution] = {}
        self._dispatch_keys: set[str] = set()
        self._triggers: Dict[str, WorkflowTrigger] = {}
        self._trigger_events: Dict[str, TriggerEvent] = {}
        self._event_keys: set[tuple[str, str]] = set()
        self._audit: list[AuditEvent] = []

    # ------------------------------------------------------------------
    async def publish_workflow(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        versions = self._workflows.setdefault(definition.id, {})
        published = definition.model_copy(
            deep=True,
            update={"version": max(versions, default=0) + 1, "published_at": utcnow()},
        )
        versions[published.version] = published
        return published.model_copy(deep=True)

    async def get_workflow(
        self, workflow_id: str, version: Optional[int] = None
    ) -> WorkflowDefinition | None:
        versions = self._workflows.get(workflow_id)
        if not versions:
            return None
        found = versions.get(version if version is not None else max(versions))
        return found.model_copy(deep=True) if found else None

    async def get_published_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        return await self.get_workflow(workflow_id)

    async def list_workflows(self) -> list[WorkflowDefinition]:
        return [
            versions[max(versions)].model_copy(deep=True)
            for versions in self._workflows.values()
            if versions
        ]

    # ------------------------------------------------------------------
    async def create_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        if execution.id in self._executions:
            raise ConcurrencyError(f"Execution {execution.id} already exists")
        stored = execution.model_copy(deep=True, update={"version": 1})
        self._executions[stored.id] = stored
        return stored.model_copy(deep=True)

    async def save_execution(
        self, execution: WorkflowExecution, expected_version: int
    ) -> WorkflowExecution:
        current = self._executions.get(execution.id)
        if current is None:
            raise NotFoundError(f"Execution {execution.id} not found")
        if current.version != expected_version:
            raise ConcurrencyError(
                f"Execution {execution.id} is at version {current.version}, expected {expected_version}"
            )
        stored = execution.model_copy(deep=True, update={"version": expected_version + 1})
        self._executions[stored.id] = stored
        return stored.model_copy(deep=True)

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        found = self._executions.get(execution_id)
        return found.model_copy(deep=True) if found else None

    async def list_executions(
        self,
        status: Optional[list[ExecutionStatus]] = None,
        organization_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
    ) -> list[WorkflowExecution]:
        results = []
        for execution in self._executions.values():
            if status is not None and execution.status not in status:
                continue
            if organization_id is not None and execution.organization_id != organization_id:
                continue
            if workflow_id is not None and execution.workflow_id != workflow_id:
                continue
            results.append(execution.model_copy(deep=True))
        return results

    # ------------------------------------------------------------------
    async def save_step_execution(self, step: StepExecution) -> None:
        self._steps[step.id] = step.model_copy(deep=True)

    async def list_step_executions(self, execution_id: str) -> list[StepExecution]:
        return [
            step.model_copy(deep=True)
            for step in self._steps.values()
            if step.execution_id == execution_id
        ]

    async def claim_dispatch(self, dispatch_key: str) -> bool:
        if dispatch_key in self._dispatch_keys:
            return False
        self._dispatch_keys.add(dispatch_key)
        return True

    # ------------------------------------------------------------------
    async def create_trigger(self, trigger: WorkflowTrigger) -> WorkflowTrigger:
        if trigger.id in self._triggers:
            raise ConcurrencyError(f"Trigger {trigger.id} already exists")
        stored = trigger.model_copy(deep=True, update={"version": 1})
        self._triggers[stored.id] = stored
        return stored.model_copy(deep=True)

    async def save_trigger(
        self, trigger: WorkflowTrigger, expected_version: int
    ) -> WorkflowTrigger:
        current = self._triggers.get(trigger.id)
        if current is None:
            raise NotFoundError(f"Trigger {trigger.id} not found")
        if current.version != expected_version:
            raise ConcurrencyError(
                f"Trigger {trigger.id} is at version {current.version}, expected {expected_version}"
            )
        stored = trigger.model_copy(deep=True, update={"version": expected_version + 1})
        self._triggers[stored.id] = stored
        return stored.model_copy(deep=True)

    async def get_trigger(self, trigger_id: str) -> WorkflowTrigger | None:
        found = self._triggers.get(trigger_id)
        return found.model_copy(deep=True) if found else None

    async def list_triggers(
        self, organization_id: Optional[str] = None, active: Optional[bool] = None
    ) -> list[WorkflowTrigger]:
        return [
            trigger.model_copy(deep=True)
            for trigger in self._triggers.values()
            if (organization_id is None or trigger.organization_id == organization_id)
            and (active is None or trigger.active == active)
        ]

    async def save_trigger_event(self, event: TriggerEvent) -> None:
        self._trigger_events[event.id] = event.model_copy(deep=True)

    async def list_trigger_events(self, trigger_id: str) -> list[TriggerEvent]:
        return [
            event.model_copy(deep=True)
            for event in self._trigger_events.values()
            if event.trigger_id == trigger_id
        ]

    async def claim_trigger_event_key(self, trigger_id: str, dedup_key: str) -> bool:
        key = (trigger_id, dedup_key)
        if key in self._event_keys:
            return False
        self._event_keys.add(key)
        return True

    async def release_trigger_event_key(self, trigger_id: str, dedup_key: str) -> None:
        self._event_keys.discard((trigger_id, dedup_key))

    # ------------------------------------------------------------------
    async def append_audit_event(self, event: AuditEvent) -> None:
        self._audit.append(event.model_copy(deep=True))

    async def list_audit_events(
        self, execution_id: Optional[str] = None, trigger_id: Optional[str] = None
    ) -> list[AuditEvent]:
        return [
            event.model_copy(deep=True)
            for event in self._audit
            if (execution_id is None or event.execution_id == execution_id)
            and (trigger_id is None or event.trigger_id == trigger_id)
        ]

"""Runtime records: executions, step history, triggers, events."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .errors import ErrorKind, IllegalTransitionError
from .graph import JoinType


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class _Record(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = {
    ExecutionStatus.COMPLETED,
    ExecutionStatus.FAILED,
    ExecutionStatus.CANCELLED,
}

ALLOWED_TRANSITIONS: dict[ExecutionStatus, set[ExecutionStatus]] = {
    ExecutionStatus.RUNNING: {
        ExecutionStatus.PAUSED,
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
    },
    ExecutionStatus.PAUSED: {ExecutionStatus.RUNNING, ExecutionStatus.CANCELLED},
    ExecutionStatus.COMPLETED: set(),
    ExecutionStatus.FAILED: set(),
    ExecutionStatus.CANCELLED: set(),
}

# Only reachable through an explicit operator retry of the failed step.
OPERATOR_TRANSITIONS: dict[ExecutionStatus, set[ExecutionStatus]] = {
    ExecutionStatus.FAILED: {ExecutionStatus.RUNNING},
}


def check_transition(
    current: ExecutionStatus, target: ExecutionStatus, operator: bool = False
) -> None:
    allowed = set(ALLOWED_TRANSITIONS[current])
    if operator:
        allowed |= OPERATOR_TRANSITIONS.get(current, set())
    if target not in allowed:
        raise IllegalTransitionError(
            f"Cannot move execution from {current.value} to {target.value}"
        )


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


ACTIVE_STEP_STATUSES = {StepStatus.PENDING, StepStatus.IN_PROGRESS, StepStatus.SUSPENDED}


class BranchRef(_Record):
    """One frame of a branch scope: which parallel activation, which branch."""

    join_id: str
    branch: int


class Activation(_Record):
    """A live step activation on the execution frontier."""

    id: str = Field(default_factory=new_id)
    step_id: str
    scope: List[BranchRef] = Field(default_factory=list)
    visit: int = 1
    attempt: int = 1
    status: StepStatus = StepStatus.PENDING
    step_execution_id: Optional[str] = None
    resume_token: Optional[str] = None
    not_before: Optional[datetime] = None


class BranchState(_Record):
    index: int
    entry_step_id: str
    reached_join: bool = False
    overlay: Dict[str, Any] = Field(default_factory=dict)


class JoinState(_Record):
    """Tracks the branches of one parallel step activation."""

    id: str = Field(default_factory=new_id)
    parallel_step_id: str
    join_step_id: str
    join_type: JoinType = JoinType.ALL
    scope: List[BranchRef] = Field(default_factory=list)
    branches: List[BranchState] = Field(default_factory=list)


class WorkflowExecution(_Record):
    """One run of a published workflow version."""

    id: str = Field(default_factory=new_id)
    organization_id: Optional[str] = None
    workflow_id: str
    workflow_version: int
    status: ExecutionStatus = ExecutionStatus.RUNNING
    current_steps: List[str] = Field(default_factory=list)
    frontier: List[Activation] = Field(default_factory=list)
    joins: List[JoinState] = Field(default_factory=list)
    loop_counters: Dict[str, int] = Field(default_factory=dict)
    visits: Dict[str, int] = Field(default_factory=dict)
    context: Dict[str, Any] = Field(default_factory=dict)
    trigger_id: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    sla_deadline: Optional[datetime] = None
    sla_breached: bool = False
    error: Optional[str] = None
    failed_step_id: Optional[str] = None
    # Frontier and joins as they stood when the run failed, for operator retry.
    recovery_frontier: List[Activation] = Field(default_factory=list)
    recovery_joins: List[JoinState] = Field(default_factory=list)
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def activation(self, activation_id: str) -> Optional[Activation]:
        for act in self.frontier:
            if act.id == activation_id:
                return act
        return None

    def join(self, join_id: str) -> Optional[JoinState]:
        for state in self.joins:
            if state.id == join_id:
                return state
        return None

    def refresh_current_steps(self) -> None:
        self.current_steps = sorted(
            {act.step_id for act in self.frontier if act.status in ACTIVE_STEP_STATUSES}
        )


class StepExecution(_Record):
    """One attempt of one step activation. Rows are never deleted."""

    id: str = Field(default_factory=new_id)
    execution_id: str
    step_id: str
    visit: int = 1
    attempt: int = 1
    status: StepStatus = StepStatus.PENDING
    input: Dict[str, Any] = Field(default_factory=dict)
    output: Optional[Any] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    resume_token: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def dispatch_key(self) -> str:
        return f"{self.execution_id}:{self.step_id}:{self.visit}:{self.attempt}"


class TriggerKind(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    WEBHOOK = "webhook"
    EVENT_POLL = "event_poll"
    CONDITION_POLL = "condition_poll"


class FieldMapping(_Record):
    trigger_field: str
    workflow_field: str
    default: Any = None


class TriggerDataMapping(_Record):
    mappings: List[FieldMapping] = Field(default_factory=list)
    static_data: Dict[str, Any] = Field(default_factory=dict)


class WorkflowTrigger(_Record):
    id: str = Field(default_factory=new_id)
    workflow_id: str
    organization_id: str = "default"
    name: Optional[str] = None
    kind: TriggerKind
    config: Dict[str, Any] = Field(default_factory=dict)
    active: bool = False
    data_mapping: Optional[TriggerDataMapping] = None
    last_fired: Optional[datetime] = None
    firing_count: int = 0
    error_count: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    version: int = 0


class TriggerEvent(_Record):
    """Immutable record of one firing attempt."""

    id: str = Field(default_factory=new_id)
    trigger_id: str
    event_data: Dict[str, Any] = Field(default_factory=dict)
    dedup_key: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    resulting_execution_id: Optional[str] = None
    error: Optional[str] = None


class FiringRequest(_Record):
    """Message carried from a trigger monitor to its engine registry."""

    message_id: str = Field(default_factory=new_id)
    trigger_id: str
    event_data: Dict[str, Any] = Field(default_factory=dict)
    dedup_key: Optional[str] = None
    detected_at: datetime = Field(default_factory=utcnow)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "FiringRequest":
        return cls.model_validate_json(data)


class AuditEventType(str, Enum):
    EXECUTION_STARTED = "execution_started"
    EXECUTION_PAUSED = "execution_paused"
    EXECUTION_RESUMED = "execution_resumed"
    EXECUTION_COMPLETED = "execution_completed"
    EXECUTION_FAILED = "execution_failed"
    EXECUTION_CANCELLED = "execution_cancelled"
    EXECUTION_RETRIED = "execution_retried"
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    STEP_SUSPENDED = "step_suspended"
    STEP_RESUMED = "step_resumed"
    STEP_RETRY_SCHEDULED = "step_retry_scheduled"
    STEP_SKIPPED = "step_skipped"
    STEP_CANCELLED = "step_cancelled"
    JOIN_RESOLVED = "join_resolved"
    LOOP_BOUND_REACHED = "loop_bound_reached"
    SLA_BREACHED = "sla_breached"
    TRIGGER_REGISTERED = "trigger_registered"
    TRIGGER_ACTIVATED = "trigger_activated"
    TRIGGER_DEACTIVATED = "trigger_deactivated"
    TRIGGER_UPDATED = "trigger_updated"
    TRIGGER_FIRED = "trigger_fired"
    TRIGGER_FAILED = "trigger_failed"


class AuditEvent(_Record):
    id: str = Field(default_factory=new_id)
    type: AuditEventType
    execution_id: Optional[str] = None
    trigger_id: Optional[str] = None
    step_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    actor: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class WebhookResult(_Record):
    success: bool
    message: str
    execution_id: Optional[str] = None
    status_code: int = 200


class ExecutionMetrics(_Record):
    execution_id: str
    status: ExecutionStatus
    duration_seconds: Optional[float] = None
    steps_total: int = 0
    steps_completed: int = 0
    steps_failed: int = 0
    steps_skipped: int = 0
    retries: int = 0
    average_step_seconds: Optional[float] = None
    sla_breached: bool = False
    step_durations: Dict[str, float] = Field(default_factory=dict)



import pytest

from waypoint.errors import IllegalTransitionError
from waypoint.models import (
    Activation,
    ExecutionStatus,
    StepExecution,
    StepStatus,
    TriggerKind,
    WorkflowExecution,
    WorkflowTrigger,
    check_transition,
)


@pytest.mark.parametrize(
    "current, target",
    [
        (ExecutionStatus.RUNNING, ExecutionStatus.PAUSED),
        (ExecutionStatus.RUNNING, ExecutionStatus.COMPLETED),
        (ExecutionStatus.RUNNING, ExecutionStatus.FAILED),
        (ExecutionStatus.PAUSED, ExecutionStatus.RUNNING),
        (ExecutionStatus.PAUSED, ExecutionStatus.CANCELLED),
    ],
)
def test_allowed_transitions(current, target):
    check_transition(current, target)


@pytest.mark.parametrize(
    "current, target",
    [
        (ExecutionStatus.PAUSED, ExecutionStatus.COMPLETED),
        (ExecutionStatus.COMPLETED, ExecutionStatus.RUNNING),
        (ExecutionStatus.CANCELLED, ExecutionStatus.RUNNING),
        (ExecutionStatus.FAILED, ExecutionStatus.RUNNING),
        (ExecutionStatus.RUNNING, ExecutionStatus.RUNNING),
    ],
)
def test_illegal_transitions(current, target):
    with pytest.raises(IllegalTransitionError):
        check_transition(current, target)


def test_operator_may_rerun_failed_execution():
    check_transition(ExecutionStatus.FAILED, ExecutionStatus.RUNNING, operator=True)
    with pytest.raises(IllegalTransitionError):
        check_transition(ExecutionStatus.CANCELLED, ExecutionStatus.RUNNING, operator=True)


def test_dispatch_key_includes_visit_and_attempt():
    row = StepExecution(execution_id="ex", step_id="s", visit=2, attempt=3)
    assert row.dispatch_key == "ex:s:2:3"


def test_current_steps_follow_active_frontier():
    execution = WorkflowExecution(
        workflow_id="wf",
        workflow_version=1,
        frontier=[
            Activation(step_id="b", status=StepStatus.IN_PROGRESS),
            Activation(step_id="a", status=StepStatus.SUSPENDED),
            Activation(step_id="c", status=StepStatus.COMPLETED),
            Activation(step_id="a", status=StepStatus.PENDING),
        ],
    )
    execution.refresh_current_steps()
    assert execution.current_steps == ["a", "b"]
    assert not execution.is_terminal
    assert execution.activation(execution.frontier[0].id).step_id == "b"
    assert execution.activation("missing") is None


def test_records_parse_camel_case():
    trigger = WorkflowTrigger.model_validate(
        {
            "workflowId": "wf",
            "organizationId": "acme",
            "kind": "webhook",
            "dataMapping": {
                "mappings": [{"triggerField": "a.b", "workflowField": "c"}],
                "staticData": {"source": "hook"},
            },
        }
    )
    assert trigger.kind is TriggerKind.WEBHOOK
    assert trigger.active is False
    assert trigger.data_mapping.mappings[0].trigger_field == "a.b"
    dumped = trigger.model_dump(by_alias=True)
    assert dumped["workflowId"] == "wf"
    assert dumped["dataMapping"]["staticData"] == {"source": "hook"}

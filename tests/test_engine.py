import asyncio

import pytest

from waypoint.engine import ExecutionEngine
from waypoint.errors import ErrorKind, IllegalTransitionError, NotFoundError
from waypoint.executors import (
    Completed,
    ExecutorRegistry,
    StepExecutor,
    Suspended,
    default_registry,
)
from waypoint.graph import StepKind
from waypoint.models import AuditEventType, ExecutionStatus, StepStatus
from waypoint.persistence import InMemoryWorkflowRepository


def _expense_workflow():
    return {
        "id": "expense",
        "steps": {
            "nodes": [
                {"id": "capture", "kind": "capture", "config": {"required": ["amount"]}},
                {"id": "route", "kind": "condition"},
                {
                    "id": "finance",
                    "kind": "update",
                    "config": {"output": {"approved_by": "finance"}},
                },
                {
                    "id": "manager",
                    "kind": "update",
                    "config": {"output": {"approved_by": "manager"}},
                },
                {"id": "record", "kind": "update", "config": {"output": {"recorded": True}}},
            ],
            "edges": [
                {"from": "capture", "to": "route"},
                {
                    "from": "route",
                    "to": "finance",
                    "condition": {"field": "amount", "operator": "greater_than", "value": 500},
                },
                {"from": "route", "to": "manager", "default": True},
                {"from": "finance", "to": "record"},
                {"from": "manager", "to": "record"},
            ],
        },
    }


def _parallel_workflow(join_type="all", first=None, second=None):
    return {
        "id": "fanout",
        "steps": {
            "nodes": [
                {"id": "split", "kind": "parallel", "config": {"join": "merge", "join_type": join_type}},
                {"id": "b1", "kind": "update", "config": first or {"output": {"x": 1, "shared": "b1"}}},
                {"id": "b2", "kind": "update", "config": second or {"output": {"y": 2, "shared": "b2"}}},
                {"id": "merge", "kind": "update", "config": {"output": {"merged": True}}},
            ],
            "edges": [
                {"from": "split", "to": "b1"},
                {"from": "split", "to": "b2"},
                {"from": "b1", "to": "merge"},
                {"from": "b2", "to": "merge"},
            ],
        },
    }


def _single_step(config=None, **settings):
    return {
        "id": "single",
        "steps": {"nodes": [{"id": "work", "kind": "update", "config": config or {}}]},
        "settings": settings,
    }


def _by_step(rows):
    grouped = {}
    for row in rows:
        grouped.setdefault(row.step_id, []).append(row)
    return grouped


async def _suspended_token(engine, execution_id):
    execution = await engine.wait_idle(execution_id, timeout=5)
    suspended = [a for a in execution.frontier if a.status is StepStatus.SUSPENDED]
    assert len(suspended) == 1
    return suspended[0].resume_token


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "amount, approver", [(600, "finance"), (100, "manager"), ("750", "finance")]
)
async def test_condition_routes_by_amount(make_engine, publish, amount, approver):
    await publish(_expense_workflow())
    engine = make_engine()

    execution_id = await engine.start("expense", {"requester": "ana"})
    token = await _suspended_token(engine, execution_id)
    await engine.resume_step(execution_id, token, {"amount": amount}, actor="ana")
    execution = await engine.wait_idle(execution_id, timeout=5)

    assert execution.status is ExecutionStatus.COMPLETED
    assert execution.context["approved_by"] == approver
    assert execution.context["recorded"] is True
    assert execution.context["requester"] == "ana"
    rows = _by_step(await engine.list_step_executions(execution_id))
    skipped = "manager" if approver == "finance" else "finance"
    assert skipped not in rows
    assert rows["route"][0].output == {"selected": approver}


@pytest.mark.asyncio
async def test_resume_step_rejects_unknown_token(make_engine, publish):
    await publish(_expense_workflow())
    engine = make_engine()
    execution_id = await engine.start("expense")
    await _suspended_token(engine, execution_id)

    with pytest.raises(NotFoundError):
        await engine.resume_step(execution_id, "not-a-token", {"amount": 1})


@pytest.mark.asyncio
async def test_resume_with_missing_required_input_fails(make_engine, publish):
    await publish(_expense_workflow())
    engine = make_engine()
    execution_id = await engine.start("expense")
    token = await _suspended_token(engine, execution_id)

    await engine.resume_step(execution_id, token, {"note": "no amount"})
    execution = await engine.wait_idle(execution_id, timeout=5)

    assert execution.status is ExecutionStatus.FAILED
    assert execution.failed_step_id == "capture"
    assert "amount" in execution.error


@pytest.mark.asyncio
async def test_start_unpublished_workflow_raises(make_engine):
    engine = make_engine()
    with pytest.raises(NotFoundError):
        await engine.start("missing")


@pytest.mark.asyncio
async def test_step_retried_until_retries_exhausted(make_engine, publish, repo):
    await publish(_single_step({"fail": True}, error_policy="retry", max_retries=2))
    engine = make_engine()

    execution_id = await engine.start("single")
    execution = await engine.wait_idle(execution_id, timeout=5)

    assert execution.status is ExecutionStatus.FAILED
    assert execution.failed_step_id == "work"
    rows = await engine.list_step_executions(execution_id)
    assert [r.attempt for r in rows] == [1, 2, 3]
    assert all(r.status is StepStatus.FAILED for r in rows)
    assert all(r.error_kind is ErrorKind.EXECUTOR for r in rows)

    events = [e.type for e in await engine.get_audit_trail(execution_id)]
    assert events.count(AuditEventType.STEP_RETRY_SCHEDULED) == 2
    assert events[-1] is AuditEventType.EXECUTION_FAILED


@pytest.mark.asyncio
async def test_transient_failure_recovers_on_retry(make_engine, publish):
    await publish(_single_step({"fail_times": 1, "output": {"done": True}}, max_retries=1))
    engine = make_engine()

    execution_id = await engine.start("single")
    execution = await engine.wait_idle(execution_id, timeout=5)

    assert execution.status is ExecutionStatus.COMPLETED
    assert execution.context["done"] is True
    metrics = await engine.get_metrics(execution_id)
    assert metrics.steps_failed == 1
    assert metrics.steps_completed == 1
    assert metrics.retries == 1


@pytest.mark.asyncio
async def test_continue_policy_drops_failed_path(make_engine, publish):
    await publish(
        {
            "id": "lenient",
            "settings": {"error_policy": "continue"},
            "steps": {
                "nodes": [
                    {"id": "a", "kind": "update", "config": {"fail": True}},
                    {"id": "b", "kind": "update"},
                    {"id": "c", "kind": "update", "config": {"output": {"c": 1}}},
                ],
                "edges": [{"from": "a", "to": "b"}],
            },
        }
    )
    engine = make_engine()

    execution_id = await engine.start("lenient")
    execution = await engine.wait_idle(execution_id, timeout=5)

    assert execution.status is ExecutionStatus.COMPLETED
    rows = _by_step(await engine.list_step_executions(execution_id))
    assert rows["a"][0].status is StepStatus.FAILED
    assert rows["c"][0].status is StepStatus.COMPLETED
    assert "b" not in rows


@pytest.mark.asyncio
async def test_parallel_all_merges_branches_in_order(make_engine, publish):
    await publish(_parallel_workflow("all"))
    engine = make_engine()

    execution_id = await engine.start("fanout")
    execution = await engine.wait_idle(execution_id, timeout=5)

    assert execution.status is ExecutionStatus.COMPLETED
    assert execution.context["x"] == 1
    assert execution.context["y"] == 2
    assert execution.context["shared"] == "b2"
    assert execution.context["merged"] is True
    rows = _by_step(await engine.list_step_executions(execution_id))
    assert len(rows["merge"]) == 1
    assert execution.joins == []


@pytest.mark.asyncio
async def test_branch_output_invisible_to_sibling(make_engine, publish):
    await publish(
        {
            "id": "isolated",
            "steps": {
                "nodes": [
                    {"id": "split", "kind": "parallel", "config": {"join": "merge"}},
                    {"id": "fast", "kind": "update", "config": {"output": {"x": 1}}},
                    {"id": "slow", "kind": "update", "config": {"sleep": 0.1}},
                    {"id": "after_slow", "kind": "update", "config": {"output": {"y": 2}}},
                    {"id": "merge", "kind": "update"},
                ],
                "edges": [
                    {"from": "split", "to": "fast"},
                    {"from": "split", "to": "slow"},
                    {"from": "fast", "to": "merge"},
                    {"from": "slow", "to": "after_slow"},
                    {"from": "after_slow", "to": "merge"},
                ],
            },
        }
    )
    engine = make_engine()

    execution_id = await engine.start("isolated", {"base": True})
    execution = await engine.wait_idle(execution_id, timeout=5)

    assert execution.status is ExecutionStatus.COMPLETED
    rows = _by_step(await engine.list_step_executions(execution_id))
    assert rows["after_slow"][0].input == {"base": True}
    assert rows["merge"][0].input == {"base": True, "x": 1, "y": 2}


@pytest.mark.asyncio
async def test_race_cancels_slower_branch(make_engine, publish):
    await publish(
        _parallel_workflow(
            "race",
            first={"sleep": 5, "output": {"winner": "b1"}},
            second={"output": {"winner": "b2"}},
        )
    )
    engine = make_engine()

    execution_id = await engine.start("fanout")
    execution = await engine.wait_idle(execution_id, timeout=3)

    assert execution.status is ExecutionStatus.COMPLETED
    assert execution.context["winner"] == "b2"
    rows = _by_step(await engine.list_step_executions(execution_id))
    assert rows["b1"][0].status is StepStatus.CANCELLED
    assert rows["merge"][0].status is StepStatus.COMPLETED
    resolved = [
        e for e in await engine.get_audit_trail(execution_id)
        if e.type is AuditEventType.JOIN_RESOLVED
    ]
    assert resolved[0].details["reached"] == ["b2"]


@pytest.mark.asyncio
async def test_any_join_discards_late_branch(make_engine, publish):
    await publish(
        _parallel_workflow(
            "any",
            first={"sleep": 0.2, "output": {"late": True}},
            second={"output": {"early": True}},
        )
    )
    engine = make_engine()

    execution_id = await engine.start("fanout")
    execution = await engine.wait_idle(execution_id, timeout=5)

    assert execution.status is ExecutionStatus.COMPLETED
    assert execution.context["early"] is True
    assert "late" not in execution.context
    rows = _by_step(await engine.list_step_executions(execution_id))
    assert rows["b1"][0].status is StepStatus.SKIPPED
    assert len(rows["merge"]) == 1


@pytest.mark.asyncio
async def test_cancel_stops_in_flight_branches(make_engine, publish, scripted, wait_until):
    await publish(
        _parallel_workflow("all", first={"sleep": 5}, second={"sleep": 5})
    )
    engine = make_engine()

    execution_id = await engine.start("fanout")
    await wait_until(lambda: len(scripted.calls) == 2)
    execution = await engine.cancel(execution_id, actor="ops")

    assert execution.status is ExecutionStatus.CANCELLED
    assert execution.frontier == []
    await engine.wait_idle(execution_id, timeout=2)
    rows = _by_step(await engine.list_step_executions(execution_id))
    assert rows["b1"][0].status is StepStatus.CANCELLED
    assert rows["b2"][0].status is StepStatus.CANCELLED
    assert "merge" not in rows
    assert len(scripted.calls) == 2


@pytest.mark.asyncio
async def test_cancel_twice_is_illegal(make_engine, publish):
    await publish(_expense_workflow())
    engine = make_engine()
    execution_id = await engine.start("expense")
    await engine.cancel(execution_id)

    with pytest.raises(IllegalTransitionError):
        await engine.cancel(execution_id)
    with pytest.raises(IllegalTransitionError):
        await engine.resume(execution_id)


@pytest.mark.asyncio
async def test_pause_holds_dispatch_until_resume(make_engine, publish):
    await publish(
        {
            "id": "two",
            "steps": {
                "nodes": [
                    {"id": "a", "kind": "update", "config": {"sleep": 0.05}},
                    {"id": "b", "kind": "update", "config": {"output": {"b": True}}},
                ],
                "edges": [{"from": "a", "to": "b"}],
            },
        }
    )
    engine = make_engine()

    execution_id = await engine.start("two")
    paused = await engine.pause(execution_id)
    assert paused.status is ExecutionStatus.PAUSED

    execution = await engine.wait_idle(execution_id, timeout=5)
    assert execution.status is ExecutionStatus.PAUSED
    assert "b" not in _by_step(await engine.list_step_executions(execution_id))

    with pytest.raises(IllegalTransitionError):
        await engine.pause(execution_id)

    await engine.resume(execution_id)
    execution = await engine.wait_idle(execution_id, timeout=5)
    assert execution.status is ExecutionStatus.COMPLETED
    assert execution.context["b"] is True


@pytest.mark.asyncio
async def test_step_timeout_fails_execution(make_engine, publish):
    data = _single_step({"sleep": 1})
    data["steps"]["nodes"][0]["timeout_seconds"] = 0.05
    await publish(data)
    engine = make_engine()

    execution_id = await engine.start("single")
    execution = await engine.wait_idle(execution_id, timeout=5)

    assert execution.status is ExecutionStatus.FAILED
    row = (await engine.list_step_executions(execution_id))[0]
    assert row.error_kind is ErrorKind.TIMEOUT


@pytest.mark.asyncio
async def test_loop_runs_body_up_to_bound(make_engine, publish):
    await publish(
        {
            "id": "counter",
            "steps": {
                "nodes": [
                    {"id": "repeat", "kind": "loop", "config": {"body": "inc", "max_iterations": 3}},
                    {
                        "id": "inc",
                        "kind": "update",
                        "config": {
                            "calculations": [
                                {"operation": "add", "operands": ["$count", 1], "target": "count"}
                            ]
                        },
                    },
                    {"id": "done", "kind": "update", "config": {"set": {"finished": True}}},
                ],
                "edges": [
                    {"from": "repeat", "to": "inc"},
                    {"from": "inc", "to": "repeat"},
                    {"from": "repeat", "to": "done"},
                ],
            },
        }
    )
    engine = make_engine(executors=default_registry())

    execution_id = await engine.start("counter", {"count": 0})
    execution = await engine.wait_idle(execution_id, timeout=5)

    assert execution.status is ExecutionStatus.COMPLETED
    assert execution.context["count"] == 3
    assert execution.context["finished"] is True
    rows = _by_step(await engine.list_step_executions(execution_id))
    assert [r.visit for r in rows["inc"]] == [1, 2, 3]
    events = [e.type for e in await engine.get_audit_trail(execution_id)]
    assert events.count(AuditEventType.LOOP_BOUND_REACHED) == 1


@pytest.mark.asyncio
async def test_loop_guard_exits_early(make_engine, publish):
    await publish(
        {
            "id": "guarded",
            "steps": {
                "nodes": [
                    {
                        "id": "repeat",
                        "kind": "loop",
                        "config": {
                            "body": "inc",
                            "max_iterations": 10,
                            "while": {"field": "count", "operator": "less_than", "value": 2},
                        },
                    },
                    {
                        "id": "inc",
                        "kind": "update",
                        "config": {
                            "calculations": [
                                {"operation": "add", "operands": ["$count", 1], "target": "count"}
                            ]
                        },
                    },
                ],
                "edges": [{"from": "repeat", "to": "inc"}, {"from": "inc", "to": "repeat"}],
            },
        }
    )
    engine = make_engine(executors=default_registry())

    execution_id = await engine.start("guarded", {"count": 0})
    execution = await engine.wait_idle(execution_id, timeout=5)

    assert execution.status is ExecutionStatus.COMPLETED
    assert execution.context["count"] == 2
    events = [e.type for e in await engine.get_audit_trail(execution_id)]
    assert AuditEventType.LOOP_BOUND_REACHED not in events


@pytest.mark.asyncio
async def test_sla_breach_flagged_once(make_engine, publish):
    await publish(
        {
            "id": "slow_review",
            "settings": {"sla_minutes": 0.001},
            "steps": {"nodes": [{"id": "review", "kind": "review"}]},
        }
    )
    engine = make_engine()

    execution_id = await engine.start("slow_review")
    await engine.wait_idle(execution_id, timeout=5)
    await asyncio.sleep(0.1)
    await engine.check_sla()

    assert await engine.check_sla() == []
    execution = await engine.get_status(execution_id)
    assert execution.status is ExecutionStatus.RUNNING
    assert execution.sla_breached is True
    events = [e.type for e in await engine.get_audit_trail(execution_id)]
    assert events.count(AuditEventType.SLA_BREACHED) == 1


@pytest.mark.asyncio
async def test_missing_executor_is_configuration_failure(make_engine, publish, scripted):
    await publish(
        {
            "id": "misconfigured",
            "settings": {"error_policy": "retry"},
            "steps": {"nodes": [{"id": "notify", "kind": "notify"}]},
        }
    )
    engine = make_engine(executors=ExecutorRegistry({StepKind.UPDATE: scripted}))

    execution_id = await engine.start("misconfigured")
    execution = await engine.wait_idle(execution_id, timeout=5)

    assert execution.status is ExecutionStatus.FAILED
    rows = await engine.list_step_executions(execution_id)
    assert len(rows) == 1
    assert rows[0].error_kind is ErrorKind.CONFIGURATION
    failed = [
        e for e in await engine.get_audit_trail(execution_id)
        if e.type is AuditEventType.EXECUTION_FAILED
    ]
    assert failed[0].details["requires_attention"] is True

    with pytest.raises(IllegalTransitionError):
        await engine.retry_failed_step(execution_id)


@pytest.mark.asyncio
async def test_operator_retry_resumes_from_failed_step(make_engine, publish, scripted):
    await publish(
        {
            "id": "flaky",
            "steps": {
                "nodes": [
                    {"id": "first", "kind": "update", "config": {"output": {"first": True}}},
                    {"id": "second", "kind": "update", "config": {"output": {"second": True}}},
                ],
                "edges": [{"from": "first", "to": "second"}],
            },
        }
    )
    engine = make_engine()
    scripted.fail_always = True

    execution_id = await engine.start("flaky")
    execution = await engine.wait_idle(execution_id, timeout=5)
    assert execution.status is ExecutionStatus.FAILED
    assert execution.failed_step_id == "first"

    scripted.fail_always = False
    retried = await engine.retry_failed_step(execution_id, actor="ops")
    assert retried.status is ExecutionStatus.RUNNING
    execution = await engine.wait_idle(execution_id, timeout=5)

    assert execution.status is ExecutionStatus.COMPLETED
    assert execution.context == {"first": True, "second": True}
    rows = _by_step(await engine.list_step_executions(execution_id))
    assert [(r.visit, r.status) for r in rows["first"]] == [
        (1, StepStatus.FAILED),
        (2, StepStatus.COMPLETED),
    ]


@pytest.mark.asyncio
async def test_retry_of_completed_execution_is_illegal(make_engine, publish):
    await publish(_single_step({"output": {"ok": True}}))
    engine = make_engine()
    execution_id = await engine.start("single")
    await engine.wait_idle(execution_id, timeout=5)

    with pytest.raises(IllegalTransitionError):
        await engine.retry_failed_step(execution_id)


@pytest.mark.asyncio
async def test_execution_pinned_to_started_version(make_engine, publish):
    first = await publish(_expense_workflow())
    engine = make_engine()
    execution_id = await engine.start("expense")
    token = await _suspended_token(engine, execution_id)

    replacement = _single_step({"output": {"v2": True}})
    replacement["id"] = "expense"
    second = await publish(replacement)
    assert second.version == first.version + 1

    await engine.resume_step(execution_id, token, {"amount": 10})
    execution = await engine.wait_idle(execution_id, timeout=5)

    assert execution.workflow_version == first.version
    assert execution.context["approved_by"] == "manager"
    assert "v2" not in execution.context


@pytest.mark.asyncio
async def test_current_steps_track_frontier(make_engine, publish):
    await publish(_expense_workflow())
    engine = make_engine()

    execution_id = await engine.start("expense")
    execution = await engine.wait_idle(execution_id, timeout=5)

    assert execution.current_steps == ["capture"]
    trail = [e.type for e in await engine.get_audit_trail(execution_id)]
    assert trail[:3] == [
        AuditEventType.EXECUTION_STARTED,
        AuditEventType.STEP_STARTED,
        AuditEventType.STEP_SUSPENDED,
    ]


@pytest.mark.asyncio
async def test_finished_executions_release_engine_bookkeeping(make_engine, publish):
    await publish(_single_step({"output": {"done": True}}))
    await publish(_expense_workflow())
    engine = make_engine()

    finished = [await engine.start("single") for _ in range(5)]
    for execution_id in finished:
        await engine.wait_idle(execution_id, timeout=5)
    waiting = await engine.start("expense")
    await _suspended_token(engine, waiting)
    await engine.cancel(waiting)
    for n in range(5):
        with pytest.raises(NotFoundError):
            await engine.cancel(f"bogus-{n}")

    assert engine._runs == {}
    assert (await engine.get_status(finished[0])).status is ExecutionStatus.COMPLETED


class SlowResume(StepExecutor):
    async def execute(self, config, context):
        return Suspended(resume_token="wait-for-reviewer")

    async def resume(self, resume_token, input, config, context):
        await asyncio.sleep(1)
        return Completed(output=dict(input))


@pytest.mark.asyncio
async def test_resumed_step_uses_default_step_timeout(repo, fast_config, publish):
    await publish(
        {"id": "slow_review", "steps": {"nodes": [{"id": "review", "kind": "review"}]}}
    )
    executors = default_registry()
    executors.register(StepKind.REVIEW, SlowResume())
    engine = ExecutionEngine(
        repo,
        executors=executors,
        config=fast_config.model_copy(update={"default_step_timeout": 0.05}),
    )

    execution_id = await engine.start("slow_review")
    token = await _suspended_token(engine, execution_id)
    await engine.resume_step(execution_id, token, {"approved": True})
    execution = await engine.wait_idle(execution_id, timeout=5)

    assert execution.status is ExecutionStatus.FAILED
    (row,) = await engine.list_step_executions(execution_id)
    assert row.error_kind is ErrorKind.TIMEOUT


class FrozenRunningList(InMemoryWorkflowRepository):
    """Answers execution listings from a snapshot taken earlier."""

    snapshot = None

    async def list_executions(self, status=None, organization_id=None, workflow_id=None):
        if self.snapshot is not None:
            return list(self.snapshot)
        return await super().list_executions(status, organization_id, workflow_id)


@pytest.mark.asyncio
async def test_sla_check_skips_executions_finished_meanwhile(make_engine, publish):
    store = FrozenRunningList()
    await publish(
        {
            "id": "slow_review",
            "settings": {"sla_minutes": 0.001},
            "steps": {"nodes": [{"id": "review", "kind": "review"}]},
        },
        repository=store,
    )
    engine = make_engine(repository=store)

    execution_id = await engine.start("slow_review")
    await engine.wait_idle(execution_id, timeout=5)
    store.snapshot = await store.list_executions(status=[ExecutionStatus.RUNNING])
    await engine.cancel(execution_id)
    await asyncio.sleep(0.1)

    assert await engine.check_sla() == []
    execution = await engine.get_status(execution_id)
    assert execution.sla_breached is False

import json

import httpx
import pytest

from waypoint.errors import ConfigurationError, ErrorKind
from waypoint.executors import (
    CaptureExecutor,
    Completed,
    DecisionExecutor,
    ExecutorRegistry,
    Failed,
    NotifyExecutor,
    StepContext,
    Suspended,
    UpdateExecutor,
    default_registry,
)
from waypoint.executors.builtin import calculate, render, set_path
from waypoint.graph import StepKind

DATA = {
    "customer": {"name": "Grace", "tier": "gold"},
    "order": {"total": 120, "items": 3},
    "discount": "20",
}


def _context(data=None, step_id="step"):
    return StepContext(
        execution_id="ex-1", workflow_id="wf", step_id=step_id, data=dict(data or DATA)
    )


def test_render_templates():
    assert render("Hello {{ customer.name }}!", DATA) == "Hello Grace!"
    assert render("{{order.total}}", DATA) == 120
    assert render("{{order}}", DATA) == {"total": 120, "items": 3}
    assert render("missing: {{nope}}", DATA) == "missing: "
    assert render({"to": ["{{customer.name}}", 5]}, DATA) == {"to": ["Grace", 5]}


def test_set_path_creates_nested_keys():
    target = {}
    set_path(target, "a.b.c", 1)
    set_path(target, "a.d", 2)
    assert target == {"a": {"b": {"c": 1}, "d": 2}}


@pytest.mark.parametrize(
    "operation, operands, expected",
    [
        ("add", ["$order.total", 30], 150),
        ("subtract", ["$order.total", "$discount"], 100),
        ("multiply", ["$order.items", 2.5], 7.5),
        ("divide", [10, 4], 2.5),
        ("concat", ["{{customer.name}}", "-", "$customer.tier"], "Grace-gold"),
        ("noop", [7], 7),
        ("add", [], None),
    ],
)
def test_calculate(operation, operands, expected):
    assert calculate(operation, operands, DATA) == expected


@pytest.mark.asyncio
async def test_capture_without_waiting_completes():
    result = await CaptureExecutor().execute(
        {"await_input": False, "values": {"who": "{{customer.name}}"}}, _context()
    )
    assert result == Completed(output={"who": "Grace"})


@pytest.mark.asyncio
async def test_capture_suspends_then_resumes():
    executor = CaptureExecutor()
    config = {"form": "address", "values": {"tier": "{{customer.tier}}"}, "required": ["street"]}

    suspended = await executor.execute(config, _context())
    assert isinstance(suspended, Suspended)
    assert suspended.details == {"form": "address", "prefill": {"tier": "gold"}}

    missing = await executor.resume(suspended.resume_token, {}, config, _context())
    assert isinstance(missing, Failed)
    assert missing.kind is ErrorKind.VALIDATION
    assert missing.retryable is False

    done = await executor.resume(suspended.resume_token, {"street": "Main"}, config, _context())
    assert done.output == {"tier": "gold", "street": "Main"}


@pytest.mark.asyncio
async def test_decision_auto_approve():
    executor = DecisionExecutor("approval")
    config = {"auto_approve": {"field": "order.total", "operator": "less_than", "value": 500}}
    result = await executor.execute(config, _context())
    assert result.output == {"approval": {"approved": True, "auto": True}}

    result = await executor.execute(config, _context({"order": {"total": 900}}))
    assert isinstance(result, Suspended)


@pytest.mark.asyncio
async def test_decision_resume_and_reject():
    executor = DecisionExecutor("review")
    approved = await executor.resume(
        "t", {"decision": "approve", "by": "lee"}, {"output_key": "legal"}, _context()
    )
    assert approved.output == {"legal": {"approved": True, "by": "lee", "comment": None}}

    rejected = await executor.resume("t", {"approved": False}, {}, _context())
    assert rejected.output["review"]["approved"] is False

    failed = await executor.resume(
        "t", {"approved": False, "by": "kim"}, {"fail_on_reject": True}, _context()
    )
    assert isinstance(failed, Failed)
    assert failed.error == "Rejected by kim"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "input, approved",
    [
        ({"approved": "false"}, False),
        ({"approved": "No"}, False),
        ({"approved": "0"}, False),
        ({"approved": "true"}, True),
        ({"approved": " YES "}, True),
        ({"decision": "reject"}, False),
        ({"decision": "maybe"}, False),
        ({"approved": 1}, True),
        ({}, False),
    ],
)
async def test_decision_reads_string_approvals(input, approved):
    result = await DecisionExecutor("review").resume("t", input, {}, _context())
    assert result.output["review"]["approved"] is approved


@pytest.mark.asyncio
async def test_update_set_mappings_and_calculations():
    config = {
        "set": {"status": "priced", "label.name": "{{customer.name}}"},
        "mappings": [{"source": "order.total", "target": "invoice.subtotal"}],
        "calculations": [
            {"operation": "subtract", "operands": ["$invoice.subtotal", "$discount"], "target": "invoice.total"}
        ],
    }
    result = await UpdateExecutor().execute(config, _context())
    assert result.output == {
        "status": "priced",
        "label": {"name": "Grace"},
        "invoice": {"subtotal": 120, "total": 100},
    }


@pytest.mark.asyncio
async def test_update_failure_is_not_retryable():
    config = {"calculations": [{"operation": "divide", "operands": [1, 0], "target": "x"}]}
    result = await UpdateExecutor().execute(config, _context())
    assert isinstance(result, Failed)
    assert result.retryable is False
    assert "Update failed" in result.error


@pytest.mark.asyncio
async def test_notify_log_channel():
    result = await NotifyExecutor().execute(
        {"message": "Order for {{customer.name}}"}, _context()
    )
    assert result.output == {"notified": {"channel": "log", "message": "Order for Grace"}}


@pytest.mark.asyncio
async def test_notify_webhook_and_slack_post_rendered_payloads():
    sent = []

    def handler(request):
        sent.append((str(request.url), json.loads(request.content), request.headers.get("x-key")))
        return httpx.Response(202)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        notifier = NotifyExecutor(client)
        hook = await notifier.execute(
            {
                "channel": "webhook",
                "url": "https://hooks.example.com/orders",
                "payload": {"total": "{{order.total}}"},
                "headers": {"X-Key": "abc"},
            },
            _context(),
        )
        slack = await notifier.execute(
            {"channel": "slack", "url": "https://slack.example.com/x", "message": "hi {{customer.name}}"},
            _context(),
        )

    assert hook.output == {"notified": {"channel": "webhook", "status_code": 202}}
    assert slack.output["notified"]["channel"] == "slack"
    assert sent == [
        ("https://hooks.example.com/orders", {"total": 120}, "abc"),
        ("https://slack.example.com/x", {"text": "hi Grace"}, None),
    ]


@pytest.mark.asyncio
async def test_notify_failures():
    async with httpx.AsyncClient(
        transport=httpx.MockTransport(lambda request: httpx.Response(500))
    ) as client:
        notifier = NotifyExecutor(client)
        failed = await notifier.execute(
            {"channel": "webhook", "url": "https://hooks.example.com"}, _context()
        )
        assert isinstance(failed, Failed)
        assert failed.kind is ErrorKind.EXECUTOR
        assert failed.retryable is True

        no_url = await notifier.execute({"channel": "webhook"}, _context())
        assert no_url.kind is ErrorKind.CONFIGURATION

        unknown = await notifier.execute({"channel": "pager", "url": "https://x"}, _context())
        assert unknown.kind is ErrorKind.CONFIGURATION


def test_registry_lookup():
    registry = default_registry()
    assert set(registry.kinds()) == {
        StepKind.CAPTURE,
        StepKind.REVIEW,
        StepKind.APPROVE,
        StepKind.UPDATE,
        StepKind.NOTIFY,
    }
    assert isinstance(registry.get("update"), UpdateExecutor)

    empty = ExecutorRegistry()
    with pytest.raises(ConfigurationError):
        empty.get(StepKind.UPDATE)
    with pytest.raises(ConfigurationError):
        empty.get("teleport")


@pytest.mark.asyncio
async def test_default_resume_echoes_input():
    result = await UpdateExecutor().resume("t", {"a": 1}, {}, _context())
    assert result == Completed(output={"a": 1})

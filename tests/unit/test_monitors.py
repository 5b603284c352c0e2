import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from waypoint.errors import ConfigurationError, InfrastructureError, ValidationError
from waypoint.models import TriggerKind, WorkflowTrigger
from waypoint.triggers import (
    ConditionPollConfig,
    ConditionPollMonitor,
    EventPollConfig,
    EventPollMonitor,
    HttpDataSource,
    HttpEventSource,
    Schedule,
    ScheduleConfig,
    ScheduledMonitor,
    StaticDataSource,
    StaticEventSource,
    TriggerMonitor,
    parse_trigger_config,
)
from waypoint.triggers.sources import build_data_source, build_event_source

UTC = timezone.utc


class Recorder:
    def __init__(self):
        self.requests = []

    async def __call__(self, request):
        self.requests.append(request)


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def _trigger(kind, **config):
    return WorkflowTrigger(workflow_id="wf", kind=kind, config=config, active=True)


@pytest.mark.asyncio
async def test_scheduled_monitor_fires_once_per_occurrence():
    recorder = Recorder()
    clock = Clock(datetime(2024, 3, 15, 9, 0, 5, tzinfo=UTC))
    schedule = Schedule(ScheduleConfig(type="daily", time="09:00"))
    monitor = ScheduledMonitor(
        _trigger(TriggerKind.SCHEDULED), recorder, schedule, grace_seconds=60, clock=clock
    )

    await monitor.check()
    clock.now += timedelta(seconds=30)
    await monitor.check()

    assert len(recorder.requests) == 1
    request = recorder.requests[0]
    assert request.trigger_id == monitor.trigger.id
    assert request.dedup_key == "schedule:2024-03-15T09:00:00+00:00"
    assert request.event_data["scheduled_for"] == "2024-03-15T09:00:00+00:00"

    clock.now = datetime(2024, 3, 16, 9, 0, 1, tzinfo=UTC)
    await monitor.check()
    assert len(recorder.requests) == 2


@pytest.mark.asyncio
async def test_event_poll_monitor_dedups_and_filters():
    recorder = Recorder()
    source = StaticEventSource(
        [
            {"id": 1, "type": "order.created", "total": 50},
            {"id": 2, "type": "order.deleted", "total": 70},
            {"type": "order.created"},
        ]
    )
    config = EventPollConfig(
        filters={"field": "type", "operator": "equals", "value": "order.created"}
    )
    monitor = EventPollMonitor(_trigger(TriggerKind.EVENT_POLL), recorder, source, config)

    await monitor.check()
    assert [r.event_data["id"] for r in recorder.requests] == [1]
    assert recorder.requests[0].dedup_key == "event:1"
    assert monitor.cursor == "2"

    source.push({"id": 3, "type": "order.created", "total": 10})
    await monitor.check()
    await monitor.check()
    assert [r.event_data["id"] for r in recorder.requests] == [1, 3]
    assert monitor.cursor == "3"


@pytest.mark.asyncio
async def test_event_poll_memory_is_bounded():
    recorder = Recorder()
    source = StaticEventSource([{"id": n} for n in range(5)])
    monitor = EventPollMonitor(
        _trigger(TriggerKind.EVENT_POLL), recorder, source, EventPollConfig(), memory=2
    )
    await monitor.check()
    assert len(recorder.requests) == 5
    assert monitor._seen == {"3", "4"}


@pytest.mark.asyncio
async def test_condition_poll_fires_on_rising_edge_with_cooldown():
    recorder = Recorder()
    clock = Clock(datetime(2024, 3, 15, 12, 0, tzinfo=UTC))
    source = StaticDataSource({"stock": 50})
    config = ConditionPollConfig(
        conditions=[{"field": "stock", "operator": "less_than", "value": 10}],
        cooldown_seconds=600,
    )
    monitor = ConditionPollMonitor(
        _trigger(TriggerKind.CONDITION_POLL), recorder, source, config, clock=clock
    )

    await monitor.check()
    assert recorder.requests == []

    source.data["stock"] = 5
    await monitor.check()
    await monitor.check()
    assert len(recorder.requests) == 1
    assert recorder.requests[0].event_data["snapshot"] == {"stock": 5}

    # Falls back and rises again inside the cooldown.
    source.data["stock"] = 40
    await monitor.check()
    source.data["stock"] = 3
    clock.now += timedelta(seconds=60)
    await monitor.check()
    assert len(recorder.requests) == 1

    source.data["stock"] = 40
    await monitor.check()
    source.data["stock"] = 2
    clock.now += timedelta(seconds=900)
    await monitor.check()
    assert len(recorder.requests) == 2


class ExplodingMonitor(TriggerMonitor):
    def __init__(self, trigger, publisher):
        super().__init__(trigger, publisher, interval=0.01)
        self.checks = 0

    async def check(self):
        self.checks += 1
        raise InfrastructureError("source unreachable")


@pytest.mark.asyncio
async def test_monitor_loop_survives_failing_checks():
    monitor = ExplodingMonitor(_trigger(TriggerKind.EVENT_POLL), Recorder())
    monitor.start()
    assert monitor.running
    await asyncio.sleep(0.1)
    await monitor.stop()

    assert monitor.checks >= 2
    assert monitor.error_count == monitor.checks
    status = monitor.status()
    assert status["running"] is False
    assert status["last_error"] == "source unreachable"
    assert status["kind"] == "event_poll"
    assert status["last_check"] is not None


@pytest.mark.asyncio
async def test_static_event_source_cursor():
    source = StaticEventSource([{"id": "a"}, {"id": "b"}, {"id": "c"}])
    assert [e["id"] for e in await source.fetch("b")] == ["c"]
    assert len(await source.fetch("unknown")) == 3
    assert len(await source.fetch()) == 3


@pytest.mark.asyncio
async def test_http_event_source_sends_cursor_and_reads_items():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"data": {"items": [{"id": 7}, "noise"]}})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        source = HttpEventSource(
            "https://events.example.com/feed",
            client=client,
            headers={"Authorization": "Bearer t"},
            items_path="data.items",
        )
        events = await source.fetch("6")

    assert events == [{"id": 7}]
    assert seen[0].url.params["since"] == "6"
    assert seen[0].headers["authorization"] == "Bearer t"


@pytest.mark.asyncio
async def test_http_sources_wrap_failures():
    def handler(request):
        return httpx.Response(503)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(InfrastructureError):
            await HttpEventSource("https://events.example.com", client=client).fetch()

    def listing(request):
        return httpx.Response(200, json=[1, 2])

    async with httpx.AsyncClient(transport=httpx.MockTransport(listing)) as client:
        snapshot = await HttpDataSource("https://data.example.com", client=client).snapshot()
    assert snapshot == {"value": [1, 2]}


def test_build_sources_need_url():
    with pytest.raises(ConfigurationError):
        build_event_source({"source": {}})
    with pytest.raises(ConfigurationError):
        build_data_source({"source": {"type": "ftp", "url": "ftp://x"}})
    source = build_event_source({"source": {"url": "https://e.example.com", "itemsPath": "items"}})
    assert isinstance(source, HttpEventSource)
    assert source.url == "https://e.example.com"


@pytest.mark.parametrize(
    "kind, config",
    [
        (TriggerKind.CONDITION_POLL, {"conditions": []}),
        (TriggerKind.CONDITION_POLL, {"conditions": [{"field": "x", "operator": "bogus"}]}),
        (TriggerKind.EVENT_POLL, {"filters": {"field": "x", "operator": "bogus"}}),
        (TriggerKind.WEBHOOK, {"authentication": {"type": "carrier_pigeon"}}),
    ],
)
def test_parse_trigger_config_rejects(kind, config):
    with pytest.raises(ValidationError):
        parse_trigger_config(kind, config)

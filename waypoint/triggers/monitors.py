"""Trigger monitors: one asyncio task per active trigger.

A monitor decides *when* its trigger fires and hands a ``FiringRequest`` to
its publisher. What happens on firing is the registry's business.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..conditions import ConditionExpression, evaluate, lookup, parse_condition
from ..models import FiringRequest, WorkflowTrigger, utcnow
from .schedule import Schedule
from .sources import DataSource, EventSource

logger = logging.getLogger(__name__)

Publisher = Callable[[FiringRequest], Awaitable[None]]
Clock = Callable[[], datetime]


class EventPollConfig(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    poll_interval_seconds: Optional[float] = None
    filters: Optional[Any] = None
    id_field: str = "id"
    source: Dict[str, Any] = Field(default_factory=dict)

    def filter_expression(self) -> Optional[ConditionExpression]:
        return parse_condition(self.filters) if self.filters else None


class ConditionPollConfig(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    check_interval_seconds: Optional[float] = None
    logic: str = "AND"
    conditions: List[Any] = Field(default_factory=list)
    cooldown_seconds: float = 0
    source: Dict[str, Any] = Field(default_factory=dict)

    def expression(self) -> ConditionExpression:
        return parse_condition({"logic": self.logic, "conditions": self.conditions})


class TriggerMonitor(metaclass=abc.ABCMeta):
    """Runs :meth:`check` every ``interval`` seconds until stopped.

    A failing check is logged and recorded; the loop keeps going.
    """

    def __init__(self, trigger: WorkflowTrigger, publisher: Publisher, interval: float) -> None:
        self.trigger = trigger
        self.interval = interval
        self._publish = publisher
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self.last_check: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self.error_count = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self.run(), name=f"monitor:{self.trigger.id}")

    async def stop(self) -> None:
        """Stop after the current check finishes."""
        self._stop.set()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    async def run(self) -> None:
        logger.info(f"Monitoring trigger {self.trigger.id} ({self.trigger.kind.value})")
        while not self._stop.is_set():
            try:
                await self.check()
                self.last_error = None
            except Exception as exc:
                self.error_count += 1
                self.last_error = str(exc)
                logger.exception(f"Check for trigger {self.trigger.id} failed")
            self.last_check = utcnow()
            try:
                await asyncio.wait_for(self._stop.wait(), self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info(f"Stopped monitoring trigger {self.trigger.id}")

    async def emit(self, event_data: Dict[str, Any], dedup_key: Optional[str] = None) -> None:
        await self._publish(
            FiringRequest(trigger_id=self.trigger.id, event_data=event_data, dedup_key=dedup_key)
        )

    @abc.abstractmethod
    async def check(self) -> None:
        """Inspect the outside world once and emit any firing."""
        raise NotImplementedError

    def status(self) -> Dict[str, Any]:
        return {
            "trigger_id": self.trigger.id,
            "kind": self.trigger.kind.value,
            "running": self.running,
            "last_check": self.last_check.isoformat() if self.last_check else None,
            "last_error": self.last_error,
            "error_count": self.error_count,
        }


class ScheduledMonitor(TriggerMonitor):
    """Fires when a schedule occurrence falls inside the window since the last tick."""

    def __init__(
        self,
        trigger: WorkflowTrigger,
        publisher: Publisher,
        schedule: Schedule,
        tick_seconds: float = 30.0,
        grace_seconds: float = 90.0,
        clock: Clock = utcnow,
    ) -> None:
        super().__init__(trigger, publisher, tick_seconds)
        self.schedule = schedule
        self.grace_seconds = grace_seconds
        self.last_fired = trigger.last_fired
        self._clock = clock

    async def check(self) -> None:
        now = self._clock()
        occurrence = self.schedule.due_occurrence(self.last_fired, now, self.grace_seconds)
        if occurrence is None:
            return
        self.last_fired = occurrence
        await self.emit(
            {"scheduled_for": occurrence.isoformat(), "fired_at": now.isoformat()},
            dedup_key=f"schedule:{occurrence.isoformat()}",
        )


class EventPollMonitor(TriggerMonitor):
    """Polls an event source and fires once per matching event id."""

    def __init__(
        self,
        trigger: WorkflowTrigger,
        publisher: Publisher,
        source: EventSource,
        config: EventPollConfig,
        interval: float = 60.0,
        memory: int = 1000,
    ) -> None:
        super().__init__(trigger, publisher, config.poll_interval_seconds or interval)
        self.source = source
        self.config = config
        self.cursor: Optional[str] = None
        self._filter = config.filter_expression()
        self._seen: Set[str] = set()
        self._order: Deque[str] = deque()
        self._memory = memory

    def _remember(self, event_id: str) -> None:
        self._seen.add(event_id)
        self._order.append(event_id)
        while len(self._order) > self._memory:
            self._seen.discard(self._order.popleft())

    async def check(self) -> None:
        events = await self.source.fetch(self.cursor)
        for event in events:
            event_id = lookup(event, self.config.id_field)
            if event_id is None:
                logger.warning(
                    f"Event without '{self.config.id_field}' from trigger {self.trigger.id} ignored"
                )
                continue
            event_id = str(event_id)
            self.cursor = event_id
            if event_id in self._seen:
                continue
            self._remember(event_id)
            if self._filter is not None and not evaluate(self._filter, event):
                continue
            await self.emit(dict(event), dedup_key=f"event:{event_id}")


class ConditionPollMonitor(TriggerMonitor):
    """Fires when conditions over a data snapshot go from false to true."""

    def __init__(
        self,
        trigger: WorkflowTrigger,
        publisher: Publisher,
        source: DataSource,
        config: ConditionPollConfig,
        interval: float = 60.0,
        clock: Clock = utcnow,
    ) -> None:
        super().__init__(trigger, publisher, config.check_interval_seconds or interval)
        self.source = source
        self.config = config
        self._expression = config.expression()
        self._clock = clock
        self.holding = False
        self.last_fired = trigger.last_fired

    async def check(self) -> None:
        snapshot = await self.source.snapshot()
        holds = evaluate(self._expression, snapshot)
        rising = holds and not self.holding
        self.holding = holds
        if not rising:
            return
        now = self._clock()
        cooldown = timedelta(seconds=self.config.cooldown_seconds)
        if self.last_fired is not None and now - self.last_fired < cooldown:
            logger.info(f"Trigger {self.trigger.id} condition met during cooldown, not firing")
            return
        self.last_fired = now
        await self.emit({"snapshot": snapshot, "detected_at": now.isoformat()})

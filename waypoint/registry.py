"""Engine registry: the per-organization home of trigger monitors.

A registry owns the monitors of one organization's active triggers, the
consumer that turns firing requests into executions, and the execution
engine those executions run on. Registries are built explicitly; there is
no process-wide instance.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, TypeVar

import httpx

from .audit import AuditEmitter
from .conditions import lookup
from .config import TriggerSettings, WaypointConfig
from .engine import ExecutionEngine
from .errors import (
    ConcurrencyError,
    InfrastructureError,
    NotFoundError,
    ValidationError,
    WaypointError,
)
from .executors.builtin import set_path
from .models import (
    AuditEventType,
    FiringRequest,
    TriggerDataMapping,
    TriggerEvent,
    TriggerKind,
    WebhookResult,
    WorkflowTrigger,
    utcnow,
)
from .persistence import WorkflowRepository, get_repository
from .transports import BaseTransport, InMemoryTransport, get_transport
from .triggers import (
    ConditionPollMonitor,
    EventPollMonitor,
    Schedule,
    ScheduledMonitor,
    TriggerMonitor,
    WebhookGate,
    WebhookRejected,
    parse_trigger_config,
)
from .triggers.sources import DataSource, EventSource, build_data_source, build_event_source
from .utils.retry import retry_async

logger = logging.getLogger(__name__)

T = TypeVar("T")

EventSourceFactory = Callable[[WorkflowTrigger], EventSource]
DataSourceFactory = Callable[[WorkflowTrigger], DataSource]


def map_trigger_data(
    mapping: Optional[TriggerDataMapping], event_data: Mapping[str, Any]
) -> Dict[str, Any]:
    """Initial execution context for a firing.

    Without mappings the event data is used as-is. ``static_data`` is
    applied last.
    """
    if mapping is not None and mapping.mappings:
        context: Dict[str, Any] = {}
        for field in mapping.mappings:
            value = lookup(event_data, field.trigger_field, field.default)
            set_path(context, field.workflow_field, copy.deepcopy(value))
    else:
        context = copy.deepcopy(dict(event_data))
    if mapping is not None:
        context.update(copy.deepcopy(mapping.static_data))
    return context


class EngineRegistry:
    """Trigger lifecycle, monitoring and firing for one organization."""

    def __init__(
        self,
        organization_id: str,
        repository: WorkflowRepository,
        engine: Optional[ExecutionEngine] = None,
        transport: Optional[BaseTransport] = None,
        settings: Optional[TriggerSettings] = None,
        audit: Optional[AuditEmitter] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        event_source_factory: Optional[EventSourceFactory] = None,
        data_source_factory: Optional[DataSourceFactory] = None,
    ) -> None:
        self.organization_id = organization_id
        self.repository = repository
        self.audit = audit or AuditEmitter(repository)
        self.engine = engine or ExecutionEngine(
            repository, audit=self.audit, organization_id=organization_id
        )
        self.transport = transport or InMemoryTransport()
        self.settings = settings or TriggerSettings()
        self.topic = f"{self.settings.topic_prefix}.{organization_id}"
        self._http_client = http_client
        self._event_source_factory = event_source_factory or (
            lambda trigger: build_event_source(trigger.config, self._http_client)
        )
        self._data_source_factory = data_source_factory or (
            lambda trigger: build_data_source(trigger.config, self._http_client)
        )
        self._monitors: Dict[str, TriggerMonitor] = {}
        self._consumer: Optional[asyncio.Task] = None

    @classmethod
    def from_config(
        cls, config: WaypointConfig, repository: Optional[WorkflowRepository] = None
    ) -> "EngineRegistry":
        repository = repository or get_repository(config=config)
        audit = AuditEmitter(repository)
        engine = ExecutionEngine(
            repository,
            audit=audit,
            config=config.engine,
            organization_id=config.organization_id,
        )
        return cls(
            config.organization_id,
            repository,
            engine=engine,
            transport=get_transport(config=config),
            settings=config.triggers,
            audit=audit,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    async def start(self) -> None:
        """Recover executions, start consuming firings and monitor active triggers."""
        await self.transport.connect()
        await self.engine.start_watcher()
        await self.engine.recover()
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.create_task(self.consume_firing_requests())
        for trigger in await self.repository.list_triggers(
            organization_id=self.organization_id, active=True
        ):
            await self.start_monitoring(trigger)
        logger.info(
            f"Registry for {self.organization_id} started with {len(self._monitors)} monitor(s)"
        )

    async def stop(self) -> None:
        for trigger_id in list(self._monitors):
            await self.stop_monitoring(trigger_id)
        if self._consumer is not None:
            self._consumer.cancel()
            await asyncio.gather(self._consumer, return_exceptions=True)
            self._consumer = None
        await self.engine.shutdown()
        await self.transport.disconnect()
        logger.info(f"Registry for {self.organization_id} stopped")

    # ------------------------------------------------------------------
    # Trigger management
    async def _validate(self, trigger: WorkflowTrigger) -> None:
        parse_trigger_config(trigger.kind, trigger.config)
        if await self.repository.get_published_workflow(trigger.workflow_id) is None:
            raise ValidationError(
                f"Trigger {trigger.id} targets unpublished workflow '{trigger.workflow_id}'"
            )

    async def _load_trigger(self, trigger_id: str) -> WorkflowTrigger:
        trigger = await self.repository.get_trigger(trigger_id)
        if trigger is None or trigger.organization_id != self.organization_id:
            raise NotFoundError(f"Trigger {trigger_id} not found")
        return trigger

    async def _update(
        self, trigger_id: str, mutate: Callable[[WorkflowTrigger], None], attempts: int = 5
    ) -> WorkflowTrigger:
        """Apply ``mutate`` under optimistic concurrency, re-reading on conflict."""
        for attempt in range(1, attempts + 1):
            current = await self._load_trigger(trigger_id)
            updated = current.model_copy(deep=True)
            mutate(updated)
            try:
                return await self.repository.save_trigger(updated, current.version)
            except ConcurrencyError:
                if attempt == attempts:
                    raise
                logger.info(f"Trigger {trigger_id} changed concurrently, re-reading")
        raise ConcurrencyError(f"Trigger {trigger_id} could not be saved")

    async def register_trigger(
        self, trigger: WorkflowTrigger, actor: Optional[str] = None
    ) -> WorkflowTrigger:
        """Validate and store a trigger; monitoring starts if it is active."""
        trigger = trigger.model_copy(update={"organization_id": self.organization_id})
        await self._validate(trigger)
        stored = await self.repository.create_trigger(trigger)
        await self.audit.record(
            AuditEventType.TRIGGER_REGISTERED,
            trigger_id=stored.id,
            actor=actor,
            kind=stored.kind.value,
            workflow_id=stored.workflow_id,
        )
        if stored.active:
            await self.start_monitoring(stored)
        return stored

    async def activate_trigger(self, trigger_id: str, actor: Optional[str] = None) -> WorkflowTrigger:
        await self._validate(await self._load_trigger(trigger_id))

        def mutate(trigger: WorkflowTrigger) -> None:
            trigger.active = True

        stored = await self._update(trigger_id, mutate)
        await self.start_monitoring(stored)
        await self.audit.record(AuditEventType.TRIGGER_ACTIVATED, trigger_id=trigger_id, actor=actor)
        return stored

    async def deactivate_trigger(
        self, trigger_id: str, actor: Optional[str] = None
    ) -> WorkflowTrigger:
        def mutate(trigger: WorkflowTrigger) -> None:
            trigger.active = False

        stored = await self._update(trigger_id, mutate)
        await self.stop_monitoring(trigger_id)
        await self.audit.record(
            AuditEventType.TRIGGER_DEACTIVATED, trigger_id=trigger_id, actor=actor
        )
        return stored

    async def update_trigger(
        self,
        trigger_id: str,
        name: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
        data_mapping: Optional[TriggerDataMapping] = None,
        workflow_id: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> WorkflowTrigger:
        """Change a trigger's definition; a running monitor restarts with it."""
        proposed = await self._load_trigger(trigger_id)
        if name is not None:
            proposed.name = name
        if config is not None:
            proposed.config = config
        if data_mapping is not None:
            proposed.data_mapping = data_mapping
        if workflow_id is not None:
            proposed.workflow_id = workflow_id
        await self._validate(proposed)

        def mutate(trigger: WorkflowTrigger) -> None:
            trigger.name = proposed.name
            trigger.config = proposed.config
            trigger.data_mapping = proposed.data_mapping
            trigger.workflow_id = proposed.workflow_id

        stored = await self._update(trigger_id, mutate)
        if trigger_id in self._monitors:
            await self.stop_monitoring(trigger_id)
            await self.start_monitoring(stored)
        await self.audit.record(
            AuditEventType.TRIGGER_UPDATED,
            trigger_id=trigger_id,
            actor=actor,
            changed=[
                key
                for key, value in (
                    ("name", name),
                    ("config", config),
                    ("data_mapping", data_mapping),
                    ("workflow_id", workflow_id),
                )
                if value is not None
            ],
        )
        return stored

    # ------------------------------------------------------------------
    # Monitoring
    def _create_monitor(self, trigger: WorkflowTrigger) -> Optional[TriggerMonitor]:
        parsed = parse_trigger_config(trigger.kind, trigger.config)
        if trigger.kind is TriggerKind.SCHEDULED:
            return ScheduledMonitor(
                trigger,
                self.publish,
                Schedule(parsed),
                tick_seconds=self.settings.schedule_tick_seconds,
                grace_seconds=self.settings.misfire_grace_seconds,
            )
        if trigger.kind is TriggerKind.EVENT_POLL:
            return EventPollMonitor(
                trigger,
                self.publish,
                self._event_source_factory(trigger),
                parsed,
                interval=self.settings.default_poll_interval_seconds,
            )
        if trigger.kind is TriggerKind.CONDITION_POLL:
            return ConditionPollMonitor(
                trigger,
                self.publish,
                self._data_source_factory(trigger),
                parsed,
                interval=self.settings.default_poll_interval_seconds,
            )
        # Webhook and manual triggers are passive.
        return None

    async def start_monitoring(self, trigger: WorkflowTrigger) -> bool:
        """Start the trigger's monitor. Returns False when nothing was started."""
        existing = self._monitors.get(trigger.id)
        if existing is not None and existing.running:
            return False
        monitor = self._create_monitor(trigger)
        if monitor is None:
            return False
        monitor.start()
        self._monitors[trigger.id] = monitor
        return True

    async def stop_monitoring(self, trigger_id: str) -> bool:
        """Stop the trigger's monitor after its current check. Idempotent."""
        monitor = self._monitors.pop(trigger_id, None)
        if monitor is None:
            return False
        await monitor.stop()
        return True

    def active_monitors(self) -> Dict[str, Dict[str, Any]]:
        return {tid: monitor.status() for tid, monitor in self._monitors.items()}

    # ------------------------------------------------------------------
    # Firing
    async def publish(self, request: FiringRequest) -> None:
        await self.transport.publish(self.topic, request)

    async def consume_firing_requests(self, lifespan: Optional[float] = None) -> None:
        """Process firing requests in publish order."""
        async for raw_message, request in self.transport.subscribe(self.topic, lifespan=lifespan):
            try:
                await self.fire(request.trigger_id, request.event_data, request.dedup_key)
            except InfrastructureError as exc:
                logger.error(f"Firing {request.message_id} failed, requeueing: {exc}")
                await self.transport.nack(raw_message)
                continue
            except WaypointError as exc:
                logger.warning(f"Firing {request.message_id} dropped: {exc}")
            await self.transport.ack(raw_message)

    async def _store(self, operation: Callable[[], Awaitable[T]], description: str) -> T:
        config = self.engine.config
        return await retry_async(
            operation,
            attempts=config.persist_retries,
            retry_on=(InfrastructureError,),
            give_up_on=(ConcurrencyError,),
            base=config.persist_retry_delay,
            description=description,
        )

    async def _release_claim(self, trigger_id: str, dedup_key: str) -> None:
        try:
            await self._store(
                lambda: self.repository.release_trigger_event_key(trigger_id, dedup_key),
                f"release firing key {dedup_key}",
            )
        except InfrastructureError as exc:
            logger.error(
                f"Firing key {dedup_key} of trigger {trigger_id} stays claimed "
                f"after a failed firing and must be released by hand: {exc}"
            )

    async def fire(
        self,
        trigger_id: str,
        event_data: Optional[Dict[str, Any]] = None,
        dedup_key: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> Optional[TriggerEvent]:
        """Run the firing protocol. Returns None for inactive triggers and duplicates.

        Store calls are retried with backoff. If the store still fails before
        an execution exists, the dedup key is released and
        ``InfrastructureError`` propagates, so a redelivery fires again.
        """
        trigger = await self._store(
            lambda: self._load_trigger(trigger_id), f"load trigger {trigger_id}"
        )
        if not trigger.active and trigger.kind is not TriggerKind.MANUAL:
            logger.info(f"Trigger {trigger_id} is inactive, firing ignored")
            return None
        if dedup_key is not None and not await self._store(
            lambda: self.repository.claim_trigger_event_key(trigger_id, dedup_key),
            f"claim firing key {dedup_key}",
        ):
            logger.info(f"Duplicate firing {dedup_key} for trigger {trigger_id} dropped")
            return None

        event = TriggerEvent(trigger_id=trigger_id, event_data=event_data or {}, dedup_key=dedup_key)
        try:
            await self._store(
                lambda: self.repository.save_trigger_event(event), f"save trigger event {event.id}"
            )
            context = map_trigger_data(trigger.data_mapping, event.event_data)
            context["trigger"] = {
                "id": trigger.id,
                "kind": trigger.kind.value,
                "event_id": event.id,
                "fired_at": event.timestamp.isoformat(),
            }
            try:
                event.resulting_execution_id = await self.engine.start(
                    trigger.workflow_id, context, trigger_id=trigger.id, actor=actor
                )
            except InfrastructureError:
                raise
            except WaypointError as exc:
                event.error = str(exc)
                logger.error(f"Trigger {trigger_id} failed to start {trigger.workflow_id}: {exc}")
        except InfrastructureError:
            if dedup_key is not None:
                await self._release_claim(trigger_id, dedup_key)
            raise

        await self._store(
            lambda: self.repository.save_trigger_event(event), f"save trigger event {event.id}"
        )
        success = event.error is None

        def count(stored: WorkflowTrigger) -> None:
            if success:
                stored.firing_count += 1
                stored.last_fired = event.timestamp
            else:
                stored.error_count += 1

        await self._store(lambda: self._update(trigger_id, count), f"count firing of {trigger_id}")
        await self.audit.record(
            AuditEventType.TRIGGER_FIRED if success else AuditEventType.TRIGGER_FAILED,
            execution_id=event.resulting_execution_id,
            trigger_id=trigger_id,
            actor=actor,
            event_id=event.id,
            error=event.error,
        )
        if success:
            logger.info(
                f"Trigger {trigger_id} fired execution {event.resulting_execution_id}"
            )
        return event

    async def handle_webhook(
        self,
        trigger_id: str,
        method: str,
        headers: Mapping[str, str],
        body: bytes,
        client_ip: Optional[str] = None,
    ) -> WebhookResult:
        trigger = await self.repository.get_trigger(trigger_id)
        if (
            trigger is None
            or trigger.organization_id != self.organization_id
            or trigger.kind is not TriggerKind.WEBHOOK
        ):
            return WebhookResult(success=False, message="Trigger not found", status_code=404)
        if not trigger.active:
            return WebhookResult(success=False, message="Trigger is not active", status_code=404)

        gate = WebhookGate(parse_trigger_config(trigger.kind, trigger.config))
        try:
            payload = gate.verify(method, headers, body, client_ip)
        except WebhookRejected as exc:
            logger.info(f"Webhook for trigger {trigger_id} rejected: {exc.message}")
            return WebhookResult(success=False, message=exc.message, status_code=exc.status_code)

        lowered = {k.lower(): v for k, v in headers.items()}
        credential = gate.credential_header()
        if credential is not None:
            lowered.pop(credential, None)
        delivery = lowered.get("idempotency-key")
        event = await self.fire(
            trigger_id,
            {
                "method": method.upper(),
                "headers": lowered,
                "body": payload,
                "timestamp": utcnow().isoformat(),
            },
            dedup_key=f"webhook:{delivery}" if delivery else None,
        )
        if event is None:
            return WebhookResult(success=True, message="Duplicate delivery ignored")
        if event.error is not None:
            return WebhookResult(
                success=False,
                message=f"Failed to start workflow: {event.error}",
                status_code=500,
            )
        return WebhookResult(
            success=True,
            message="Webhook processed successfully",
            execution_id=event.resulting_execution_id,
        )

    async def start_execution(
        self,
        workflow_id: str,
        initial_context: Optional[Dict[str, Any]] = None,
        actor: Optional[str] = None,
    ) -> str:
        """Manual start, outside any trigger."""
        return await self.engine.start(workflow_id, initial_context, actor=actor)

"""Audit event emission.

Every transition is appended to the repository first, then forwarded to the
registered sinks. A sink failure is logged and does not undo the append.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Optional, Protocol

from .models import AuditEvent, AuditEventType
from .persistence import WorkflowRepository

logger = logging.getLogger(__name__)


class AuditSink(Protocol):
    """External consumer of the audit stream."""

    async def record(self, event: AuditEvent) -> None:
        """Persist or forward an audit entry."""


class LoggingAuditSink:
    """Writes audit events to the ``waypoint.audit`` logger."""

    def __init__(self, logger_name: str = "waypoint.audit") -> None:
        self._logger = logging.getLogger(logger_name)

    async def record(self, event: AuditEvent) -> None:
        self._logger.info(
            f"{event.type.value} execution={event.execution_id} step={event.step_id}",
            extra={"audit": event.model_dump(mode="json")},
        )


class MemoryAuditSink:
    """Keeps forwarded events in a list."""

    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    async def record(self, event: AuditEvent) -> None:
        self.events.append(event)


class AuditEmitter:
    def __init__(
        self, repository: WorkflowRepository, sinks: Optional[Iterable[AuditSink]] = None
    ) -> None:
        self._repository = repository
        self._sinks: list[AuditSink] = list(sinks or [])

    def add_sink(self, sink: AuditSink) -> None:
        self._sinks.append(sink)

    async def emit(self, event: AuditEvent) -> AuditEvent:
        await self._repository.append_audit_event(event)
        for sink in self._sinks:
            try:
                await sink.record(event)
            except Exception:
                logger.exception(f"Audit sink {sink!r} failed for event {event.id}")
        return event

    async def record(
        self,
        event_type: AuditEventType,
        execution_id: Optional[str] = None,
        trigger_id: Optional[str] = None,
        step_id: Optional[str] = None,
        actor: Optional[str] = None,
        **details: Any,
    ) -> AuditEvent:
        return await self.emit(
            AuditEvent(
                type=event_type,
                execution_id=execution_id,
                trigger_id=trigger_id,
                step_id=step_id,
                actor=actor,
                details=details,
            )
        )

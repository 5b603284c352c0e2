"""Trigger monitors and kind-specific trigger configuration."""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ..errors import ValidationError
from ..models import TriggerKind
from .monitors import (
    ConditionPollConfig,
    ConditionPollMonitor,
    EventPollConfig,
    EventPollMonitor,
    ScheduledMonitor,
    TriggerMonitor,
)
from .schedule import Schedule, ScheduleConfig
from .sources import (
    DataSource,
    EventSource,
    HttpDataSource,
    HttpEventSource,
    StaticDataSource,
    StaticEventSource,
)
from .webhook import WebhookConfig, WebhookGate, WebhookRejected, sign_payload

CONFIG_MODELS = {
    TriggerKind.SCHEDULED: ScheduleConfig,
    TriggerKind.WEBHOOK: WebhookConfig,
    TriggerKind.EVENT_POLL: EventPollConfig,
    TriggerKind.CONDITION_POLL: ConditionPollConfig,
}


def parse_trigger_config(kind: TriggerKind, config: Dict[str, Any]) -> Optional[BaseModel]:
    """Validate a trigger's kind-specific config.

    Manual triggers carry no config model. Raises ``ValidationError`` with
    the pydantic message on bad input.
    """
    model = CONFIG_MODELS.get(TriggerKind(kind))
    if model is None:
        return None
    try:
        parsed = model.model_validate(config or {})
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid {TriggerKind(kind).value} trigger config: {exc}") from exc
    if isinstance(parsed, ConditionPollConfig) and not parsed.conditions:
        raise ValidationError("condition_poll triggers need at least one condition")
    if isinstance(parsed, (EventPollConfig, ConditionPollConfig)):
        try:
            if isinstance(parsed, EventPollConfig):
                parsed.filter_expression()
            else:
                parsed.expression()
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid trigger conditions: {exc}") from exc
    return parsed


__all__ = [
    "CONFIG_MODELS",
    "ConditionPollConfig",
    "ConditionPollMonitor",
    "DataSource",
    "EventPollConfig",
    "EventPollMonitor",
    "EventSource",
    "HttpDataSource",
    "HttpEventSource",
    "Schedule",
    "ScheduleConfig",
    "ScheduledMonitor",
    "StaticDataSource",
    "StaticEventSource",
    "TriggerMonitor",
    "WebhookConfig",
    "WebhookGate",
    "WebhookRejected",
    "parse_trigger_config",
    "sign_payload",
]

"""Built-in executors for the work step kinds."""

from __future__ import annotations

import logging
import re
import uuid
from typing import Any, Mapping, Optional

import httpx

from ..conditions import evaluate, lookup
from ..errors import ErrorKind
from ..graph import StepKind
from .base import (
    Completed,
    ExecutorRegistry,
    Failed,
    StepContext,
    StepExecutor,
    StepResult,
    Suspended,
)

logger = logging.getLogger(__name__)

_TEMPLATE = re.compile(r"\{\{\s*([\w.\-]+)\s*\}\}")


def render(value: Any, data: Mapping[str, Any]) -> Any:
    """Substitute ``{{path}}`` placeholders from ``data``.

    A string that is exactly one placeholder yields the raw value, so numbers
    and objects keep their type. Unknown paths render as empty strings.
    """
    if isinstance(value, str):
        whole = _TEMPLATE.fullmatch(value.strip())
        if whole:
            return lookup(data, whole.group(1))
        return _TEMPLATE.sub(lambda m: str(lookup(data, m.group(1), "")), value)
    if isinstance(value, dict):
        return {k: render(v, data) for k, v in value.items()}
    if isinstance(value, list):
        return [render(v, data) for v in value]
    return value


def set_path(target: dict, path: str, value: Any) -> None:
    keys = path.split(".")
    for key in keys[:-1]:
        target = target.setdefault(key, {})
    target[keys[-1]] = value


def _operand(value: Any, data: Mapping[str, Any]) -> Any:
    if isinstance(value, str) and value.startswith("$"):
        return lookup(data, value[1:])
    return render(value, data)


def calculate(operation: str, operands: list, data: Mapping[str, Any]) -> Any:
    values = [_operand(v, data) for v in operands]
    if operation == "concat":
        return "".join("" if v is None else str(v) for v in values)
    if not values:
        return None
    numbers = [float(v) for v in values]
    if operation == "add":
        result = sum(numbers)
    elif operation == "subtract":
        result = numbers[0] - sum(numbers[1:])
    elif operation == "multiply":
        result = 1.0
        for n in numbers:
            result *= n
    elif operation == "divide":
        result = numbers[0]
        for n in numbers[1:]:
            result /= n
    else:
        return values[0]
    return int(result) if result.is_integer() else result


class CaptureExecutor(StepExecutor):
    """Collects data, either from config or from a human via suspension.

    Config:
        await_input: suspend until input is supplied (default True)
        values: mapping of output keys to literals or ``{{path}}`` templates
        required: input fields that must be present on resume
    """

    async def execute(self, config: Mapping[str, Any], context: StepContext) -> StepResult:
        values = render(config.get("values", {}), context.data)
        if not config.get("await_input", True):
            return Completed(output=values)
        return Suspended(
            resume_token=str(uuid.uuid4()),
            details={"form": config.get("form"), "prefill": values},
        )

    async def resume(self, resume_token, input, config, context) -> StepResult:
        missing = [name for name in config.get("required", []) if name not in input]
        if missing:
            return Failed(
                error=f"Missing required fields: {', '.join(missing)}",
                kind=ErrorKind.VALIDATION,
                retryable=False,
            )
        output = dict(render(config.get("values", {}), context.data))
        output.update(input)
        return Completed(output=output)


_YES = {"true", "yes", "y", "1", "approve", "approved"}


def _approval(input: Mapping[str, Any]) -> bool:
    """Read an approval from resume input; unrecognised strings count as a rejection."""
    value = input.get("approved", input.get("decision"))
    if isinstance(value, str):
        return value.strip().lower() in _YES
    return bool(value)


class DecisionExecutor(StepExecutor):
    """Human review or approval task.

    Suspends until a decision arrives. ``auto_approve`` (a condition) lets
    the step complete without waiting when it holds for the current data.
    A rejection fails the step when ``fail_on_reject`` is set.
    """

    def __init__(self, output_key: str) -> None:
        self.output_key = output_key

    async def execute(self, config: Mapping[str, Any], context: StepContext) -> StepResult:
        auto = config.get("auto_approve")
        if auto is not None and evaluate(auto, context.data):
            return Completed(
                output={config.get("output_key", self.output_key): {"approved": True, "auto": True}}
            )
        return Suspended(
            resume_token=str(uuid.uuid4()),
            details={"assignee": config.get("assignee"), "instructions": config.get("instructions")},
        )

    async def resume(self, resume_token, input, config, context) -> StepResult:
        approved = _approval(input)
        decision = {
            "approved": approved,
            "by": input.get("by"),
            "comment": input.get("comment"),
        }
        if not approved and config.get("fail_on_reject", False):
            return Failed(error=f"Rejected by {decision['by'] or 'reviewer'}", retryable=False)
        return Completed(output={config.get("output_key", self.output_key): decision})


class UpdateExecutor(StepExecutor):
    """Writes values into the execution context.

    Config keys, applied in order: ``set`` (templated literals),
    ``mappings`` (``source`` path to ``target`` path) and ``calculations``
    (``operation`` over ``operands`` into ``target``; ``$path`` operands read
    the context).
    """

    async def execute(self, config: Mapping[str, Any], context: StepContext) -> StepResult:
        output: dict[str, Any] = {}
        try:
            for path, value in (config.get("set") or {}).items():
                set_path(output, path, render(value, context.data))
            for mapping in config.get("mappings") or []:
                set_path(output, mapping["target"], lookup(context.data, mapping["source"]))
            for calc in config.get("calculations") or []:
                data = {**context.data, **output}
                set_path(
                    output,
                    calc["target"],
                    calculate(calc["operation"], calc.get("operands", []), data),
                )
        except (KeyError, TypeError, ValueError, ZeroDivisionError) as exc:
            return Failed(error=f"Update failed: {exc}", retryable=False)
        return Completed(output=output)


class NotifyExecutor(StepExecutor):
    """Sends a templated message to a channel.

    Channels: ``log`` writes to the logger; ``webhook`` posts the rendered
    payload as JSON; ``slack`` posts ``{"text": message}`` to an incoming
    webhook URL.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: float = 10.0) -> None:
        self._client = client
        self._timeout = timeout

    async def _post(self, url: str, payload: Any, headers: Mapping[str, str]) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(url, json=payload, headers=dict(headers))
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await client.post(url, json=payload, headers=dict(headers))

    async def execute(self, config: Mapping[str, Any], context: StepContext) -> StepResult:
        channel = config.get("channel", "log")
        message = render(config.get("message", ""), context.data)

        if channel == "log":
            logger.info(f"Notification for execution {context.execution_id}: {message}")
            return Completed(output={"notified": {"channel": channel, "message": message}})

        url = config.get("url")
        if not url:
            return Failed(error=f"Channel '{channel}' requires a url", kind=ErrorKind.CONFIGURATION)
        if channel == "slack":
            payload: Any = {"text": message}
        elif channel == "webhook":
            payload = render(config.get("payload", {"message": message}), context.data)
        else:
            return Failed(error=f"Unknown channel '{channel}'", kind=ErrorKind.CONFIGURATION)

        try:
            response = await self._post(url, payload, config.get("headers", {}))
            response.raise_for_status()
        except httpx.HTTPError as exc:
            return Failed(error=f"Notification to {url} failed: {exc}")
        return Completed(
            output={"notified": {"channel": channel, "status_code": response.status_code}}
        )


def default_registry(http_client: Optional[httpx.AsyncClient] = None) -> ExecutorRegistry:
    """Registry with an executor for every work step kind."""
    return ExecutorRegistry(
        {
            StepKind.CAPTURE: CaptureExecutor(),
            StepKind.REVIEW: DecisionExecutor("review"),
            StepKind.APPROVE: DecisionExecutor("approval"),
            StepKind.UPDATE: UpdateExecutor(),
            StepKind.NOTIFY: NotifyExecutor(http_client),
        }
    )

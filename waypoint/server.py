"""HTTP surface: webhook endpoint plus execution and trigger control."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .errors import (
    ConcurrencyError,
    IllegalTransitionError,
    InfrastructureError,
    NotFoundError,
    ValidationError,
)
from .models import TriggerKind, WorkflowTrigger
from .registry import EngineRegistry

logger = logging.getLogger(__name__)


class _Body(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StartRequest(_Body):
    workflow_id: str
    context: Dict[str, Any] = Field(default_factory=dict)
    actor: Optional[str] = None


class ActorRequest(_Body):
    actor: Optional[str] = None


class ResumeStepRequest(_Body):
    resume_token: str
    input: Dict[str, Any] = Field(default_factory=dict)
    actor: Optional[str] = None


def _dump(model: BaseModel) -> Any:
    return model.model_dump(mode="json", by_alias=True)


def create_app(registry: EngineRegistry, manage_registry: bool = True) -> FastAPI:
    """Build the application around ``registry``.

    With ``manage_registry`` the registry is started and stopped with the
    application lifespan.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_registry:
            await registry.start()
        try:
            yield
        finally:
            if manage_registry:
                await registry.stop()

    app = FastAPI(
        title="Waypoint",
        description="Workflow trigger and execution engine",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.registry = registry
    register_error_handlers(app)
    register_routes(app, registry)
    return app


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(NotFoundError)
    async def not_found(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(IllegalTransitionError)
    async def illegal(request: Request, exc: IllegalTransitionError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(ValidationError)
    async def invalid(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(InfrastructureError)
    async def unavailable(request: Request, exc: InfrastructureError) -> JSONResponse:
        status = 409 if isinstance(exc, ConcurrencyError) else 503
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=status, content={"detail": str(exc)})


def register_routes(app: FastAPI, registry: EngineRegistry) -> None:
    engine = registry.engine

    @app.get("/health")
    async def health():
        return {"status": "ok", "organizationId": registry.organization_id}

    # ============== Webhooks ==============

    @app.post("/trigger/{trigger_id}")
    async def receive_webhook(trigger_id: str, request: Request):
        body = await request.body()
        result = await registry.handle_webhook(
            trigger_id,
            request.method,
            dict(request.headers),
            body,
            client_ip=request.client.host if request.client else None,
        )
        content = result.model_dump(
            by_alias=True, exclude_none=True, include={"success", "message", "execution_id"}
        )
        return JSONResponse(status_code=result.status_code, content=content)

    @app.get("/trigger/{trigger_id}")
    async def describe_webhook(trigger_id: str):
        trigger = await registry.repository.get_trigger(trigger_id)
        if trigger is None or trigger.kind is not TriggerKind.WEBHOOK:
            raise NotFoundError(f"Webhook trigger {trigger_id} not found")
        return {
            "triggerId": trigger.id,
            "active": trigger.active,
            "method": trigger.config.get("method", "POST"),
            "message": "Webhook endpoint is ready" if trigger.active else "Trigger is inactive",
        }

    # ============== Triggers ==============

    @app.get("/triggers")
    async def list_triggers(active: Optional[bool] = None):
        triggers = await registry.repository.list_triggers(
            organization_id=registry.organization_id, active=active
        )
        return [_dump(t) for t in triggers]

    @app.post("/triggers", status_code=201)
    async def register_trigger(trigger: WorkflowTrigger):
        return _dump(await registry.register_trigger(trigger))

    @app.post("/triggers/{trigger_id}/activate")
    async def activate_trigger(trigger_id: str, body: Optional[ActorRequest] = None):
        stored = await registry.activate_trigger(trigger_id, actor=body.actor if body else None)
        return _dump(stored)

    @app.post("/triggers/{trigger_id}/deactivate")
    async def deactivate_trigger(trigger_id: str, body: Optional[ActorRequest] = None):
        stored = await registry.deactivate_trigger(trigger_id, actor=body.actor if body else None)
        return _dump(stored)

    @app.get("/monitors")
    async def monitors():
        return registry.active_monitors()

    # ============== Executions ==============

    @app.post("/executions", status_code=201)
    async def start_execution(body: StartRequest):
        execution_id = await registry.start_execution(body.workflow_id, body.context, body.actor)
        return {"executionId": execution_id}

    @app.get("/executions/{execution_id}")
    async def get_execution(execution_id: str):
        return _dump(await engine.get_status(execution_id))

    @app.get("/executions/{execution_id}/steps")
    async def get_steps(execution_id: str):
        await engine.get_status(execution_id)
        return [_dump(s) for s in await engine.list_step_executions(execution_id)]

    @app.get("/executions/{execution_id}/audit")
    async def get_audit(execution_id: str):
        return [_dump(e) for e in await engine.get_audit_trail(execution_id)]

    @app.get("/executions/{execution_id}/metrics")
    async def get_metrics(execution_id: str):
        return _dump(await engine.get_metrics(execution_id))

    @app.post("/executions/{execution_id}/pause")
    async def pause(execution_id: str, body: Optional[ActorRequest] = None):
        return _dump(await engine.pause(execution_id, actor=body.actor if body else None))

    @app.post("/executions/{execution_id}/resume")
    async def resume(execution_id: str, body: Optional[ActorRequest] = None):
        return _dump(await engine.resume(execution_id, actor=body.actor if body else None))

    @app.post("/executions/{execution_id}/cancel")
    async def cancel(execution_id: str, body: Optional[ActorRequest] = None):
        return _dump(await engine.cancel(execution_id, actor=body.actor if body else None))

    @app.post("/executions/{execution_id}/retry")
    async def retry(execution_id: str, body: Optional[ActorRequest] = None):
        return _dump(
            await engine.retry_failed_step(execution_id, actor=body.actor if body else None)
        )

    @app.post("/executions/{execution_id}/steps/resume")
    async def resume_step(execution_id: str, body: ResumeStepRequest):
        execution = await engine.resume_step(
            execution_id, body.resume_token, body.input, actor=body.actor
        )
        return _dump(execution)

"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

from typing import Any, Optional

import asyncpg

from ..errors import ConcurrencyError, InfrastructureError, NotFoundError
from ..graph import WorkflowDefinition
from ..models import (
    AuditEvent,
    ExecutionStatus,
    StepExecution,
    TriggerEvent,
    WorkflowExecution,
    WorkflowTrigger,
    utcnow,
)
from .repository import WorkflowRepository

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS workflows (
        workflow_id TEXT NOT NULL,
        version INTEGER NOT NULL,
        doc JSONB NOT NULL,
        PRIMARY KEY (workflow_id, version)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS executions (
        seq BIGSERIAL,
        id TEXT PRIMARY KEY,
        organization_id TEXT,
        workflow_id TEXT NOT NULL,
        status TEXT NOT NULL,
        version INTEGER NOT NULL,
        doc JSONB NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS step_executions (
        seq BIGSERIAL PRIMARY KEY,
        id TEXT NOT NULL UNIQUE,
        execution_id TEXT NOT NULL,
        doc JSONB NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS dispatch_keys (
        dispatch_key TEXT PRIMARY KEY,
        claimed_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS triggers (
        seq BIGSERIAL,
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        active BOOLEAN NOT NULL,
        version INTEGER NOT NULL,
        doc JSONB NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS trigger_events (
        seq BIGSERIAL PRIMARY KEY,
        id TEXT NOT NULL UNIQUE,
        trigger_id TEXT NOT NULL,
        doc JSONB NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS trigger_event_keys (
        trigger_id TEXT NOT NULL,
        dedup_key TEXT NOT NULL,
        PRIMARY KEY (trigger_id, dedup_key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_events (
        seq BIGSERIAL PRIMARY KEY,
        id TEXT NOT NULL,
        execution_id TEXT,
        trigger_id TEXT,
        doc JSONB NOT NULL
    )
    """,
]


def _affected(status: str) -> int:
    """Row count from an asyncpg command tag such as ``UPDATE 1``."""
    try:
        return int(status.split()[-1])
    except (ValueError, IndexError):
        return 0


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist orchestration state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        try:
            conn = await asyncpg.connect(self._dsn)
        except (OSError, asyncpg.PostgresError) as exc:
            raise InfrastructureError(f"PostgreSQL unavailable: {exc}") from exc
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        for statement in _SCHEMA:
            await conn.execute(statement)

    async def _execute(self, query: str, *params: Any) -> str:
        conn = await self._connect()
        try:
            return await conn.execute(query, *params)
        except asyncpg.PostgresConnectionError as exc:
            raise InfrastructureError(f"PostgreSQL error: {exc}") from exc
        finally:
            await conn.close()

    async def _fetchone(self, query: str, *params: Any) -> asyncpg.Record | None:
        conn = await self._connect()
        try:
            return await conn.fetchrow(query, *params)
        except asyncpg.PostgresConnectionError as exc:
            raise InfrastructureError(f"PostgreSQL error: {exc}") from exc
        finally:
            await conn.close()

    async def _fetchall(self, query: str, *params: Any) -> list[asyncpg.Record]:
        conn = await self._connect()
        try:
            return await conn.fetch(query, *params)
        except asyncpg.PostgresConnectionError as exc:
            raise InfrastructureError(f"PostgreSQL error: {exc}") from exc
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def publish_workflow(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        conn = await self._connect()
        try:
            async with conn.transaction():
                latest = await conn.fetchval(
                    "SELECT COALESCE(MAX(version), 0) FROM workflows WHERE workflow_id = $1",
                    definition.id,
                )
                published = definition.model_copy(
                    update={"version": latest + 1, "published_at": utcnow()}
                )
                await conn.execute(
                    "INSERT INTO workflows (workflow_id, version, doc) VALUES ($1, $2, $3::jsonb)",
                    published.id,
                    published.version,
                    published.model_dump_json(),
                )
        except asyncpg.UniqueViolationError as exc:
            raise ConcurrencyError(
                f"Workflow {definition.id} was published concurrently"
            ) from exc
        finally:
            await conn.close()
        return published

    async def get_workflow(
        self, workflow_id: str, version: Optional[int] = None
    ) -> WorkflowDefinition | None:
        if version is None:
            row = await self._fetchone(
                "SELECT doc::text AS doc FROM workflows WHERE workflow_id = $1 ORDER BY version DESC LIMIT 1",
                workflow_id,
            )
        else:
            row = await self._fetchone(
                "SELECT doc::text AS doc FROM workflows WHERE workflow_id = $1 AND version = $2",
                workflow_id,
                version,
            )
        if not row:
            return None
        return WorkflowDefinition.model_validate_json(row["doc"])

    async def get_published_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        return await self.get_workflow(workflow_id)

    async def list_workflows(self) -> list[WorkflowDefinition]:
        rows = await self._fetchall(
            """
            SELECT DISTINCT ON (workflow_id) doc::text AS doc
            FROM workflows ORDER BY workflow_id, version DESC
            """
        )
        return [WorkflowDefinition.model_validate_json(r["doc"]) for r in rows]

    # ------------------------------------------------------------------
    async def create_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        stored = execution.model_copy(update={"version": 1})
        try:
            await self._execute(
                "INSERT INTO executions (id, organization_id, workflow_id, status, version, doc) VALUES ($1, $2, $3, $4, $5, $6::jsonb)",
                stored.id,
                stored.organization_id,
                stored.workflow_id,
                stored.status.value,
                stored.version,
                stored.model_dump_json(),
            )
        except asyncpg.UniqueViolationError as exc:
            raise ConcurrencyError(f"Execution {execution.id} already exists") from exc
        return stored

    async def save_execution(
        self, execution: WorkflowExecution, expected_version: int
    ) -> WorkflowExecution:
        stored = execution.model_copy(update={"version": expected_version + 1})
        status = await self._execute(
            "UPDATE executions SET status = $1, version = $2, doc = $3::jsonb WHERE id = $4 AND version = $5",
            stored.status.value,
            stored.version,
            stored.model_dump_json(),
            stored.id,
            expected_version,
        )
        if _affected(status) == 0:
            if await self.get_execution(execution.id) is None:
                raise NotFoundError(f"Execution {execution.id} not found")
            raise ConcurrencyError(
                f"Execution {execution.id} changed since version {expected_version}"
            )
        return stored

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        row = await self._fetchone(
            "SELECT doc::text AS doc FROM executions WHERE id = $1", execution_id
        )
        if not row:
            return None
        return WorkflowExecution.model_validate_json(row["doc"])

    async def list_executions(
        self,
        status: Optional[list[ExecutionStatus]] = None,
        organization_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
    ) -> list[WorkflowExecution]:
        clauses = []
        params: list[Any] = []
        if status is not None:
            params.append([s.value for s in status])
            clauses.append(f"status = ANY(${len(params)}::text[])")
        if organization_id is not None:
            params.append(organization_id)
            clauses.append(f"organization_id = ${len(params)}")
        if workflow_id is not None:
            params.append(workflow_id)
            clauses.append(f"workflow_id = ${len(params)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self._fetchall(
            f"SELECT doc::text AS doc FROM executions {where} ORDER BY seq", *params
        )
        return [WorkflowExecution.model_validate_json(r["doc"]) for r in rows]

    # ------------------------------------------------------------------
    async def save_step_execution(self, step: StepExecution) -> None:
        await self._execute(
            """
            INSERT INTO step_executions (id, execution_id, doc) VALUES ($1, $2, $3::jsonb)
            ON CONFLICT (id) DO UPDATE SET doc = EXCLUDED.doc
            """,
            step.id,
            step.execution_id,
            step.model_dump_json(),
        )

    async def list_step_executions(self, execution_id: str) -> list[StepExecution]:
        rows = await self._fetchall(
            "SELECT doc::text AS doc FROM step_executions WHERE execution_id = $1 ORDER BY seq",
            execution_id,
        )
        return [StepExecution.model_validate_json(r["doc"]) for r in rows]

    async def claim_dispatch(self, dispatch_key: str) -> bool:
        status = await self._execute(
            "INSERT INTO dispatch_keys (dispatch_key, claimed_at) VALUES ($1, $2) ON CONFLICT DO NOTHING",
            dispatch_key,
            utcnow(),
        )
        return _affected(status) == 1

    # ------------------------------------------------------------------
    async def create_trigger(self, trigger: WorkflowTrigger) -> WorkflowTrigger:
        stored = trigger.model_copy(update={"version": 1})
        try:
            await self._execute(
                "INSERT INTO triggers (id, organization_id, active, version, doc) VALUES ($1, $2, $3, $4, $5::jsonb)",
                stored.id,
                stored.organization_id,
                stored.active,
                stored.version,
                stored.model_dump_json(),
            )
        except asyncpg.UniqueViolationError as exc:
            raise ConcurrencyError(f"Trigger {trigger.id} already exists") from exc
        return stored

    async def save_trigger(
        self, trigger: WorkflowTrigger, expected_version: int
    ) -> WorkflowTrigger:
        stored = trigger.model_copy(update={"version": expected_version + 1})
        status = await self._execute(
            "UPDATE triggers SET organization_id = $1, active = $2, version = $3, doc = $4::jsonb WHERE id = $5 AND version = $6",
            stored.organization_id,
            stored.active,
            stored.version,
            stored.model_dump_json(),
            stored.id,
            expected_version,
        )
        if _affected(status) == 0:
            if await self.get_trigger(trigger.id) is None:
                raise NotFoundError(f"Trigger {trigger.id} not found")
            raise ConcurrencyError(
                f"Trigger {trigger.id} changed since version {expected_version}"
            )
        return stored

    async def get_trigger(self, trigger_id: str) -> WorkflowTrigger | None:
        row = await self._fetchone(
            "SELECT doc::text AS doc FROM triggers WHERE id = $1", trigger_id
        )
        if not row:
            return None
        return WorkflowTrigger.model_validate_json(row["doc"])

    async def list_triggers(
        self, organization_id: Optional[str] = None, active: Optional[bool] = None
    ) -> list[WorkflowTrigger]:
        clauses = []
        params: list[Any] = []
        if organization_id is not None:
            params.append(organization_id)
            clauses.append(f"organization_id = ${len(params)}")
        if active is not None:
            params.append(active)
            clauses.append(f"active = ${len(params)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self._fetchall(
            f"SELECT doc::text AS doc FROM triggers {where} ORDER BY seq", *params
        )
        return [WorkflowTrigger.model_validate_json(r["doc"]) for r in rows]

    async def save_trigger_event(self, event: TriggerEvent) -> None:
        await self._execute(
            """
            INSERT INTO trigger_events (id, trigger_id, doc) VALUES ($1, $2, $3::jsonb)
            ON CONFLICT (id) DO UPDATE SET doc = EXCLUDED.doc
            """,
            event.id,
            event.trigger_id,
            event.model_dump_json(),
        )

    async def list_trigger_events(self, trigger_id: str) -> list[TriggerEvent]:
        rows = await self._fetchall(
            "SELECT doc::text AS doc FROM trigger_events WHERE trigger_id = $1 ORDER BY seq",
            trigger_id,
        )
        return [TriggerEvent.model_validate_json(r["doc"]) for r in rows]

    async def claim_trigger_event_key(self, trigger_id: str, dedup_key: str) -> bool:
        status = await self._execute(
            "INSERT INTO trigger_event_keys (trigger_id, dedup_key) VALUES ($1, $2) ON CONFLICT DO NOTHING",
            trigger_id,
            dedup_key,
        )
        return _affected(status) == 1

    async def release_trigger_event_key(self, trigger_id: str, dedup_key: str) -> None:
        await self._execute(
            "DELETE FROM trigger_event_keys WHERE trigger_id = $1 AND dedup_key = $2",
            trigger_id,
            dedup_key,
        )

    # ------------------------------------------------------------------
    async def append_audit_event(self, event: AuditEvent) -> None:
        await self._execute(
            "INSERT INTO audit_events (id, execution_id, trigger_id, doc) VALUES ($1, $2, $3, $4::jsonb)",
            event.id,
            event.execution_id,
            event.trigger_id,
            event.model_dump_json(),
        )

    async def list_audit_events(
        self, execution_id: Optional[str] = None, trigger_id: Optional[str] = None
    ) -> list[AuditEvent]:
        clauses = []
        params: list[Any] = []
        if execution_id is not None:
            params.append(execution_id)
            clauses.append(f"execution_id = ${len(params)}")
        if trigger_id is not None:
            params.append(trigger_id)
            clauses.append(f"trigger_id = ${len(params)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self._fetchall(
            f"SELECT doc::text AS doc FROM audit_events {where} ORDER BY seq", *params
        )
        return [AuditEvent.model_validate_json(r["doc"]) for r in rows]

"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from pathlib import Path
from typing import Any, Optional

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


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist orchestration state using SQLite.

    Records are stored as JSON documents next to the columns used for
    lookups and version checks.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.executescript(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                workflow_id TEXT NOT NULL,
                version INTEGER NOT NULL,
                doc TEXT NOT NULL,
                PRIMARY KEY (workflow_id, version)
            );
            CREATE TABLE IF NOT EXISTS executions (
                id TEXT PRIMARY KEY,
                organization_id TEXT,
                workflow_id TEXT NOT NULL,
                status TEXT NOT NULL,
                version INTEGER NOT NULL,
                doc TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS step_executions (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                execution_id TEXT NOT NULL,
                doc TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_step_executions_execution
                ON step_executions (execution_id);
            CREATE TABLE IF NOT EXISTS dispatch_keys (
                dispatch_key TEXT PRIMARY KEY,
                claimed_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS triggers (
                id TEXT PRIMARY KEY,
                organization_id TEXT NOT NULL,
                active INTEGER NOT NULL,
                version INTEGER NOT NULL,
                doc TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS trigger_events (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                trigger_id TEXT NOT NULL,
                doc TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS trigger_event_keys (
                trigger_id TEXT NOT NULL,
                dedup_key TEXT NOT NULL,
                PRIMARY KEY (trigger_id, dedup_key)
            );
            CREATE TABLE IF NOT EXISTS audit_events (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL,
                execution_id TEXT,
                trigger_id TEXT,
                doc TEXT NOT NULL
            );
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            try:
                cur = self._conn.cursor()
                cur.execute(query, params)
                self._conn.commit()
                return cur.rowcount
            except sqlite3.IntegrityError:
                self._conn.rollback()
                raise
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise InfrastructureError(f"SQLite error: {exc}") from exc

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            try:
                cur = self._conn.cursor()
                cur.execute(query, params)
                return cur.fetchone()
            except sqlite3.Error as exc:
                raise InfrastructureError(f"SQLite error: {exc}") from exc

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            try:
                cur = self._conn.cursor()
                cur.execute(query, params)
                return cur.fetchall()
            except sqlite3.Error as exc:
                raise InfrastructureError(f"SQLite error: {exc}") from exc

    async def _insert_unique(self, query: str, *params: Any) -> bool:
        try:
            await asyncio.to_thread(self._execute, query, *params)
        except sqlite3.IntegrityError:
            return False
        return True

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Workflow definitions
    async def publish_workflow(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT MAX(version) AS latest FROM workflows WHERE workflow_id = ?",
            definition.id,
        )
        latest = row["latest"] if row and row["latest"] is not None else 0
        published = definition.model_copy(
            update={"version": latest + 1, "published_at": utcnow()}
        )
        inserted = await self._insert_unique(
            "INSERT INTO workflows (workflow_id, version, doc) VALUES (?, ?, ?)",
            published.id,
            published.version,
            published.model_dump_json(),
        )
        if not inserted:
            raise ConcurrencyError(
                f"Workflow {definition.id} version {published.version} was published concurrently"
            )
        return published

    async def get_workflow(
        self, workflow_id: str, version: Optional[int] = None
    ) -> WorkflowDefinition | None:
        if version is None:
            row = await asyncio.to_thread(
                self._fetchone,
                "SELECT doc FROM workflows WHERE workflow_id = ? ORDER BY version DESC LIMIT 1",
                workflow_id,
            )
        else:
            row = await asyncio.to_thread(
                self._fetchone,
                "SELECT doc FROM workflows WHERE workflow_id = ? AND version = ?",
                workflow_id,
                version,
            )
        if not row:
            return None
        return WorkflowDefinition.model_validate_json(row["doc"])

    async def get_published_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        return await self.get_workflow(workflow_id)

    async def list_workflows(self) -> list[WorkflowDefinition]:
        rows = await asyncio.to_thread(
            self._fetchall,
            """
            SELECT w.doc FROM workflows w
            JOIN (SELECT workflow_id, MAX(version) AS latest FROM workflows GROUP BY workflow_id) m
              ON w.workflow_id = m.workflow_id AND w.version = m.latest
            ORDER BY w.workflow_id
            """,
        )
        return [WorkflowDefinition.model_validate_json(r["doc"]) for r in rows]

    # ------------------------------------------------------------------
    # Executions
    async def create_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        stored = execution.model_copy(update={"version": 1})
        inserted = await self._insert_unique(
            "INSERT INTO executions (id, organization_id, workflow_id, status, version, doc) VALUES (?, ?, ?, ?, ?, ?)",
            stored.id,
            stored.organization_id,
            stored.workflow_id,
            stored.status.value,
            stored.version,
            stored.model_dump_json(),
        )
        if not inserted:
            raise ConcurrencyError(f"Execution {execution.id} already exists")
        return stored

    async def save_execution(
        self, execution: WorkflowExecution, expected_version: int
    ) -> WorkflowExecution:
        stored = execution.model_copy(update={"version": expected_version + 1})
        updated = await asyncio.to_thread(
            self._execute,
            "UPDATE executions SET status = ?, version = ?, doc = ? WHERE id = ? AND version = ?",
            stored.status.value,
            stored.version,
            stored.model_dump_json(),
            stored.id,
            expected_version,
        )
        if updated == 0:
            if await self.get_execution(execution.id) is None:
                raise NotFoundError(f"Execution {execution.id} not found")
            raise ConcurrencyError(
                f"Execution {execution.id} changed since version {expected_version}"
            )
        return stored

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT doc FROM executions WHERE id = ?", execution_id
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
        query = "SELECT doc FROM executions WHERE 1 = 1"
        params: list[Any] = []
        if status is not None:
            if not status:
                return []
            query += f" AND status IN ({', '.join('?' for _ in status)})"
            params.extend(s.value for s in status)
        if organization_id is not None:
            query += " AND organization_id = ?"
            params.append(organization_id)
        if workflow_id is not None:
            query += " AND workflow_id = ?"
            params.append(workflow_id)
        query += " ORDER BY rowid"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [WorkflowExecution.model_validate_json(r["doc"]) for r in rows]

    # ------------------------------------------------------------------
    # Step history
    async def save_step_execution(self, step: StepExecution) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO step_executions (id, execution_id, doc) VALUES (?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET doc = excluded.doc
            """,
            step.id,
            step.execution_id,
            step.model_dump_json(),
        )

    async def list_step_executions(self, execution_id: str) -> list[StepExecution]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT doc FROM step_executions WHERE execution_id = ? ORDER BY seq",
            execution_id,
        )
        return [StepExecution.model_validate_json(r["doc"]) for r in rows]

    async def claim_dispatch(self, dispatch_key: str) -> bool:
        return await self._insert_unique(
            "INSERT INTO dispatch_keys (dispatch_key, claimed_at) VALUES (?, ?)",
            dispatch_key,
            utcnow().isoformat(),
        )

    # ------------------------------------------------------------------
    # Triggers
    async def create_trigger(self, trigger: WorkflowTrigger) -> WorkflowTrigger:
        stored = trigger.model_copy(update={"version": 1})
        inserted = await self._insert_unique(
            "INSERT INTO triggers (id, organization_id, active, version, doc) VALUES (?, ?, ?, ?, ?)",
            stored.id,
            stored.organization_id,
            int(stored.active),
            stored.version,
            stored.model_dump_json(),
        )
        if not inserted:
            raise ConcurrencyError(f"Trigger {trigger.id} already exists")
        return stored

    async def save_trigger(
        self, trigger: WorkflowTrigger, expected_version: int
    ) -> WorkflowTrigger:
        stored = trigger.model_copy(update={"version": expected_version + 1})
        updated = await asyncio.to_thread(
            self._execute,
            "UPDATE triggers SET organization_id = ?, active = ?, version = ?, doc = ? WHERE id = ? AND version = ?",
            stored.organization_id,
            int(stored.active),
            stored.version,
            stored.model_dump_json(),
            stored.id,
            expected_version,
        )
        if updated == 0:
            if await self.get_trigger(trigger.id) is None:
                raise NotFoundError(f"Trigger {trigger.id} not found")
            raise ConcurrencyError(
                f"Trigger {trigger.id} changed since version {expected_version}"
            )
        return stored

    async def get_trigger(self, trigger_id: str) -> WorkflowTrigger | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT doc FROM triggers WHERE id = ?", trigger_id
        )
        if not row:
            return None
        return WorkflowTrigger.model_validate_json(row["doc"])

    async def list_triggers(
        self, organization_id: Optional[str] = None, active: Optional[bool] = None
    ) -> list[WorkflowTrigger]:
        query = "SELECT doc FROM triggers WHERE 1 = 1"
        params: list[Any] = []
        if organization_id is not None:
            query += " AND organization_id = ?"
            params.append(organization_id)
        if active is not None:
            query += " AND active = ?"
            params.append(int(active))
        query += " ORDER BY rowid"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [WorkflowTrigger.model_validate_json(r["doc"]) for r in rows]

    async def save_trigger_event(self, event: TriggerEvent) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO trigger_events (id, trigger_id, doc) VALUES (?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET doc = excluded.doc
            """,
            event.id,
            event.trigger_id,
            event.model_dump_json(),
        )

    async def list_trigger_events(self, trigger_id: str) -> list[TriggerEvent]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT doc FROM trigger_events WHERE trigger_id = ? ORDER BY seq",
            trigger_id,
        )
        return [TriggerEvent.model_validate_json(r["doc"]) for r in rows]

    async def claim_trigger_event_key(self, trigger_id: str, dedup_key: str) -> bool:
        return await self._insert_unique(
            "INSERT INTO trigger_event_keys (trigger_id, dedup_key) VALUES (?, ?)",
            trigger_id,
            dedup_key,
        )

    async def release_trigger_event_key(self, trigger_id: str, dedup_key: str) -> None:
        await asyncio.to_thread(
            self._execute,
            "DELETE FROM trigger_event_keys WHERE trigger_id = ? AND dedup_key = ?",
            trigger_id,
            dedup_key,
        )

    # ------------------------------------------------------------------
    # Audit
    async def append_audit_event(self, event: AuditEvent) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO audit_events (id, execution_id, trigger_id, doc) VALUES (?, ?, ?, ?)",
            event.id,
            event.execution_id,
            event.trigger_id,
            event.model_dump_json(),
        )

    async def list_audit_events(
        self, execution_id: Optional[str] = None, trigger_id: Optional[str] = None
    ) -> list[AuditEvent]:
        query = "SELECT doc FROM audit_events WHERE 1 = 1"
        params: list[Any] = []
        if execution_id is not None:
            query += " AND execution_id = ?"
            params.append(execution_id)
        if trigger_id is not None:
            query += " AND trigger_id = ?"
            params.append(trigger_id)
        query += " ORDER BY seq"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [AuditEvent.model_validate_json(r["doc"]) for r in rows]

"""Execution engine: drives workflow executions through their step graph.

Every change to an execution is a *transition*: a synchronous mutation of a
private copy of the execution, persisted under optimistic versioning while
the execution's lock is held. Side effects (spawning step tasks, cancelling
them) are applied only after the transition has been committed. Executors run
outside the lock, so parallel branches of one execution make progress
concurrently while their state changes stay linearized.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .audit import AuditEmitter
from .conditions import evaluate
from .config import EngineConfig
from .errors import (
    RECOVERABLE_KINDS,
    ConcurrencyError,
    ConfigurationError,
    ErrorKind,
    ExecutorError,
    IllegalTransitionError,
    InfrastructureError,
    NotFoundError,
)
from .executors import (
    Completed,
    ExecutorRegistry,
    Failed,
    StepContext,
    StepResult,
    Suspended,
    default_registry,
)
from .graph import CONTROL_KINDS, EdgeKind, JoinType, Step, StepKind, WorkflowDefinition
from .metrics import compute_metrics
from .models import (
    Activation,
    AuditEvent,
    AuditEventType,
    BranchRef,
    BranchState,
    ExecutionMetrics,
    ExecutionStatus,
    JoinState,
    StepExecution,
    StepStatus,
    WorkflowExecution,
    check_transition,
    utcnow,
)
from .persistence import WorkflowRepository
from .utils.retry import compute_backoff, retry_async

logger = logging.getLogger(__name__)


def deep_merge(target: Dict[str, Any], source: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in source.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            deep_merge(target[key], value)
        else:
            target[key] = copy.deepcopy(value)
    return target


class _Transaction:
    """Working state of one transition."""

    def __init__(
        self,
        execution: WorkflowExecution,
        definition: WorkflowDefinition,
        committed_rows: Dict[str, StepExecution],
    ) -> None:
        self.execution = execution
        self.definition = definition
        self._committed_rows = committed_rows
        self.rows: Dict[str, StepExecution] = {}
        self.audit: List[AuditEvent] = []
        self.dispatch: List[str] = []
        self.cancel: List[str] = []
        self.resumes: List[tuple[str, str, str, Dict[str, Any], StepContext]] = []
        self.dirty = True
        self.now = utcnow()

    @property
    def graph(self):
        return self.definition.steps

    def noop(self) -> None:
        self.dirty = False

    def has_row(self, row_id: Optional[str]) -> bool:
        return row_id is not None and (row_id in self.rows or row_id in self._committed_rows)

    def row(self, row_id: str) -> StepExecution:
        if row_id not in self.rows:
            self.rows[row_id] = self._committed_rows[row_id].model_copy(deep=True)
        return self.rows[row_id]

    def all_rows(self) -> List[StepExecution]:
        merged = dict(self._committed_rows)
        merged.update(self.rows)
        return list(merged.values())

    def emit(
        self,
        event_type: AuditEventType,
        step_id: Optional[str] = None,
        actor: Optional[str] = None,
        **details: Any,
    ) -> None:
        self.audit.append(
            AuditEvent(
                type=event_type,
                execution_id=self.execution.id,
                trigger_id=self.execution.trigger_id,
                step_id=step_id,
                actor=actor,
                timestamp=self.now,
                details=details,
            )
        )


class _Run:
    """In-process bookkeeping for one execution."""

    def __init__(self, execution_id: str) -> None:
        self.execution_id = execution_id
        self.lock = asyncio.Lock()
        self.execution: Optional[WorkflowExecution] = None
        self.rows: Dict[str, StepExecution] = {}
        self.tasks: Dict[str, asyncio.Task] = {}
        self.signals: Dict[str, asyncio.Event] = {}


Mutation = Callable[[_Transaction], None]


class ExecutionEngine:
    """Scheduler and state machine for workflow executions."""

    def __init__(
        self,
        repository: WorkflowRepository,
        executors: Optional[ExecutorRegistry] = None,
        audit: Optional[AuditEmitter] = None,
        config: Optional[EngineConfig] = None,
        organization_id: Optional[str] = None,
    ) -> None:
        self._repository = repository
        self._executors = executors or default_registry()
        self._audit = audit or AuditEmitter(repository)
        self._config = config or EngineConfig()
        self.organization_id = organization_id
        self._runs: Dict[str, _Run] = {}
        self._definitions: Dict[tuple[str, int], WorkflowDefinition] = {}
        self._watcher: Optional[asyncio.Task] = None

    @property
    def repository(self) -> WorkflowRepository:
        return self._repository

    @property
    def config(self) -> EngineConfig:
        return self._config

    # ------------------------------------------------------------------
    # Lifecycle
    async def start_watcher(self) -> None:
        """Start the periodic SLA check."""
        if self._watcher is None or self._watcher.done():
            self._watcher = asyncio.create_task(self._watch_sla())

    async def shutdown(self) -> None:
        """Stop the SLA watcher and abandon in-flight step tasks.

        Steps interrupted here are picked up by :meth:`recover`.
        """
        if self._watcher is not None:
            self._watcher.cancel()
            await asyncio.gather(self._watcher, return_exceptions=True)
            self._watcher = None
        tasks = [t for run in self._runs.values() for t in run.tasks.values()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._runs.clear()

    async def _watch_sla(self) -> None:
        while True:
            try:
                await self.check_sla()
            except InfrastructureError as exc:
                logger.warning(f"SLA check failed: {exc}")
            await asyncio.sleep(self._config.sla_check_interval)

    # ------------------------------------------------------------------
    # Control API
    async def start(
        self,
        workflow_id: str,
        initial_context: Optional[Dict[str, Any]] = None,
        trigger_id: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> str:
        """Create an execution pinned to the published version and begin it."""
        definition = await self._persist_call(
            lambda: self._repository.get_published_workflow(workflow_id),
            f"load workflow {workflow_id}",
        )
        if definition is None:
            raise NotFoundError(f"No published workflow '{workflow_id}'")
        self._definitions[(definition.id, definition.version)] = definition

        execution = WorkflowExecution(
            organization_id=self.organization_id,
            workflow_id=definition.id,
            workflow_version=definition.version,
            context=copy.deepcopy(initial_context or {}),
            trigger_id=trigger_id,
        )
        if definition.settings.sla_minutes is not None:
            execution.sla_deadline = execution.started_at + timedelta(
                minutes=definition.settings.sla_minutes
            )

        txn = _Transaction(execution, definition, {})
        txn.emit(
            AuditEventType.EXECUTION_STARTED,
            actor=actor,
            workflow_id=definition.id,
            workflow_version=definition.version,
        )
        try:
            for step_id in definition.steps.start_steps():
                self._arrive(txn, step_id, [])
            self._settle(txn)
        except ConfigurationError as exc:
            txn = _Transaction(execution.model_copy(deep=True), definition, {})
            self._fail_execution(txn, None, str(exc), ErrorKind.CONFIGURATION)
        txn.execution.refresh_current_steps()

        run = self._run(execution.id)
        async with run.lock:
            saved = await self._persist_call(
                lambda: self._repository.create_execution(txn.execution),
                f"create execution {execution.id}",
            )
            run.execution = saved
            await self._commit_side_records(run, txn)
        logger.info(
            f"Started execution {saved.id} of {definition.id} v{definition.version}"
        )
        self._apply(run, txn)
        return saved.id

    async def pause(self, execution_id: str, actor: Optional[str] = None) -> WorkflowExecution:
        def mutate(txn: _Transaction) -> None:
            check_transition(txn.execution.status, ExecutionStatus.PAUSED)
            txn.execution.status = ExecutionStatus.PAUSED
            txn.emit(AuditEventType.EXECUTION_PAUSED, actor=actor)

        return await self._transition(execution_id, mutate)

    async def resume(self, execution_id: str, actor: Optional[str] = None) -> WorkflowExecution:
        def mutate(txn: _Transaction) -> None:
            execution = txn.execution
            check_transition(execution.status, ExecutionStatus.RUNNING)
            execution.status = ExecutionStatus.RUNNING
            txn.emit(AuditEventType.EXECUTION_RESUMED, actor=actor)
            parked = [a for a in execution.frontier if a.status is StepStatus.FAILED]
            if parked:
                row = txn.row(parked[0].step_execution_id) if txn.has_row(parked[0].step_execution_id) else None
                self._fail_execution(
                    txn,
                    parked[0],
                    row.error if row else "Step failed while paused",
                    row.error_kind if row else ErrorKind.EXECUTOR,
                )
                return
            for act in execution.frontier:
                if act.status is StepStatus.PENDING:
                    txn.dispatch.append(act.id)
            self._settle(txn)

        return await self._transition(execution_id, mutate)

    async def cancel(self, execution_id: str, actor: Optional[str] = None) -> WorkflowExecution:
        def mutate(txn: _Transaction) -> None:
            execution = txn.execution
            check_transition(execution.status, ExecutionStatus.CANCELLED)
            execution.status = ExecutionStatus.CANCELLED
            execution.completed_at = txn.now
            self._abandon_all(txn)
            txn.emit(AuditEventType.EXECUTION_CANCELLED, actor=actor)

        return await self._transition(execution_id, mutate)

    async def resume_step(
        self,
        execution_id: str,
        resume_token: str,
        input: Optional[Dict[str, Any]] = None,
        actor: Optional[str] = None,
    ) -> WorkflowExecution:
        """Re-enter the suspended step holding ``resume_token``."""
        payload = dict(input or {})

        def mutate(txn: _Transaction) -> None:
            execution = txn.execution
            if execution.is_terminal:
                raise IllegalTransitionError(
                    f"Execution {execution.id} is {execution.status.value}"
                )
            act = next(
                (
                    a
                    for a in execution.frontier
                    if a.status is StepStatus.SUSPENDED and a.resume_token == resume_token
                ),
                None,
            )
            if act is None:
                raise NotFoundError("No suspended step holds that resume token")
            act.status = StepStatus.IN_PROGRESS
            row = self._row(txn, act)
            row.status = StepStatus.IN_PROGRESS
            txn.emit(AuditEventType.STEP_RESUMED, step_id=act.step_id, actor=actor)
            ctx = self._step_context(txn, act)
            txn.resumes.append((act.id, row.id, resume_token, payload, ctx))

        return await self._transition(execution_id, mutate)

    async def retry_failed_step(
        self, execution_id: str, actor: Optional[str] = None
    ) -> WorkflowExecution:
        """Operator retry: re-run a failed execution from its failed step."""

        def mutate(txn: _Transaction) -> None:
            execution = txn.execution
            check_transition(execution.status, ExecutionStatus.RUNNING, operator=True)
            failed_rows = [
                r
                for r in txn.all_rows()
                if r.step_id == execution.failed_step_id and r.status is StepStatus.FAILED
            ]
            if not execution.recovery_frontier or not failed_rows:
                raise IllegalTransitionError(
                    f"Execution {execution.id} has no failed step to retry"
                )
            kind = failed_rows[-1].error_kind
            if kind not in RECOVERABLE_KINDS:
                raise IllegalTransitionError(
                    f"Failure kind '{kind.value if kind else None}' is not recoverable"
                )
            execution.status = ExecutionStatus.RUNNING
            execution.completed_at = None
            execution.error = None
            execution.joins = execution.recovery_joins
            execution.frontier = []
            for act in execution.recovery_frontier:
                visit = execution.visits.get(act.step_id, 0) + 1
                execution.visits[act.step_id] = visit
                restored = Activation(step_id=act.step_id, scope=act.scope, visit=visit)
                execution.frontier.append(restored)
                txn.dispatch.append(restored.id)
            txn.emit(
                AuditEventType.EXECUTION_RETRIED,
                step_id=execution.failed_step_id,
                actor=actor,
            )
            execution.failed_step_id = None
            execution.recovery_frontier = []
            execution.recovery_joins = []

        return await self._transition(execution_id, mutate)

    async def get_status(self, execution_id: str) -> WorkflowExecution:
        execution = await self._persist_call(
            lambda: self._repository.get_execution(execution_id),
            f"load execution {execution_id}",
        )
        if execution is None:
            raise NotFoundError(f"Execution {execution_id} not found")
        return execution

    async def list_step_executions(self, execution_id: str) -> List[StepExecution]:
        return await self._repository.list_step_executions(execution_id)

    async def get_audit_trail(self, execution_id: str) -> List[AuditEvent]:
        return await self._repository.list_audit_events(execution_id=execution_id)

    async def get_metrics(self, execution_id: str) -> ExecutionMetrics:
        execution = await self.get_status(execution_id)
        steps = await self._repository.list_step_executions(execution_id)
        return compute_metrics(execution, steps)

    async def wait_idle(
        self, execution_id: str, timeout: Optional[float] = None
    ) -> WorkflowExecution:
        """Wait until no step task of the execution is running.

        The execution is then terminal, paused, or waiting on suspended steps.
        """

        async def _drain() -> None:
            while True:
                run = self._runs.get(execution_id)
                if run is None or not run.tasks:
                    return
                await asyncio.gather(*list(run.tasks.values()), return_exceptions=True)

        await asyncio.wait_for(_drain(), timeout)
        return await self.get_status(execution_id)

    async def check_sla(self) -> List[str]:
        """Flag running executions whose SLA deadline has passed."""
        running = await self._persist_call(
            lambda: self._repository.list_executions(
                status=[ExecutionStatus.RUNNING], organization_id=self.organization_id
            ),
            "list running executions",
        )
        now = utcnow()
        breached = []
        for execution in running:
            if execution.sla_breached or execution.sla_deadline is None:
                continue
            if execution.sla_deadline >= now:
                continue

            flagged = {"breached": False}

            def mutate(txn: _Transaction) -> None:
                flagged["breached"] = self._check_sla(txn)
                if not flagged["breached"]:
                    txn.noop()

            await self._transition(execution.id, mutate)
            if flagged["breached"]:
                breached.append(execution.id)
        return breached

    async def recover(self) -> List[str]:
        """Resume non-terminal executions after a restart.

        Pending steps are dispatched again; steps found in progress were
        interrupted and go through the retry policy as failures.
        """
        executions = await self._persist_call(
            lambda: self._repository.list_executions(
                status=[ExecutionStatus.RUNNING, ExecutionStatus.PAUSED],
                organization_id=self.organization_id,
            ),
            "list executions for recovery",
        )
        recovered = []
        for execution in executions:
            run = self._runs.get(execution.id)
            if run is not None and run.tasks:
                continue
            self._runs.pop(execution.id, None)

            def mutate(txn: _Transaction) -> None:
                changed = False
                for act in list(txn.execution.frontier):
                    if act.status is StepStatus.IN_PROGRESS:
                        self._on_failed(
                            txn,
                            act,
                            Failed(
                                error="Interrupted before completion",
                                kind=ErrorKind.INTERRUPTED,
                            ),
                        )
                        changed = True
                    elif act.status is StepStatus.PENDING:
                        txn.dispatch.append(act.id)
                if not changed:
                    txn.noop()

            await self._transition(execution.id, mutate)
            recovered.append(execution.id)
        if recovered:
            logger.info(f"Recovered {len(recovered)} execution(s)")
        return recovered

    # ------------------------------------------------------------------
    # Transition machinery
    def _run(self, execution_id: str) -> _Run:
        run = self._runs.get(execution_id)
        if run is None:
            run = self._runs[execution_id] = _Run(execution_id)
        return run

    async def _persist_call(self, operation: Callable[[], Awaitable[Any]], description: str) -> Any:
        return await retry_async(
            operation,
            attempts=self._config.persist_retries,
            retry_on=(InfrastructureError,),
            give_up_on=(ConcurrencyError,),
            base=self._config.persist_retry_delay,
            description=description,
        )

    async def _definition(self, execution: WorkflowExecution) -> WorkflowDefinition:
        key = (execution.workflow_id, execution.workflow_version)
        if key not in self._definitions:
            definition = await self._persist_call(
                lambda: self._repository.get_workflow(*key),
                f"load workflow {key[0]} v{key[1]}",
            )
            if definition is None:
                raise ConfigurationError(
                    f"Workflow {key[0]} version {key[1]} is not stored"
                )
            self._definitions[key] = definition
        return self._definitions[key]

    async def _ensure_loaded(self, run: _Run) -> None:
        if run.execution is not None:
            return
        execution = await self._persist_call(
            lambda: self._repository.get_execution(run.execution_id),
            f"load execution {run.execution_id}",
        )
        if execution is None:
            raise NotFoundError(f"Execution {run.execution_id} not found")
        rows = await self._persist_call(
            lambda: self._repository.list_step_executions(run.execution_id),
            f"load steps of {run.execution_id}",
        )
        run.execution = execution
        run.rows = {row.id: row for row in rows}

    async def _transition(self, execution_id: str, mutation: Mutation) -> WorkflowExecution:
        run = self._run(execution_id)
        async with run.lock:
            conflicts = 0
            while True:
                try:
                    await self._ensure_loaded(run)
                except NotFoundError:
                    if self._runs.get(execution_id) is run and not run.tasks:
                        del self._runs[execution_id]
                    raise
                base = run.execution
                definition = await self._definition(base)
                txn = _Transaction(base.model_copy(deep=True), definition, run.rows)
                try:
                    mutation(txn)
                except ConfigurationError as exc:
                    if base.status is not ExecutionStatus.RUNNING:
                        raise
                    txn = _Transaction(base.model_copy(deep=True), definition, run.rows)
                    self._fail_execution(txn, None, str(exc), ErrorKind.CONFIGURATION)
                if not txn.dirty:
                    saved = base
                    break
                self._check_sla(txn)
                txn.execution.refresh_current_steps()
                try:
                    saved = await self._persist_call(
                        lambda: self._repository.save_execution(txn.execution, base.version),
                        f"save execution {execution_id}",
                    )
                except ConcurrencyError:
                    conflicts += 1
                    if conflicts >= self._config.concurrency_retries:
                        raise
                    logger.info(
                        f"Execution {execution_id} changed concurrently, re-applying transition"
                    )
                    run.execution = None
                    continue
                run.execution = saved
                await self._commit_side_records(run, txn)
                break
        self._apply(run, txn)
        return saved.model_copy(deep=True)

    async def _commit_side_records(self, run: _Run, txn: _Transaction) -> None:
        for row in txn.rows.values():
            await self._persist_call(
                lambda row=row: self._repository.save_step_execution(row),
                f"save step {row.step_id}",
            )
            run.rows[row.id] = row
        for event in txn.audit:
            await self._persist_call(
                lambda event=event: self._audit.emit(event),
                f"audit {event.type.value}",
            )

    def _apply(self, run: _Run, txn: _Transaction) -> None:
        execution = run.execution
        current = asyncio.current_task()
        for act_id in txn.cancel:
            signal = run.signals.get(act_id)
            if signal is not None:
                signal.set()
            task = run.tasks.get(act_id)
            if task is not None and task is not current and not task.done():
                task.cancel()
        if execution is None or execution.status is not ExecutionStatus.RUNNING:
            dispatch = []
        else:
            dispatch = txn.dispatch
        for act_id in dict.fromkeys(dispatch):
            act = execution.activation(act_id)
            if act is None or act.status is not StepStatus.PENDING:
                continue
            delay = 0.0
            if act.not_before is not None:
                delay = max(0.0, (act.not_before - utcnow()).total_seconds())
            self._spawn(run, act_id, self._drive(run.execution_id, act_id, delay))
        for act_id, row_id, token, payload, ctx in txn.resumes:
            self._spawn(
                run, act_id, self._drive_resume(run.execution_id, act_id, row_id, token, payload, ctx)
            )
        self._forget_if_finished(run)

    def _forget_if_finished(self, run: _Run) -> None:
        """Drop the bookkeeping of a terminal execution once no step task is live."""
        execution = run.execution
        if execution is None or not execution.is_terminal or run.lock.locked():
            return
        current = asyncio.current_task()
        if any(task is not current and not task.done() for task in run.tasks.values()):
            return
        if self._runs.get(run.execution_id) is run:
            del self._runs[run.execution_id]

    def _spawn(self, run: _Run, act_id: str, coro: Awaitable[None]) -> None:
        task = asyncio.create_task(coro)
        run.tasks[act_id] = task

        def _done(finished: asyncio.Task) -> None:
            if run.tasks.get(act_id) is finished:
                run.tasks.pop(act_id, None)
                run.signals.pop(act_id, None)
            self._forget_if_finished(run)

        task.add_done_callback(_done)

    def _detach(self, execution_id: str, exc: Exception) -> None:
        logger.error(
            f"Persistence unavailable for execution {execution_id}, leaving it in its "
            f"last durable state for recovery: {exc}"
        )
        self._runs.pop(execution_id, None)

    # ------------------------------------------------------------------
    # Step dispatch
    async def _drive(self, execution_id: str, activation_id: str, delay: float) -> None:
        try:
            if delay:
                await asyncio.sleep(delay)
            began: Dict[str, Any] = {}

            def begin(txn: _Transaction) -> None:
                execution = txn.execution
                act = execution.activation(activation_id)
                if (
                    act is None
                    or act.status is not StepStatus.PENDING
                    or execution.status is not ExecutionStatus.RUNNING
                ):
                    txn.noop()
                    return
                step = txn.graph.step(act.step_id)
                ctx = self._step_context(txn, act)
                row = StepExecution(
                    execution_id=execution.id,
                    step_id=act.step_id,
                    visit=act.visit,
                    attempt=act.attempt,
                    status=StepStatus.IN_PROGRESS,
                    input=copy.deepcopy(ctx.data),
                    started_at=txn.now,
                )
                act.status = StepStatus.IN_PROGRESS
                act.step_execution_id = row.id
                act.not_before = None
                txn.rows[row.id] = row
                txn.emit(
                    AuditEventType.STEP_STARTED,
                    step_id=act.step_id,
                    attempt=act.attempt,
                    visit=act.visit,
                )
                began.update(step=step, row=row, ctx=ctx, settings=txn.definition.settings)

            await self._transition(execution_id, begin)
            if not began:
                return
            step: Step = began["step"]
            row: StepExecution = began["row"]
            ctx: StepContext = began["ctx"]

            if not await self._persist_call(
                lambda: self._repository.claim_dispatch(row.dispatch_key),
                f"claim {row.dispatch_key}",
            ):
                logger.warning(f"Dispatch {row.dispatch_key} already claimed, skipping")
                return
            self._run(execution_id).signals[activation_id] = ctx.cancelled

            timeout = (
                step.timeout_seconds
                or began["settings"].step_timeout_seconds
                or self._config.default_step_timeout
            )
            try:
                executor = self._executors.get(step.kind)
            except ConfigurationError as exc:
                result: StepResult = Failed(
                    error=str(exc), kind=ErrorKind.CONFIGURATION, retryable=False
                )
            else:
                result = await self._invoke(executor.execute(step.config, ctx), timeout)
            await self._apply_result(execution_id, activation_id, row.id, result)
        except asyncio.CancelledError:
            logger.info(f"Step task {activation_id} of execution {execution_id} cancelled")
            raise
        except InfrastructureError as exc:
            self._detach(execution_id, exc)

    async def _drive_resume(
        self,
        execution_id: str,
        activation_id: str,
        row_id: str,
        token: str,
        payload: Dict[str, Any],
        ctx: StepContext,
    ) -> None:
        try:
            definition = await self._definition(self._run(execution_id).execution)
            step = definition.steps.step(ctx.step_id)
            self._run(execution_id).signals[activation_id] = ctx.cancelled
            executor = self._executors.get(step.kind)
            timeout = (
                step.timeout_seconds
                or definition.settings.step_timeout_seconds
                or self._config.default_step_timeout
            )
            result = await self._invoke(
                executor.resume(token, payload, step.config, ctx), timeout
            )
            await self._apply_result(execution_id, activation_id, row_id, result)
        except ConfigurationError as exc:
            await self._apply_result(
                execution_id,
                activation_id,
                row_id,
                Failed(error=str(exc), kind=ErrorKind.CONFIGURATION, retryable=False),
            )
        except asyncio.CancelledError:
            logger.info(f"Resumed step {activation_id} of execution {execution_id} cancelled")
            raise
        except InfrastructureError as exc:
            self._detach(execution_id, exc)

    async def _invoke(self, call: Awaitable[StepResult], timeout: Optional[float]) -> StepResult:
        try:
            if timeout:
                result = await asyncio.wait_for(call, timeout)
            else:
                result = await call
        except asyncio.TimeoutError:
            return Failed(error=f"Step exceeded its {timeout}s deadline", kind=ErrorKind.TIMEOUT)
        except ExecutorError as exc:
            return Failed(error=str(exc), kind=exc.kind, retryable=exc.retryable)
        except ConfigurationError as exc:
            return Failed(error=str(exc), kind=ErrorKind.CONFIGURATION, retryable=False)
        except Exception as exc:
            logger.exception("Step executor raised")
            return Failed(error=f"{type(exc).__name__}: {exc}")
        if not isinstance(result, (Completed, Failed, Suspended)):
            return Failed(
                error=f"Executor returned {type(result).__name__}, expected a step result",
                retryable=False,
            )
        return result

    async def _apply_result(
        self, execution_id: str, activation_id: str, row_id: str, result: StepResult
    ) -> None:
        def mutate(txn: _Transaction) -> None:
            execution = txn.execution
            act = execution.activation(activation_id)
            if (
                execution.is_terminal
                or act is None
                or act.step_execution_id != row_id
                or act.status is not StepStatus.IN_PROGRESS
            ):
                logger.info(
                    f"Discarding {result.status} result of {activation_id} for execution {execution_id}"
                )
                txn.noop()
                return
            if isinstance(result, Completed):
                self._on_completed(txn, act, result.output)
            elif isinstance(result, Suspended):
                act.status = StepStatus.SUSPENDED
                act.resume_token = result.resume_token
                row = self._row(txn, act)
                row.status = StepStatus.SUSPENDED
                row.resume_token = result.resume_token
                txn.emit(
                    AuditEventType.STEP_SUSPENDED,
                    step_id=act.step_id,
                    resume_token=result.resume_token,
                    **result.details,
                )
            else:
                self._on_failed(txn, act, result)

        await self._transition(execution_id, mutate)

    # ------------------------------------------------------------------
    # Graph walking (all synchronous, inside a transition)
    def _row(self, txn: _Transaction, act: Activation) -> StepExecution:
        if txn.has_row(act.step_execution_id):
            return txn.row(act.step_execution_id)
        row = StepExecution(
            execution_id=txn.execution.id,
            step_id=act.step_id,
            visit=act.visit,
            attempt=act.attempt,
        )
        act.step_execution_id = row.id
        txn.rows[row.id] = row
        return row

    def _view(self, txn: _Transaction, scope: List[BranchRef]) -> Dict[str, Any]:
        data = copy.deepcopy(txn.execution.context)
        for frame in scope:
            join = txn.execution.join(frame.join_id)
            if join is not None:
                deep_merge(data, join.branches[frame.branch].overlay)
        return data

    def _step_context(self, txn: _Transaction, act: Activation) -> StepContext:
        return StepContext(
            execution_id=txn.execution.id,
            workflow_id=txn.execution.workflow_id,
            step_id=act.step_id,
            attempt=act.attempt,
            visit=act.visit,
            data=self._view(txn, act.scope),
        )

    def _merge_into_scope(
        self, txn: _Transaction, scope: List[BranchRef], data: Dict[str, Any]
    ) -> None:
        if not data:
            return
        if scope:
            join = txn.execution.join(scope[-1].join_id)
            if join is not None:
                deep_merge(join.branches[scope[-1].branch].overlay, data)
                return
        deep_merge(txn.execution.context, data)

    def _remove(self, txn: _Transaction, act: Activation) -> None:
        txn.execution.frontier = [a for a in txn.execution.frontier if a.id != act.id]

    def _on_completed(self, txn: _Transaction, act: Activation, output: Any) -> None:
        row = self._row(txn, act)
        row.status = StepStatus.COMPLETED
        row.output = output
        row.completed_at = txn.now
        txn.emit(AuditEventType.STEP_COMPLETED, step_id=act.step_id, attempt=act.attempt)
        self._remove(txn, act)
        if isinstance(output, dict):
            self._merge_into_scope(txn, act.scope, output)
        elif output is not None:
            self._merge_into_scope(txn, act.scope, {act.step_id: output})

        view = self._view(txn, act.scope)
        for edge in txn.graph.outgoing(act.step_id):
            if edge.kind is EdgeKind.LOOP_BODY:
                continue
            if edge.condition is not None and not evaluate(edge.condition, view):
                continue
            self._arrive(txn, edge.target, act.scope)
        self._settle(txn)

    def _on_failed(self, txn: _Transaction, act: Activation, result: Failed) -> None:
        execution = txn.execution
        row = self._row(txn, act)
        row.status = StepStatus.FAILED
        row.error = result.error
        row.error_kind = result.kind
        row.completed_at = txn.now
        txn.emit(
            AuditEventType.STEP_FAILED,
            step_id=act.step_id,
            attempt=act.attempt,
            error=result.error,
            kind=result.kind.value,
        )

        fatal = result.kind is ErrorKind.CONFIGURATION
        settings = txn.definition.settings
        step = txn.graph.step(act.step_id)
        if not fatal and result.retryable and act.attempt <= settings.retries_for(step):
            act.attempt += 1
            act.status = StepStatus.PENDING
            act.step_execution_id = None
            act.resume_token = None
            delay = compute_backoff(
                act.attempt - 1,
                base=self._config.retry_base_delay,
                jitter=self._config.retry_jitter,
                strategy=settings.retry_strategy,
                max_delay=self._config.retry_max_delay,
            )
            act.not_before = txn.now + timedelta(seconds=delay)
            txn.dispatch.append(act.id)
            txn.emit(
                AuditEventType.STEP_RETRY_SCHEDULED,
                step_id=act.step_id,
                attempt=act.attempt,
                delay_seconds=round(delay, 3),
            )
            return

        if not fatal and settings.error_policy == "continue":
            self._remove(txn, act)
            self._settle(txn)
            return

        if execution.status is ExecutionStatus.PAUSED:
            # Parked until resume, which fails the execution.
            act.status = StepStatus.FAILED
            return
        self._fail_execution(txn, act, result.error, result.kind)

    def _fail_execution(
        self,
        txn: _Transaction,
        act: Optional[Activation],
        error: Optional[str],
        kind: Optional[ErrorKind],
    ) -> None:
        execution = txn.execution
        check_transition(execution.status, ExecutionStatus.FAILED)
        if act is not None:
            execution.recovery_frontier = [
                a.model_copy(deep=True)
                for a in execution.frontier
                if a.status is not StepStatus.FAILED or a.id == act.id
            ]
            execution.recovery_joins = [j.model_copy(deep=True) for j in execution.joins]
            self._remove(txn, act)
        execution.status = ExecutionStatus.FAILED
        execution.completed_at = txn.now
        execution.error = error
        execution.failed_step_id = act.step_id if act is not None else None
        self._abandon_all(txn)
        txn.emit(
            AuditEventType.EXECUTION_FAILED,
            step_id=execution.failed_step_id,
            error=error,
            kind=kind.value if kind else None,
            requires_attention=kind is ErrorKind.CONFIGURATION,
        )
        logger.warning(f"Execution {execution.id} failed: {error}")

    def _abandon(self, txn: _Transaction, act: Activation, cancel_running: bool) -> None:
        if act.status is StepStatus.FAILED:
            return
        row = self._row(txn, act)
        if act.status is StepStatus.IN_PROGRESS and cancel_running:
            row.status = StepStatus.CANCELLED
            txn.cancel.append(act.id)
            txn.emit(AuditEventType.STEP_CANCELLED, step_id=act.step_id)
        else:
            row.status = StepStatus.SKIPPED
            txn.emit(AuditEventType.STEP_SKIPPED, step_id=act.step_id)
        row.completed_at = txn.now

    def _abandon_all(self, txn: _Transaction) -> None:
        for act in txn.execution.frontier:
            self._abandon(txn, act, cancel_running=True)
        txn.execution.frontier = []
        txn.execution.joins = []

    def _arrive(self, txn: _Transaction, step_id: str, scope: List[BranchRef]) -> None:
        """Follow an edge into ``step_id`` within ``scope``."""
        execution = txn.execution
        if any(execution.join(frame.join_id) is None for frame in scope):
            return
        if scope:
            join = execution.join(scope[-1].join_id)
            if step_id == join.join_step_id:
                join.branches[scope[-1].branch].reached_join = True
                if join.join_type is not JoinType.ALL:
                    self._resolve_join(txn, join, winner=scope[-1].branch)
                return
        self._activate(txn, step_id, scope)

    def _activate(self, txn: _Transaction, step_id: str, scope: List[BranchRef]) -> None:
        execution = txn.execution
        step = txn.graph.step(step_id)
        visit = execution.visits.get(step_id, 0) + 1
        execution.visits[step_id] = visit
        act = Activation(step_id=step_id, scope=list(scope), visit=visit)
        if step.kind in CONTROL_KINDS:
            self._run_control(txn, step, act)
        else:
            execution.frontier.append(act)
            txn.dispatch.append(act.id)

    def _run_control(self, txn: _Transaction, step: Step, act: Activation) -> None:
        execution = txn.execution
        view = self._view(txn, act.scope)
        row = StepExecution(
            execution_id=execution.id,
            step_id=step.id,
            visit=act.visit,
            attempt=1,
            status=StepStatus.COMPLETED,
            started_at=txn.now,
            completed_at=txn.now,
        )
        txn.rows[row.id] = row
        edges = txn.graph.outgoing(step.id)
        targets: List[str] = []

        if step.kind is StepKind.CONDITION:
            chosen = next(
                (
                    e
                    for e in edges
                    if not e.default and (e.condition is None or evaluate(e.condition, view))
                ),
                None,
            )
            if chosen is None:
                chosen = next((e for e in edges if e.default), None)
            row.output = {"selected": chosen.target if chosen else None}
            if chosen is not None:
                targets.append(chosen.target)

        elif step.kind is StepKind.PARALLEL:
            join_type = JoinType(step.config.get("join_type", step.config.get("joinType", "all")))
            join = JoinState(
                parallel_step_id=step.id,
                join_step_id=txn.graph.join_step_for(step.id),
                join_type=join_type,
                scope=list(act.scope),
            )
            taken = [e for e in edges if e.condition is None or evaluate(e.condition, view)]
            join.branches = [
                BranchState(index=i, entry_step_id=e.target) for i, e in enumerate(taken)
            ]
            execution.joins.append(join)
            row.output = {
                "join_type": join_type.value,
                "branches": [b.entry_step_id for b in join.branches],
            }
            txn.emit(AuditEventType.STEP_COMPLETED, step_id=step.id, **row.output)
            for branch in join.branches:
                self._arrive(
                    txn,
                    branch.entry_step_id,
                    list(act.scope) + [BranchRef(join_id=join.id, branch=branch.index)],
                )
            return

        elif step.kind is StepKind.LOOP:
            key = "/".join([f.join_id for f in act.scope] + [step.id])
            count = execution.loop_counters.get(key, 0)
            bound = step.config.get("max_iterations", step.config.get("maxIterations", 1))
            guard = step.config.get("while")
            if count < bound and (guard is None or evaluate(guard, view)):
                execution.loop_counters[key] = count + 1
                row.output = {"iteration": count + 1}
                targets.append(step.config["body"])
            else:
                if count >= bound:
                    txn.emit(
                        AuditEventType.LOOP_BOUND_REACHED,
                        step_id=step.id,
                        max_iterations=bound,
                    )
                execution.loop_counters.pop(key, None)
                row.output = {"iterations": count, "exited": True}
                targets.extend(
                    e.target
                    for e in edges
                    if e.kind is not EdgeKind.LOOP_BODY
                    and (e.condition is None or evaluate(e.condition, view))
                )

        txn.emit(AuditEventType.STEP_COMPLETED, step_id=step.id, **(row.output or {}))
        for target in targets:
            self._arrive(txn, target, act.scope)

    def _resolve_join(self, txn: _Transaction, join: JoinState, winner: Optional[int]) -> None:
        execution = txn.execution
        execution.joins = [j for j in execution.joins if j.id != join.id]
        if join.join_type is JoinType.ALL:
            reached = [b for b in join.branches if b.reached_join]
        else:
            reached = [join.branches[winner]] if winner is not None else []

        remaining = []
        for act in execution.frontier:
            if any(frame.join_id == join.id for frame in act.scope):
                self._abandon(txn, act, cancel_running=join.join_type is JoinType.RACE)
            else:
                remaining.append(act)
        execution.frontier = remaining
        execution.joins = [
            j for j in execution.joins if not any(f.join_id == join.id for f in j.scope)
        ]

        merged: Dict[str, Any] = {}
        for branch in sorted(reached, key=lambda b: b.index):
            deep_merge(merged, branch.overlay)
        self._merge_into_scope(txn, join.scope, merged)
        txn.emit(
            AuditEventType.JOIN_RESOLVED,
            step_id=join.parallel_step_id,
            join_type=join.join_type.value,
            reached=[b.entry_step_id for b in reached],
        )
        if reached:
            self._arrive(txn, join.join_step_id, join.scope)

    def _settle(self, txn: _Transaction) -> None:
        """Resolve joins whose branches are all idle, then maybe complete."""
        execution = txn.execution
        progressed = True
        while progressed:
            progressed = False
            for join in reversed(list(execution.joins)):
                busy = any(
                    frame.join_id == join.id for act in execution.frontier for frame in act.scope
                ) or any(
                    frame.join_id == join.id for other in execution.joins for frame in other.scope
                )
                if not busy:
                    self._resolve_join(txn, join, winner=None)
                    progressed = True
                    break

        if (
            execution.status is ExecutionStatus.RUNNING
            and not execution.frontier
            and not execution.joins
        ):
            execution.status = ExecutionStatus.COMPLETED
            execution.completed_at = txn.now
            txn.emit(AuditEventType.EXECUTION_COMPLETED)
            logger.info(f"Execution {execution.id} completed")

    def _check_sla(self, txn: _Transaction) -> bool:
        execution = txn.execution
        if (
            execution.status is ExecutionStatus.RUNNING
            and execution.sla_deadline is not None
            and not execution.sla_breached
            and execution.sla_deadline < txn.now
        ):
            execution.sla_breached = True
            txn.emit(
                AuditEventType.SLA_BREACHED,
                deadline=execution.sla_deadline.isoformat(),
            )
            logger.warning(f"Execution {execution.id} breached its SLA deadline")
            return True
        return False

"""Execution metrics derived from step history."""

from __future__ import annotations

from typing import Iterable

from .models import ExecutionMetrics, StepExecution, StepStatus, WorkflowExecution, utcnow


def compute_metrics(
    execution: WorkflowExecution, steps: Iterable[StepExecution]
) -> ExecutionMetrics:
    """Summarize an execution: duration, per-status step counts, retries.

    Running executions are measured up to now. ``step_durations`` sums the
    time spent in every attempt of a step.
    """
    rows = list(steps)
    end = execution.completed_at or utcnow()
    durations: dict[str, float] = {}
    for row in rows:
        if row.started_at is None or row.completed_at is None:
            continue
        seconds = (row.completed_at - row.started_at).total_seconds()
        durations[row.step_id] = durations.get(row.step_id, 0.0) + seconds

    timed = [
        (row.completed_at - row.started_at).total_seconds()
        for row in rows
        if row.started_at is not None and row.completed_at is not None
    ]
    return ExecutionMetrics(
        execution_id=execution.id,
        status=execution.status,
        duration_seconds=(end - execution.started_at).total_seconds(),
        steps_total=len(rows),
        steps_completed=sum(1 for r in rows if r.status is StepStatus.COMPLETED),
        steps_failed=sum(1 for r in rows if r.status is StepStatus.FAILED),
        steps_skipped=sum(
            1 for r in rows if r.status in (StepStatus.SKIPPED, StepStatus.CANCELLED)
        ),
        retries=sum(1 for r in rows if r.attempt > 1),
        average_step_seconds=sum(timed) / len(timed) if timed else None,
        sla_breached=execution.sla_breached,
        step_durations=durations,
    )

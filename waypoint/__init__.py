"""Waypoint: durable workflow orchestration with trigger monitors."""

from .audit import AuditEmitter, LoggingAuditSink, MemoryAuditSink
from .conditions import evaluate, parse_condition
from .engine import ExecutionEngine
from .executors import ExecutorRegistry, StepExecutor, default_registry
from .graph import StepGraph, StepKind, WorkflowDefinition, WorkflowSettings
from .models import ExecutionStatus, StepStatus, TriggerKind, WorkflowExecution, WorkflowTrigger
from .persistence import get_repository
from .registry import EngineRegistry
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "AuditEmitter",
    "EngineRegistry",
    "ExecutionEngine",
    "ExecutionStatus",
    "ExecutorRegistry",
    "LoggingAuditSink",
    "MemoryAuditSink",
    "StepExecutor",
    "StepGraph",
    "StepKind",
    "StepStatus",
    "TriggerKind",
    "WorkflowDefinition",
    "WorkflowExecution",
    "WorkflowSettings",
    "WorkflowTrigger",
    "default_registry",
    "evaluate",
    "get_repository",
    "get_transport",
    "parse_condition",
]

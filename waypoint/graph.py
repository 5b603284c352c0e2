"""Step graph model for published workflow versions."""

from __future__ import annotations

from collections import deque
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator
from pydantic.alias_generators import to_camel

from .conditions import ConditionExpression, parse_condition
from .errors import ConfigurationError, ValidationError


class StepKind(str, Enum):
    CAPTURE = "capture"
    REVIEW = "review"
    APPROVE = "approve"
    UPDATE = "update"
    NOTIFY = "notify"
    CONDITION = "condition"
    PARALLEL = "parallel"
    LOOP = "loop"


# Kinds the engine resolves itself instead of dispatching to an executor.
CONTROL_KINDS = {StepKind.CONDITION, StepKind.PARALLEL, StepKind.LOOP}


class EdgeKind(str, Enum):
    SEQUENTIAL = "sequential"
    CONDITIONAL = "conditional"
    FAN_OUT = "fan_out"
    JOIN = "join"
    LOOP_BODY = "loop_body"
    LOOP_BACK = "loop_back"


class JoinType(str, Enum):
    ALL = "all"
    ANY = "any"
    RACE = "race"


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Step(_Model):
    id: str
    kind: StepKind
    name: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    timeout_seconds: Optional[float] = None
    max_retries: Optional[int] = None


class Edge(_Model):
    source: str = Field(alias="from")
    target: str = Field(alias="to")
    condition: Optional[ConditionExpression] = None
    default: bool = False
    kind: Optional[EdgeKind] = None

    @field_validator("condition", mode="before")
    @classmethod
    def _parse_condition(cls, value: Any) -> Any:
        if value is None:
            return None
        return parse_condition(value)


class StepGraph(_Model):
    """Steps and edges of one workflow version, stored by id."""

    nodes: List[Step] = Field(default_factory=list)
    edges: List[Edge] = Field(default_factory=list)

    _index: Dict[str, Step] = PrivateAttr(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        self._index = {step.id: step for step in self.nodes}
        self._infer_edge_kinds()

    # ------------------------------------------------------------------
    # Lookup
    def step(self, step_id: str) -> Step:
        try:
            return self._index[step_id]
        except KeyError:
            raise ConfigurationError(f"Unknown step '{step_id}'") from None

    def has_step(self, step_id: str) -> bool:
        return step_id in self._index

    def outgoing(self, step_id: str) -> List[Edge]:
        """Outgoing edges in declaration order."""
        return [edge for edge in self.edges if edge.source == step_id]

    def incoming(self, step_id: str) -> List[Edge]:
        return [edge for edge in self.edges if edge.target == step_id]

    def start_steps(self) -> List[str]:
        """Steps with no inbound edges other than loop back-edges."""
        targets = {
            edge.target for edge in self.edges if edge.kind is not EdgeKind.LOOP_BACK
        }
        return [step.id for step in self.nodes if step.id not in targets]

    def join_step_for(self, parallel_step_id: str) -> str:
        step = self.step(parallel_step_id)
        join = step.config.get("join")
        if not join or not self.has_step(join):
            raise ConfigurationError(
                f"Parallel step '{parallel_step_id}' has no valid join step"
            )
        return join

    # ------------------------------------------------------------------
    # Edge kind inference
    def _infer_edge_kinds(self) -> None:
        join_steps = {
            step.config.get("join")
            for step in self.nodes
            if step.kind is StepKind.PARALLEL and step.config.get("join")
        }
        back_edges = self._find_loop_back_edges()
        for position, edge in enumerate(self.edges):
            if edge.kind is not None:
                continue
            source = self._index.get(edge.source)
            if position in back_edges:
                edge.kind = EdgeKind.LOOP_BACK
            elif source is not None and source.kind is StepKind.PARALLEL:
                edge.kind = EdgeKind.FAN_OUT
            elif (
                source is not None
                and source.kind is StepKind.LOOP
                and source.config.get("body") == edge.target
            ):
                edge.kind = EdgeKind.LOOP_BODY
            elif edge.target in join_steps:
                edge.kind = EdgeKind.JOIN
            elif edge.condition is not None:
                edge.kind = EdgeKind.CONDITIONAL
            else:
                edge.kind = EdgeKind.SEQUENTIAL

    def _find_loop_back_edges(self) -> set[int]:
        found: set[int] = set()
        for loop in self.nodes:
            if loop.kind is not StepKind.LOOP:
                continue
            body = loop.config.get("body")
            if body not in self._index:
                continue
            seen = {body}
            queue = deque([body])
            while queue:
                node = queue.popleft()
                for position, edge in enumerate(self.edges):
                    if edge.source != node:
                        continue
                    if edge.target == loop.id:
                        found.add(position)
                        continue
                    if edge.kind is EdgeKind.LOOP_BACK:
                        continue
                    if edge.target not in seen:
                        seen.add(edge.target)
                        queue.append(edge.target)
        return found

    # ------------------------------------------------------------------
    # Validation
    def _forward_successors(self, step_id: str) -> List[str]:
        return [
            edge.target
            for edge in self.outgoing(step_id)
            if edge.kind is not EdgeKind.LOOP_BACK
        ]

    def _reaches(self, start: str, goal: str) -> bool:
        seen = {start}
        queue = deque([start])
        while queue:
            node = queue.popleft()
            if node == goal:
                return True
            for nxt in self._forward_successors(node):
                if nxt not in seen:
                    seen.add(nxt)
                    queue.append(nxt)
        return False

    def validate_graph(self) -> None:
        """Raise :class:`ValidationError` when the graph cannot be executed."""
        ids = [step.id for step in self.nodes]
        duplicates = {step_id for step_id in ids if ids.count(step_id) > 1}
        if duplicates:
            raise ValidationError(f"Duplicate step ids: {sorted(duplicates)}")
        if not self.nodes:
            raise ValidationError("Workflow has no steps")

        for edge in self.edges:
            for ref in (edge.source, edge.target):
                if ref not in self._index:
                    raise ValidationError(
                        f"Edge {edge.source} -> {edge.target} references unknown step '{ref}'"
                    )

        for step in self.nodes:
            if step.kind is StepKind.LOOP:
                bound = step.config.get("max_iterations", step.config.get("maxIterations"))
                if not isinstance(bound, int) or isinstance(bound, bool) or bound < 1:
                    raise ValidationError(
                        f"Loop step '{step.id}' requires a positive max_iterations"
                    )
                body = step.config.get("body")
                if body not in [e.target for e in self.outgoing(step.id)]:
                    raise ValidationError(
                        f"Loop step '{step.id}' must have an edge to its body step"
                    )
            elif step.kind is StepKind.PARALLEL:
                join = step.config.get("join")
                if join not in self._index:
                    raise ValidationError(
                        f"Parallel step '{step.id}' must name an existing join step"
                    )
                join_type = step.config.get("join_type", step.config.get("joinType", "all"))
                if join_type not in {t.value for t in JoinType}:
                    raise ValidationError(
                        f"Parallel step '{step.id}' has unknown join type '{join_type}'"
                    )
                branches = self.outgoing(step.id)
                if not branches:
                    raise ValidationError(f"Parallel step '{step.id}' has no branches")
                for edge in branches:
                    if not self._reaches(edge.target, join):
                        raise ValidationError(
                            f"Branch '{edge.target}' of '{step.id}' never reaches join '{join}'"
                        )
            elif step.kind is StepKind.CONDITION:
                defaults = [e for e in self.outgoing(step.id) if e.default]
                if len(defaults) > 1:
                    raise ValidationError(
                        f"Condition step '{step.id}' has more than one default edge"
                    )

        self._check_acyclic()
        if not self.start_steps():
            raise ValidationError("Workflow has no start step")

    def _check_acyclic(self) -> None:
        white, grey, black = 0, 1, 2
        colour = {step.id: white for step in self.nodes}

        def visit(node: str) -> None:
            colour[node] = grey
            for nxt in self._forward_successors(node):
                if colour[nxt] == grey:
                    raise ValidationError(
                        f"Cycle through '{nxt}' without a bounded loop step"
                    )
                if colour[nxt] == white:
                    visit(nxt)
            colour[node] = black

        for step in self.nodes:
            if colour[step.id] == white:
                visit(step.id)


class WorkflowSettings(_Model):
    step_timeout_seconds: Optional[float] = None
    error_policy: Literal["stop", "continue", "retry"] = "stop"
    max_retries: Optional[int] = None
    retry_strategy: Literal["exponential", "linear", "fixed"] = "exponential"
    sla_minutes: Optional[float] = None

    def retries_for(self, step: Step) -> int:
        if step.max_retries is not None:
            return step.max_retries
        if self.max_retries is not None:
            return self.max_retries
        return 3 if self.error_policy == "retry" else 0


class WorkflowDefinition(_Model):
    """A workflow version. Immutable once published."""

    id: str
    version: int = 0
    name: Optional[str] = None
    description: Optional[str] = None
    steps: StepGraph = Field(default_factory=StepGraph)
    settings: WorkflowSettings = Field(default_factory=WorkflowSettings)
    published_at: Optional[datetime] = None

    def validate_definition(self) -> None:
        self.steps.validate_graph()
        if self.settings.max_retries is not None and self.settings.max_retries < 0:
            raise ValidationError("max_retries must not be negative")

"""
Process Graph Definition for DeployFlow.

A ProcessGraph is built in two phases: a declarative definition (plain data,
`StepSpec` / `EdgeSpec`) is parsed first, then `build_graph` validates it
as a whole and constructs the immutable graph. Nothing is partially applied:
either every rule holds or a GraphValidationError lists every problem found.
"""

from collections import deque
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union
from dataclasses import dataclass, field
from pydantic import BaseModel, Field, ValidationError, field_validator
import uuid

from deployflow.engine.conditions import BranchType, Predicate
from deployflow.engine.errors import GraphValidationError
from deployflow.engine.step import ErrorPolicy, Step, StepKind


# ============================================================
# Declarative Definition
# ============================================================

class StepSpec(BaseModel):
    """Declarative description of a step."""
    id: str = Field(..., min_length=1, description="Unique step name within the process")
    kind: StepKind = Field(..., description="component-process, command, manual, rollback or sub-process")
    parameters: Dict[str, Any] = Field(default_factory=dict, description="Values or $[reference] expressions")
    error_policy: ErrorPolicy = Field(ErrorPolicy.FAIL_PROCEDURE, description="failProcedure or abortJob")
    description: str = ""

    @field_validator("kind", mode="before")
    @classmethod
    def _coerce_kind(cls, value):
        return StepKind(value) if isinstance(value, str) else value

    @field_validator("error_policy", mode="before")
    @classmethod
    def _coerce_policy(cls, value):
        return ErrorPolicy(value) if isinstance(value, str) else value


class EdgeSpec(BaseModel):
    """Declarative description of an edge."""
    source: str
    target: str
    branch_type: BranchType = Field(BranchType.ON_SUCCESS, description="ALWAYS/on_success, error or custom")
    branch_condition: Optional[str] = Field(None, description="Predicate for custom edges")
    branch_condition_name: Optional[str] = Field(None, description="Diagnostic label")

    @field_validator("branch_type", mode="before")
    @classmethod
    def _coerce_branch_type(cls, value):
        return BranchType(value) if isinstance(value, str) else value


# ============================================================
# Immutable Model
# ============================================================

@dataclass(frozen=True)
class Edge:
    """A directed, conditional dependency between two steps."""
    position: int
    source: str
    target: str
    branch_type: BranchType = BranchType.ON_SUCCESS
    branch_condition: Optional[str] = None
    branch_condition_name: Optional[str] = None
    predicate: Optional[Predicate] = field(default=None, compare=False, repr=False)

    @property
    def label(self) -> str:
        if self.branch_type is BranchType.CUSTOM:
            return self.branch_condition_name or self.branch_condition or "custom"
        return self.branch_type.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "target": self.target,
            "branch_type": self.branch_type.value,
            "branch_condition": self.branch_condition,
            "branch_condition_name": self.branch_condition_name,
        }


@dataclass(frozen=True)
class ProcessGraph:
    """
    A validated, read-only process graph.

    Safe to share between concurrently executing runs.

    Attributes:
        graph_id: Unique identifier
        name: Process name
        steps: Step id -> Step, in declaration order
        edges: All edges, in declaration order
        entry_step: The only step without incoming edges
    """

    graph_id: str
    name: str
    steps: Mapping[str, Step]
    edges: Tuple[Edge, ...]
    entry_step: str
    description: str = ""
    _incoming: Mapping[str, Tuple[Edge, ...]] = field(init=False, repr=False, compare=False)
    _outgoing: Mapping[str, Tuple[Edge, ...]] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        incoming: Dict[str, List[Edge]] = {step_id: [] for step_id in self.steps}
        outgoing: Dict[str, List[Edge]] = {step_id: [] for step_id in self.steps}
        for edge in self.edges:
            outgoing[edge.source].append(edge)
            incoming[edge.target].append(edge)
        object.__setattr__(self, "steps", MappingProxyType(dict(self.steps)))
        object.__setattr__(self, "_incoming", MappingProxyType({k: tuple(v) for k, v in incoming.items()}))
        object.__setattr__(self, "_outgoing", MappingProxyType({k: tuple(v) for k, v in outgoing.items()}))

    def incoming(self, step_id: str) -> Tuple[Edge, ...]:
        return self._incoming[step_id]

    def outgoing(self, step_id: str) -> Tuple[Edge, ...]:
        return self._outgoing[step_id]

    @property
    def rollback_steps(self) -> List[str]:
        return [s.id for s in self.steps.values() if s.kind is StepKind.ROLLBACK]

    @property
    def has_manual_steps(self) -> bool:
        return any(s.kind is StepKind.MANUAL for s in self.steps.values())

    def to_dict(self) -> Dict[str, Any]:
        """Serialize back to a declarative definition."""
        return {
            "graph_id": self.graph_id,
            "name": self.name,
            "description": self.description,
            "entry_step": self.entry_step,
            "steps": [step.to_dict() for step in self.steps.values()],
            "edges": [edge.to_dict() for edge in self.edges],
        }

    def to_mermaid(self) -> str:
        """Generate a Mermaid diagram of the graph."""
        ids = {step_id: f"s{i}" for i, step_id in enumerate(self.steps)}
        lines = ["graph TD"]

        for step_id, step in self.steps.items():
            if step.kind is StepKind.MANUAL:
                lines.append(f'    {ids[step_id]}{{"{step_id}"}}')
            elif step.kind is StepKind.ROLLBACK:
                lines.append(f'    {ids[step_id]}[/"{step_id}"/]')
            else:
                lines.append(f'    {ids[step_id]}["{step_id}"]')

        for edge in self.edges:
            arrow = "-.->" if edge.branch_type is BranchType.ERROR else "-->"
            if edge.branch_type is BranchType.ON_SUCCESS:
                lines.append(f"    {ids[edge.source]} {arrow} {ids[edge.target]}")
            else:
                lines.append(f"    {ids[edge.source]} {arrow}|{edge.label}| {ids[edge.target]}")

        return "\n".join(lines)

    def __repr__(self) -> str:
        return (
            f"ProcessGraph(name='{self.name}', steps={list(self.steps)}, "
            f"entry='{self.entry_step}')"
        )


# ============================================================
# Build + Validation
# ============================================================

def build_graph(
    steps: Iterable[Union[StepSpec, Mapping[str, Any]]],
    edges: Iterable[Union[EdgeSpec, Mapping[str, Any]]] = (),
    name: str = "Unnamed Process",
    graph_id: Optional[str] = None,
    description: str = "",
) -> ProcessGraph:
    """
    Validate a declarative definition and build the immutable graph.

    Raises:
        GraphValidationError: With every problem found
    """
    problems: List[str] = []
    step_specs = _parse(StepSpec, steps, "step", problems)
    edge_specs = _parse(EdgeSpec, edges, "edge", problems)
    if problems:
        raise GraphValidationError(problems)

    if not step_specs:
        raise GraphValidationError(["Process must have at least one step"])

    built_steps: Dict[str, Step] = {}
    for spec in step_specs:
        if spec.id in built_steps:
            problems.append(f"Duplicate step id '{spec.id}'")
            continue
        built_steps[spec.id] = Step(
            id=spec.id,
            kind=spec.kind,
            parameters=spec.parameters,
            error_policy=spec.error_policy,
            description=spec.description,
        )

    built_edges: List[Edge] = []
    for position, spec in enumerate(edge_specs):
        for end in (spec.source, spec.target):
            if end not in built_steps:
                problems.append(f"Edge {spec.source} -> {spec.target} references unknown step '{end}'")
        predicate = None
        if spec.branch_type is BranchType.CUSTOM:
            if not spec.branch_condition:
                problems.append(f"Custom edge {spec.source} -> {spec.target} has no branch condition")
            else:
                try:
                    predicate = Predicate(spec.branch_condition)
                except ValueError as e:
                    problems.append(f"Custom edge {spec.source} -> {spec.target}: {e}")
        built_edges.append(Edge(
            position=position,
            source=spec.source,
            target=spec.target,
            branch_type=spec.branch_type,
            branch_condition=spec.branch_condition,
            branch_condition_name=spec.branch_condition_name,
            predicate=predicate,
        ))

    if problems:
        raise GraphValidationError(problems)

    problems.extend(_check_structure(built_steps, built_edges))
    entry_points = [
        step_id for step_id in built_steps
        if not any(edge.target == step_id for edge in built_edges)
    ]
    if len(entry_points) != 1:
        problems.append(
            f"Process must have exactly one entry step, found {len(entry_points)}: {entry_points}"
        )

    if problems:
        raise GraphValidationError(problems)

    return ProcessGraph(
        graph_id=graph_id or str(uuid.uuid4()),
        name=name,
        description=description,
        steps=built_steps,
        edges=tuple(built_edges),
        entry_step=entry_points[0],
    )


def _parse(model, items, label: str, problems: List[str]) -> list:
    parsed = []
    for index, item in enumerate(items):
        if isinstance(item, model):
            parsed.append(item)
            continue
        try:
            parsed.append(model.model_validate(item))
        except ValidationError as e:
            details = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            problems.append(f"Invalid {label} #{index}: {details}")
    return parsed


def _check_structure(steps: Dict[str, Step], edges: List[Edge]) -> List[str]:
    """Rollback placement and acyclicity of the normal (non-error) path."""
    problems = []

    for step_id, step in steps.items():
        incoming = [e for e in edges if e.target == step_id]
        if step.kind is StepKind.ROLLBACK:
            if not incoming:
                problems.append(f"Rollback step '{step_id}' has no incoming error edge")
            for edge in incoming:
                if edge.branch_type is not BranchType.ERROR:
                    problems.append(
                        f"Rollback step '{step_id}' has a {edge.branch_type.value} edge "
                        f"from '{edge.source}'; only error edges may lead to a rollback"
                    )
        elif incoming and all(e.branch_type is BranchType.ERROR for e in incoming):
            problems.append(
                f"Step '{step_id}' is only reachable through error edges and must be a rollback step"
            )

    # Kahn's algorithm over on-success and custom edges
    children: Dict[str, List[str]] = {step_id: [] for step_id in steps}
    indegree: Dict[str, int] = {step_id: 0 for step_id in steps}
    for edge in edges:
        if edge.branch_type is not BranchType.ERROR:
            children[edge.source].append(edge.target)
            indegree[edge.target] += 1

    queue = deque(step_id for step_id, degree in indegree.items() if degree == 0)
    processed = 0
    while queue:
        step_id = queue.popleft()
        processed += 1
        for child in children[step_id]:
            indegree[child] -= 1
            if indegree[child] == 0:
                queue.append(child)

    if processed != len(steps):
        stuck = sorted(step_id for step_id, degree in indegree.items() if degree > 0)
        problems.append(f"Process has a cycle through steps: {stuck}")

    # A rollback step waits on all of its error edges, so none may come from its own descendants
    successors: Dict[str, List[str]] = {step_id: [] for step_id in steps}
    for edge in edges:
        successors[edge.source].append(edge.target)
    for step_id, step in steps.items():
        if step.kind is not StepKind.ROLLBACK:
            continue
        downstream = _reachable(step_id, successors)
        for edge in edges:
            if edge.target == step_id and edge.source in downstream:
                problems.append(
                    f"Error edge {edge.source} -> {step_id} closes a cycle through rollback step '{step_id}'"
                )

    return problems


def _reachable(start: str, successors: Dict[str, List[str]]) -> Set[str]:
    """Every step reachable from `start` along any edge, `start` included."""
    seen = {start}
    queue = deque([start])
    while queue:
        for child in successors[queue.popleft()]:
            if child not in seen:
                seen.add(child)
                queue.append(child)
    return seen

"""
Run State for DeployFlow.

A JobRun is the mutable record of one execution of a process graph. It is
owned by exactly one ExecutionEngine and is serializable so that a suspended
run can be persisted and resumed.
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from deployflow.engine.step import StepKind, StepStatus, normalize_token


class RunState(str, Enum):
    """Lifecycle of a JobRun."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"

    @property
    def is_terminal(self) -> bool:
        return self in (RunState.SUCCEEDED, RunState.FAILED, RunState.ROLLED_BACK)


_BUILTIN_NAMES = {"run_id", "graph_id", "rollback_of", "is_rollback"}


@dataclass
class RunContext:
    """
    Runtime context of a run, shared by executors and edge predicates.

    Names resolve in this order: run_id, graph_id, rollback_of, is_rollback
    (camelCase accepted), then `properties.<key>`, `outputs.<step>.<key>`,
    and finally bare job property names.
    """

    run_id: str
    graph_id: str
    rollback_of: Optional[str] = None
    properties: Dict[str, Any] = field(default_factory=dict)
    outputs: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @property
    def is_rollback(self) -> bool:
        """Whether this run is itself a rollback replay of another run."""
        return self.rollback_of is not None

    def lookup(self, path: str) -> Any:
        """
        Resolve a dotted reference.

        Raises:
            KeyError: If any segment of the path is undefined
        """
        head, *rest = [part.strip() for part in path.strip().split(".")]
        builtin = normalize_token(head, "_")

        if builtin in _BUILTIN_NAMES:
            value: Any = getattr(self, builtin)
        elif head == "properties":
            value = self.properties
        elif head == "outputs":
            value = self.outputs
        elif head in self.properties:
            value = self.properties[head]
        else:
            raise KeyError(path)

        for part in rest:
            if isinstance(value, dict) and part in value:
                value = value[part]
            else:
                raise KeyError(path)
        return value


class StepRecord(BaseModel):
    """Runtime record of one step within a run."""

    step_id: str
    kind: StepKind
    status: StepStatus = StepStatus.PENDING
    payload: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    attempts: int = 0
    decision: Optional[Dict[str, Any]] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[float] = None


class EdgeTransition(BaseModel):
    """An edge that fired during the run."""

    source: str
    target: str
    branch_type: str
    condition_name: Optional[str] = None
    fired_at: datetime = Field(default_factory=datetime.now)


class RunError(BaseModel):
    """Serializable summary of the error that ended a run."""

    kind: str
    message: str
    step_id: Optional[str] = None
    edge: Optional[EdgeTransition] = None


class JobRun(BaseModel):
    """
    One execution instance of a process graph.

    Attributes:
        run_id: Unique run identifier
        graph_id: The process graph being executed
        rollback_of: Originating run id when this run is a rollback replay
        properties: Job-scoped key/value properties
        steps: Step id -> runtime record
        transitions: Edges that fired, in order
        state: Run lifecycle state
        rollback_step: The rollback step dispatched for this run, if any
        aborted_by: The step whose abortJob failure cancelled the run
        error: What ended the run, if it did not succeed
    """

    run_id: str
    graph_id: str
    graph_name: str = ""
    rollback_of: Optional[str] = None
    properties: Dict[str, Any] = Field(default_factory=dict)
    steps: Dict[str, StepRecord] = Field(default_factory=dict)
    transitions: List[EdgeTransition] = Field(default_factory=list)
    state: RunState = RunState.PENDING
    rollback_step: Optional[str] = None
    aborted_by: Optional[str] = None
    error: Optional[RunError] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def record(self, step_id: str) -> StepRecord:
        return self.steps[step_id]

    def status_of(self, step_id: str) -> StepStatus:
        return self.steps[step_id].status

    @property
    def error_transition(self) -> Optional[EdgeTransition]:
        """The first ERROR edge that fired, if any."""
        for transition in self.transitions:
            if transition.branch_type == "error":
                return transition
        return None

    def fired_from(self, step_id: str) -> List[EdgeTransition]:
        return [t for t in self.transitions if t.source == step_id]

    def to_dict(self) -> Dict[str, Any]:
        """Convert the run to a JSON-compatible dictionary."""
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobRun":
        """Restore a run from its dictionary form."""
        return cls.model_validate(data)

"""
Step Definition for DeployFlow.

Steps are the executable units of a process graph. A step definition is
immutable; its runtime status lives on the JobRun that executes it.
"""

from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional
from dataclasses import dataclass, field
from enum import Enum
import re


_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def normalize_token(value: Any, separator: str) -> str:
    """Normalize 'abortJob', 'abort-job' and 'ABORT_JOB' to one spelling."""
    text = _CAMEL_BOUNDARY.sub(separator, str(value).strip())
    return re.sub(r"[-_\s]+", separator, text).lower()


class StepKind(str, Enum):
    """Kinds of steps in a process graph."""
    COMPONENT_PROCESS = "component-process"  # Deploys an application component
    COMMAND = "command"                      # Runs a command on the agent
    MANUAL = "manual"                        # Waits for an approval decision
    ROLLBACK = "rollback"                    # Compensates a failed run
    SUB_PROCESS = "sub-process"              # Runs another process graph

    @classmethod
    def _missing_(cls, value):
        normalized = normalize_token(value, "-")
        for member in cls:
            if member.value == normalized:
                return member
        return None

    @property
    def is_external(self) -> bool:
        """Whether steps of this kind are delegated to the executor collaborator."""
        return self not in (StepKind.MANUAL, StepKind.ROLLBACK)


class ErrorPolicy(str, Enum):
    """How a step failure propagates through the run."""
    FAIL_PROCEDURE = "fail_procedure"  # Fail the step, let error edges fire
    ABORT_JOB = "abort_job"            # Fail the step and cancel everything else

    @classmethod
    def _missing_(cls, value):
        normalized = normalize_token(value, "_")
        for member in cls:
            if member.value == normalized:
                return member
        return None


class StepStatus(str, Enum):
    """Runtime status of a step within one run."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (StepStatus.SUCCEEDED, StepStatus.FAILED, StepStatus.CANCELLED)


@dataclass(frozen=True)
class Step:
    """
    A step in a process graph.

    Attributes:
        id: Unique name within the graph
        kind: What the step does and who executes it
        parameters: Values or $[reference] expressions for the executor
        error_policy: Failure propagation rule
        description: Human-readable description
    """

    id: str
    kind: StepKind
    parameters: Mapping[str, Any] = field(default_factory=dict)
    error_policy: ErrorPolicy = ErrorPolicy.FAIL_PROCEDURE
    description: str = ""

    def __post_init__(self):
        if not self.id:
            raise ValueError("Step id cannot be empty")
        object.__setattr__(self, "kind", StepKind(self.kind))
        object.__setattr__(self, "error_policy", ErrorPolicy(self.error_policy))
        object.__setattr__(self, "parameters", MappingProxyType(dict(self.parameters)))

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the step to a dictionary."""
        return {
            "id": self.id,
            "kind": self.kind.value,
            "parameters": dict(self.parameters),
            "error_policy": self.error_policy.value,
            "description": self.description,
        }


@dataclass(frozen=True)
class StepResult:
    """Outcome reported by whoever executed a step."""

    status: StepStatus
    payload: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def __post_init__(self):
        if self.status not in (StepStatus.SUCCEEDED, StepStatus.FAILED):
            raise ValueError(f"A step result must be succeeded or failed, got {self.status.value}")

    @classmethod
    def succeeded(cls, payload: Optional[Dict[str, Any]] = None) -> "StepResult":
        return cls(StepStatus.SUCCEEDED, payload or {})

    @classmethod
    def failed(cls, error: str, payload: Optional[Dict[str, Any]] = None) -> "StepResult":
        return cls(StepStatus.FAILED, payload or {}, error)

    @property
    def ok(self) -> bool:
        return self.status is StepStatus.SUCCEEDED

"""
Engine exceptions.

Only GraphValidationError and RollbackFailure are unrecoverable. Step failures
are recorded on the run and drive edge evaluation; they reach callers only
through RunResult.raise_for_error().
"""

from typing import Any, Dict, List, Optional


class EngineError(Exception):
    """Base class for all DeployFlow engine errors."""

    def __init__(
        self,
        message: str,
        step_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.step_id = step_id
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": type(self).__name__,
            "message": self.message,
            "step_id": self.step_id,
            "details": self.details,
        }


class GraphValidationError(EngineError):
    """A process definition is malformed. Raised at build time."""

    def __init__(self, problems: List[str]):
        super().__init__(
            f"Graph validation failed: {'; '.join(problems)}",
            details={"problems": list(problems)},
        )
        self.problems = list(problems)


class StepExecutionFailure(EngineError):
    """
    A step's executor reports failure.

    Handlers raise this to fail a step with a payload attached.
    """

    def __init__(
        self,
        message: str,
        step_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, step_id=step_id, details={"payload": payload or {}})
        self.payload = payload or {}


class RunAbortedError(EngineError):
    """A step with the abortJob policy failed and cancelled the run."""


class RollbackFailure(EngineError):
    """The rollback step itself failed. No further compensation is attempted."""

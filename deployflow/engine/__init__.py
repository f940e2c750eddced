"""
Engine package - Process graph model and execution.
"""

from deployflow.engine.step import Step, StepKind, ErrorPolicy, StepStatus, StepResult
from deployflow.engine.state import RunContext, RunState, JobRun, StepRecord
from deployflow.engine.conditions import BranchType, ConditionEvaluator, register_condition
from deployflow.engine.graph import ProcessGraph, Edge, StepSpec, EdgeSpec, build_graph
from deployflow.engine.gates import Decision, ManualGateController, gate_controller
from deployflow.engine.rollback import RollbackController, rollback_controller
from deployflow.engine.executor import ExecutionEngine, RunResult, execute_graph
from deployflow.engine.errors import (
    EngineError,
    GraphValidationError,
    StepExecutionFailure,
    RunAbortedError,
    RollbackFailure,
)

__all__ = [
    "Step",
    "StepKind",
    "ErrorPolicy",
    "StepStatus",
    "StepResult",
    "RunContext",
    "RunState",
    "JobRun",
    "StepRecord",
    "BranchType",
    "ConditionEvaluator",
    "register_condition",
    "ProcessGraph",
    "Edge",
    "StepSpec",
    "EdgeSpec",
    "build_graph",
    "Decision",
    "ManualGateController",
    "gate_controller",
    "RollbackController",
    "rollback_controller",
    "ExecutionEngine",
    "RunResult",
    "execute_graph",
    "EngineError",
    "GraphValidationError",
    "StepExecutionFailure",
    "RunAbortedError",
    "RollbackFailure",
]

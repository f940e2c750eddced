"""
Async Process Executor.

The ExecutionEngine runs one JobRun of a ProcessGraph. Step work runs as
asyncio tasks so independent branches proceed concurrently, but every
completion goes through a single queue: deciding which edges fire and which
steps to dispatch next happens in one place, one event at a time.
"""

from typing import Any, Callable, Dict, List, Optional, Protocol, Set
from dataclasses import dataclass
from datetime import datetime
import asyncio
import inspect
import logging
import time
import uuid

from deployflow.config import settings
from deployflow.engine.conditions import BranchType, ConditionEvaluator
from deployflow.engine.errors import (
    EngineError,
    RollbackFailure,
    RunAbortedError,
    StepExecutionFailure,
)
from deployflow.engine.gates import Decision, ManualGateController, gate_controller
from deployflow.engine.graph import Edge, ProcessGraph
from deployflow.engine.rollback import RollbackController, rollback_controller
from deployflow.engine.state import (
    EdgeTransition,
    JobRun,
    RunContext,
    RunError,
    RunState,
    StepRecord,
)
from deployflow.engine.step import ErrorPolicy, Step, StepKind, StepResult, StepStatus


logger = logging.getLogger(__name__)


class StepExecutor(Protocol):
    """Executes component-process, command and sub-process steps."""

    async def execute(self, step: Step, context: RunContext) -> StepResult:
        ...


@dataclass
class RunResult:
    """Result of a process run."""
    run_id: str
    graph_id: str
    state: RunState
    job_run: JobRun
    error: Optional[EngineError] = None
    total_duration_ms: Optional[float] = None

    @property
    def error_transition(self) -> Optional[EdgeTransition]:
        """The first ERROR edge that fired, if any."""
        return self.job_run.error_transition

    @property
    def triggered_by(self) -> Optional[str]:
        """The step whose failure sent the run down an error path or ended it."""
        if self.error_transition is not None:
            return self.error_transition.source
        return self.error.step_id if self.error else None

    def status_of(self, step_id: str) -> StepStatus:
        return self.job_run.status_of(step_id)

    def raise_for_error(self) -> None:
        """Raise the run's error, if the run failed."""
        if self.error is not None:
            raise self.error

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.job_run.to_dict(),
            "triggered_by": self.triggered_by,
            "total_duration_ms": self.total_duration_ms,
        }


class ExecutionEngine:
    """
    Runs a process graph once.

    Handles:
    - Dispatching steps to the executor, the gate controller or the rollback controller
    - Evaluating every outgoing edge exactly once when its source finishes
    - Dispatching a step only after all of its incoming edges are resolved
    - failProcedure and abortJob error policies
    - Resuming a persisted run

    Usage:
        engine = ExecutionEngine(graph, handler_registry, properties={"env": "qa"})
        result = await engine.run()
    """

    def __init__(
        self,
        graph: ProcessGraph,
        executor: StepExecutor,
        run_id: Optional[str] = None,
        rollback_of: Optional[str] = None,
        properties: Optional[Dict[str, Any]] = None,
        *,
        rollback_executor: Optional[StepExecutor] = None,
        gates: Optional[ManualGateController] = None,
        rollbacks: Optional[RollbackController] = None,
        evaluator: Optional[ConditionEvaluator] = None,
        on_update: Optional[Callable[[JobRun], Any]] = None,
        max_parallel_steps: Optional[int] = None,
        step_timeout: Optional[float] = None,
        gate_timeout: Optional[float] = None,
        resume_from: Optional[JobRun] = None,
    ):
        """
        Initialize the engine.

        Args:
            graph: The process graph to execute
            executor: Collaborator for component-process, command and sub-process steps
            run_id: Optional run ID (generated if not provided)
            rollback_of: Originating run id when this run is a rollback replay
            properties: Job properties visible to parameters and predicates
            rollback_executor: Performs compensation (defaults to `executor`)
            gates: Manual gate controller (defaults to the global one)
            rollbacks: Rollback controller (defaults to the global one)
            evaluator: Edge condition evaluator
            on_update: Called with a snapshot of the run after every change
            max_parallel_steps: Bound on concurrent external steps
            step_timeout: Seconds before an external step fails
            gate_timeout: Seconds before a manual gate fails
            resume_from: Persisted run to continue instead of starting fresh
        """
        self.graph = graph
        self.executor = executor
        self.rollback_executor = rollback_executor or executor
        self.gates = gates or gate_controller
        self.rollbacks = rollbacks or rollback_controller
        self.evaluator = evaluator or ConditionEvaluator()
        self.on_update = on_update
        self.step_timeout = step_timeout if step_timeout is not None else settings.STEP_TIMEOUT
        self.gate_timeout = gate_timeout if gate_timeout is not None else settings.MANUAL_GATE_TIMEOUT
        self._semaphore = asyncio.Semaphore(max_parallel_steps or settings.MAX_PARALLEL_STEPS)

        if resume_from is not None:
            if resume_from.graph_id != graph.graph_id:
                raise ValueError(
                    f"Run {resume_from.run_id} belongs to graph '{resume_from.graph_id}', "
                    f"not '{graph.graph_id}'"
                )
            self.job_run = resume_from.model_copy(deep=True)
        else:
            self.job_run = JobRun(
                run_id=run_id or str(uuid.uuid4()),
                graph_id=graph.graph_id,
                graph_name=graph.name,
                rollback_of=rollback_of,
                properties=dict(properties or {}),
                steps={
                    step.id: StepRecord(step_id=step.id, kind=step.kind)
                    for step in graph.steps.values()
                },
            )
        self._resuming = resume_from is not None

        self.context = RunContext(
            run_id=self.job_run.run_id,
            graph_id=graph.graph_id,
            rollback_of=self.job_run.rollback_of,
            properties=self.job_run.properties,
            outputs={
                step_id: record.payload
                for step_id, record in self.job_run.steps.items()
                if record.status in (StepStatus.SUCCEEDED, StepStatus.FAILED)
            },
        )

        # Execution state
        self._events: asyncio.Queue = asyncio.Queue()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._edge_results: Dict[str, Dict[int, bool]] = {step_id: {} for step_id in graph.steps}
        self._resolved: Set[str] = set()
        self._error: Optional[EngineError] = None

    @property
    def run_id(self) -> str:
        return self.job_run.run_id

    @property
    def state(self) -> RunState:
        return self.job_run.state

    def submit_decision(
        self,
        step_id: str,
        decision: Decision,
        assignee: str,
        comment: str = ""
    ) -> bool:
        """Deliver a manual decision to one of this run's gates."""
        return self.gates.submit_decision(self.run_id, step_id, decision, assignee, comment)

    async def run(self) -> RunResult:
        """
        Execute the run until it reaches a terminal state.

        Returns:
            RunResult with the terminal state and the full JobRun
        """
        start_time = time.time()
        run = self.job_run
        run.state = RunState.RUNNING
        run.started_at = run.started_at or datetime.now()

        replay = f" (rollback replay of {run.rollback_of})" if run.rollback_of else ""
        logger.info(f"Starting run {run.run_id} of '{self.graph.name}'{replay}")

        try:
            if self._resuming:
                self._restore()
            else:
                self._dispatch(self.graph.steps[self.graph.entry_step])
            await self._notify()

            while self._tasks:
                step_id, result = await self._events.get()
                if self._tasks.pop(step_id, None) is None:
                    continue  # cancelled by an abort
                await self._complete(self.graph.steps[step_id], result)
                await self._notify()

            self._finalize()
            await self._notify()

        except asyncio.CancelledError:
            logger.warning(f"Run {run.run_id} interrupted with {len(self._tasks)} step(s) in flight")
            await self._cancel_tasks(mark=False)
            raise

        except Exception as e:
            logger.exception(f"Run {run.run_id} crashed: {e}")
            await self._cancel_tasks()
            run.state = RunState.FAILED
            run.completed_at = datetime.now()
            run.error = RunError(kind=type(e).__name__, message=str(e))
            await self._notify()
            raise

        finally:
            self.rollbacks.release(run.run_id)

        return RunResult(
            run_id=run.run_id,
            graph_id=run.graph_id,
            state=run.state,
            job_run=run,
            error=self._error,
            total_duration_ms=(time.time() - start_time) * 1000,
        )

    # ------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------

    def _dispatch(self, step: Step) -> None:
        self._resolved.add(step.id)
        if step.kind is StepKind.ROLLBACK:
            if not self.rollbacks.claim(self.run_id):
                logger.warning(
                    f"Rollback already dispatched for run {self.run_id}; not dispatching '{step.id}'"
                )
                return
            self.job_run.rollback_step = step.id
        self._start(step)

    def _start(self, step: Step) -> None:
        record = self.job_run.record(step.id)
        record.status = StepStatus.RUNNING
        record.attempts += 1
        record.started_at = datetime.now()
        record.completed_at = None

        if step.kind is StepKind.MANUAL:
            # Accept decisions as soon as the step shows as running
            self.gates.open(self.run_id, step.id)

        logger.info(f"Dispatching step '{step.id}' ({step.kind.value}) of run {self.run_id}")
        self._tasks[step.id] = asyncio.create_task(self._run_step(step))

    async def _run_step(self, step: Step) -> None:
        """Execute one step and post its result to the run's queue."""
        try:
            if step.kind is StepKind.MANUAL:
                result = await self.gates.wait(self.run_id, step, self.gate_timeout)
            elif step.kind is StepKind.ROLLBACK:
                result = await self.rollbacks.execute(step, self.context, self.rollback_executor)
            else:
                async with self._semaphore:
                    result = await self._call_executor(step)
            if not isinstance(result, StepResult):
                raise TypeError(
                    f"Executor must return a StepResult, got {type(result).__name__}"
                )
        except StepExecutionFailure as e:
            result = StepResult.failed(e.message, e.payload)
        except Exception as e:
            logger.error(f"Step '{step.id}' raised {type(e).__name__}: {e}")
            result = StepResult.failed(f"{type(e).__name__}: {e}")

        await self._events.put((step.id, result))

    async def _call_executor(self, step: Step) -> StepResult:
        call = self.executor.execute(step, self.context)
        if not self.step_timeout:
            return await call
        try:
            return await asyncio.wait_for(call, self.step_timeout)
        except asyncio.TimeoutError:
            return StepResult.failed(f"Timed out after {self.step_timeout}s")

    # ------------------------------------------------------------
    # Completion + edge evaluation
    # ------------------------------------------------------------

    async def _complete(self, step: Step, result: StepResult) -> None:
        record = self.job_run.record(step.id)
        record.status = result.status
        record.payload = dict(result.payload)
        record.error = result.error
        record.completed_at = datetime.now()
        if record.started_at:
            record.duration_ms = (record.completed_at - record.started_at).total_seconds() * 1000
        if step.kind is StepKind.MANUAL:
            record.decision = result.payload.get("decision")
        self.context.outputs[step.id] = record.payload

        if result.ok:
            logger.info(f"Step '{step.id}' succeeded")
        else:
            logger.warning(f"Step '{step.id}' failed: {result.error}")

        aborting = not result.ok and step.error_policy is ErrorPolicy.ABORT_JOB
        if aborting:
            await self._abort(step)

        for edge in self.graph.outgoing(step.id):
            if aborting and edge.branch_type is not BranchType.ERROR:
                continue

            fired = self.evaluator.eligible(edge, result.status, self.context)
            logger.debug(f"Edge {edge.source} -> {edge.target} [{edge.label}]: {'fired' if fired else 'not eligible'}")
            if fired:
                self._record_transition(edge)

            if aborting:
                if fired and edge.target not in self._resolved:
                    self._dispatch(self.graph.steps[edge.target])
            else:
                self._resolve_edge(edge, fired)

    def _record_transition(self, edge: Edge) -> None:
        self.job_run.transitions.append(EdgeTransition(
            source=edge.source,
            target=edge.target,
            branch_type=edge.branch_type.value,
            condition_name=edge.branch_condition_name or edge.branch_condition,
        ))
        if edge.branch_type is BranchType.ERROR:
            logger.warning(f"Error edge {edge.source} -> {edge.target} fired in run {self.run_id}")

    def _resolve_edge(self, edge: Edge, fired: bool) -> None:
        self._edge_results[edge.target][edge.position] = fired
        self._try_resolve(edge.target)

    def _try_resolve(self, step_id: str) -> None:
        """Dispatch or prune a step once every incoming edge is resolved."""
        if step_id in self._resolved:
            return
        incoming = self.graph.incoming(step_id)
        results = self._edge_results[step_id]
        if len(results) < len(incoming):
            return

        error_fired = any(
            results[e.position] for e in incoming if e.branch_type is BranchType.ERROR
        )
        normal = [results[e.position] for e in incoming if e.branch_type is not BranchType.ERROR]
        step = self.graph.steps[step_id]

        if not self.job_run.aborted_by and (error_fired or (normal and all(normal))):
            self._dispatch(step)
        else:
            self._prune(step)

    def _prune(self, step: Step) -> None:
        self._resolved.add(step.id)
        logger.debug(f"Step '{step.id}' will not run in run {self.run_id}")
        for edge in self.graph.outgoing(step.id):
            self._resolve_edge(edge, False)

    async def _abort(self, step: Step) -> None:
        """Cancel every other in-flight step except a running rollback."""
        self.job_run.aborted_by = step.id
        cancelled = await self._cancel_tasks(keep_rollback=True)
        logger.error(
            f"Step '{step.id}' failed with abortJob: cancelled {len(cancelled)} "
            f"in-flight step(s) of run {self.run_id}"
        )

    async def _cancel_tasks(self, keep_rollback: bool = False, mark: bool = True) -> List[str]:
        """
        Cancel in-flight steps and wait for them to unwind.

        With `mark` off the records stay running, so an interrupted run can be
        resumed from its last snapshot.
        """
        cancelled: Dict[str, asyncio.Task] = {}
        for step_id, task in list(self._tasks.items()):
            step = self.graph.steps[step_id]
            if keep_rollback and step.kind is StepKind.ROLLBACK:
                continue
            task.cancel()
            cancelled[step_id] = task
            del self._tasks[step_id]
            if step.kind is StepKind.MANUAL:
                self.gates.close(self.run_id, step_id)
            if mark:
                record = self.job_run.record(step_id)
                record.status = StepStatus.CANCELLED
                record.completed_at = datetime.now()

        if cancelled:
            await asyncio.gather(*cancelled.values(), return_exceptions=True)
        return list(cancelled)

    # ------------------------------------------------------------
    # Terminal state
    # ------------------------------------------------------------

    def _finalize(self) -> None:
        run = self.job_run
        run.completed_at = datetime.now()
        transition = run.error_transition

        if run.rollback_step is not None:
            record = run.record(run.rollback_step)
            if record.status is StepStatus.SUCCEEDED:
                run.state = RunState.ROLLED_BACK
            else:
                run.state = RunState.FAILED
                self._error = RollbackFailure(
                    f"Rollback step '{run.rollback_step}' failed: {record.error}",
                    step_id=run.rollback_step,
                    details={"triggered_by": transition.source if transition else None},
                )
        elif run.aborted_by is not None:
            run.state = RunState.FAILED
            self._error = RunAbortedError(
                f"Step '{run.aborted_by}' failed with abortJob policy: "
                f"{run.record(run.aborted_by).error}",
                step_id=run.aborted_by,
            )
        else:
            # A failure is handled only when an error edge from it led somewhere
            unhandled = [
                step_id for step_id, record in run.steps.items()
                if record.status is StepStatus.FAILED
                and not any(
                    t.branch_type == BranchType.ERROR.value
                    and run.status_of(t.target) is not StepStatus.PENDING
                    for t in run.fired_from(step_id)
                )
            ]
            if unhandled:
                run.state = RunState.FAILED
                self._error = StepExecutionFailure(
                    f"Step '{unhandled[0]}' failed: {run.record(unhandled[0]).error}",
                    step_id=unhandled[0],
                )
            else:
                run.state = RunState.SUCCEEDED

        if self._error is not None:
            run.error = RunError(
                kind=type(self._error).__name__,
                message=self._error.message,
                step_id=self._error.step_id,
                edge=transition,
            )
            logger.error(f"Run {run.run_id} {run.state.value}: {self._error.message}")
        else:
            logger.info(f"Run {run.run_id} {run.state.value}")

    # ------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------

    def _restore(self) -> None:
        """Rebuild scheduling state from a persisted run without re-running finished steps."""
        run = self.job_run
        logger.info(f"Resuming run {run.run_id} from snapshot")

        for step_id, record in run.steps.items():
            if record.status is not StepStatus.PENDING:
                self._resolved.add(step_id)
        if run.rollback_step is not None:
            self.rollbacks.claim(run.run_id)

        for step_id, record in run.steps.items():
            if record.status not in (StepStatus.SUCCEEDED, StepStatus.FAILED):
                continue
            step = self.graph.steps[step_id]
            aborting = record.status is StepStatus.FAILED and step.error_policy is ErrorPolicy.ABORT_JOB
            for edge in self.graph.outgoing(step_id):
                if aborting and edge.branch_type is not BranchType.ERROR:
                    continue
                fired = self.evaluator.eligible(edge, record.status, self.context)
                self._edge_results[edge.target][edge.position] = fired

        for step_id, record in run.steps.items():
            if record.status is StepStatus.RUNNING:
                self._start(self.graph.steps[step_id])

        if self.graph.entry_step not in self._resolved:
            self._dispatch(self.graph.steps[self.graph.entry_step])
        for step_id in self.graph.steps:
            self._try_resolve(step_id)

    async def _notify(self) -> None:
        if self.on_update is None:
            return
        try:
            outcome = self.on_update(self.job_run.model_copy(deep=True))
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.warning(f"Run update callback failed: {e}")

    def get_execution_summary(self) -> Dict[str, Any]:
        """Get a summary of the current execution."""
        return {
            "run_id": self.run_id,
            "graph_id": self.graph.graph_id,
            "state": self.state.value,
            "running_steps": sorted(self._tasks),
            "waiting_gates": [step_id for _, step_id in self.gates.pending(self.run_id)],
            "rollback_step": self.job_run.rollback_step,
        }


async def execute_graph(
    graph: ProcessGraph,
    executor: StepExecutor,
    properties: Optional[Dict[str, Any]] = None,
    run_id: Optional[str] = None,
    rollback_of: Optional[str] = None,
    **options: Any
) -> RunResult:
    """
    Convenience function to execute a graph.

    Args:
        graph: The process graph
        executor: Step executor collaborator
        properties: Job properties
        run_id: Optional run ID
        rollback_of: Originating run id for a rollback replay
        **options: Passed to ExecutionEngine

    Returns:
        RunResult
    """
    engine = ExecutionEngine(
        graph, executor, run_id=run_id, rollback_of=rollback_of, properties=properties, **options
    )
    return await engine.run()

"""
Tests for the DeployFlow engine core components.
"""

import pytest
import asyncio
from typing import Any, Dict, List, Optional

from deployflow.engine.conditions import (
    BranchType,
    ConditionEvaluator,
    Predicate,
    UndefinedReference,
    register_condition,
)
from deployflow.engine.errors import (
    GraphValidationError,
    RollbackFailure,
    RunAbortedError,
    StepExecutionFailure,
)
from deployflow.engine.executor import ExecutionEngine, execute_graph
from deployflow.engine.gates import Decision, ManualGateController
from deployflow.engine.graph import Edge, build_graph
from deployflow.engine.rollback import RollbackController
from deployflow.engine.state import JobRun, RunContext, RunState
from deployflow.engine.step import ErrorPolicy, Step, StepKind, StepResult, StepStatus


# ============================================================
# Helpers
# ============================================================

class ScriptedExecutor:
    """Step executor whose outcome per step id is scripted by the test."""

    def __init__(
        self,
        failing: Optional[List[str]] = None,
        blocking: Optional[List[str]] = None,
        delays: Optional[Dict[str, float]] = None,
    ):
        self.failing = set(failing or [])
        self.blocking = set(blocking or [])
        self.delays = delays or {}
        self.calls: List[str] = []
        self.cancelled: List[str] = []
        self.running = 0
        self.max_running = 0

    async def execute(self, step: Step, context: RunContext) -> StepResult:
        self.calls.append(step.id)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            if step.id in self.blocking:
                await asyncio.Event().wait()
            await asyncio.sleep(self.delays.get(step.id, 0))
        except asyncio.CancelledError:
            self.cancelled.append(step.id)
            raise
        finally:
            self.running -= 1

        if step.id in self.failing:
            return StepResult.failed(f"{step.id} failed")
        return StepResult.succeeded({"step": step.id})


def step(step_id: str, kind: str = "command", **extra) -> Dict[str, Any]:
    return {"id": step_id, "kind": kind, **extra}


def edge(source: str, target: str, branch_type: str = "ALWAYS", **extra) -> Dict[str, Any]:
    return {"source": source, "target": target, "branch_type": branch_type, **extra}


def validation_graph():
    """Entry --ALWAYS/CUSTOM--> Validate(manual) --ERROR--> Rollback."""
    return build_graph(
        [step("Entry"), step("Validate", "manual"), step("Rollback", "rollback")],
        [
            edge("Entry", "Validate"),
            edge("Entry", "Validate", "CUSTOM", branch_condition="not rollback replay"),
            edge("Validate", "Rollback", "ERROR"),
        ],
        name="Validation",
    )


async def wait_for_gate(gates: ManualGateController, run_id: str, step_id: str):
    for _ in range(500):
        if gates.is_waiting(run_id, step_id):
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"Gate '{step_id}' never suspended")


# ============================================================
# Step Model Tests
# ============================================================

class TestStepModel:
    """Tests for steps, results and enum spellings."""

    def test_enum_aliases(self):
        """Upstream spellings map to the same members."""
        assert StepKind("componentProcess") is StepKind.COMPONENT_PROCESS
        assert StepKind("sub_process") is StepKind.SUB_PROCESS
        assert ErrorPolicy("abortJob") is ErrorPolicy.ABORT_JOB
        assert ErrorPolicy("failProcedure") is ErrorPolicy.FAIL_PROCEDURE
        assert BranchType("ALWAYS") is BranchType.ON_SUCCESS
        assert BranchType("CUSTOM") is BranchType.CUSTOM

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValueError):
            StepKind("teleport")

    def test_step_is_immutable(self):
        """Step definitions cannot be changed after construction."""
        s = Step(id="Deploy", kind="command", parameters={"command": "true"})
        with pytest.raises(TypeError):
            s.parameters["command"] = "false"
        with pytest.raises(Exception):
            s.id = "Other"

    def test_step_requires_id(self):
        with pytest.raises(ValueError):
            Step(id="", kind="command")

    def test_result_must_be_terminal(self):
        """A step result is either succeeded or failed."""
        with pytest.raises(ValueError):
            StepResult(StepStatus.RUNNING)
        assert StepResult.succeeded().ok
        assert not StepResult.failed("boom").ok


# ============================================================
# Run Context Tests
# ============================================================

class TestRunContext:
    """Tests for reference lookup."""

    def test_lookup(self):
        context = RunContext(
            run_id="r1",
            graph_id="g1",
            properties={"environment": "qa"},
            outputs={"Retrieve": {"version": "1.2.0"}},
        )
        assert context.lookup("run_id") == "r1"
        assert context.lookup("isRollback") is False
        assert context.lookup("properties.environment") == "qa"
        assert context.lookup("environment") == "qa"
        assert context.lookup("outputs.Retrieve.version") == "1.2.0"

    def test_undefined_reference(self):
        context = RunContext(run_id="r1", graph_id="g1")
        with pytest.raises(KeyError):
            context.lookup("properties.missing")
        with pytest.raises(KeyError):
            context.lookup("outputs.Retrieve.version")

    def test_rollback_replay(self):
        context = RunContext(run_id="r2", graph_id="g1", rollback_of="r1")
        assert context.is_rollback
        assert context.lookup("rollback_of") == "r1"


# ============================================================
# Condition Tests
# ============================================================

class TestPredicate:
    """Tests for CUSTOM edge predicates."""

    def test_named_condition(self):
        predicate = Predicate("not rollback replay")
        assert predicate.evaluate(RunContext(run_id="r", graph_id="g"))
        assert not predicate.evaluate(RunContext(run_id="r", graph_id="g", rollback_of="x"))

    def test_expression(self):
        context = RunContext(run_id="r", graph_id="g", properties={"environment": "qa", "replicas": 3})
        assert Predicate('environment == "qa" and replicas >= 2').evaluate(context)
        assert Predicate("$[properties.environment in ['qa', 'staging']]").evaluate(context)
        assert not Predicate("not environment == 'qa'").evaluate(context)

    def test_undefined_reference_raises(self):
        with pytest.raises(UndefinedReference):
            Predicate("properties.missing == 1").evaluate(RunContext(run_id="r", graph_id="g"))

    def test_invalid_syntax(self):
        with pytest.raises(ValueError):
            Predicate("environment ==")

    def test_calls_are_rejected(self):
        with pytest.raises(ValueError):
            Predicate("__import__('os').getcwd()")


class TestConditionEvaluator:
    """Tests for the firing rules of each branch type."""

    def setup_method(self):
        self.evaluator = ConditionEvaluator()
        self.context = RunContext(run_id="r", graph_id="g")

    def test_on_success(self):
        e = Edge(position=0, source="A", target="B")
        assert self.evaluator.eligible(e, StepStatus.SUCCEEDED, self.context)
        assert not self.evaluator.eligible(e, StepStatus.FAILED, self.context)

    def test_error(self):
        e = Edge(position=0, source="A", target="B", branch_type=BranchType.ERROR)
        assert self.evaluator.eligible(e, StepStatus.FAILED, self.context)
        assert not self.evaluator.eligible(e, StepStatus.SUCCEEDED, self.context)

    def test_custom_requires_success(self):
        e = Edge(position=0, source="A", target="B", branch_type=BranchType.CUSTOM, branch_condition="True")
        assert self.evaluator.eligible(e, StepStatus.SUCCEEDED, self.context)
        assert not self.evaluator.eligible(e, StepStatus.FAILED, self.context)

    def test_undefined_reference_is_false(self):
        e = Edge(
            position=0, source="A", target="B",
            branch_type=BranchType.CUSTOM, branch_condition="properties.missing == 'x'",
        )
        assert not self.evaluator.eligible(e, StepStatus.SUCCEEDED, self.context)


# ============================================================
# Graph Tests
# ============================================================

class TestBuildGraph:
    """Tests for graph validation and construction."""

    def test_build(self):
        graph = validation_graph()
        assert graph.entry_step == "Entry"
        assert graph.rollback_steps == ["Rollback"]
        assert graph.has_manual_steps
        assert [e.target for e in graph.outgoing("Entry")] == ["Validate", "Validate"]
        assert len(graph.incoming("Validate")) == 2

    def test_to_dict_rebuilds(self):
        graph = validation_graph()
        definition = graph.to_dict()
        rebuilt = build_graph(definition["steps"], definition["edges"], name=definition["name"])
        assert list(rebuilt.steps) == list(graph.steps)
        assert "graph TD" in graph.to_mermaid()

    def test_empty_graph(self):
        with pytest.raises(GraphValidationError):
            build_graph([])

    def test_duplicate_ids(self):
        with pytest.raises(GraphValidationError) as exc_info:
            build_graph([step("A"), step("A")])
        assert any("Duplicate" in p for p in exc_info.value.problems)

    def test_unknown_edge_reference(self):
        with pytest.raises(GraphValidationError) as exc_info:
            build_graph([step("A")], [edge("A", "Ghost")])
        assert any("Ghost" in p for p in exc_info.value.problems)

    def test_custom_edge_needs_condition(self):
        with pytest.raises(GraphValidationError):
            build_graph([step("A"), step("B")], [edge("A", "B", "CUSTOM")])

    def test_custom_edge_condition_must_parse(self):
        with pytest.raises(GraphValidationError):
            build_graph([step("A"), step("B")], [edge("A", "B", "CUSTOM", branch_condition="a ==")])

    def test_cycle(self):
        with pytest.raises(GraphValidationError) as exc_info:
            build_graph(
                [step("A"), step("B"), step("C")],
                [edge("A", "B"), edge("B", "C"), edge("C", "B")],
            )
        assert any("cycle" in p for p in exc_info.value.problems)

    def test_single_entry(self):
        with pytest.raises(GraphValidationError) as exc_info:
            build_graph([step("A"), step("B")])
        assert any("entry" in p for p in exc_info.value.problems)

    def test_rollback_only_via_error_edges(self):
        with pytest.raises(GraphValidationError):
            build_graph([step("A"), step("R", "rollback")], [edge("A", "R")])

    def test_error_only_target_must_be_rollback(self):
        with pytest.raises(GraphValidationError):
            build_graph([step("A"), step("B")], [edge("A", "B", "ERROR")])

    def test_rollback_cannot_wait_on_its_descendants(self):
        """An error edge from downstream of a rollback step back into it is rejected."""
        with pytest.raises(GraphValidationError) as exc_info:
            build_graph(
                [step("E"), step("A"), step("R", "rollback"), step("Notify")],
                [
                    edge("E", "A"), edge("A", "R", "ERROR"),
                    edge("R", "Notify"), edge("Notify", "R", "ERROR"),
                ],
            )
        assert any("Notify -> R" in p for p in exc_info.value.problems)

    def test_invalid_descriptor(self):
        """Malformed descriptors are reported, not raised as pydantic errors."""
        with pytest.raises(GraphValidationError) as exc_info:
            build_graph([{"id": "A", "kind": "teleport"}, {"kind": "command"}])
        assert len(exc_info.value.problems) == 2


# ============================================================
# Gate + Rollback Controller Tests
# ============================================================

class TestControllers:
    """Tests for the manual gate and rollback controllers."""

    def test_rollback_claim_once(self):
        controller = RollbackController()
        assert controller.claim("run-1")
        assert not controller.claim("run-1")
        assert controller.claim("run-2")
        assert controller.is_claimed("run-1")

    def test_rollback_release(self):
        controller = RollbackController()
        controller.claim("run-1")
        controller.release("run-1")
        assert not controller.is_claimed("run-1")
        assert len(controller) == 0
        controller.release("never-claimed")

    @pytest.mark.asyncio
    async def test_decision_before_wait_is_kept(self):
        """A gate opened ahead of its step accepts a decision right away."""
        gates = ManualGateController()
        gates.open("run-1", "Validate")
        assert gates.is_waiting("run-1", "Validate")
        assert gates.submit_decision("run-1", "Validate", Decision.APPROVE, "alice")

        result = await gates.wait("run-1", Step(id="Validate", kind="manual"), timeout=1)
        assert result.ok
        assert gates.pending() == []

    @pytest.mark.asyncio
    async def test_close_gate(self):
        gates = ManualGateController()
        gates.open("run-1", "Validate")
        gates.close("run-1", "Validate")
        assert not gates.is_waiting("run-1", "Validate")
        assert not gates.submit_decision("run-1", "Validate", Decision.APPROVE, "alice")

    def test_decision_without_waiting_gate(self):
        gates = ManualGateController()
        assert not gates.submit_decision("run-1", "Validate", "approve", "alice")

    @pytest.mark.asyncio
    async def test_first_decision_wins(self):
        gates = ManualGateController()
        gate = Step(id="Validate", kind="manual")
        waiter = asyncio.create_task(gates.wait("run-1", gate))
        await wait_for_gate(gates, "run-1", "Validate")

        assert gates.submit_decision("run-1", "Validate", Decision.REJECT, "bob")
        assert not gates.submit_decision("run-1", "Validate", Decision.APPROVE, "alice")

        result = await waiter
        assert result.status is StepStatus.FAILED
        assert "bob" in result.error
        assert gates.pending() == []

    @pytest.mark.asyncio
    async def test_gate_timeout(self):
        gates = ManualGateController()
        result = await gates.wait("run-1", Step(id="Validate", kind="manual"), timeout=0.01)
        assert result.status is StepStatus.FAILED
        assert not gates.is_waiting("run-1", "Validate")


# ============================================================
# Execution Engine Tests
# ============================================================

class TestExecutionEngine:
    """Tests for running process graphs."""

    @pytest.mark.asyncio
    async def test_all_steps_succeed(self):
        """No ERROR edge fires when every step succeeds."""
        graph = build_graph(
            [step("A"), step("B"), step("C"), step("R", "rollback")],
            [edge("A", "B"), edge("A", "C"), edge("B", "R", "ERROR"), edge("C", "R", "ERROR")],
        )
        executor = ScriptedExecutor()
        result = await execute_graph(graph, executor, rollbacks=RollbackController())

        assert result.state is RunState.SUCCEEDED
        assert result.error is None
        assert result.error_transition is None
        assert result.status_of("R") is StepStatus.PENDING
        assert sorted(executor.calls) == ["A", "B", "C"]
        result.raise_for_error()

    @pytest.mark.asyncio
    async def test_failure_with_error_edge_rolls_back(self):
        graph = build_graph(
            [step("A"), step("B"), step("R", "rollback")],
            [edge("A", "B"), edge("B", "R", "ERROR")],
        )
        result = await execute_graph(graph, ScriptedExecutor(failing=["B"]))

        assert result.state is RunState.ROLLED_BACK
        assert result.status_of("B") is StepStatus.FAILED
        assert result.status_of("R") is StepStatus.SUCCEEDED
        assert result.triggered_by == "B"
        assert result.error_transition.target == "R"
        assert result.job_run.rollback_step == "R"

    @pytest.mark.asyncio
    async def test_failure_without_error_edge_fails(self):
        graph = build_graph([step("A"), step("B"), step("C")], [edge("A", "B"), edge("B", "C")])
        result = await execute_graph(graph, ScriptedExecutor(failing=["B"]))

        assert result.state is RunState.FAILED
        assert isinstance(result.error, StepExecutionFailure)
        assert result.triggered_by == "B"
        assert result.job_run.error.step_id == "B"
        assert result.status_of("C") is StepStatus.PENDING
        with pytest.raises(StepExecutionFailure):
            result.raise_for_error()

    @pytest.mark.asyncio
    async def test_false_custom_edge_leaves_target_pending(self):
        graph = build_graph(
            [step("A"), step("B"), step("C")],
            [
                edge("A", "B", "CUSTOM", branch_condition="environment == 'prod'"),
                edge("B", "C"),
            ],
        )
        executor = ScriptedExecutor()
        result = await execute_graph(graph, executor, properties={"environment": "qa"})

        assert result.state is RunState.SUCCEEDED
        assert result.status_of("B") is StepStatus.PENDING
        assert result.status_of("C") is StepStatus.PENDING
        assert executor.calls == ["A"]

    @pytest.mark.asyncio
    async def test_undefined_reference_is_not_eligible(self):
        graph = build_graph(
            [step("A"), step("B")],
            [edge("A", "B", "CUSTOM", branch_condition="$[outputs.A.missing]")],
        )
        result = await execute_graph(graph, ScriptedExecutor())
        assert result.status_of("B") is StepStatus.PENDING

    @pytest.mark.asyncio
    async def test_abort_job_cancels_in_flight_branches(self):
        graph = build_graph(
            [
                step("Entry"),
                step("A", error_policy="abortJob"),
                step("B"), step("C"), step("B2"), step("C2"),
            ],
            [
                edge("Entry", "A"), edge("Entry", "B"), edge("Entry", "C"),
                edge("B", "B2"), edge("C", "C2"),
            ],
        )
        executor = ScriptedExecutor(failing=["A"], blocking=["B", "C"], delays={"A": 0.05})
        result = await execute_graph(graph, executor)

        assert result.state is RunState.FAILED
        assert isinstance(result.error, RunAbortedError)
        assert result.job_run.aborted_by == "A"
        assert sorted(executor.cancelled) == ["B", "C"]
        assert result.status_of("B") is StepStatus.CANCELLED
        assert result.status_of("C") is StepStatus.CANCELLED
        assert result.status_of("B2") is StepStatus.PENDING
        assert result.status_of("C2") is StepStatus.PENDING
        assert not any(t.source in ("B", "C") for t in result.job_run.transitions)

    @pytest.mark.asyncio
    async def test_abort_job_still_follows_error_edge(self):
        graph = build_graph(
            [step("A", error_policy="abortJob"), step("B"), step("R", "rollback")],
            [edge("A", "B"), edge("A", "R", "ERROR")],
        )
        result = await execute_graph(graph, ScriptedExecutor(failing=["A"]))

        assert result.state is RunState.ROLLED_BACK
        assert result.status_of("B") is StepStatus.PENDING
        assert result.triggered_by == "A"

    @pytest.mark.asyncio
    async def test_rollback_dispatched_once(self):
        """Two failures pointing at one rollback step invoke it once."""
        graph = build_graph(
            [step("Entry"), step("A"), step("B"), step("R", "rollback")],
            [
                edge("Entry", "A"), edge("Entry", "B"),
                edge("A", "R", "ERROR"), edge("B", "R", "ERROR"),
            ],
        )
        executor = ScriptedExecutor(failing=["A", "B"], delays={"B": 0.02})
        result = await execute_graph(graph, executor)

        assert result.state is RunState.ROLLED_BACK
        assert executor.calls.count("R") == 1
        assert result.job_run.record("R").attempts == 1

    @pytest.mark.asyncio
    async def test_only_one_rollback_step_per_run(self):
        graph = build_graph(
            [step("Entry"), step("A"), step("B"), step("RA", "rollback"), step("RB", "rollback")],
            [
                edge("Entry", "A"), edge("Entry", "B"),
                edge("A", "RA", "ERROR"), edge("B", "RB", "ERROR"),
            ],
        )
        executor = ScriptedExecutor(failing=["A", "B"], delays={"B": 0.02})
        result = await execute_graph(graph, executor)

        assert executor.calls.count("RA") + executor.calls.count("RB") == 1
        assert result.job_run.rollback_step == "RA"
        assert result.status_of("RB") is StepStatus.PENDING

    @pytest.mark.asyncio
    async def test_rollback_failure(self):
        graph = build_graph(
            [step("A"), step("R", "rollback")],
            [edge("A", "R", "ERROR")],
        )
        result = await execute_graph(graph, ScriptedExecutor(failing=["A", "R"]))

        assert result.state is RunState.FAILED
        assert isinstance(result.error, RollbackFailure)
        assert result.triggered_by == "A"
        with pytest.raises(RollbackFailure):
            result.raise_for_error()

    @pytest.mark.asyncio
    async def test_separate_rollback_executor(self):
        graph = build_graph([step("A"), step("R", "rollback")], [edge("A", "R", "ERROR")])
        executor = ScriptedExecutor(failing=["A"])
        compensator = ScriptedExecutor()
        result = await execute_graph(graph, executor, rollback_executor=compensator)

        assert result.state is RunState.ROLLED_BACK
        assert compensator.calls == ["R"]
        assert "R" not in executor.calls

    @pytest.mark.asyncio
    async def test_join_waits_for_all_branches(self):
        graph = build_graph(
            [step("A"), step("B"), step("C"), step("D")],
            [edge("A", "B"), edge("A", "C"), edge("B", "D"), edge("C", "D")],
        )
        executor = ScriptedExecutor(delays={"B": 0.02, "C": 0.05})
        result = await execute_graph(graph, executor)

        assert result.state is RunState.SUCCEEDED
        assert executor.calls.index("D") == 3
        assert executor.max_running == 2

    @pytest.mark.asyncio
    async def test_join_pruned_when_a_branch_fails(self):
        graph = build_graph(
            [step("A"), step("B"), step("C"), step("D"), step("R", "rollback")],
            [
                edge("A", "B"), edge("A", "C"), edge("B", "D"), edge("C", "D"),
                edge("B", "R", "ERROR"),
            ],
        )
        result = await execute_graph(graph, ScriptedExecutor(failing=["B"], delays={"C": 0.02}))

        assert result.state is RunState.ROLLED_BACK
        assert result.status_of("C") is StepStatus.SUCCEEDED
        assert result.status_of("D") is StepStatus.PENDING

    @pytest.mark.asyncio
    async def test_parallel_steps_bounded(self):
        steps = [step("Entry")] + [step(f"S{i}") for i in range(5)]
        edges = [edge("Entry", f"S{i}") for i in range(5)]
        executor = ScriptedExecutor(delays={f"S{i}": 0.02 for i in range(5)})
        result = await execute_graph(build_graph(steps, edges), executor, max_parallel_steps=2)

        assert result.state is RunState.SUCCEEDED
        assert executor.max_running == 2

    @pytest.mark.asyncio
    async def test_step_timeout(self):
        graph = build_graph([step("A")])
        result = await execute_graph(graph, ScriptedExecutor(blocking=["A"]), step_timeout=0.02)

        assert result.state is RunState.FAILED
        assert "Timed out" in result.job_run.record("A").error

    @pytest.mark.asyncio
    async def test_executor_exception_becomes_failure(self):
        class Exploding:
            async def execute(self, step, context):
                raise RuntimeError("agent unreachable")

        result = await execute_graph(build_graph([step("A")]), Exploding())
        assert result.state is RunState.FAILED
        assert "agent unreachable" in result.job_run.record("A").error

    @pytest.mark.asyncio
    async def test_outputs_feed_later_steps(self):
        graph = build_graph(
            [step("A"), step("B")],
            [edge("A", "B", "CUSTOM", branch_condition="outputs.A.step == 'A'")],
        )
        result = await execute_graph(graph, ScriptedExecutor())
        assert result.status_of("B") is StepStatus.SUCCEEDED
        assert result.job_run.record("B").payload == {"step": "B"}

    @pytest.mark.asyncio
    async def test_on_update_snapshots(self):
        snapshots: List[JobRun] = []
        graph = build_graph([step("A"), step("B")], [edge("A", "B")])
        result = await execute_graph(graph, ScriptedExecutor(), on_update=snapshots.append)

        assert snapshots[0].state is RunState.RUNNING
        assert snapshots[-1].state is RunState.SUCCEEDED
        assert snapshots[-1] is not result.job_run

    @pytest.mark.asyncio
    async def test_error_edge_to_unreached_step_is_unhandled(self):
        """A failure whose error target never runs fails the run."""
        graph = build_graph(
            [step("E"), step("A"), step("N"), step("M")],
            [
                edge("E", "A"), edge("E", "N"), edge("N", "M"),
                edge("A", "N", "ERROR"), edge("M", "N", "ERROR"),
            ],
        )
        result = await execute_graph(graph, ScriptedExecutor(failing=["A"]))

        assert result.status_of("N") is StepStatus.PENDING
        assert result.state is RunState.FAILED
        assert isinstance(result.error, StepExecutionFailure)
        assert result.job_run.error.step_id == "A"

    @pytest.mark.asyncio
    async def test_broken_named_condition_is_not_eligible(self):
        @register_condition("release_window_open")
        def release_window_open(context: RunContext) -> bool:
            return context.properties["window"].upper() == "OPEN"

        graph = build_graph(
            [step("A"), step("B"), step("C")],
            [edge("A", "B", "CUSTOM", branch_condition="release_window_open"), edge("A", "C")],
        )
        result = await execute_graph(graph, ScriptedExecutor(), properties={"window": 3})

        assert result.state is RunState.SUCCEEDED
        assert result.status_of("B") is StepStatus.PENDING
        assert result.status_of("C") is StepStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_internal_error_stops_the_run(self):
        """An unexpected scheduler error cancels in-flight steps and fails the run."""
        class FaultyEvaluator(ConditionEvaluator):
            def eligible(self, edge, source_status, context):
                if edge.source == "A":
                    raise RuntimeError("evaluator fault")
                return super().eligible(edge, source_status, context)

        graph = build_graph(
            [step("E"), step("A"), step("B"), step("C")],
            [edge("E", "A"), edge("E", "B"), edge("A", "C")],
        )
        executor = ScriptedExecutor(blocking=["B"])
        snapshots: List[JobRun] = []
        engine = ExecutionEngine(graph, executor, evaluator=FaultyEvaluator(), on_update=snapshots.append)

        with pytest.raises(RuntimeError):
            await engine.run()

        assert executor.cancelled == ["B"]
        assert engine.state is RunState.FAILED
        assert engine.job_run.record("B").status is StepStatus.CANCELLED
        assert engine.job_run.error.kind == "RuntimeError"
        assert snapshots[-1].state is RunState.FAILED

    @pytest.mark.asyncio
    async def test_rollback_marker_released_after_run(self):
        rollbacks = RollbackController()
        graph = build_graph([step("A"), step("R", "rollback")], [edge("A", "R", "ERROR")])

        for _ in range(3):
            result = await execute_graph(graph, ScriptedExecutor(failing=["A"]), rollbacks=rollbacks)
            assert result.state is RunState.ROLLED_BACK
            assert not rollbacks.is_claimed(result.run_id)
        assert len(rollbacks) == 0

    @pytest.mark.asyncio
    async def test_abort_spares_in_flight_rollback(self):
        """A rollback already running when another step aborts still completes."""
        graph = build_graph(
            [step("E"), step("A"), step("B", error_policy="abortJob"), step("R", "rollback")],
            [edge("E", "A"), edge("E", "B"), edge("A", "R", "ERROR")],
        )
        executor = ScriptedExecutor(failing=["A", "B"], delays={"B": 0.03, "R": 0.1})
        result = await execute_graph(graph, executor)

        assert result.job_run.aborted_by == "B"
        assert "R" not in executor.cancelled
        assert result.status_of("R") is StepStatus.SUCCEEDED
        assert result.state is RunState.ROLLED_BACK
        assert result.triggered_by == "A"


# ============================================================
# Manual Gate Scenarios
# ============================================================

class TestManualGates:
    """Tests for runs that suspend on manual steps."""

    async def _run_with_decision(self, decision: Decision):
        gates = ManualGateController()
        executor = ScriptedExecutor()
        engine = ExecutionEngine(validation_graph(), executor, gates=gates)

        run = asyncio.create_task(engine.run())
        await wait_for_gate(gates, engine.run_id, "Validate")
        assert engine.job_run.record("Validate").status is StepStatus.RUNNING
        assert engine.submit_decision("Validate", decision, "alice")
        return await run, executor

    @pytest.mark.asyncio
    async def test_reject_rolls_back(self):
        result, executor = await self._run_with_decision(Decision.REJECT)

        assert result.state is RunState.ROLLED_BACK
        assert result.status_of("Entry") is StepStatus.SUCCEEDED
        assert result.status_of("Validate") is StepStatus.FAILED
        assert result.status_of("Rollback") is StepStatus.SUCCEEDED
        assert result.triggered_by == "Validate"
        assert result.job_run.record("Validate").decision["assignee"] == "alice"
        assert executor.calls == ["Entry", "Rollback"]

    @pytest.mark.asyncio
    async def test_approve_succeeds(self):
        result, executor = await self._run_with_decision(Decision.APPROVE)

        assert result.state is RunState.SUCCEEDED
        assert result.status_of("Rollback") is StepStatus.PENDING
        assert "Rollback" not in executor.calls

    @pytest.mark.asyncio
    async def test_decision_accepted_once_gate_shows_running(self):
        """The first snapshot with the gate running can already be answered."""
        gates = ManualGateController()
        accepted: List[bool] = []

        def approve_when_running(snapshot: JobRun):
            if snapshot.status_of("Validate") is StepStatus.RUNNING and not accepted:
                accepted.append(gates.submit_decision(
                    snapshot.run_id, "Validate", Decision.APPROVE, "alice"
                ))

        result = await execute_graph(
            validation_graph(), ScriptedExecutor(), gates=gates,
            gate_timeout=1, on_update=approve_when_running,
        )

        assert accepted == [True]
        assert result.state is RunState.SUCCEEDED
        assert result.job_run.record("Validate").decision["assignee"] == "alice"

    @pytest.mark.asyncio
    async def test_abort_closes_waiting_gate(self):
        gates = ManualGateController()
        graph = build_graph(
            [step("E"), step("Validate", "manual"), step("B", error_policy="abortJob")],
            [edge("E", "Validate"), edge("E", "B")],
        )
        result = await execute_graph(
            graph, ScriptedExecutor(failing=["B"], delays={"B": 0.02}), gates=gates
        )

        assert result.state is RunState.FAILED
        assert result.status_of("Validate") is StepStatus.CANCELLED
        assert gates.pending(result.run_id) == []

    @pytest.mark.asyncio
    async def test_rollback_replay_skips_validation(self):
        result = await execute_graph(validation_graph(), ScriptedExecutor(), rollback_of="run-0")

        assert result.state is RunState.SUCCEEDED
        assert result.status_of("Validate") is StepStatus.PENDING

    @pytest.mark.asyncio
    async def test_gate_timeout_fails_step(self):
        result = await execute_graph(
            validation_graph(), ScriptedExecutor(), gates=ManualGateController(), gate_timeout=0.02
        )
        assert result.state is RunState.ROLLED_BACK
        assert "No decision" in result.job_run.record("Validate").error

    @pytest.mark.asyncio
    async def test_resume_suspended_run(self):
        """A persisted run resumes at its gate without re-running finished steps."""
        graph = validation_graph()
        gates = ManualGateController()
        executor = ScriptedExecutor()
        snapshots: List[JobRun] = []

        first = ExecutionEngine(graph, executor, gates=gates, on_update=snapshots.append)
        task = asyncio.create_task(first.run())
        await wait_for_gate(gates, first.run_id, "Validate")
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        persisted = JobRun.from_dict(snapshots[-1].to_dict())
        assert persisted.status_of("Validate") is StepStatus.RUNNING

        second = ExecutionEngine(graph, executor, gates=gates, resume_from=persisted)
        task = asyncio.create_task(second.run())
        await wait_for_gate(gates, first.run_id, "Validate")
        gates.submit_decision(first.run_id, "Validate", Decision.APPROVE, "alice")
        result = await task

        assert result.run_id == first.run_id
        assert result.state is RunState.SUCCEEDED
        assert executor.calls == ["Entry"]
        assert result.job_run.record("Validate").attempts == 2

    def test_resume_rejects_other_graph(self):
        persisted = JobRun(run_id="r1", graph_id="another-graph")
        with pytest.raises(ValueError):
            ExecutionEngine(validation_graph(), ScriptedExecutor(), resume_from=persisted)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])

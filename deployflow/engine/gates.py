"""
Manual Gates for DeployFlow.

A manual step suspends its branch of the run until someone approves or
rejects it. Decisions arrive asynchronously through `submit_decision`; the
first decision for a suspended gate wins and later ones are ignored.
"""

from typing import Dict, List, Optional, Tuple
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
import asyncio
import logging

from deployflow.engine.step import Step, StepResult


logger = logging.getLogger(__name__)


class Decision(str, Enum):
    """Outcome of a manual gate."""
    APPROVE = "approve"
    REJECT = "reject"


@dataclass(frozen=True)
class ManualDecision:
    """A decision delivered to a suspended manual step."""
    decision: Decision
    assignee: str
    comment: str = ""
    decided_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, str]:
        return {
            "decision": self.decision.value,
            "assignee": self.assignee,
            "comment": self.comment,
            "decided_at": self.decided_at.isoformat(),
        }


class ManualGateController:
    """
    Tracks suspended manual steps across runs.

    Usage:
        gates = ManualGateController()

        # inside a run
        result = await gates.wait(run_id, step)

        # from the notification/decision collaborator
        gates.submit_decision(run_id, "Validate", "approve", "alice")
    """

    def __init__(self):
        self._waiters: Dict[Tuple[str, str], asyncio.Future] = {}

    def open(self, run_id: str, step_id: str) -> asyncio.Future:
        """
        Register a gate before its step starts waiting.

        Decisions submitted from now on are kept for the next `wait` on the
        gate. Must be called from the event loop.
        """
        future = asyncio.get_running_loop().create_future()
        self._waiters[(run_id, step_id)] = future
        return future

    def close(self, run_id: str, step_id: str) -> None:
        """Forget a gate whose step will not wait for it anymore."""
        future = self._waiters.pop((run_id, step_id), None)
        if future is not None and not future.done():
            future.cancel()

    async def wait(
        self,
        run_id: str,
        step: Step,
        timeout: Optional[float] = None
    ) -> StepResult:
        """
        Suspend until a decision for (run_id, step.id) arrives.

        Args:
            run_id: The run owning the gate
            step: The manual step
            timeout: Seconds before the gate fails on its own (None waits forever)

        Returns:
            Succeeded on approve, failed on reject or timeout
        """
        key = (run_id, step.id)
        future = self._waiters.get(key)
        if future is None or future.cancelled():
            future = self.open(run_id, step.id)
        logger.info(f"Manual gate '{step.id}' of run {run_id} is waiting for a decision")

        try:
            decision: ManualDecision = await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Manual gate '{step.id}' of run {run_id} timed out after {timeout}s")
            return StepResult.failed(f"No decision within {timeout}s")
        finally:
            if self._waiters.get(key) is future:
                del self._waiters[key]

        payload = {"decision": decision.to_dict()}
        if decision.decision is Decision.APPROVE:
            return StepResult.succeeded(payload)
        return StepResult.failed(f"Rejected by {decision.assignee}", payload)

    def submit_decision(
        self,
        job_run_id: str,
        step_id: str,
        decision: Decision,
        assignee: str,
        comment: str = ""
    ) -> bool:
        """
        Deliver a decision to a suspended gate.

        Returns:
            True if the decision resolved the gate, False if the gate is not
            (or no longer) waiting
        """
        decision = Decision(decision)
        future = self._waiters.get((job_run_id, step_id))
        if future is None or future.done():
            logger.info(
                f"Ignoring {decision.value} from {assignee} for '{step_id}' of run "
                f"{job_run_id}: gate is not waiting"
            )
            return False

        future.set_result(ManualDecision(decision=decision, assignee=assignee, comment=comment))
        logger.info(f"Gate '{step_id}' of run {job_run_id}: {decision.value} by {assignee}")
        return True

    def pending(self, run_id: Optional[str] = None) -> List[Tuple[str, str]]:
        """List (run_id, step_id) pairs of gates currently waiting."""
        return [
            key for key, future in self._waiters.items()
            if not future.done() and (run_id is None or key[0] == run_id)
        ]

    def is_waiting(self, run_id: str, step_id: str) -> bool:
        return (run_id, step_id) in self.pending(run_id)


# Global gate controller shared by the API and the engines it starts
gate_controller = ManualGateController()

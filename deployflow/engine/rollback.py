"""
Rollback Control for DeployFlow.

A rollback step is reached only through an eligible ERROR edge and is
dispatched at most once per run, whatever the number of failures that point
at it. The compensation itself is delegated to the rollback executor.
"""

from typing import Set
import logging
import threading

from deployflow.engine.state import RunContext
from deployflow.engine.step import Step, StepResult


logger = logging.getLogger(__name__)


class RollbackController:
    """
    Holds one rollback marker per active run id.

    The marker is acquired before the rollback step is dispatched and held
    until the run releases it on reaching a terminal state, so a second
    claim for the same run always loses while the run is alive.
    """

    def __init__(self):
        self._claimed: Set[str] = set()
        self._lock = threading.Lock()

    def claim(self, run_id: str) -> bool:
        """Acquire the rollback marker for a run. True only for the first caller."""
        with self._lock:
            if run_id in self._claimed:
                return False
            self._claimed.add(run_id)
            return True

    def release(self, run_id: str) -> None:
        """Drop the marker of a run that will not dispatch anything again."""
        with self._lock:
            self._claimed.discard(run_id)

    def is_claimed(self, run_id: str) -> bool:
        with self._lock:
            return run_id in self._claimed

    def __len__(self) -> int:
        with self._lock:
            return len(self._claimed)

    async def execute(self, step: Step, context: RunContext, executor) -> StepResult:
        """Run the compensation for a failed run through `executor`."""
        logger.warning(f"Rolling back run {context.run_id} with step '{step.id}'")
        result = await executor.execute(step, context)
        if result.ok:
            logger.info(f"Rollback '{step.id}' of run {context.run_id} completed")
        else:
            logger.error(f"Rollback '{step.id}' of run {context.run_id} failed: {result.error}")
        return result


# Global rollback controller shared by every engine in the process
rollback_controller = RollbackController()

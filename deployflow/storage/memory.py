"""
In-Memory Storage for DeployFlow.

Provides async-safe storage for pipeline definitions and run snapshots.
Can be easily replaced with a database implementation.
"""

from typing import Any, Dict, List, Optional
from datetime import datetime
from dataclasses import dataclass, field
import asyncio

from deployflow.engine.graph import ProcessGraph
from deployflow.engine.state import JobRun


@dataclass
class StoredPipeline:
    """A stored pipeline: its declarative definition and the built graph."""
    pipeline_id: str
    name: str
    definition: Dict[str, Any]
    graph: ProcessGraph
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pipeline_id": self.pipeline_id,
            "name": self.name,
            "definition": self.definition,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


class PipelineStorage:
    """
    In-memory storage for pipeline definitions.

    Pipelines are stored already validated, so anything read back can be run.
    """

    def __init__(self):
        self._pipelines: Dict[str, StoredPipeline] = {}
        self._lock = asyncio.Lock()

    async def save(self, graph: ProcessGraph, definition: Optional[Dict[str, Any]] = None) -> StoredPipeline:
        """
        Save (or replace) a pipeline.

        Args:
            graph: The validated process graph
            definition: The declarative definition it was built from

        Returns:
            The stored pipeline
        """
        async with self._lock:
            existing = self._pipelines.get(graph.graph_id)
            stored = StoredPipeline(
                pipeline_id=graph.graph_id,
                name=graph.name,
                definition=definition or graph.to_dict(),
                graph=graph,
            )
            if existing is not None:
                stored.created_at = existing.created_at
            self._pipelines[graph.graph_id] = stored
            return stored

    async def get(self, pipeline_id: str) -> Optional[StoredPipeline]:
        """Get a pipeline by ID."""
        async with self._lock:
            return self._pipelines.get(pipeline_id)

    async def delete(self, pipeline_id: str) -> bool:
        """Delete a pipeline."""
        async with self._lock:
            return self._pipelines.pop(pipeline_id, None) is not None

    async def list_all(self) -> List[StoredPipeline]:
        """List all stored pipelines."""
        async with self._lock:
            return list(self._pipelines.values())

    async def exists(self, pipeline_id: str) -> bool:
        async with self._lock:
            return pipeline_id in self._pipelines

    def __len__(self) -> int:
        return len(self._pipelines)


class RunStorage:
    """
    In-memory storage for JobRun snapshots.

    The engine's update callback writes a fresh snapshot after every change,
    so a stored run is always resumable.
    """

    def __init__(self):
        self._runs: Dict[str, JobRun] = {}
        self._lock = asyncio.Lock()

    async def save(self, job_run: JobRun) -> JobRun:
        """Store the latest snapshot of a run."""
        async with self._lock:
            self._runs[job_run.run_id] = job_run
            return job_run

    async def get(self, run_id: str) -> Optional[JobRun]:
        """Get a run by ID."""
        async with self._lock:
            return self._runs.get(run_id)

    async def list_all(self) -> List[JobRun]:
        """List all runs."""
        async with self._lock:
            return list(self._runs.values())

    async def list_by_pipeline(self, pipeline_id: str) -> List[JobRun]:
        """List all runs of a specific pipeline."""
        async with self._lock:
            return [r for r in self._runs.values() if r.graph_id == pipeline_id]

    async def delete(self, run_id: str) -> bool:
        """Delete a run."""
        async with self._lock:
            return self._runs.pop(run_id, None) is not None

    def __len__(self) -> int:
        return len(self._runs)


# Global storage instances
pipeline_storage = PipelineStorage()
run_storage = RunStorage()

"""
Storage package - Pipelines, runs and the in-memory deployment platform.
"""

from deployflow.storage.memory import (
    StoredPipeline,
    PipelineStorage,
    RunStorage,
    pipeline_storage,
    run_storage,
)
from deployflow.storage.platform import (
    ArtifactVersion,
    ArtifactRepository,
    ResourceInventory,
    artifact_repository,
    resource_inventory,
)

__all__ = [
    "StoredPipeline",
    "PipelineStorage",
    "RunStorage",
    "pipeline_storage",
    "run_storage",
    "ArtifactVersion",
    "ArtifactRepository",
    "ResourceInventory",
    "artifact_repository",
    "resource_inventory",
]

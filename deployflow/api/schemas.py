"""
Pydantic Schemas for API Request/Response Models.

These schemas define the structure of data flowing through the API,
providing automatic validation and documentation. Step and edge
descriptors are accepted as plain objects so that `build_graph` can report
every problem of a definition at once.
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field

from deployflow.engine.gates import Decision
from deployflow.engine.state import JobRun
from deployflow.engine.step import StepKind


# ============================================================
# Pipeline Schemas
# ============================================================

class PipelineCreateRequest(BaseModel):
    """Request to create a new pipeline."""
    name: str = Field(..., min_length=1, description="Name of the pipeline")
    description: Optional[str] = Field(None, description="What this pipeline deploys")
    steps: List[Dict[str, Any]] = Field(..., description="Step descriptors {id, kind, parameters, error_policy}")
    edges: List[Dict[str, Any]] = Field(
        default_factory=list,
        description="Edge descriptors {source, target, branch_type, branch_condition}"
    )

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "name": "deploy-api",
            "description": "Deploy the API and wait for sign-off",
            "steps": [
                {"id": "Retrieve", "kind": "component-process",
                 "parameters": {"handler": "retrieve_artifact", "component": "$[component]"}},
                {"id": "Validate", "kind": "manual"},
                {"id": "Rollback", "kind": "rollback",
                 "parameters": {"handler": "redeploy_previous", "component": "$[component]",
                                "version": "$[outputs.Retrieve.version]", "tiers": ["application"]}},
            ],
            "edges": [
                {"source": "Retrieve", "target": "Validate", "branch_type": "ALWAYS"},
                {"source": "Validate", "target": "Rollback", "branch_type": "ERROR"},
            ],
        }
    })


class PipelineCreateResponse(BaseModel):
    """Response after creating a pipeline."""
    pipeline_id: str = Field(..., description="Unique identifier for the created pipeline")
    name: str
    message: str = Field(default="Pipeline created successfully")
    step_count: int
    entry_step: str


class PipelineInfoResponse(BaseModel):
    """Response with pipeline information."""
    pipeline_id: str
    name: str
    description: Optional[str]
    step_count: int
    steps: List[str]
    entry_step: str
    rollback_steps: List[str]
    has_manual_steps: bool
    created_at: str
    definition: Optional[Dict[str, Any]] = None
    mermaid_diagram: Optional[str] = Field(None, description="Mermaid diagram of the process")


class PipelineListResponse(BaseModel):
    """Response listing all pipelines."""
    pipelines: List[PipelineInfoResponse]
    total: int


# ============================================================
# Run Schemas
# ============================================================

class PipelineRunRequest(BaseModel):
    """Request to run a pipeline."""
    pipeline_id: str = Field(..., description="ID of the pipeline to run")
    properties: Dict[str, Any] = Field(default_factory=dict, description="Job properties")
    rollback_of: Optional[str] = Field(None, description="Run id this run replays as a rollback")
    async_execution: bool = Field(
        False,
        description="If true, run in background and return immediately"
    )

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "pipeline_id": "multitier-deploy-demo",
            "properties": {"component": "web-store", "version_range": "1.2.*", "environment": "qa"},
            "async_execution": True,
        }
    })


class RunResponse(JobRun):
    """A run snapshot plus what it is reported by."""
    triggered_by: Optional[str] = Field(None, description="Step whose failure drove the error path")
    total_duration_ms: Optional[float] = None


class RunListResponse(BaseModel):
    """Response listing runs."""
    runs: List[RunResponse]
    total: int


class GateInfo(BaseModel):
    """A manual step waiting for a decision."""
    run_id: str
    step_id: str
    description: str = ""
    parameters: Dict[str, Any] = Field(default_factory=dict)


class GateListResponse(BaseModel):
    gates: List[GateInfo]
    total: int


class DecisionRequest(BaseModel):
    """A decision for a suspended manual step."""
    step_id: str
    decision: Decision
    assignee: str = Field(..., min_length=1)
    comment: str = ""

    model_config = ConfigDict(json_schema_extra={
        "example": {"step_id": "Validate", "decision": "approve", "assignee": "alice"}
    })


class DecisionResponse(BaseModel):
    run_id: str
    step_id: str
    decision: Decision
    accepted: bool
    message: str


# ============================================================
# Handler Schemas
# ============================================================

class HandlerInfo(BaseModel):
    """Information about a registered handler."""
    name: str
    kind: Optional[StepKind]
    description: str
    parameters: Dict[str, str]
    is_async: bool


class HandlerListResponse(BaseModel):
    """Response listing all registered handlers."""
    handlers: List[HandlerInfo]
    total: int


# ============================================================
# Error Schemas
# ============================================================

class ErrorResponse(BaseModel):
    """Standard error response."""
    error: str
    detail: Optional[Any] = None
    status_code: int

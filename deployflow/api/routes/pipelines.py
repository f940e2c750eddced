"""
Pipeline API Routes.

Endpoints for creating, managing, and running deployment pipelines.
"""

from typing import Any, Dict, Optional, Set
from fastapi import APIRouter, HTTPException, status
import asyncio
import logging

from deployflow.api.schemas import (
    PipelineCreateRequest,
    PipelineCreateResponse,
    PipelineInfoResponse,
    PipelineListResponse,
    PipelineRunRequest,
    RunResponse,
    ErrorResponse,
)
from deployflow.engine.executor import ExecutionEngine
from deployflow.engine.graph import build_graph
from deployflow.engine.state import JobRun
from deployflow.engine.step import StepKind
from deployflow.handlers.registry import handler_registry
from deployflow.storage.memory import StoredPipeline, pipeline_storage, run_storage


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/pipelines", tags=["Pipelines"])

# Background runs, kept referenced until they finish
_background_runs: Set[asyncio.Task] = set()


def run_response(job_run: JobRun, total_duration_ms: Optional[float] = None) -> RunResponse:
    """Build the API view of a run snapshot."""
    transition = job_run.error_transition
    if transition is not None:
        triggered_by = transition.source
    else:
        triggered_by = job_run.error.step_id if job_run.error else None
    return RunResponse(
        **job_run.model_dump(),
        triggered_by=triggered_by,
        total_duration_ms=total_duration_ms,
    )


def _handler_name(step: Dict[str, Any]) -> Optional[str]:
    """The handler a step will run: its own, else the default for its kind."""
    parameters = step.get("parameters")
    handler = parameters.get("handler") if isinstance(parameters, dict) else None
    if handler:
        return handler
    try:
        kind = StepKind(step.get("kind"))
    except ValueError:
        return None  # reported by graph validation
    return None if kind is StepKind.MANUAL else kind.value


def _info(stored: StoredPipeline, detailed: bool = False) -> PipelineInfoResponse:
    graph = stored.graph
    return PipelineInfoResponse(
        pipeline_id=stored.pipeline_id,
        name=stored.name,
        description=graph.description or None,
        step_count=len(graph.steps),
        steps=list(graph.steps),
        entry_step=graph.entry_step,
        rollback_steps=graph.rollback_steps,
        has_manual_steps=graph.has_manual_steps,
        created_at=stored.created_at.isoformat(),
        definition=stored.definition if detailed else None,
        mermaid_diagram=graph.to_mermaid() if detailed else None,  # Skip for list view
    )


# ============================================================
# Pipeline CRUD Endpoints
# ============================================================

@router.post(
    "/create",
    response_model=PipelineCreateResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid pipeline definition"},
        404: {"model": ErrorResponse, "description": "Handler not found"},
    }
)
async def create_pipeline(request: PipelineCreateRequest) -> PipelineCreateResponse:
    """
    Create a new pipeline.

    Steps name their handler in `parameters.handler`; edges choose when they
    fire with `branch_type` (ALWAYS, ERROR or CUSTOM with a `branch_condition`).
    """
    for step in request.steps:
        handler = _handler_name(step)
        if handler and handler not in handler_registry:
            raise HTTPException(
                status_code=404,
                detail=f"Handler '{handler}' for step '{step.get('id')}' not found. "
                       f"Available handlers: {[h.name for h in handler_registry]}"
            )

    # Raises GraphValidationError, mapped to 400 by the application
    graph = build_graph(
        request.steps,
        request.edges,
        name=request.name,
        description=request.description or "",
    )
    stored = await pipeline_storage.save(graph, request.model_dump())

    logger.info(f"Created pipeline: {graph.graph_id} ({request.name})")

    return PipelineCreateResponse(
        pipeline_id=stored.pipeline_id,
        name=stored.name,
        step_count=len(graph.steps),
        entry_step=graph.entry_step,
    )


@router.get(
    "/",
    response_model=PipelineListResponse,
)
async def list_pipelines() -> PipelineListResponse:
    """List all available pipelines."""
    pipelines = [_info(stored) for stored in await pipeline_storage.list_all()]
    return PipelineListResponse(pipelines=pipelines, total=len(pipelines))


@router.get(
    "/{pipeline_id}",
    response_model=PipelineInfoResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_pipeline(pipeline_id: str) -> PipelineInfoResponse:
    """Get a pipeline with its definition and a Mermaid diagram."""
    stored = await pipeline_storage.get(pipeline_id)
    if not stored:
        raise HTTPException(status_code=404, detail=f"Pipeline '{pipeline_id}' not found")
    return _info(stored, detailed=True)


@router.delete(
    "/{pipeline_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
)
async def delete_pipeline(pipeline_id: str):
    """Delete a pipeline. Runs already started keep going."""
    deleted = await pipeline_storage.delete(pipeline_id)
    if not deleted:
        raise HTTPException(status_code=404, detail=f"Pipeline '{pipeline_id}' not found")
    logger.info(f"Deleted pipeline: {pipeline_id}")


# ============================================================
# Execution Endpoints
# ============================================================

@router.post(
    "/run",
    response_model=RunResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Pipeline needs async execution"},
        404: {"model": ErrorResponse},
    }
)
async def run_pipeline(request: PipelineRunRequest) -> RunResponse:
    """
    Run a pipeline with the given job properties.

    If `async_execution` is True, the run proceeds in the background; poll
    GET /runs/{run_id} and answer manual gates with POST /runs/{run_id}/decisions.
    Pipelines with manual steps can only run in the background.
    """
    stored = await pipeline_storage.get(request.pipeline_id)
    if not stored:
        raise HTTPException(
            status_code=404,
            detail=f"Pipeline '{request.pipeline_id}' not found"
        )

    if not request.async_execution and stored.graph.has_manual_steps:
        raise HTTPException(
            status_code=400,
            detail=f"Pipeline '{stored.name}' has manual steps; use async_execution"
        )

    engine = ExecutionEngine(
        stored.graph,
        handler_registry,
        rollback_of=request.rollback_of,
        properties=request.properties,
        on_update=run_storage.save,
    )
    await run_storage.save(engine.job_run.model_copy(deep=True))

    if request.async_execution:
        task = asyncio.create_task(_execute_in_background(engine))
        _background_runs.add(task)
        task.add_done_callback(_background_runs.discard)
        return run_response(engine.job_run)

    result = await engine.run()
    return run_response(result.job_run, result.total_duration_ms)


async def _execute_in_background(engine: ExecutionEngine):
    """Execute a run in the background."""
    try:
        await engine.run()
    except Exception as e:
        logger.exception(f"Background run {engine.run_id} crashed: {e}")

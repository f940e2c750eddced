"""
Run API Routes.

Endpoints for inspecting runs and answering their manual gates.
"""

from typing import Optional
from fastapi import APIRouter, HTTPException
import logging

from deployflow.api.routes.pipelines import run_response
from deployflow.api.schemas import (
    DecisionRequest,
    DecisionResponse,
    GateInfo,
    GateListResponse,
    RunResponse,
    RunListResponse,
    ErrorResponse,
)
from deployflow.engine.gates import gate_controller
from deployflow.storage.memory import pipeline_storage, run_storage


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/runs", tags=["Runs"])


@router.get(
    "/",
    response_model=RunListResponse,
)
async def list_runs(pipeline_id: Optional[str] = None) -> RunListResponse:
    """List all runs, optionally filtered by pipeline_id."""
    if pipeline_id:
        runs = await run_storage.list_by_pipeline(pipeline_id)
    else:
        runs = await run_storage.list_all()

    responses = [run_response(job_run) for job_run in runs]
    return RunListResponse(runs=responses, total=len(responses))


@router.get(
    "/{run_id}",
    response_model=RunResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_run(run_id: str) -> RunResponse:
    """
    Get the latest snapshot of a run.

    Use this to poll the status of background runs.
    """
    job_run = await run_storage.get(run_id)
    if not job_run:
        raise HTTPException(status_code=404, detail=f"Run '{run_id}' not found")
    return run_response(job_run)


@router.get(
    "/{run_id}/gates",
    response_model=GateListResponse,
    responses={404: {"model": ErrorResponse}},
)
async def list_gates(run_id: str) -> GateListResponse:
    """List the manual steps of a run that are waiting for a decision."""
    job_run = await run_storage.get(run_id)
    if not job_run:
        raise HTTPException(status_code=404, detail=f"Run '{run_id}' not found")

    stored = await pipeline_storage.get(job_run.graph_id)
    gates = []
    for _, step_id in gate_controller.pending(run_id):
        step = stored.graph.steps.get(step_id) if stored else None
        gates.append(GateInfo(
            run_id=run_id,
            step_id=step_id,
            description=step.description if step else "",
            parameters=dict(step.parameters) if step else {},
        ))
    return GateListResponse(gates=gates, total=len(gates))


@router.post(
    "/{run_id}/decisions",
    response_model=DecisionResponse,
    responses={
        404: {"model": ErrorResponse, "description": "Run not found"},
        409: {"model": ErrorResponse, "description": "Gate is not waiting"},
    }
)
async def submit_decision(run_id: str, request: DecisionRequest) -> DecisionResponse:
    """
    Approve or reject a suspended manual step.

    The first decision wins; a decision for a gate that is not waiting is
    rejected with 409.
    """
    job_run = await run_storage.get(run_id)
    if not job_run:
        raise HTTPException(status_code=404, detail=f"Run '{run_id}' not found")

    accepted = gate_controller.submit_decision(
        run_id, request.step_id, request.decision, request.assignee, request.comment
    )
    if not accepted:
        raise HTTPException(
            status_code=409,
            detail=f"Step '{request.step_id}' of run '{run_id}' is not waiting for a decision"
        )

    return DecisionResponse(
        run_id=run_id,
        step_id=request.step_id,
        decision=request.decision,
        accepted=True,
        message=f"{request.decision.value} recorded for '{request.step_id}'",
    )

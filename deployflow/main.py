"""
DeployFlow - FastAPI Application Entry Point.

An async process-graph engine for deployment pipelines.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging

from deployflow.config import settings
from deployflow.api.routes import handlers, pipelines, runs
from deployflow.engine.errors import GraphValidationError
from deployflow.storage.memory import pipeline_storage, run_storage
from deployflow.workflows.multitier_deploy import DEMO_PIPELINE_ID, register_multitier_deploy_process

# Import builtin handlers to register them
import deployflow.handlers.builtin  # noqa: F401


# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

    # Register the demo pipeline
    await register_multitier_deploy_process()

    yield

    # Shutdown
    logger.info("Shutting down...")


# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    description=f"""
## DeployFlow API

Runs deployment processes described as directed graphs of steps.

### Features
- **Steps**: component processes, commands, manual gates, rollbacks and sub-processes
- **Edges**: ALWAYS, ERROR and CUSTOM (predicate) branches
- **Parallelism**: independent branches run concurrently
- **Error policies**: failProcedure lets error edges fire, abortJob cancels the run
- **Rollback**: dispatched at most once per run

### Quick Start
1. List available handlers: `GET /handlers`
2. Create a pipeline: `POST /pipelines/create`
3. Run it: `POST /pipelines/run`
4. Answer manual gates: `POST /runs/{{run_id}}/decisions`

### Demo Pipeline
A pre-registered multi-tier deployment is available with ID: `{DEMO_PIPELINE_ID}`
    """,
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)


# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Include routers
app.include_router(pipelines.router)
app.include_router(runs.router)
app.include_router(handlers.router)


# ============================================================
# Root Endpoints
# ============================================================

@app.get("/", tags=["Root"])
async def root():
    """API root - returns basic info and links."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "description": "A process-graph engine for deployment pipelines",
        "docs": "/docs",
        "redoc": "/redoc",
        "endpoints": {
            "pipelines": "/pipelines",
            "runs": "/runs",
            "handlers": "/handlers",
            "decisions": "/runs/{run_id}/decisions",
        },
        "demo_pipeline": DEMO_PIPELINE_ID,
    }


@app.get("/health", tags=["Root"])
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": settings.APP_VERSION,
        "pipelines_count": len(pipeline_storage),
        "runs_count": len(run_storage),
    }


# ============================================================
# Error Handlers
# ============================================================

@app.exception_handler(GraphValidationError)
async def graph_validation_handler(request: Request, exc: GraphValidationError):
    """Invalid pipeline definitions are client errors."""
    logger.warning(f"Rejected pipeline definition: {exc.message}")
    return JSONResponse(
        status_code=400,
        content={
            "error": "Invalid pipeline definition",
            "detail": exc.problems,
            "status_code": 400,
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled errors."""
    logger.exception(f"Unhandled error: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal Server Error",
            "detail": str(exc) if settings.DEBUG else "An unexpected error occurred",
            "status_code": 500,
        },
    )

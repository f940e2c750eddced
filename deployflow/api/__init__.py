"""
API package - FastAPI routes and schemas.
"""

from deployflow.api.routes import handlers, pipelines, runs

__all__ = ["handlers", "pipelines", "runs"]

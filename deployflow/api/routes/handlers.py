"""
Handler API Routes.

Endpoints for listing the handlers steps can use.
"""

from fastapi import APIRouter, HTTPException
import logging

from deployflow.api.schemas import HandlerInfo, HandlerListResponse, ErrorResponse
from deployflow.handlers.registry import handler_registry


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/handlers", tags=["Handlers"])


@router.get(
    "/",
    response_model=HandlerListResponse,
)
async def list_handlers() -> HandlerListResponse:
    """
    List all registered handlers.

    Steps select a handler with `parameters.handler`, or get the handler
    named after their kind.
    """
    handlers = [HandlerInfo(**h) for h in handler_registry.list_handlers()]
    return HandlerListResponse(handlers=handlers, total=len(handlers))


@router.get(
    "/{handler_name}",
    response_model=HandlerInfo,
    responses={404: {"model": ErrorResponse}},
)
async def get_handler(handler_name: str) -> HandlerInfo:
    """Get information about a specific handler."""
    handler = handler_registry.get(handler_name)
    if not handler:
        raise HTTPException(
            status_code=404,
            detail=f"Handler '{handler_name}' not found"
        )
    return HandlerInfo(**handler.to_dict())

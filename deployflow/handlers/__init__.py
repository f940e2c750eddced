"""
Handlers package - Handler registry and built-in deployment handlers.
"""

from deployflow.handlers.registry import (
    Handler,
    HandlerRegistry,
    handler_registry,
    register_handler,
    get_handler,
)

# Import built-in handlers to register them
from deployflow.handlers import builtin  # noqa: F401

__all__ = [
    "Handler",
    "HandlerRegistry",
    "handler_registry",
    "register_handler",
    "get_handler",
]

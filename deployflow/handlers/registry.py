"""
Handler Registry for DeployFlow.

Handlers do the actual work of component-process, command, sub-process and
rollback steps. The registry is the step executor handed to the engine: it
picks the handler for a step, resolves `$[reference]` parameters against the
run context and turns whatever the handler returns into a StepResult.

Sync handlers run in a worker thread, which cannot be interrupted. A sync
handler that declares a `cancel_event` parameter receives a threading.Event
that is set when its step is cancelled, and should stop at its next
checkpoint; cancellation waits for the thread to return.
"""

from typing import Any, Callable, Dict, List, Optional
from dataclasses import dataclass, field
import asyncio
import functools
import inspect
import logging
import re
import threading

from deployflow.engine.errors import StepExecutionFailure
from deployflow.engine.state import RunContext
from deployflow.engine.step import Step, StepKind, StepResult


logger = logging.getLogger(__name__)

_REFERENCE = re.compile(r"\$\[([^\]]+)\]")

# Parameters supplied by the registry rather than by the step
_INJECTED = ("context", "cancel_event")


@dataclass
class Handler:
    """
    A registered step handler.

    Attributes:
        name: Unique identifier for the handler
        func: The callable, sync or async
        kind: Step kind the handler is meant for (informational)
        description: Human-readable description
        parameters: Parameter descriptions
    """
    name: str
    func: Callable
    kind: Optional[StepKind] = None
    description: str = ""
    parameters: Dict[str, str] = field(default_factory=dict)

    @property
    def is_async(self) -> bool:
        return inspect.iscoroutinefunction(self.func)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize handler metadata."""
        return {
            "name": self.name,
            "kind": self.kind.value if self.kind else None,
            "description": self.description,
            "parameters": self.parameters,
            "is_async": self.is_async,
        }


class HandlerRegistry:
    """
    Registry of step handlers, usable as the engine's step executor.

    A step selects its handler with `parameters["handler"]`; without one the
    handler named after the step kind is used. Handlers receive the step's
    resolved parameters as keyword arguments, plus `context` and
    `cancel_event` if they declare them.

    Usage:
        registry = HandlerRegistry()

        @registry.register("smoke_test", kind="command")
        async def smoke_test(url: str) -> dict:
            return {"status": 200}

        engine = ExecutionEngine(graph, registry)
    """

    def __init__(self):
        self._handlers: Dict[str, Handler] = {}

    def register(
        self,
        name: Optional[str] = None,
        kind: Optional[Any] = None,
        description: str = "",
        parameters: Optional[Dict[str, str]] = None
    ) -> Callable:
        """
        Decorator to register a function as a handler.

        Args:
            name: Handler name (defaults to function name)
            kind: Step kind the handler serves
            description: Handler description (defaults to docstring)
            parameters: Parameter descriptions (defaults to the signature)
        """
        def decorator(func: Callable) -> Callable:
            self.add(func, name=name, kind=kind, description=description, parameters=parameters)
            return func

        return decorator

    def add(
        self,
        func: Callable,
        name: Optional[str] = None,
        kind: Optional[Any] = None,
        description: str = "",
        parameters: Optional[Dict[str, str]] = None
    ) -> Handler:
        """Directly add a function as a handler (non-decorator version)."""
        handler_name = name or func.__name__
        params = parameters or {}
        if not params:
            for param_name, param in inspect.signature(func).parameters.items():
                if param_name in _INJECTED or param.kind is param.VAR_KEYWORD:
                    continue
                params[param_name] = (
                    getattr(param.annotation, "__name__", str(param.annotation))
                    if param.annotation is not inspect.Parameter.empty else "Any"
                )

        handler = Handler(
            name=handler_name,
            func=func,
            kind=StepKind(kind) if kind is not None else None,
            description=(description or func.__doc__ or "").strip(),
            parameters=params,
        )
        self._handlers[handler_name] = handler
        logger.debug(f"Registered handler: {handler_name}")
        return handler

    def get(self, name: str) -> Optional[Handler]:
        """Get a handler by name."""
        return self._handlers.get(name)

    def resolve(self, step: Step) -> Handler:
        """
        Find the handler for a step.

        Raises:
            KeyError: If no handler matches
        """
        name = step.parameters.get("handler") or step.kind.value
        handler = self.get(name)
        if handler is None:
            raise KeyError(f"No handler '{name}' registered for step '{step.id}'")
        return handler

    async def execute(self, step: Step, context: RunContext) -> StepResult:
        """
        Execute a step with its handler.

        Never raises for handler failures; they come back as failed results.
        Cancellation propagates into async handlers and sets the cancel event
        of sync ones.
        """
        try:
            handler = self.resolve(step)
            kwargs = resolve_parameters(step.parameters, context)
        except KeyError as e:
            return StepResult.failed(str(e.args[0]) if e.args else str(e))

        kwargs.pop("handler", None)
        cancel_event = threading.Event()
        kwargs = self._bind(handler, kwargs, context, cancel_event)
        logger.debug(f"Calling handler '{handler.name}' for step '{step.id}'")

        try:
            if handler.is_async:
                outcome = await handler.func(**kwargs)
            else:
                outcome = await self._run_in_thread(handler, kwargs, cancel_event)
        except StepExecutionFailure as e:
            return StepResult.failed(e.message, e.payload)
        except Exception as e:
            logger.warning(f"Handler '{handler.name}' raised {type(e).__name__}: {e}")
            return StepResult.failed(f"{type(e).__name__}: {e}")

        return normalize_result(outcome)

    @staticmethod
    async def _run_in_thread(handler: Handler, kwargs: Dict[str, Any], cancel_event: threading.Event) -> Any:
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(None, functools.partial(handler.func, **kwargs))
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            cancel_event.set()
            logger.info(f"Cancelling handler '{handler.name}'; waiting for its thread")
            await asyncio.gather(future, return_exceptions=True)
            raise

    @staticmethod
    def _bind(
        handler: Handler,
        kwargs: Dict[str, Any],
        context: RunContext,
        cancel_event: threading.Event
    ) -> Dict[str, Any]:
        signature = inspect.signature(handler.func)
        accepts_any = any(p.kind is p.VAR_KEYWORD for p in signature.parameters.values())
        bound = {
            key: value for key, value in kwargs.items()
            if key not in _INJECTED and (accepts_any or key in signature.parameters)
        }
        if "context" in signature.parameters:
            bound["context"] = context
        if "cancel_event" in signature.parameters:
            bound["cancel_event"] = cancel_event
        return bound

    def remove(self, name: str) -> bool:
        """Remove a handler from the registry."""
        return self._handlers.pop(name, None) is not None

    def list_handlers(self) -> List[Dict[str, Any]]:
        """List all registered handlers with their metadata."""
        return [handler.to_dict() for handler in self._handlers.values()]

    def has(self, name: str) -> bool:
        return name in self._handlers

    def __contains__(self, name: str) -> bool:
        return self.has(name)

    def __len__(self) -> int:
        return len(self._handlers)

    def __iter__(self):
        return iter(self._handlers.values())


def resolve_parameters(parameters: Dict[str, Any], context: RunContext) -> Dict[str, Any]:
    """
    Substitute `$[name]` references in string parameters.

    A parameter that is exactly one reference takes the referenced value as is;
    references embedded in longer strings are formatted into the string.

    Raises:
        KeyError: If a reference is undefined
    """
    def resolve(value: Any) -> Any:
        if isinstance(value, dict):
            return {k: resolve(v) for k, v in value.items()}
        if isinstance(value, list):
            return [resolve(v) for v in value]
        if not isinstance(value, str):
            return value

        whole = _REFERENCE.fullmatch(value.strip())
        if whole:
            return _lookup(whole.group(1), context)
        return _REFERENCE.sub(lambda m: str(_lookup(m.group(1), context)), value)

    return {key: resolve(value) for key, value in parameters.items()}


def _lookup(reference: str, context: RunContext) -> Any:
    try:
        return context.lookup(reference)
    except KeyError:
        raise KeyError(f"Undefined reference $[{reference}]")


def normalize_result(outcome: Any) -> StepResult:
    """Turn a handler's return value into a StepResult."""
    if isinstance(outcome, StepResult):
        return outcome
    if outcome is None:
        return StepResult.succeeded()
    if isinstance(outcome, bool):
        return StepResult.succeeded() if outcome else StepResult.failed("Handler returned False")
    if isinstance(outcome, dict):
        return StepResult.succeeded(outcome)
    return StepResult.succeeded({"result": outcome})


# Global handler registry instance
handler_registry = HandlerRegistry()


def register_handler(
    name: Optional[str] = None,
    kind: Optional[Any] = None,
    description: str = "",
    parameters: Optional[Dict[str, str]] = None
) -> Callable:
    """
    Convenience decorator to register a handler in the global registry.

    Usage:
        @register_handler("notify", kind="command")
        def notify(channel: str) -> dict:
            return {"sent": True}
    """
    return handler_registry.register(name, kind, description, parameters)


def get_handler(name: str) -> Optional[Handler]:
    """Get a handler from the global registry."""
    return handler_registry.get(name)

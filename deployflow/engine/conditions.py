"""
Edge Conditions for DeployFlow.

Decides whether an edge fires, given the outcome of its source step and the
runtime context of the run. CUSTOM edges carry a predicate: either the name of
a registered condition or a small boolean expression such as

    not is_rollback and properties.environment == "qa"

optionally wrapped as `$[...]`. A reference to anything the context does not
define makes the predicate false.
"""

from typing import Any, Callable, Dict, Optional
from enum import Enum
import ast
import logging
import operator
import re

from deployflow.engine.state import RunContext
from deployflow.engine.step import StepStatus, normalize_token


logger = logging.getLogger(__name__)


class BranchType(str, Enum):
    """When an edge fires."""
    ON_SUCCESS = "on_success"  # Source succeeded (declared as ALWAYS upstream)
    ERROR = "error"            # Source failed
    CUSTOM = "custom"          # Source succeeded and the predicate holds

    @classmethod
    def _missing_(cls, value):
        normalized = normalize_token(value, "_")
        if normalized == "always":
            return cls.ON_SUCCESS
        for member in cls:
            if member.value == normalized:
                return member
        return None


# ============================================================
# Named Conditions Registry
# ============================================================

_condition_registry: Dict[str, Callable[[RunContext], bool]] = {}


def register_condition(name: str):
    """Decorator to register a named condition."""
    def decorator(func):
        _condition_registry[name] = func
        return func
    return decorator


@register_condition("not_rollback_replay")
@register_condition("not rollback replay")
def not_rollback_replay(context: RunContext) -> bool:
    """Skip the guarded path when the run re-enters the graph as a rollback."""
    return not context.is_rollback


@register_condition("is_rollback_replay")
def is_rollback_replay(context: RunContext) -> bool:
    return context.is_rollback


def get_condition(name: str) -> Optional[Callable[[RunContext], bool]]:
    """Get a condition function by name."""
    return _condition_registry.get(name)


# ============================================================
# Expression Predicates
# ============================================================

class UndefinedReference(Exception):
    """A predicate referenced a name the run context does not define."""


_REFERENCE = re.compile(r"^\s*\$\[(.*)\]\s*$", re.DOTALL)

_COMPARATORS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda left, right: left in right,
    ast.NotIn: lambda left, right: left not in right,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

_ALLOWED_NODES = (
    ast.Expression, ast.BoolOp, ast.And, ast.Or, ast.UnaryOp, ast.Not, ast.USub,
    ast.Compare, ast.Name, ast.Load, ast.Constant, ast.Attribute, ast.Subscript,
    ast.List, ast.Tuple,
) + tuple(_COMPARATORS)


class Predicate:
    """A compiled CUSTOM edge condition."""

    def __init__(self, condition: str):
        self.condition = condition
        self._named = get_condition(condition.strip())
        self._tree: Optional[ast.expr] = None

        if self._named is None:
            match = _REFERENCE.match(condition)
            expression = (match.group(1) if match else condition).strip()
            if not expression:
                raise ValueError("Condition is empty")
            try:
                tree = ast.parse(expression, mode="eval")
            except SyntaxError as e:
                raise ValueError(f"Invalid condition '{condition}': {e.msg}") from e
            for node in ast.walk(tree):
                if not isinstance(node, _ALLOWED_NODES):
                    raise ValueError(
                        f"Unsupported syntax in condition '{condition}': {type(node).__name__}"
                    )
            self._tree = tree.body

    def evaluate(self, context: RunContext) -> bool:
        """
        Evaluate against a run context.

        Raises:
            UndefinedReference: If the predicate references an undefined name
        """
        if self._named is not None:
            try:
                return bool(self._named(context))
            except KeyError as e:
                raise UndefinedReference(str(e)) from e
        return bool(self._eval(self._tree, context))

    def _eval(self, node: ast.expr, context: RunContext) -> Any:
        if isinstance(node, ast.Constant):
            return node.value

        if isinstance(node, (ast.Name, ast.Attribute)):
            path = _dotted_path(node)
            if path is not None:
                try:
                    return context.lookup(path)
                except KeyError:
                    raise UndefinedReference(path)
            base = self._eval(node.value, context)
            if isinstance(base, dict) and node.attr in base:
                return base[node.attr]
            raise UndefinedReference(node.attr)

        if isinstance(node, ast.Subscript):
            base = self._eval(node.value, context)
            key = self._eval(node.slice, context)
            try:
                return base[key]
            except (KeyError, IndexError, TypeError):
                raise UndefinedReference(repr(key))

        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                return all(self._eval(value, context) for value in node.values)
            return any(self._eval(value, context) for value in node.values)

        if isinstance(node, ast.UnaryOp):
            operand = self._eval(node.operand, context)
            return (not operand) if isinstance(node.op, ast.Not) else -operand

        if isinstance(node, ast.Compare):
            left = self._eval(node.left, context)
            for op, comparator in zip(node.ops, node.comparators):
                right = self._eval(comparator, context)
                if not _COMPARATORS[type(op)](left, right):
                    return False
                left = right
            return True

        if isinstance(node, (ast.List, ast.Tuple)):
            return [self._eval(element, context) for element in node.elts]

        raise ValueError(f"Unsupported syntax: {type(node).__name__}")

    def __repr__(self) -> str:
        return f"Predicate({self.condition!r})"


def _dotted_path(node: ast.expr) -> Optional[str]:
    """'outputs.Retrieve.version' for a pure Name/Attribute chain, else None."""
    parts = []
    while isinstance(node, ast.Attribute):
        parts.append(node.attr)
        node = node.value
    if not isinstance(node, ast.Name):
        return None
    parts.append(node.id)
    return ".".join(reversed(parts))


# ============================================================
# Evaluator
# ============================================================

class ConditionEvaluator:
    """
    Applies the firing rules of each branch type.

    - ON_SUCCESS fires iff the source succeeded
    - ERROR fires iff the source failed
    - CUSTOM fires iff the source succeeded and its predicate holds

    A predicate that cannot be evaluated, whatever the reason, is not eligible.
    """

    def __init__(self):
        self._compiled: Dict[str, Predicate] = {}

    def compile(self, condition: str) -> Predicate:
        """Compile a condition once and cache it."""
        if condition not in self._compiled:
            self._compiled[condition] = Predicate(condition)
        return self._compiled[condition]

    def eligible(self, edge, source_status: StepStatus, context: RunContext) -> bool:
        """Decide whether `edge` fires now that its source reached `source_status`."""
        if edge.branch_type is BranchType.ERROR:
            return source_status is StepStatus.FAILED
        if source_status is not StepStatus.SUCCEEDED:
            return False
        if edge.branch_type is BranchType.ON_SUCCESS:
            return True

        predicate = edge.predicate or self.compile(edge.branch_condition or "")
        try:
            return predicate.evaluate(context)
        except UndefinedReference as e:
            logger.debug(
                f"Condition '{predicate.condition}' on {edge.source} -> {edge.target} "
                f"references undefined {e}; edge not eligible"
            )
            return False
        except Exception as e:
            logger.warning(
                f"Condition '{predicate.condition}' on {edge.source} -> {edge.target} "
                f"could not be evaluated ({type(e).__name__}: {e}); edge not eligible"
            )
            return False

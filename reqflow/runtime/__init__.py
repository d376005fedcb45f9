"""Runtime helpers: interpolation, conditions and the value store."""

from reqflow.runtime.conditions import evaluate, parse_condition, resolve_path
from reqflow.runtime.interpolation import VariableContext, build_context, extract_references
from reqflow.runtime.store import ValueStore

__all__ = [
    "VariableContext",
    "build_context",
    "extract_references",
    "evaluate",
    "parse_condition",
    "resolve_path",
    "ValueStore",
]

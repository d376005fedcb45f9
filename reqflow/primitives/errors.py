"""Error types for reqflow.

Per-request failures are captured into ExecutionResult objects instead of
propagating out of the scheduler. These exceptions mark the cases:
- Resolution: a template references something that cannot be resolved
- Transport: the request never produced a response
- Validation: a response did not satisfy its expectation
- Configuration: the plan itself is invalid (raised before execution)
"""

from dataclasses import dataclass
from typing import Any, List, Optional, Sequence


@dataclass
class Mismatch:
    """A single validation mismatch.

    Attributes:
        path: Location of the mismatch (e.g. ``body.items[0].id``).
        expected: Description of the matcher that failed.
        actual: The value found in the response (``None`` when absent).
    """

    path: str
    expected: str
    actual: Any

    def __str__(self) -> str:
        return f"{self.path}: expected {self.expected}, got {self.actual!r}"


class ReqflowError(Exception):
    """Base exception for engine failures.

    Attributes:
        message: Error description.
        cause: Optional underlying exception being wrapped.
    """

    def __init__(self, message: str, cause: Optional[Exception] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause


class ResolutionError(ReqflowError):
    """A template could not be resolved."""


class UnresolvedVariable(ResolutionError):
    """A referenced variable exists in no scope and has no default.

    Attributes:
        name: The variable name that could not be found.
    """

    def __init__(self, name: str):
        super().__init__(f"Unresolved variable: {name}")
        self.name = name


class CircularReference(ResolutionError):
    """Variable expansion did not reach a fixpoint.

    Attributes:
        chain: Names in expansion order, ending with the repeated name.
    """

    def __init__(self, chain: Sequence[str]):
        self.chain = list(chain)
        super().__init__(f"Circular variable reference: {' -> '.join(self.chain)}")


class TransportError(ReqflowError):
    """The transport failed to produce a response.

    Always retry-eligible.

    Attributes:
        kind: "connect", "timeout" or "protocol".
    """

    def __init__(self, message: str, kind: str = "connect", cause: Optional[Exception] = None):
        super().__init__(message, cause=cause)
        self.kind = kind


class ValidationFailure(ReqflowError):
    """A response did not satisfy its expectation tree."""

    def __init__(self, mismatches: List[Mismatch]):
        self.mismatches = list(mismatches)
        summary = "; ".join(str(m) for m in self.mismatches) or "validation failed"
        super().__init__(summary)


class ConfigurationError(ReqflowError):
    """The execution plan is invalid.

    Attributes:
        field: Optional field name that failed.
    """

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class StoreOrderingViolation(ConfigurationError):
    """A parallel group member consumes a store value produced by a sibling.

    Ordering between siblings in a parallel group is not guaranteed, so the
    plan is rejected before any request runs.
    """

    def __init__(self, name: str, producer: str, consumer: str, group: str):
        super().__init__(
            f"Request '{consumer}' reads store.{name} written by '{producer}', "
            f"but both run in parallel group '{group}'",
            field=f"store.{name}",
        )
        self.name = name
        self.producer = producer
        self.consumer = consumer
        self.group = group


class ConditionSyntaxError(ReqflowError):
    """A condition expression could not be parsed.

    Attributes:
        expression: The offending expression.
    """

    def __init__(self, expression: str):
        super().__init__(f"Invalid condition syntax: {expression!r}")
        self.expression = expression

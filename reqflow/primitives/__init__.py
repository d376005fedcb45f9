"""reqflow primitives: errors, retry decisions and the HTTP transport."""

from reqflow.primitives.errors import (
    CircularReference,
    ConditionSyntaxError,
    ConfigurationError,
    Mismatch,
    ReqflowError,
    ResolutionError,
    StoreOrderingViolation,
    TransportError,
    UnresolvedVariable,
    ValidationFailure,
)
from reqflow.primitives.http_client import HttpTransport, Transport
from reqflow.primitives.retry import RetryDecision, compute_delay, decide, is_retryable

__all__ = [
    # Errors
    "Mismatch",
    "ReqflowError",
    "ResolutionError",
    "UnresolvedVariable",
    "CircularReference",
    "TransportError",
    "ValidationFailure",
    "ConfigurationError",
    "StoreOrderingViolation",
    "ConditionSyntaxError",
    # Retry
    "RetryDecision",
    "compute_delay",
    "decide",
    "is_retryable",
    # HTTP transport
    "Transport",
    "HttpTransport",
]

"""reqflow: request orchestration and validation engine."""

from reqflow.config import Settings, get_settings
from reqflow.executor import (
    ExecutionSummary,
    Profiler,
    ProfileStats,
    Scheduler,
    build_plan,
)
from reqflow.models import (
    AuthConfig,
    ExecutionGroup,
    ExecutionMode,
    ExecutionPlan,
    ExecutionResult,
    RequestSpec,
    Response,
    ResultStatus,
    RetryPolicy,
)
from reqflow.primitives.http_client import HttpTransport, Transport

__version__ = "0.1.0"

__all__ = [
    "Settings",
    "get_settings",
    "build_plan",
    "AuthConfig",
    "Scheduler",
    "ExecutionSummary",
    "Profiler",
    "ProfileStats",
    "ExecutionGroup",
    "ExecutionMode",
    "ExecutionPlan",
    "ExecutionResult",
    "RequestSpec",
    "Response",
    "ResultStatus",
    "RetryPolicy",
    "Transport",
    "HttpTransport",
]

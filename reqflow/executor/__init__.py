"""Plan building and execution."""

from reqflow.executor.plan_builder import PlanBuilder, build_plan
from reqflow.executor.profile import Profiler, ProfileResult, ProfileStats
from reqflow.executor.scheduler import Scheduler
from reqflow.executor.summary import ExecutionSummary

__all__ = [
    "PlanBuilder",
    "build_plan",
    "Scheduler",
    "ExecutionSummary",
    "Profiler",
    "ProfileResult",
    "ProfileStats",
]

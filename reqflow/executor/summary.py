"""Aggregate results of a plan run and the CI pass/fail verdict."""

from dataclasses import dataclass, field
from typing import Any, Dict, List

from reqflow.models import CIThresholds, ExecutionResult, ResultStatus


@dataclass
class ExecutionSummary:
    """Results of one plan run, in plan order.

    ``failed`` counts every request that did not pass or get skipped (both
    ``failed`` and ``error`` results); ``errors`` counts the ``error`` subset.
    """

    results: List[ExecutionResult] = field(default_factory=list)
    duration_ms: float = 0.0
    cancelled: bool = False
    continue_on_error: bool = False
    ci: CIThresholds = field(default_factory=CIThresholds)

    def _count(self, *statuses: ResultStatus) -> int:
        return sum(1 for result in self.results if result.status in statuses)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def passed(self) -> int:
        return self._count(ResultStatus.PASSED)

    @property
    def failed(self) -> int:
        return self._count(ResultStatus.FAILED, ResultStatus.ERROR)

    @property
    def errors(self) -> int:
        return self._count(ResultStatus.ERROR)

    @property
    def skipped(self) -> int:
        return self._count(ResultStatus.SKIPPED)

    @property
    def failure_percentage(self) -> float:
        if not self.total:
            return 0.0
        return self.failed / self.total * 100

    @property
    def should_fail(self) -> bool:
        """Whether the run counts as failed for CI purposes.

        No failures always passes. ``strict_exit`` fails on any failure.
        ``fail_on`` / ``fail_on_percentage`` fail only when their threshold is
        exceeded, and pass otherwise. Without thresholds the run fails unless
        ``continue_on_error`` is set.
        """
        if self.failed == 0:
            return False

        ci = self.ci
        if ci.strict_exit:
            return True
        if ci.fail_on is not None and self.failed > ci.fail_on:
            return True
        if ci.fail_on_percentage is not None and self.total > 0:
            if self.failure_percentage > ci.fail_on_percentage:
                return True
        if ci.fail_on is not None or ci.fail_on_percentage is not None:
            return False

        return not self.continue_on_error

    @property
    def exit_code(self) -> int:
        return 1 if self.should_fail else 0

    def by_status(self, status: ResultStatus) -> List[ExecutionResult]:
        return [result for result in self.results if result.status == status]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "total": self.total,
            "passed": self.passed,
            "failed": self.failed,
            "errors": self.errors,
            "skipped": self.skipped,
            "duration_ms": self.duration_ms,
            "cancelled": self.cancelled,
            "should_fail": self.should_fail,
            "results": [result.to_dict() for result in self.results],
        }

"""Tests for ExecutionSummary counts and the CI verdict."""

import pytest

from reqflow.executor.summary import ExecutionSummary
from reqflow.models import CIThresholds, ExecutionResult, ResultStatus


def summary(passed=0, failed=0, errors=0, skipped=0, **kwargs):
    results = (
        [ExecutionResult(name=f"p{i}", status=ResultStatus.PASSED) for i in range(passed)]
        + [ExecutionResult(name=f"f{i}", status=ResultStatus.FAILED) for i in range(failed)]
        + [ExecutionResult(name=f"e{i}", status=ResultStatus.ERROR) for i in range(errors)]
        + [ExecutionResult(name=f"s{i}", status=ResultStatus.SKIPPED) for i in range(skipped)]
    )
    return ExecutionSummary(results=results, **kwargs)


class TestCounts:
    """Aggregate counters."""

    def test_counts(self):
        """failed includes errors; errors and skipped are separate."""
        s = summary(passed=3, failed=1, errors=1, skipped=2)
        assert s.total == 7
        assert s.passed == 3
        assert s.failed == 2
        assert s.errors == 1
        assert s.skipped == 2

    def test_failure_percentage(self):
        """Percentage of failed requests."""
        assert summary(passed=3, failed=1).failure_percentage == 25.0
        assert summary().failure_percentage == 0.0

    def test_by_status(self):
        s = summary(passed=1, failed=1, skipped=1)
        assert [r.name for r in s.by_status(ResultStatus.FAILED)] == ["f0"]
        assert s.by_status(ResultStatus.ERROR) == []

    def test_to_dict(self):
        """Serializes counts and results."""
        data = summary(passed=1, failed=1).to_dict()
        assert data["total"] == 2
        assert data["should_fail"] is True
        assert data["results"][1]["status"] == "failed"


class TestShouldFail:
    """CI exit determination."""

    def test_no_failures(self):
        """No failures never fails, even in strict mode."""
        s = summary(passed=2, ci=CIThresholds(strict_exit=True))
        assert s.should_fail is False
        assert s.exit_code == 0

    def test_default_follows_continue_on_error(self):
        """Without thresholds, failures fail unless continue_on_error is set."""
        assert summary(passed=1, failed=1).should_fail is True
        assert summary(passed=1, failed=1, continue_on_error=True).should_fail is False

    def test_strict_exit(self):
        """strict_exit fails on any failure despite continue_on_error."""
        s = summary(passed=9, failed=1, continue_on_error=True, ci=CIThresholds(strict_exit=True))
        assert s.should_fail is True
        assert s.exit_code == 1

    @pytest.mark.parametrize("failed,expected", [(1, False), (2, False), (3, True)])
    def test_fail_on(self, failed, expected):
        """fail_on tolerates up to N failures."""
        s = summary(passed=5, failed=failed, ci=CIThresholds(fail_on=2))
        assert s.should_fail is expected

    @pytest.mark.parametrize("failed,expected", [(1, False), (2, False), (3, True)])
    def test_fail_on_percentage(self, failed, expected):
        """fail_on_percentage tolerates up to P percent."""
        s = summary(passed=10 - failed, failed=failed, ci=CIThresholds(fail_on_percentage=20))
        assert s.should_fail is expected

    def test_errors_count_as_failures(self):
        """Error results count toward thresholds."""
        s = summary(passed=1, errors=2, ci=CIThresholds(fail_on=1))
        assert s.should_fail is True

"""Tests for the retry controller."""

import random

import pytest

from reqflow.models import BackoffKind, Response, RetryPolicy
from reqflow.primitives.errors import TransportError
from reqflow.primitives.retry import (
    apply_jitter,
    calculate_backoff_delay,
    decide,
    is_retryable,
)
from reqflow.runtime.conditions import parse_condition


class TestBackoffDelay:
    """Delay formulas before jitter."""

    def test_fixed(self):
        """Fixed backoff is the base delay every time."""
        policy = RetryPolicy(count=3, delay=100)
        assert [calculate_backoff_delay(n, policy) for n in (1, 2, 3)] == [100, 100, 100]

    def test_linear(self):
        """Linear backoff grows with the attempt number."""
        policy = RetryPolicy(count=3, delay=100, backoff=BackoffKind.LINEAR)
        assert [calculate_backoff_delay(n, policy) for n in (1, 2, 3)] == [100, 200, 300]

    @pytest.mark.parametrize("attempt,expected", [(1, 100), (2, 200), (3, 400), (4, 800)])
    def test_exponential(self, attempt, expected):
        """Exponential backoff is base * 2^(attempt-1)."""
        policy = RetryPolicy(count=5, delay=100, backoff=BackoffKind.EXPONENTIAL)
        assert calculate_backoff_delay(attempt, policy) == expected

    def test_exponential_clamped(self):
        """max_delay caps the computed delay."""
        policy = RetryPolicy(count=5, delay=100, backoff=BackoffKind.EXPONENTIAL, max_delay=250)
        assert calculate_backoff_delay(4, policy) == 250

    def test_custom_multiplier(self):
        """A multiplier other than 2 changes the growth."""
        policy = RetryPolicy(count=5, delay=10, backoff=BackoffKind.EXPONENTIAL, multiplier=3)
        assert calculate_backoff_delay(3, policy) == 90


class TestJitter:
    """Jitter stays within its ratio and the ceiling."""

    def test_disabled(self):
        """No jitter leaves the delay untouched."""
        assert apply_jitter(100, RetryPolicy(delay=100)) == 100

    def test_within_ratio(self):
        """Jittered delays stay inside ±ratio."""
        policy = RetryPolicy(delay=100, jitter=True, jitter_ratio=0.2)
        rng = random.Random(1)
        for _ in range(200):
            assert 80 <= apply_jitter(100, policy, rng) <= 120

    def test_full_randomization_by_default(self):
        """Without a ratio the delay varies within [0, 2x]."""
        policy = RetryPolicy(delay=100, jitter=True)
        rng = random.Random(7)
        values = [apply_jitter(100, policy, rng) for _ in range(200)]
        assert all(0 <= v <= 200 for v in values)
        assert len(set(values)) > 1

    def test_clamped_to_max_delay(self):
        """Jitter never exceeds max_delay."""
        policy = RetryPolicy(delay=100, jitter=True, max_delay=110)
        rng = random.Random(3)
        assert all(apply_jitter(100, policy, rng) <= 110 for _ in range(200))


class TestIsRetryable:
    """Which outcomes qualify for another attempt."""

    def test_transport_error(self):
        """Transport errors always qualify."""
        assert is_retryable(TransportError("refused"), RetryPolicy(count=1)) is True

    def test_status_code(self):
        """Only listed status codes qualify."""
        policy = RetryPolicy(count=1, codes=(500, 503))
        assert is_retryable(Response(status=503), policy) is True
        assert is_retryable(Response(status=404), policy) is False

    def test_condition(self):
        """A condition over the response can trigger a retry."""
        policy = RetryPolicy(count=1, condition=parse_condition("body.state == pending"))
        assert is_retryable(Response(status=200, body={"state": "pending"}), policy) is True
        assert is_retryable(Response(status=200, body={"state": "done"}), policy) is False


class TestDecide:
    """decide(attempt, outcome, policy)."""

    def test_count_zero_disables_retry(self):
        """count=0 stops after the first failure."""
        decision = decide(1, TransportError("x"), RetryPolicy(count=0))
        assert decision.retry is False

    def test_retry_with_delay(self):
        """A retryable outcome yields the computed delay."""
        policy = RetryPolicy(count=3, delay=100, backoff=BackoffKind.EXPONENTIAL)
        decision = decide(2, TransportError("x", kind="timeout"), policy)
        assert decision.retry is True
        assert decision.delay == 200
        assert "timeout" in decision.reason

    def test_exhaustion(self):
        """After count retries the controller stops."""
        policy = RetryPolicy(count=2, codes=(500,))
        assert decide(2, Response(status=500), policy).retry is True
        assert decide(3, Response(status=500), policy).retry is False

    def test_non_retryable_response(self):
        """Responses outside the triggers stop immediately."""
        decision = decide(1, Response(status=404), RetryPolicy(count=3, codes=(500,)))
        assert decision.retry is False

"""Retry decisions with fixed, linear or exponential backoff.

Pure functions of (attempt, outcome, policy); no I/O, no sleeping. The
scheduler owns the actual wait.
"""

import random
from dataclasses import dataclass
from typing import Any, Optional

from reqflow.constants import DEFAULT_JITTER_RATIO
from reqflow.models import BackoffKind, Response, RetryPolicy
from reqflow.primitives.errors import ReqflowError, TransportError
from reqflow.runtime.conditions import evaluate, parse_condition


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay: float = 0.0
    reason: str = ""

    @classmethod
    def stop(cls, reason: str) -> "RetryDecision":
        return cls(retry=False, reason=reason)


def calculate_backoff_delay(attempt: int, policy: RetryPolicy) -> float:
    """Delay (ms) before the retry that follows ``attempt``, before jitter.

    ``attempt`` is 1-indexed: the delay after the first attempt uses 1.
    """
    base = max(policy.delay, 0)
    attempt = max(attempt, 1)
    backoff = BackoffKind(policy.backoff)
    if backoff == BackoffKind.LINEAR:
        delay = base * attempt
    elif backoff == BackoffKind.EXPONENTIAL:
        delay = base * policy.multiplier ** (attempt - 1)
    else:
        delay = base
    if policy.max_delay is not None:
        delay = min(delay, policy.max_delay)
    return delay


def apply_jitter(delay: float, policy: RetryPolicy, rng: Optional[random.Random] = None) -> float:
    """Perturb ``delay`` by a uniform factor within ``±jitter_ratio``."""
    if not policy.jitter or delay <= 0:
        return delay
    rng = rng or random
    ratio = DEFAULT_JITTER_RATIO if policy.jitter_ratio is None else policy.jitter_ratio
    jittered = delay * (1 + rng.uniform(-ratio, ratio))
    if policy.max_delay is not None:
        jittered = min(jittered, policy.max_delay)
    return max(jittered, 0.0)


def compute_delay(attempt: int, policy: RetryPolicy, rng: Optional[random.Random] = None) -> float:
    return apply_jitter(calculate_backoff_delay(attempt, policy), policy, rng)


def is_retryable(outcome: Any, policy: RetryPolicy) -> bool:
    """Whether an attempt's outcome qualifies for another try.

    Transport errors always qualify. A response qualifies when its status is
    one of ``policy.codes`` or ``policy.condition`` holds against it.
    """
    if isinstance(outcome, TransportError):
        return True
    if isinstance(outcome, ReqflowError) or outcome is None:
        return False
    if not isinstance(outcome, Response):
        return False
    if outcome.status in policy.codes:
        return True
    if policy.condition is not None:
        passed, _ = evaluate(parse_condition(policy.condition), outcome.to_document())
        return passed
    return False


def decide(
    attempt: int,
    outcome: Any,
    policy: RetryPolicy,
    rng: Optional[random.Random] = None,
) -> RetryDecision:
    """Decide whether to retry after ``attempt`` attempts have completed.

    Args:
        attempt: Number of attempts made so far (1 after the first call).
        outcome: The Response received, or the TransportError raised.
        policy: Retry policy for the request.
        rng: Optional random source for jitter.

    Returns:
        RetryDecision with ``retry`` and the delay (ms) to wait first.
    """
    if policy.count <= 0:
        return RetryDecision.stop("retry disabled")
    if attempt >= policy.max_attempts:
        return RetryDecision.stop(f"exhausted {policy.count} retries")
    if not is_retryable(outcome, policy):
        return RetryDecision.stop("outcome not retryable")

    if isinstance(outcome, TransportError):
        reason = f"transport error ({outcome.kind})"
    else:
        reason = f"status {outcome.status}"
    return RetryDecision(retry=True, delay=compute_delay(attempt, policy, rng), reason=reason)

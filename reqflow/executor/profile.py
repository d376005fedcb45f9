"""Latency profiling: run one request many times and summarize timings.

Each iteration goes through the normal request lifecycle (resolution, call,
validation) but retries are disabled so every timing is a single attempt.
Warmup iterations run first and are left out of the statistics.
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence

from reqflow.executor.scheduler import Scheduler
from reqflow.models import ExecutionResult, RequestSpec, RetryPolicy
from reqflow.runtime.store import ValueStore

logger = logging.getLogger(__name__)


def calculate_percentile(sorted_values: Sequence[float], percentile: float) -> float:
    """Percentile of an ascending sequence, linearly interpolated between ranks."""
    if not sorted_values:
        return 0.0
    if len(sorted_values) == 1:
        return float(sorted_values[0])

    index = percentile / 100 * (len(sorted_values) - 1)
    lower = math.floor(index)
    upper = math.ceil(index)
    if lower == upper:
        return float(sorted_values[lower])
    fraction = index - lower
    return sorted_values[lower] * (1 - fraction) + sorted_values[upper] * fraction


def calculate_mean(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    return sum(values) / len(values)


def calculate_std_dev(values: Sequence[float], mean: float) -> float:
    """Population standard deviation."""
    if len(values) <= 1:
        return 0.0
    return math.sqrt(sum((v - mean) ** 2 for v in values) / len(values))


@dataclass
class ProfileStats:
    """Latency statistics for one profiled request (all times in ms)."""

    iterations: int = 0
    warmup: int = 0
    min: float = 0.0
    max: float = 0.0
    mean: float = 0.0
    median: float = 0.0
    p50: float = 0.0
    p95: float = 0.0
    p99: float = 0.0
    std_dev: float = 0.0
    failures: int = 0
    failure_rate: float = 0.0
    timings: List[float] = field(default_factory=list)

    @classmethod
    def from_timings(cls, timings: Sequence[float], warmup: int, failures: int, total: int) -> "ProfileStats":
        """Compute stats from successful timings, dropping the first ``warmup``.

        ``failure_rate`` is a percentage of ``total`` measured iterations.
        """
        effective = list(timings[warmup:])
        ordered = sorted(effective)
        mean = calculate_mean(ordered)
        return cls(
            iterations=len(effective),
            warmup=warmup,
            min=ordered[0] if ordered else 0.0,
            max=ordered[-1] if ordered else 0.0,
            mean=round(mean, 2),
            median=round(calculate_percentile(ordered, 50), 2),
            p50=round(calculate_percentile(ordered, 50), 2),
            p95=round(calculate_percentile(ordered, 95), 2),
            p99=round(calculate_percentile(ordered, 99), 2),
            std_dev=round(calculate_std_dev(ordered, mean), 2),
            failures=failures,
            failure_rate=round(failures / total * 100, 2) if total else 0.0,
            timings=effective,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "iterations": self.iterations,
            "warmup": self.warmup,
            "min": self.min,
            "max": self.max,
            "mean": self.mean,
            "median": self.median,
            "p50": self.p50,
            "p95": self.p95,
            "p99": self.p99,
            "std_dev": self.std_dev,
            "failures": self.failures,
            "failure_rate": self.failure_rate,
        }


@dataclass
class ProfileResult:
    spec: RequestSpec
    stats: ProfileStats
    results: List[ExecutionResult] = field(default_factory=list)


class Profiler:
    """Repeatedly executes a request through a Scheduler and collects latency stats."""

    def __init__(self, scheduler: Scheduler):
        self.scheduler = scheduler

    async def profile(
        self,
        spec: RequestSpec,
        iterations: int,
        warmup: int = 1,
        concurrency: int = 1,
        store: Optional[ValueStore] = None,
    ) -> ProfileResult:
        """Run ``warmup + iterations`` calls, at most ``concurrency`` at a time.

        Only passed iterations contribute timings; failures are counted against
        the measured iterations.
        """
        if iterations < 1:
            raise ValueError("iterations must be >= 1")
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        warmup = max(warmup, 0)

        single = replace(spec, retry=RetryPolicy())
        store = store if store is not None else ValueStore()
        total = warmup + iterations
        logger.info(f"Profiling '{spec.name}': {iterations} iterations, {warmup} warmup, concurrency {concurrency}")

        results: List[ExecutionResult] = []
        for start in range(0, total, concurrency):
            chunk = min(concurrency, total - start)
            results.extend(
                await asyncio.gather(*(self.scheduler.execute_request(single, store) for _ in range(chunk)))
            )

        measured = results[warmup:]
        timings = [result.duration_ms for result in measured if result.passed]
        failures = sum(1 for result in measured if not result.passed)
        stats = ProfileStats.from_timings(timings, 0, failures, len(measured))
        stats.warmup = warmup
        logger.info(f"Profiled '{spec.name}': p50 {stats.p50}ms, p95 {stats.p95}ms, {failures} failures")
        return ProfileResult(spec=spec, stats=stats, results=measured)

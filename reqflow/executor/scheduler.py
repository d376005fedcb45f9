"""Execution scheduler.

Drives each request through its lifecycle:

    PENDING -> RESOLVING -> CALLING -> VALIDATING
            -> (RETRY_PENDING -> CALLING) -> STORING -> DONE

Sequential groups run their items strictly in order, so every request sees all
earlier store writes. Parallel groups admit items through one semaphore per
group. Per-request failures are captured into ExecutionResult objects; only
plan-level cancellation interrupts the run.
"""

import asyncio
import base64
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Tuple, Union

import httpx

from reqflow.config import Settings, get_settings
from reqflow.constants import DEFAULT_TIMEOUT_MS, LOGGER_NAME
from reqflow.executor.summary import ExecutionSummary
from reqflow.models import (
    AuthConfig,
    ExecutionGroup,
    ExecutionMode,
    ExecutionPlan,
    ExecutionResult,
    RequestSpec,
    RequestState,
    ResolvedRequest,
    Response,
    ResultStatus,
)
from reqflow.primitives.errors import (
    ConditionSyntaxError,
    ConfigurationError,
    Mismatch,
    ResolutionError,
    TransportError,
)
from reqflow.primitives.http_client import Transport
from reqflow.primitives.retry import decide, is_retryable
from reqflow.runtime.conditions import MISSING, evaluate, parse_condition
from reqflow.runtime.interpolation import VariableContext
from reqflow.runtime.store import ValueStore
from reqflow.utils.logger import get_logger
from reqflow.validation.validator import Expectation, validate

logger = logging.getLogger(__name__)

REDACTION_FAILED = "[redaction failed]"
CANCELLED = "cancelled"

ResultCallback = Callable[[ExecutionResult], None]
TransitionCallback = Callable[[RequestSpec, RequestState], None]


@dataclass
class RunState:
    """Mutable state shared by every task of one plan run."""

    store: ValueStore
    results: List[Optional[ExecutionResult]]
    dry_run: bool = False
    halted: bool = False
    halted_by: Optional[str] = None


def count_requests(item: Union[ExecutionGroup, RequestSpec]) -> int:
    if isinstance(item, ExecutionGroup):
        return sum(count_requests(child) for child in item.items)
    return 1


class Scheduler:
    """Runs ExecutionPlans against a transport.

    Args:
        transport: Anything with ``async send(method, url, headers, body, timeout)``.
        settings: Engine settings; defaults to the environment.
        redactor: Optional ``text -> text`` hook applied before anything is logged.
        on_result: Called with each ExecutionResult as soon as it is final.
        on_transition: Called with (spec, state) on every lifecycle transition.
        rng: Random source for retry jitter.
        sleep: Coroutine used for retry delays (seconds).
    """

    def __init__(
        self,
        transport: Transport,
        settings: Optional[Settings] = None,
        redactor: Optional[Callable[[str], str]] = None,
        on_result: Optional[ResultCallback] = None,
        on_transition: Optional[TransitionCallback] = None,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.transport = transport
        self.settings = settings or get_settings()
        self.redactor = redactor
        self.on_result = on_result
        self.on_transition = on_transition
        self.rng = rng
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self._aborted = False

        get_logger(LOGGER_NAME, level=self.settings.log_level, log_dir=self.settings.log_dir)

    # Plan execution

    async def run(self, plan: ExecutionPlan, timeout: Optional[float] = None) -> ExecutionSummary:
        """Execute every group of ``plan`` in order.

        Args:
            plan: The plan to run.
            timeout: Plan-level timeout in seconds; falls back to
                ``settings.plan_timeout_s``.

        Returns:
            ExecutionSummary with one result per request, in plan order.
        """
        timeout = timeout if timeout is not None else self.settings.plan_timeout_s
        state = RunState(
            store=ValueStore(),
            results=[None] * plan.request_count,
            dry_run=plan.dry_run,
        )
        self._aborted = False
        start = time.perf_counter()
        cancelled = False

        logger.info(f"Running plan: {len(plan.groups)} groups, {plan.request_count} requests")
        self._task = asyncio.ensure_future(self._run_groups(plan, state))
        try:
            if timeout is not None:
                await asyncio.wait_for(self._task, timeout)
            else:
                await self._task
        except asyncio.TimeoutError:
            cancelled = True
            logger.error(f"Plan timed out after {timeout}s; cancelling in-flight requests")
        except asyncio.CancelledError:
            if not self._aborted:
                raise
            cancelled = True
            logger.warning("Plan aborted; cancelling in-flight requests")
        finally:
            self._task = None

        self._fill_unrun(plan, state, cancelled)
        summary = ExecutionSummary(
            results=[result for result in state.results if result is not None],
            duration_ms=(time.perf_counter() - start) * 1000,
            cancelled=cancelled,
            continue_on_error=plan.continue_on_error,
            ci=plan.ci,
        )
        logger.info(
            f"Plan finished: {summary.passed}/{summary.total} passed, "
            f"{summary.failed} failed, {summary.skipped} skipped in {summary.duration_ms:.0f}ms"
        )
        unsuccessful = summary.by_status(ResultStatus.FAILED) + summary.by_status(ResultStatus.ERROR)
        if unsuccessful:
            logger.warning(f"Not passed: {', '.join(result.name for result in unsuccessful)}")
        return summary

    def abort(self) -> None:
        """Cancel the running plan. In-flight requests end as ``error`` results."""
        if self._task is not None and not self._task.done():
            self._aborted = True
            self._task.cancel()

    async def _run_groups(self, plan: ExecutionPlan, state: RunState) -> None:
        offset = 0
        for group in plan.groups:
            if state.halted:
                break
            await self._run_group(group, offset, state)
            offset += count_requests(group)

    async def _run_group(self, group: ExecutionGroup, offset: int, state: RunState) -> None:
        offsets = []
        for item in group.items:
            offsets.append(offset)
            offset += count_requests(item)

        if group.mode == ExecutionMode.SEQUENTIAL:
            for item, item_offset in zip(group.items, offsets):
                if state.halted:
                    break
                await self._run_item(item, item_offset, group, state)
            return

        limit = group.max_concurrency or max(len(group.items), 1)
        semaphore = asyncio.Semaphore(limit)
        logger.debug(f"Group '{group.name}': {len(group.items)} items, concurrency {limit}")

        async def worker(item, item_offset):
            async with semaphore:
                if state.halted:
                    return
                await self._run_item(item, item_offset, group, state)

        await asyncio.gather(*(worker(item, item_offset) for item, item_offset in zip(group.items, offsets)))

    async def _run_item(self, item, offset: int, group: ExecutionGroup, state: RunState) -> None:
        if isinstance(item, ExecutionGroup):
            await self._run_group(item, offset, state)
            return

        result = ExecutionResult(name=item.name, status=ResultStatus.ERROR, group=item.group or group.name)
        try:
            await self._execute(item, state.store, state.dry_run, result)
        except asyncio.CancelledError:
            result.status = ResultStatus.ERROR
            result.error = CANCELLED
            self._finish(item, result)
            state.results[offset] = result
            raise
        except Exception as e:
            result.status = ResultStatus.ERROR
            result.error = f"{type(e).__name__}: {e}"
            logger.exception(f"Unexpected error running '{item.name}'")
            self._finish(item, result)

        state.results[offset] = result
        if result.status in (ResultStatus.FAILED, ResultStatus.ERROR) and not group.continue_on_error:
            if not state.halted:
                state.halted = True
                state.halted_by = item.name
                logger.warning(f"Stopping after '{item.name}' {result.status.value}; continueOnError is off")

    def _fill_unrun(self, plan: ExecutionPlan, state: RunState, cancelled: bool) -> None:
        for index, spec in enumerate(plan.iter_requests()):
            if state.results[index] is not None:
                continue
            if cancelled:
                result = ExecutionResult(
                    name=spec.name, status=ResultStatus.ERROR, error=CANCELLED, group=spec.group
                )
            else:
                result = ExecutionResult(
                    name=spec.name,
                    status=ResultStatus.SKIPPED,
                    skip_reason=f"not run: stopped after '{state.halted_by}' failed",
                    group=spec.group,
                )
            state.results[index] = result
            self._emit(result)

    # Single request

    async def execute_request(
        self,
        spec: RequestSpec,
        store: Optional[ValueStore] = None,
        dry_run: bool = False,
    ) -> ExecutionResult:
        """Run one request through its whole lifecycle outside of a plan."""
        result = ExecutionResult(name=spec.name, status=ResultStatus.ERROR, group=spec.group)
        await self._execute(spec, store if store is not None else ValueStore(), dry_run, result)
        return result

    async def _execute(self, spec: RequestSpec, store: ValueStore, dry_run: bool, result: ExecutionResult) -> None:
        self._transition(spec, RequestState.PENDING)
        self._transition(spec, RequestState.RESOLVING)
        context = VariableContext(
            [spec.variable_map],
            store=store,
            resolve_env=self.settings.resolve_env,
            max_depth=self.settings.max_resolution_depth,
        )

        try:
            if spec.when is not None:
                passed, description = self.check_condition(spec.when, context, store)
                if not passed:
                    result.status = ResultStatus.SKIPPED
                    result.skip_reason = f"condition not met: {description}"
                    logger.info(f"Skipping '{spec.name}': {result.skip_reason}")
                    self._finish(spec, result)
                    return
            resolved = self.resolve_request(spec, context)
            expectation = self.resolve_expectation(spec.expect, context)
            store_paths = {name: context.resolve(path) for name, path in spec.store}
        except (ResolutionError, ConditionSyntaxError, ConfigurationError) as e:
            result.status = ResultStatus.ERROR
            result.error = e.message
            logger.warning(f"Could not resolve '{spec.name}': {self._redact(e.message)}")
            self._finish(spec, result)
            return

        if dry_run:
            result.status = ResultStatus.PASSED
            result.dry_run = True
            logger.info(f"[dry-run] {spec.name}: {resolved.method} {self._redact(resolved.url)}")
            self._finish(spec, result)
            return

        response, error = await self._attempt_loop(spec, resolved, expectation, result)

        if error is not None:
            result.status = ResultStatus.ERROR
            result.error = error.message
            logger.warning(f"'{spec.name}' failed after {result.attempts} attempts: {self._redact(error.message)}")
            self._finish(spec, result)
            return

        self._transition(spec, RequestState.VALIDATING)
        verdict = validate(expectation, response)
        mismatches = list(verdict.mismatches)
        if (spec.retry.codes or spec.retry.condition is not None) and is_retryable(response, spec.retry):
            mismatches.append(Mismatch("status", "a response outside the retry triggers", response.status))
        result.mismatches = mismatches
        result.status = ResultStatus.PASSED if not mismatches else ResultStatus.FAILED

        if store_paths:
            self._transition(spec, RequestState.STORING)
            for name, path in store_paths.items():
                value = store.record(name, path, response)
                if value is not MISSING:
                    result.stored[name] = value

        if result.status == ResultStatus.FAILED:
            details = "; ".join(str(m) for m in mismatches)
            logger.warning(f"'{spec.name}' failed validation: {self._redact(details)}")
        else:
            logger.info(f"'{spec.name}' passed ({response.status}, {result.duration_ms:.0f}ms)")
        self._finish(spec, result)

    async def _attempt_loop(
        self,
        spec: RequestSpec,
        resolved: ResolvedRequest,
        expectation: Optional[Expectation],
        result: ExecutionResult,
    ) -> Tuple[Optional[Response], Optional[TransportError]]:
        """Call the transport until the retry controller says stop.

        Returns the last response, or the last transport error.
        """
        attempt = 0
        while True:
            attempt += 1
            result.attempts = attempt
            self._transition(spec, RequestState.CALLING)
            logger.debug(f"'{spec.name}' attempt {attempt}: {resolved.method} {self._redact(resolved.url)}")

            response: Optional[Response] = None
            error: Optional[TransportError] = None
            start = time.perf_counter()
            try:
                response = await self.transport.send(
                    resolved.method, resolved.url, resolved.headers, resolved.body, resolved.timeout
                )
            except TransportError as e:
                error = e
            elapsed = (time.perf_counter() - start) * 1000
            duration = response.duration_ms if response is not None and response.duration_ms else elapsed
            result.durations.append(duration)
            result.response = response

            decision = decide(attempt, error if error is not None else response, spec.retry, self.rng)
            if not decision.retry:
                return response, error

            self._transition(spec, RequestState.RETRY_PENDING)
            logger.info(
                f"Retrying '{spec.name}' after {decision.reason} "
                f"(attempt {attempt + 1}/{spec.retry.max_attempts}, waiting {decision.delay:.0f}ms)"
            )
            await self._sleep(decision.delay / 1000)

    # Resolution

    def check_condition(self, when: Any, context: VariableContext, store: ValueStore) -> Tuple[bool, str]:
        """Evaluate a ``when`` condition against the current store values.

        Paths may be written with or without the ``store.`` prefix.
        """
        condition = parse_condition(context.interpolate(when))
        snapshot = store.snapshot()
        return evaluate(condition, {**snapshot, "store": snapshot})

    def resolve_request(self, spec: RequestSpec, context: VariableContext) -> ResolvedRequest:
        """Materialize URL, query params, headers and body."""
        url = context.resolve(spec.url)
        if spec.params:
            params = {context.resolve(str(k)): context.resolve(str(v)) for k, v in spec.params}
            try:
                url = str(httpx.URL(url).copy_merge_params(params))
            except httpx.InvalidURL as e:
                raise ConfigurationError(f"Invalid URL '{url}': {e}", field="url")
        headers = {context.resolve(k): context.resolve(str(v)) for k, v in spec.headers}
        if spec.auth is not None and not any(name.lower() == "authorization" for name in headers):
            headers["Authorization"] = self.resolve_auth(spec.auth, context)
        body = context.interpolate(spec.body)
        timeout = spec.timeout if spec.timeout is not None else DEFAULT_TIMEOUT_MS
        return ResolvedRequest(method=spec.method, url=url, headers=headers, body=body, timeout=timeout)

    def resolve_auth(self, auth: AuthConfig, context: VariableContext) -> str:
        """Render credentials as an ``Authorization`` header value."""
        if auth.type == "bearer":
            return f"Bearer {context.resolve(auth.token or '')}"
        credentials = f"{context.resolve(auth.username or '')}:{context.resolve(auth.password or '')}"
        return "Basic " + base64.b64encode(credentials.encode("utf-8")).decode("ascii")

    def resolve_expectation(
        self, expectation: Optional[Expectation], context: VariableContext
    ) -> Optional[Expectation]:
        """Re-parse an expectation whose values hold placeholders."""
        if expectation is None or not expectation.has_references:
            return expectation
        return Expectation.parse(context.interpolate(expectation.raw))

    # Hooks

    def _transition(self, spec: RequestSpec, state: RequestState) -> None:
        if self.on_transition is not None:
            self.on_transition(spec, state)

    def _finish(self, spec: RequestSpec, result: ExecutionResult) -> None:
        self._transition(spec, RequestState.DONE)
        self._emit(result)

    def _emit(self, result: ExecutionResult) -> None:
        if self.on_result is not None:
            self.on_result(result)

    def _redact(self, text: str) -> str:
        if self.redactor is None:
            return text
        try:
            return self.redactor(text)
        except Exception as e:
            logger.warning(f"Redactor raised {type(e).__name__}; log text withheld")
            return REDACTION_FAILED

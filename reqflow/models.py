"""Data model for request plans and their results."""

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple, Union

import httpx

if TYPE_CHECKING:
    from reqflow.primitives.errors import Mismatch


class ExecutionMode(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


class BackoffKind(str, Enum):
    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


class ResultStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    ERROR = "error"
    SKIPPED = "skipped"


class RequestState(str, Enum):
    """Lifecycle of a single request inside the scheduler."""

    PENDING = "pending"
    RESOLVING = "resolving"
    CALLING = "calling"
    VALIDATING = "validating"
    RETRY_PENDING = "retry_pending"
    STORING = "storing"
    DONE = "done"


@dataclass(frozen=True)
class RetryPolicy:
    """When and how often to retry a request.

    Delays are in milliseconds. ``count`` is the number of retries after the
    first attempt, so ``count=2`` allows three attempts in total.
    """

    count: int = 0
    delay: float = 0
    backoff: BackoffKind = BackoffKind.FIXED
    multiplier: float = 2.0
    max_delay: Optional[float] = None
    jitter: bool = False
    jitter_ratio: Optional[float] = None
    codes: Tuple[int, ...] = ()
    condition: Optional[Any] = None

    @property
    def max_attempts(self) -> int:
        return max(self.count, 0) + 1


@dataclass(frozen=True)
class CIThresholds:
    """Inputs for deciding whether a run should count as failed."""

    strict_exit: bool = False
    fail_on: Optional[int] = None
    fail_on_percentage: Optional[float] = None


@dataclass(frozen=True)
class AuthConfig:
    """Request credentials, rendered into an ``Authorization`` header.

    Field values are templates resolved right before the call.
    """

    type: str
    username: Optional[str] = None
    password: Optional[str] = None
    token: Optional[str] = None

    def templates(self) -> List[str]:
        return [value for value in (self.username, self.password, self.token) if value is not None]


@dataclass(frozen=True)
class RequestSpec:
    """One declaratively described HTTP call.

    Templates (url, headers, auth, body, store paths, expectation values) are
    kept unresolved; the scheduler resolves them right before the call.
    ``variables`` is the already-flattened global -> collection -> request view.
    """

    name: str
    url: str
    method: str = "GET"
    headers: Tuple[Tuple[str, str], ...] = ()
    params: Tuple[Tuple[str, Any], ...] = ()
    body: Any = None
    timeout: Optional[float] = None
    auth: Optional[AuthConfig] = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    expect: Optional[Any] = None
    store: Tuple[Tuple[str, str], ...] = ()
    variables: Tuple[Tuple[str, Any], ...] = ()
    when: Optional[Any] = None
    group: str = ""

    @property
    def header_map(self) -> Dict[str, str]:
        return dict(self.headers)

    @property
    def store_map(self) -> Dict[str, str]:
        return dict(self.store)

    @property
    def variable_map(self) -> Dict[str, Any]:
        return dict(self.variables)


@dataclass(frozen=True)
class ExecutionGroup:
    """An ordered set of requests (and nested collections) run under one mode."""

    name: str
    items: Tuple[Union["ExecutionGroup", RequestSpec], ...] = ()
    mode: ExecutionMode = ExecutionMode.SEQUENTIAL
    max_concurrency: Optional[int] = None
    continue_on_error: bool = False

    def iter_requests(self):
        """Yield every RequestSpec in this group, depth first, in plan order."""
        for item in self.items:
            if isinstance(item, ExecutionGroup):
                yield from item.iter_requests()
            else:
                yield item


@dataclass(frozen=True)
class ExecutionPlan:
    groups: Tuple[ExecutionGroup, ...] = ()
    variables: Tuple[Tuple[str, Any], ...] = ()
    continue_on_error: bool = False
    dry_run: bool = False
    ci: CIThresholds = field(default_factory=CIThresholds)

    def iter_requests(self):
        for group in self.groups:
            yield from group.iter_requests()

    @property
    def request_count(self) -> int:
        return sum(1 for _ in self.iter_requests())


@dataclass
class Response:
    """A response handed back by the transport.

    Attributes:
        status: HTTP status code.
        headers: Case-insensitive response headers.
        body: Decoded JSON value, or text when the body is not JSON.
        duration_ms: Time spent on the call.
    """

    status: int
    headers: httpx.Headers = field(default_factory=httpx.Headers)
    body: Any = None
    duration_ms: float = 0.0

    def __post_init__(self):
        if not isinstance(self.headers, httpx.Headers):
            self.headers = httpx.Headers(self.headers or {})

    def to_document(self) -> Dict[str, Any]:
        """Addressable view used by store paths, conditions and custom checks."""
        return {
            "status": self.status,
            "headers": self.headers,
            "body": self.body,
            "metrics": {"duration": self.duration_ms},
        }


@dataclass(frozen=True)
class ResolvedRequest:
    method: str
    url: str
    headers: Dict[str, str]
    body: Any
    timeout: Optional[float]


@dataclass
class ExecutionResult:
    """Outcome of one request's full attempt sequence."""

    name: str
    status: ResultStatus
    attempts: int = 0
    durations: List[float] = field(default_factory=list)
    mismatches: List["Mismatch"] = field(default_factory=list)
    stored: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    response: Optional[Response] = None
    skip_reason: Optional[str] = None
    dry_run: bool = False
    group: str = ""

    @property
    def passed(self) -> bool:
        return self.status == ResultStatus.PASSED

    @property
    def duration_ms(self) -> float:
        return sum(self.durations)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "name": self.name,
            "group": self.group,
            "status": self.status.value,
            "attempts": self.attempts,
            "durations": list(self.durations),
            "mismatches": [
                {"path": m.path, "expected": m.expected, "actual": m.actual}
                for m in self.mismatches
            ],
            "stored": dict(self.stored),
            "error": self.error,
            "skip_reason": self.skip_reason,
            "dry_run": self.dry_run,
            "response_status": self.response.status if self.response else None,
        }

"""Response validation against a parsed expectation."""

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

from reqflow.models import Response
from reqflow.primitives.errors import ConfigurationError, Mismatch, ValidationFailure
from reqflow.runtime.conditions import MISSING, evaluate, parse_condition
from reqflow.runtime.interpolation import extract_references
from reqflow.validation.matchers import (
    Matcher,
    parse_comparator,
    parse_matcher,
    parse_status_matcher,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CustomCheck:
    """A named boolean expression evaluated against the whole response."""

    name: str
    expression: Any


@dataclass(frozen=True)
class Expectation:
    """Everything a response must satisfy.

    Attributes:
        status: Matcher for the status code.
        headers: (name, matcher) pairs; names are matched case-insensitively.
        body: Matcher tree for the decoded body.
        response_time: Comparator applied to the call duration (ms).
        failure: Negative test - the response must carry a 4xx/5xx status.
        custom: Extra named checks.
        raw: The configuration the expectation was parsed from.
    """

    status: Optional[Matcher] = None
    headers: Tuple[Tuple[str, Matcher], ...] = ()
    body: Optional[Matcher] = None
    response_time: Optional[Matcher] = None
    failure: bool = False
    custom: Tuple[CustomCheck, ...] = ()
    raw: Any = field(default=None, compare=False, repr=False)

    @classmethod
    def parse(cls, raw: Optional[Mapping]) -> Optional["Expectation"]:
        """Parse an ``expect`` configuration block."""
        if raw is None:
            return None
        if not isinstance(raw, Mapping):
            raise ConfigurationError("expect must be a mapping", field="expect")

        response_time = None
        if raw.get("responseTime") is not None:
            response_time = parse_comparator(str(raw["responseTime"]))
            if response_time is None:
                raise ConfigurationError(
                    f"Invalid responseTime expression: {raw['responseTime']!r}",
                    field="expect.responseTime",
                )

        headers = raw.get("headers") or {}
        if not isinstance(headers, Mapping):
            raise ConfigurationError("expect.headers must be a mapping", field="expect.headers")

        return cls(
            status=parse_status_matcher(raw["status"]) if raw.get("status") is not None else None,
            headers=tuple((str(name), parse_matcher(value)) for name, value in headers.items()),
            body=parse_matcher(raw["body"]) if "body" in raw else None,
            response_time=response_time,
            failure=bool(raw.get("failure", False)),
            custom=tuple(_parse_custom(raw.get("custom") or [])),
            raw=raw,
        )

    @property
    def has_references(self) -> bool:
        """True when expectation values contain ``${...}`` placeholders."""
        return _contains_reference(self.raw)


def _parse_custom(entries: Any) -> List[CustomCheck]:
    if isinstance(entries, (str, Mapping)):
        entries = [entries]
    checks = []
    for entry in entries:
        if isinstance(entry, Mapping) and ("check" in entry or "expression" in entry):
            expression = entry.get("check", entry.get("expression"))
            checks.append(CustomCheck(name=str(entry.get("name", expression)), expression=expression))
        else:
            checks.append(CustomCheck(name=str(entry), expression=entry))
    return checks


def _contains_reference(value: Any) -> bool:
    if isinstance(value, str):
        return bool(extract_references(value))
    if isinstance(value, Mapping):
        return any(_contains_reference(k) or _contains_reference(v) for k, v in value.items())
    if isinstance(value, (list, tuple)):
        return any(_contains_reference(item) for item in value)
    return False


@dataclass
class Verdict:
    mismatches: List[Mismatch] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.mismatches

    def describe(self) -> str:
        return "; ".join(str(m) for m in self.mismatches)

    def raise_for_mismatches(self) -> None:
        """Raise ValidationFailure when any check failed."""
        if self.mismatches:
            raise ValidationFailure(self.mismatches)


def validate(expectation: Optional[Expectation], response: Response) -> Verdict:
    """Evaluate an expectation against a response.

    Every failing leaf is recorded with its path, the expected matcher and the
    actual value. The request passes iff there are no mismatches.
    """
    verdict = Verdict()
    if expectation is None:
        return verdict

    mismatches = verdict.mismatches
    if expectation.status is not None:
        expectation.status.match(response.status, "status", mismatches)

    for name, matcher in expectation.headers:
        actual = response.headers.get(name, MISSING)
        matcher.match(actual, f"headers[{name}]", mismatches)

    if expectation.body is not None:
        expectation.body.match(response.body, "body", mismatches)

    if expectation.response_time is not None:
        expectation.response_time.match(response.duration_ms, "metrics.duration", mismatches)

    if expectation.custom:
        document = response.to_document()
        for check in expectation.custom:
            _run_custom_check(check, document, mismatches)

    if expectation.failure and not mismatches and response.status < 400:
        mismatches.append(Mismatch("status", "a 4xx/5xx failure status", response.status))

    return verdict


def _run_custom_check(check: CustomCheck, document: Mapping, mismatches: List[Mismatch]) -> None:
    try:
        passed, description = evaluate(parse_condition(check.expression), document)
    except Exception as e:
        logger.warning(f"Custom check '{check.name}' raised: {e}")
        mismatches.append(Mismatch(f"custom[{check.name}]", "check to evaluate", str(e)))
        return
    if not passed:
        mismatches.append(Mismatch(f"custom[{check.name}]", description, False))

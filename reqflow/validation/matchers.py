"""Expectation matchers.

Configuration values are parsed once into a closed set of matcher types:

    Exact       value must equal the actual value (type-sensitive)
    Wildcard    "*" - key/index must be present, any value
    Pattern     regex, searched within the stringified actual value
    Comparator  "<N", ">=N", ">=0, <=100", "lo,hi", "lo-hi", "2xx"
    OneOf       list of acceptable scalars (or leaf matchers)
    ObjectMatcher   per-key matchers, unspecified keys ignored
    ArrayMatcher    per-index matchers, "*" for every element, "length"
"""

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

from reqflow.constants import LENGTH_KEY, WILDCARD
from reqflow.primitives.errors import Mismatch
from reqflow.runtime.conditions import MISSING, stringify

_CLASS_RE = re.compile(r"^([1-5])xx$", re.IGNORECASE)
_NUMBER = r"-?\d+(?:\.\d+)?"
_RANGE_RE = re.compile(rf"^({_NUMBER})\s*(?:,|\.\.)\s*({_NUMBER})$")
_DASH_RANGE_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*-\s*(\d+(?:\.\d+)?)$")
_CLAUSE_RE = re.compile(rf"^(>=|<=|>|<|==|!=)\s*({_NUMBER})$")
_INDEX_SELECTOR_RE = re.compile(r"^\[(-?\d+|\*)\]$")


def is_regex_pattern(text: str) -> bool:
    """Heuristic used to tell regex matchers from plain strings."""
    return (
        text.startswith("^")
        or text.endswith("$")
        or "\\d" in text
        or "\\w" in text
        or "\\s" in text
        or "[" in text
        or "*" in text
        or "+" in text
        or "?" in text
    )


def strict_equal(actual: Any, expected: Any) -> bool:
    """Equality that does not conflate bools with numbers or "1" with 1."""
    if isinstance(actual, bool) or isinstance(expected, bool):
        return type(actual) is type(expected) and actual == expected
    if isinstance(actual, (int, float)) and isinstance(expected, (int, float)):
        return actual == expected
    if isinstance(actual, Mapping) and isinstance(expected, Mapping):
        return dict(actual) == dict(expected)
    return type(actual) is type(expected) and actual == expected


def to_number(value: Any) -> Optional[float]:
    if value is MISSING or value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def join_path(path: str, key: Any) -> str:
    if isinstance(key, int):
        return f"{path}[{key}]"
    return f"{path}.{key}" if path else str(key)


def _display(value: Any) -> Any:
    return None if value is MISSING else value


class Matcher:
    """Base matcher. ``actual`` is ``MISSING`` when the key/index is absent."""

    def matches(self, actual: Any) -> bool:
        mismatches: List[Mismatch] = []
        self.match(actual, "", mismatches)
        return not mismatches

    def match(self, actual: Any, path: str, mismatches: List[Mismatch]) -> None:
        if not self.matches_leaf(actual):
            mismatches.append(Mismatch(path, self.describe(), _display(actual)))

    def matches_leaf(self, actual: Any) -> bool:
        raise NotImplementedError

    def describe(self) -> str:
        raise NotImplementedError


@dataclass(frozen=True)
class Exact(Matcher):
    value: Any

    def matches_leaf(self, actual: Any) -> bool:
        if actual is MISSING:
            return False
        return strict_equal(actual, self.value)

    def describe(self) -> str:
        return "null" if self.value is None else repr(self.value)


@dataclass(frozen=True)
class Wildcard(Matcher):
    def matches_leaf(self, actual: Any) -> bool:
        return actual is not MISSING

    def describe(self) -> str:
        return "any present value"


@dataclass(frozen=True)
class Pattern(Matcher):
    """Regex matched with ``re.search``: anchors are only what the pattern says."""

    pattern: str
    compiled: Any = field(default=None, compare=False, repr=False)

    def __post_init__(self):
        if self.compiled is None:
            object.__setattr__(self, "compiled", re.compile(self.pattern))

    def matches_leaf(self, actual: Any) -> bool:
        if actual is MISSING:
            return False
        text = "null" if actual is None else stringify(actual)
        return self.compiled.search(text) is not None

    def describe(self) -> str:
        return f"pattern /{self.pattern}/"


@dataclass(frozen=True)
class Comparator(Matcher):
    """Numeric comparison parsed from a string expression.

    ``clauses`` are (operator, operand) pairs that must all hold; a range is
    stored as ``>=lo`` and ``<=hi``; a status class ``2xx`` as ``status_class``.
    """

    expression: str
    clauses: Tuple[Tuple[str, float], ...] = ()
    status_class: Optional[int] = None

    def matches_leaf(self, actual: Any) -> bool:
        number = to_number(actual)
        if number is None:
            return False
        if self.status_class is not None:
            return int(number) // 100 == self.status_class
        return all(_compare(number, op, operand) for op, operand in self.clauses)

    def describe(self) -> str:
        return f"value matching {self.expression!r}"


def _compare(number: float, op: str, operand: float) -> bool:
    if op == ">":
        return number > operand
    if op == ">=":
        return number >= operand
    if op == "<":
        return number < operand
    if op == "<=":
        return number <= operand
    if op == "==":
        return number == operand
    return number != operand


def parse_comparator(text: str) -> Optional[Comparator]:
    """Parse a comparator expression, or return None if ``text`` is not one."""
    stripped = text.strip()
    status_class = _CLASS_RE.match(stripped)
    if status_class:
        return Comparator(stripped, status_class=int(status_class.group(1)))

    range_match = _RANGE_RE.match(stripped) or _DASH_RANGE_RE.match(stripped)
    if range_match:
        low, high = sorted((float(range_match.group(1)), float(range_match.group(2))))
        return Comparator(stripped, clauses=((">=", low), ("<=", high)))

    clauses = []
    for part in stripped.split(","):
        clause = _CLAUSE_RE.match(part.strip())
        if not clause:
            return None
        clauses.append((clause.group(1), float(clause.group(2))))
    return Comparator(stripped, clauses=tuple(clauses))


@dataclass(frozen=True)
class OneOf(Matcher):
    options: Tuple[Matcher, ...]

    def matches_leaf(self, actual: Any) -> bool:
        return any(option.matches(actual) for option in self.options)

    def describe(self) -> str:
        return "one of [" + ", ".join(option.describe() for option in self.options) + "]"


@dataclass(frozen=True)
class ObjectMatcher(Matcher):
    """Partial object match: only the listed keys are checked."""

    fields: Tuple[Tuple[str, Matcher], ...]

    def match(self, actual: Any, path: str, mismatches: List[Mismatch]) -> None:
        if not isinstance(actual, (Mapping, list)):
            mismatches.append(Mismatch(path or "body", "an object", _display(actual)))
            return
        for key, matcher in self.fields:
            matcher.match(_child(actual, key), join_path(path, key), mismatches)

    def describe(self) -> str:
        return "object with " + ", ".join(key for key, _ in self.fields)


@dataclass(frozen=True)
class ArrayMatcher(Matcher):
    indexed: Tuple[Tuple[int, Matcher], ...] = ()
    every: Optional[Matcher] = None
    length: Optional[Matcher] = None

    def match(self, actual: Any, path: str, mismatches: List[Mismatch]) -> None:
        path = path or "body"
        if not isinstance(actual, list):
            mismatches.append(Mismatch(path, "an array", _display(actual)))
            return
        if self.length is not None:
            self.length.match(len(actual), join_path(path, LENGTH_KEY), mismatches)
        for index, matcher in self.indexed:
            try:
                element = actual[index]
            except IndexError:
                element = MISSING
            matcher.match(element, join_path(path, index), mismatches)
        if self.every is not None:
            for index, element in enumerate(actual):
                self.every.match(element, join_path(path, index), mismatches)

    def describe(self) -> str:
        return "array"


def _child(actual: Any, key: str) -> Any:
    if isinstance(actual, list):
        if key == LENGTH_KEY:
            return len(actual)
        try:
            return actual[int(key)]
        except (ValueError, IndexError):
            return MISSING
    if key in actual:
        return actual[key]
    return MISSING


def _is_selector(key: Any) -> bool:
    return key == WILDCARD or bool(_INDEX_SELECTOR_RE.match(str(key)))


def _is_scalar(value: Any) -> bool:
    return not isinstance(value, (Mapping, list, tuple))


def parse_leaf(raw: Any) -> Matcher:
    """Parse a scalar matcher (wildcard, regex, comparator, exact)."""
    if isinstance(raw, Matcher):
        return raw
    if isinstance(raw, str):
        if raw == WILDCARD:
            return Wildcard()
        if raw == "null":
            return Exact(None)
        if is_regex_pattern(raw):
            try:
                return Pattern(raw)
            except re.error:
                return Exact(raw)
        comparator = parse_comparator(raw)
        if comparator is not None:
            return comparator
    return Exact(raw)


def parse_matcher(raw: Any) -> Matcher:
    """Parse a configuration value into a matcher tree."""
    if isinstance(raw, Matcher):
        return raw
    if isinstance(raw, (list, tuple)):
        if all(_is_scalar(item) for item in raw):
            return OneOf(tuple(parse_leaf(item) for item in raw))
        return ArrayMatcher(indexed=tuple((i, parse_matcher(item)) for i, item in enumerate(raw)))
    if isinstance(raw, Mapping):
        keys = [str(key) for key in raw]
        if any(_is_selector(k) for k in keys) and all(_is_selector(k) or k == LENGTH_KEY for k in keys):
            return _parse_array_matcher(raw)
        return ObjectMatcher(tuple((str(key), parse_matcher(value)) for key, value in raw.items()))
    return parse_leaf(raw)


def _parse_array_matcher(raw: Mapping) -> ArrayMatcher:
    indexed = []
    every = None
    length = None
    for key, value in raw.items():
        key = str(key)
        if key == LENGTH_KEY:
            length = parse_leaf(value)
            continue
        selector = _INDEX_SELECTOR_RE.match(key)
        if key == WILDCARD or (selector and selector.group(1) == WILDCARD):
            every = parse_matcher(value)
        else:
            indexed.append((int(selector.group(1)), parse_matcher(value)))
    return ArrayMatcher(indexed=tuple(indexed), every=every, length=length)


def parse_status_matcher(raw: Any) -> Matcher:
    """Status accepts an int, a list of ints/classes, or a class like ``"2xx"``."""
    if isinstance(raw, (list, tuple)):
        return OneOf(tuple(parse_status_matcher(item) for item in raw))
    if isinstance(raw, str) and raw.strip().isdigit():
        return Exact(int(raw.strip()))
    return parse_leaf(raw)

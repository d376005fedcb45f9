"""Condition evaluator and path resolver.

Resolves dotted / bracketed paths in nested dict/list structures and
evaluates boolean conditions against a document. Used by the value store
(extraction paths), ``when`` conditions, retry conditions and custom checks.
"""

import json
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

from reqflow.primitives.errors import ConditionSyntaxError

MISSING = object()

_SEGMENT_RE = re.compile(r"\[([^\]]*)\]|([^.\[\]]+)")
_UNARY_RE = re.compile(r"^(.+?)\s+(exists|not-exists)$", re.IGNORECASE)
_BINARY_RE = re.compile(r"^(.+?)\s*(==|!=|>=|<=|>|<|\s+contains\s+|\s+matches\s+)\s*(.+)$", re.IGNORECASE)

OPERATORS = ("==", "!=", ">", "<", ">=", "<=", "contains", "matches", "exists", "not-exists")

# Operator aliases accepted in structured conditions
_OP_ALIASES = {
    "eq": "==",
    "ne": "!=",
    "gt": ">",
    "gte": ">=",
    "lt": "<",
    "lte": "<=",
    "regex": "matches",
}


def split_path(path: str) -> List[str]:
    """Split ``body.items[0].id`` or ``headers[Content-Type]`` into segments."""
    segments = []
    for bracket, plain in _SEGMENT_RE.findall(path or ""):
        segment = bracket if bracket else plain
        if len(segment) >= 2 and segment[0] == segment[-1] and segment[0] in "'\"":
            segment = segment[1:-1]
        segments.append(segment)
    return segments


def resolve_path(doc: Any, path: str, default: Any = None) -> Any:
    """Resolve a dotted path in a nested dict/list structure.

    Supports dict key lookups, bracketed keys and numeric list indices
    (negative indices count from the end):
        body.items.0.name   ->  doc["body"]["items"][0]["name"]
        body.items[-1].name ->  doc["body"]["items"][-1]["name"]
        headers[X-Token]    ->  doc["headers"]["X-Token"]

    Returns ``default`` when any segment is missing.
    """
    if not path:
        return doc
    current = doc
    for part in split_path(path):
        if isinstance(current, Mapping):
            if part not in current:
                return default
            current = current[part]
        elif isinstance(current, list):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                if part == "length":
                    current = len(current)
                    continue
                return default
        else:
            return default
    return current


def stringify(value: Any) -> str:
    """Render a value for string contexts (templates, contains, matches)."""
    if value is None or value is MISSING:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int, float)):
        return str(value)
    if isinstance(value, Mapping):
        value = dict(value)
    return json.dumps(value, separators=(",", ":"))


def coerce_literal(value: str) -> Union[str, int, float, bool, None]:
    """Convert the right-hand side of a condition to a typed literal."""
    value = value.strip()
    if value == "true":
        return True
    if value == "false":
        return False
    if value == "null":
        return None
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "'\"":
        return value[1:-1]
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        return value


@dataclass(frozen=True)
class Condition:
    """A single comparison: ``left operator right``."""

    left: str
    operator: str
    right: Any = None
    case_sensitive: bool = False

    def describe(self) -> str:
        if self.operator in ("exists", "not-exists"):
            return f"{self.left} {self.operator}"
        return f"{self.left} {self.operator} {self.right!r}"


@dataclass(frozen=True)
class CompoundCondition:
    """``all`` / ``any`` / ``not`` combination of conditions."""

    kind: str
    children: Tuple[Any, ...]

    def describe(self) -> str:
        inner = ", ".join(child.describe() for child in self.children)
        return f"{self.kind}({inner})"


def parse_condition(raw: Any) -> Union[Condition, CompoundCondition]:
    """Parse a condition from its configuration form.

    Accepted forms:
      - ``"store.status == 200"``, ``"body.id exists"``, ``"body.name contains bob"``
      - ``{"left": ..., "operator": ..., "right": ..., "caseSensitive": ...}``
      - ``{"path": ..., "op": ..., "value": ...}``
      - ``{"all": [...]}``, ``{"any": [...]}``, ``{"not": ...}``
    """
    if isinstance(raw, (Condition, CompoundCondition)):
        return raw
    if isinstance(raw, str):
        return _parse_string_condition(raw)
    if isinstance(raw, Mapping):
        for kind in ("all", "any"):
            if kind in raw:
                children = raw[kind]
                if not isinstance(children, list) or not children:
                    raise ConditionSyntaxError(repr(raw))
                return CompoundCondition(kind, tuple(parse_condition(c) for c in children))
        if "not" in raw:
            return CompoundCondition("not", (parse_condition(raw["not"]),))

        left = raw.get("left", raw.get("path"))
        operator = raw.get("operator", raw.get("op", "=="))
        if not left:
            raise ConditionSyntaxError(repr(raw))
        operator = _OP_ALIASES.get(str(operator).lower(), str(operator).lower())
        if operator not in OPERATORS:
            raise ConditionSyntaxError(repr(raw))
        return Condition(
            left=str(left),
            operator=operator,
            right=raw.get("right", raw.get("value")),
            case_sensitive=bool(raw.get("caseSensitive", raw.get("case_sensitive", False))),
        )
    raise ConditionSyntaxError(repr(raw))


def _parse_string_condition(text: str) -> Condition:
    trimmed = text.strip()
    unary = _UNARY_RE.match(trimmed)
    if unary:
        return Condition(left=unary.group(1).strip(), operator=unary.group(2).lower())

    binary = _BINARY_RE.match(trimmed)
    if not binary:
        raise ConditionSyntaxError(text)
    left, operator, right = binary.groups()
    return Condition(
        left=left.strip(),
        operator=operator.strip().lower(),
        right=coerce_literal(right),
    )


def evaluate(condition: Union[Condition, CompoundCondition], doc: Dict[str, Any]) -> Tuple[bool, str]:
    """Evaluate a parsed condition against a document.

    Returns:
        (passed, description) where description names the deciding check.
    """
    if isinstance(condition, CompoundCondition):
        if condition.kind == "all":
            for child in condition.children:
                passed, description = evaluate(child, doc)
                if not passed:
                    return False, description
            return True, condition.describe()
        if condition.kind == "any":
            for child in condition.children:
                passed, _ = evaluate(child, doc)
                if passed:
                    return True, condition.describe()
            return False, condition.describe()
        passed, _ = evaluate(condition.children[0], doc)
        return not passed, condition.describe()

    actual = resolve_path(doc, condition.left, MISSING)
    return apply_operator(actual, condition), condition.describe()


def apply_operator(actual: Any, condition: Condition) -> bool:
    """Apply a comparison operator."""
    op = condition.operator
    expected = condition.right

    if op == "exists":
        return actual is not MISSING and actual is not None and actual != ""
    if op == "not-exists":
        return actual is MISSING or actual is None or actual == ""
    if actual is MISSING:
        actual = None

    if op in ("==", "!="):
        if isinstance(actual, str) and isinstance(expected, str):
            equal = actual == expected if condition.case_sensitive else actual.lower() == expected.lower()
        else:
            equal = _loose_equal(actual, expected)
        return equal if op == "==" else not equal

    if op in (">", "<", ">=", "<="):
        left = _to_number(actual)
        right = _to_number(expected)
        if left is None or right is None:
            return False
        return {
            ">": left > right,
            "<": left < right,
            ">=": left >= right,
            "<=": left <= right,
        }[op]

    if op == "contains":
        haystack, needle = stringify(actual), stringify(expected)
        if not condition.case_sensitive:
            haystack, needle = haystack.lower(), needle.lower()
        return needle in haystack

    if op == "matches":
        flags = 0 if condition.case_sensitive else re.IGNORECASE
        try:
            return re.search(stringify(expected), stringify(actual), flags) is not None
        except re.error:
            return False

    return False


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _loose_equal(actual: Any, expected: Any) -> bool:
    if actual == expected:
        return True
    left, right = _to_number(actual), _to_number(expected)
    if left is not None and right is not None:
        return left == right
    return stringify(actual) == stringify(expected) if isinstance(expected, str) else False

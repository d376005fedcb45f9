"""Template interpolation for ${...} expressions.

Resolves placeholders against layered variable scopes and the runtime value
store. Preserves types for whole-expression templates.

Supported forms:
    ${NAME}                         plain lookup
    ${NAME:default}                 fallback when NAME is absent (may nest)
    ${NAME:expected:then:else}      conditional on NAME's resolved value
    ${NAME:upper} / ${NAME:lower}   string transforms
    ${store.NAME} / ${store.NAME.path}
    ${UUID} ${UUID:short} ${TIMESTAMP} ${CURRENT_TIME}
    ${DATE:YYYY-MM-DD} ${TIME:HH:mm:ss} ${RANDOM:1-100} ${RANDOM:string:8}
"""

import os
import random
import re
import string
import time
import uuid
from collections import ChainMap
from dataclasses import dataclass
from datetime import datetime
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Sequence

from reqflow.constants import MAX_RESOLUTION_DEPTH, STORE_PREFIX
from reqflow.primitives.errors import CircularReference, UnresolvedVariable
from reqflow.runtime.conditions import MISSING, resolve_path, stringify

DYNAMIC_PREFIXES = ("DATE", "TIME", "UUID", "RANDOM")

_URL_DEFAULT_RE = re.compile(r"^[A-Za-z][\w+.-]*://")
_RANGE_RE = re.compile(r"^RANDOM:(\d+)-(\d+)$")
_RANDOM_STRING_RE = re.compile(r"^RANDOM:string:(\d+)$")
_TRANSFORM_RE = re.compile(r"^([^:]+):(upper|lower)$")


@dataclass(frozen=True)
class VariableRef:
    """A ``${...}`` occurrence inside a template string."""

    start: int
    end: int
    expression: str


def extract_references(text: str) -> List[VariableRef]:
    """Find ``${...}`` occurrences with proper brace matching.

    Handles nested braces like ``${VAR:${OTHER:default}}``. Unterminated
    placeholders are left alone.
    """
    refs = []
    i = 0
    while i < len(text):
        if text.startswith("${", i):
            start = i
            i += 2
            depth = 1
            while i < len(text) and depth:
                if text[i] == "{":
                    depth += 1
                elif text[i] == "}":
                    depth -= 1
                i += 1
            if depth == 0:
                refs.append(VariableRef(start, i, text[start + 2:i - 1]))
        else:
            i += 1
    return refs


def split_expression(expression: str) -> List[str]:
    """Split an expression on top-level colons (colons inside ``${}`` are kept)."""
    parts = []
    depth = 0
    current = []
    i = 0
    while i < len(expression):
        if expression.startswith("${", i):
            depth += 1
            current.append("${")
            i += 2
            continue
        char = expression[i]
        if char == "}" and depth:
            depth -= 1
        if char == ":" and not depth:
            parts.append("".join(current))
            current = []
        else:
            current.append(char)
        i += 1
    parts.append("".join(current))
    return parts


def collect_references(value: Any) -> List[str]:
    """Head names of every placeholder in a template, including ones nested in defaults.

    ``${store.token.id:${FALLBACK}}`` yields ``["store.token.id", "FALLBACK"]``.
    Dynamic values and conditional operands are not names and are skipped.
    """
    names: List[str] = []

    def _add(name: str) -> None:
        if name and name not in names:
            names.append(name)

    if isinstance(value, str):
        for ref in extract_references(value):
            parts = split_expression(ref.expression)
            head = parts[0].strip()
            if resolve_dynamic(ref.expression.strip()) is None and head not in DYNAMIC_PREFIXES:
                _add(head)
            for part in parts[1:]:
                for nested in collect_references(part):
                    _add(nested)
    elif isinstance(value, Mapping):
        for key, item in value.items():
            for nested in collect_references(key) + collect_references(item):
                _add(nested)
    elif isinstance(value, (list, tuple)):
        for item in value:
            for nested in collect_references(item):
                _add(nested)
    return names


def store_key(name: str) -> Optional[str]:
    """``store.token.id`` -> ``token``; None for names outside the store."""
    if not name.startswith(STORE_PREFIX):
        return None
    return name[len(STORE_PREFIX):].split(".", 1)[0] or None


class VariableContext:
    """Resolves templates against layered scopes and the value store.

    Scopes are given highest priority first (request, collection, global).
    They are wrapped read-only, so resolution never mutates a lower layer.
    Environment variables form the lowest layer when ``resolve_env`` is set.
    """

    def __init__(
        self,
        scopes: Sequence[Mapping[str, Any]] = (),
        store: Optional[Any] = None,
        resolve_env: bool = True,
        max_depth: int = MAX_RESOLUTION_DEPTH,
    ):
        layers = [MappingProxyType(dict(scope)) for scope in scopes if scope is not None]
        if resolve_env:
            layers.append(MappingProxyType(dict(os.environ)))
        self.variables = ChainMap(*layers)
        self.store = store
        self.max_depth = max_depth

    def interpolate(self, value: Any) -> Any:
        """Interpolate strings, dicts (recursive) and lists (recursive).

        A string that is exactly one placeholder returns the raw resolved value
        (number, bool, structure) instead of its string form.
        """
        if isinstance(value, str):
            return self._interpolate_string(value, [])
        if isinstance(value, Mapping):
            return {self.resolve(str(k)): self.interpolate(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self.interpolate(item) for item in value]
        return value

    def resolve(self, template: str) -> str:
        """Fully substitute a template, always returning a string."""
        return stringify(self._interpolate_string(template, []))

    def _interpolate_string(self, text: str, chain: List[str]) -> Any:
        refs = extract_references(text)
        if not refs:
            return text

        if len(refs) == 1 and refs[0].start == 0 and refs[0].end == len(text):
            return self._resolve_expression(refs[0].expression, chain)

        pieces = []
        last = 0
        for ref in refs:
            pieces.append(text[last:ref.start])
            pieces.append(stringify(self._resolve_expression(ref.expression, chain)))
            last = ref.end
        pieces.append(text[last:])
        return "".join(pieces)

    def _resolve_expression(self, expression: str, chain: List[str]) -> Any:
        expression = expression.strip()
        if expression in chain:
            raise CircularReference(chain + [expression])
        if len(chain) >= self.max_depth:
            raise CircularReference(chain + [expression])
        chain = chain + [expression]

        value = self._lookup_expression(expression, chain)
        # Resolved values may carry further placeholders
        if isinstance(value, str) and "${" in value:
            return self._interpolate_string(value, chain)
        return value

    def _lookup_expression(self, expression: str, chain: List[str]) -> Any:
        if expression.startswith(STORE_PREFIX) and len(split_expression(expression)) == 1:
            value = self._lookup_store(expression[len(STORE_PREFIX):])
            if value is MISSING:
                raise UnresolvedVariable(expression)
            return value

        transform = _TRANSFORM_RE.match(expression)
        if transform and transform.group(1) not in DYNAMIC_PREFIXES:
            value = self._lookup_name(transform.group(1), chain)
            if value is MISSING:
                raise UnresolvedVariable(transform.group(1))
            text = stringify(value)
            return text.upper() if transform.group(2) == "upper" else text.lower()

        dynamic = resolve_dynamic(expression)
        if dynamic is not None:
            return dynamic

        parts = split_expression(expression)
        name = parts[0].strip()
        if len(parts) == 1:
            value = self._lookup_name(name, chain)
            if value is MISSING:
                raise UnresolvedVariable(name)
            return value

        remainder = expression.split(":", 1)[1]
        if len(parts) == 4 and not _URL_DEFAULT_RE.match(remainder):
            expected, then_value, else_value = parts[1:]
            value = self._lookup_name(name, chain)
            matched = value is not MISSING and stringify(value) == self._interpolate_string(expected, chain)
            return self._interpolate_string(then_value if matched else else_value, chain)

        value = self._lookup_name(name, chain)
        if value is not MISSING:
            return value
        return self._interpolate_string(remainder, chain)

    def _lookup_name(self, name: str, chain: List[str]) -> Any:
        if name.startswith(STORE_PREFIX):
            return self._lookup_store(name[len(STORE_PREFIX):])
        if name in self.variables:
            value = self.variables[name]
            if isinstance(value, str) and "${" in value:
                return self._interpolate_string(value, chain)
            return value
        return MISSING

    def _lookup_store(self, key: str) -> Any:
        if self.store is None:
            return MISSING
        head, _, rest = key.partition(".")
        value = self.store.get(head, MISSING)
        if value is MISSING or not rest:
            return value
        return resolve_path(value, rest, MISSING)


def resolve_dynamic(expression: str) -> Optional[str]:
    """Resolve generated values such as ``UUID`` and ``DATE:YYYY-MM-DD``."""
    if expression == "UUID":
        return str(uuid.uuid4())
    if expression == "UUID:short":
        return str(uuid.uuid4()).split("-")[0]
    if expression in ("TIMESTAMP", "CURRENT_TIME"):
        return str(int(time.time() * 1000))

    range_match = _RANGE_RE.match(expression)
    if range_match:
        low, high = int(range_match.group(1)), int(range_match.group(2))
        return str(random.randint(min(low, high), max(low, high)))

    string_match = _RANDOM_STRING_RE.match(expression)
    if string_match:
        alphabet = string.ascii_letters + string.digits
        return "".join(random.choice(alphabet) for _ in range(int(string_match.group(1))))

    if expression.startswith("DATE:"):
        return format_date(datetime.now(), expression[5:])
    if expression.startswith("TIME:"):
        return format_time(datetime.now(), expression[5:])
    return None


def format_date(moment: datetime, fmt: str) -> str:
    """Supports YYYY, MM, DD."""
    return (
        fmt.replace("YYYY", f"{moment.year:04d}")
        .replace("MM", f"{moment.month:02d}")
        .replace("DD", f"{moment.day:02d}")
    )


def format_time(moment: datetime, fmt: str) -> str:
    """Supports HH, mm, ss."""
    return (
        fmt.replace("HH", f"{moment.hour:02d}")
        .replace("mm", f"{moment.minute:02d}")
        .replace("ss", f"{moment.second:02d}")
    )


def build_context(
    variables: Optional[Dict[str, Any]] = None,
    store: Optional[Any] = None,
    resolve_env: bool = True,
    max_depth: int = MAX_RESOLUTION_DEPTH,
) -> VariableContext:
    """Convenience constructor for a single flattened scope."""
    return VariableContext([variables or {}], store=store, resolve_env=resolve_env, max_depth=max_depth)

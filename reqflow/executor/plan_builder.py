"""Build an immutable ExecutionPlan from parsed configuration.

Configuration layers (global -> collection -> nested collection -> request)
are flattened here, once, so the scheduler never merges at run time:
- headers merge by key (case-insensitive), later layers win per key
- variables and query params merge by key
- every other field is replaced wholesale by the most specific layer

The builder also rejects plans in which a member of a parallel group reads a
store value written by one of its siblings.
"""

import logging
from collections import ChainMap
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from reqflow.config import Settings
from reqflow.constants import AUTH_TYPES, HTTP_METHODS
from reqflow.models import (
    AuthConfig,
    BackoffKind,
    CIThresholds,
    ExecutionGroup,
    ExecutionMode,
    ExecutionPlan,
    RequestSpec,
    RetryPolicy,
)
from reqflow.primitives.errors import (
    ConditionSyntaxError,
    ConfigurationError,
    StoreOrderingViolation,
)
from reqflow.runtime.conditions import Condition, CompoundCondition, parse_condition
from reqflow.runtime.interpolation import VariableContext, collect_references, store_key
from reqflow.validation.validator import Expectation

logger = logging.getLogger(__name__)

MERGED_MAPPINGS = ("variables", "params")


@dataclass
class GroupDefaults:
    """Settings a collection inherits from its parent."""

    mode: ExecutionMode = ExecutionMode.SEQUENTIAL
    max_concurrency: Optional[int] = None
    continue_on_error: bool = False
    defaults: Dict[str, Any] = field(default_factory=dict)
    variables: ChainMap = field(default_factory=ChainMap)


def merge_headers(base: Optional[Mapping], override: Optional[Mapping]) -> Dict[str, str]:
    """Merge header mappings by case-insensitive key, keeping first-seen order."""
    merged: Dict[str, str] = {}
    spelled: Dict[str, str] = {}
    for source in (base or {}, override or {}):
        for key, value in source.items():
            lowered = str(key).lower()
            if lowered in spelled:
                del merged[spelled[lowered]]
            spelled[lowered] = str(key)
            merged[str(key)] = value
    return merged


def merge_request_config(base: Mapping, override: Mapping) -> Dict[str, Any]:
    """Merge one configuration layer over another."""
    merged = {**base, **override}
    if "headers" in base or "headers" in override:
        merged["headers"] = merge_headers(base.get("headers"), override.get("headers"))
    for key in MERGED_MAPPINGS:
        if key in base or key in override:
            merged[key] = {**(base.get(key) or {}), **(override.get(key) or {})}
    return merged


def apply_settings(global_config: Mapping, settings: Optional[Settings]) -> Dict[str, Any]:
    """Overlay environment settings onto the ``global`` block."""
    merged = dict(global_config or {})
    if settings is None:
        return merged

    if settings.execution is not None:
        merged["execution"] = settings.execution
    if settings.max_concurrency is not None:
        merged["maxConcurrency"] = settings.max_concurrency
    if settings.continue_on_error is not None:
        merged["continueOnError"] = settings.continue_on_error
    if settings.dry_run is not None:
        merged["dryRun"] = settings.dry_run

    defaults = dict(merged.get("defaults") or {})
    if settings.timeout_ms is not None:
        defaults["timeout"] = settings.timeout_ms
    if settings.retry_count is not None or settings.retry_delay_ms is not None:
        retry = dict(defaults.get("retry") or {})
        if settings.retry_count is not None:
            retry["count"] = settings.retry_count
        if settings.retry_delay_ms is not None:
            retry["delay"] = settings.retry_delay_ms
        defaults["retry"] = retry
    if defaults:
        merged["defaults"] = defaults

    ci = dict(merged.get("ci") or {})
    if settings.strict_exit is not None:
        ci["strictExit"] = settings.strict_exit
    if settings.fail_on is not None:
        ci["failOn"] = settings.fail_on
    if settings.fail_on_percentage is not None:
        ci["failOnPercentage"] = settings.fail_on_percentage
    if ci:
        merged["ci"] = ci
    return merged


def parse_retry(raw: Any) -> RetryPolicy:
    """Parse a ``retry`` block.

    ``backoff`` is a kind name (fixed | linear | exponential) or a numeric
    multiplier, where 1 means fixed spacing. ``jitter`` is a bool or a ratio.
    """
    if raw is None:
        return RetryPolicy()
    if isinstance(raw, RetryPolicy):
        return raw
    if isinstance(raw, int) and not isinstance(raw, bool):
        return RetryPolicy(count=raw)
    if not isinstance(raw, Mapping):
        raise ConfigurationError("retry must be a mapping", field="retry")

    backoff_raw = raw.get("backoff", BackoffKind.FIXED.value)
    multiplier = float(raw.get("multiplier", 2.0))
    if isinstance(backoff_raw, (int, float)) and not isinstance(backoff_raw, bool):
        if backoff_raw <= 1:
            backoff = BackoffKind.FIXED
        else:
            backoff = BackoffKind.EXPONENTIAL
            multiplier = float(backoff_raw)
    else:
        try:
            backoff = BackoffKind(str(backoff_raw).lower())
        except ValueError:
            raise ConfigurationError(f"Unknown backoff: {backoff_raw!r}", field="retry.backoff")

    jitter_raw = raw.get("jitter", False)
    jitter_ratio = raw.get("jitterRatio")
    if isinstance(jitter_raw, (int, float)) and not isinstance(jitter_raw, bool):
        jitter_ratio = float(jitter_raw)
        jitter = jitter_ratio > 0
    else:
        jitter = bool(jitter_raw)

    codes = raw.get("codes", raw.get("retryOn", raw.get("statusCodes"))) or ()
    if isinstance(codes, int):
        codes = (codes,)

    condition = raw.get("condition")
    if condition is not None:
        condition = _parse_condition_field(condition, "retry.condition")

    count = int(raw.get("count", 0))
    if count < 0:
        raise ConfigurationError("retry.count must be >= 0", field="retry.count")

    max_delay = raw.get("maxDelay")
    return RetryPolicy(
        count=count,
        delay=float(raw.get("delay", 0)),
        backoff=backoff,
        multiplier=multiplier,
        max_delay=float(max_delay) if max_delay is not None else None,
        jitter=jitter,
        jitter_ratio=float(jitter_ratio) if jitter_ratio is not None else None,
        codes=tuple(int(code) for code in codes),
        condition=condition,
    )


def parse_auth(raw: Any) -> Optional[AuthConfig]:
    """Parse an ``auth`` block: ``{type: basic, username, password}`` or ``{type: bearer, token}``."""
    if raw is None:
        return None
    if isinstance(raw, AuthConfig):
        return raw
    if not isinstance(raw, Mapping):
        raise ConfigurationError("auth must be a mapping", field="auth")

    kind = str(raw.get("type", "")).lower()
    if kind not in AUTH_TYPES:
        raise ConfigurationError(f"Unknown auth type: {raw.get('type')!r}", field="auth.type")
    if kind == "basic" and not raw.get("username"):
        raise ConfigurationError("basic auth needs a username", field="auth.username")
    if kind == "bearer" and not raw.get("token"):
        raise ConfigurationError("bearer auth needs a token", field="auth.token")

    def _text(key: str) -> Optional[str]:
        value = raw.get(key)
        return None if value is None else str(value)

    return AuthConfig(type=kind, username=_text("username"), password=_text("password"), token=_text("token"))


def _parse_condition_field(raw: Any, field_name: str):
    try:
        return parse_condition(raw)
    except ConditionSyntaxError as e:
        raise ConfigurationError(e.message, field=field_name)


def _parse_mode(value: Any, field_name: str) -> ExecutionMode:
    try:
        return ExecutionMode(str(value).lower())
    except ValueError:
        raise ConfigurationError(f"Unknown execution mode: {value!r}", field=field_name)


def _parse_concurrency(value: Any, field_name: str) -> Optional[int]:
    if value is None:
        return None
    limit = int(value)
    if limit < 1:
        raise ConfigurationError("maxConcurrency must be >= 1", field=field_name)
    return limit


def build_request(config: Mapping, group: str, index: int, variables: ChainMap) -> RequestSpec:
    """Turn one fully merged request configuration into a RequestSpec."""
    name = str(config.get("name") or f"Request {index}")
    url = config.get("url")
    if not url:
        raise ConfigurationError(f"Request '{name}' has no url", field="url")

    method = str(config.get("method", "GET")).upper()
    if method not in HTTP_METHODS:
        raise ConfigurationError(f"Request '{name}' uses unsupported method {method}", field="method")

    request_variables = dict(variables.new_child(dict(config.get("variables") or {})))

    when = config.get("when")
    if when is not None:
        _parse_condition_field(when, "when")

    store = config.get("store") or {}
    if not isinstance(store, Mapping):
        raise ConfigurationError(f"Request '{name}' store must be a mapping", field="store")

    timeout = config.get("timeout")
    return RequestSpec(
        name=name,
        url=str(url),
        method=method,
        headers=tuple((str(k), v) for k, v in (config.get("headers") or {}).items()),
        params=tuple((str(k), v) for k, v in (config.get("params") or {}).items()),
        body=config.get("body"),
        timeout=float(timeout) if timeout is not None else None,
        auth=parse_auth(config.get("auth")),
        retry=parse_retry(config.get("retry")),
        expect=Expectation.parse(config.get("expect")),
        store=tuple((str(k), str(v)) for k, v in store.items()),
        variables=tuple(request_variables.items()),
        when=when,
        group=group,
    )


class PlanBuilder:
    """Flattens a parsed configuration mapping into an ExecutionPlan.

    Accepted top-level keys: ``global``, ``request``, ``requests``,
    ``collection`` and ``collections``. A collection is a mapping with
    ``requests`` and optional ``name``, ``variables``, ``defaults``,
    ``execution``, ``maxConcurrency`` and ``continueOnError``; entries of a
    ``requests`` list that themselves hold ``requests`` are nested collections.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings
        self._counter = 0

    def build(self, config: Mapping) -> ExecutionPlan:
        if not isinstance(config, Mapping):
            raise ConfigurationError("Plan configuration must be a mapping")
        self._counter = 0

        global_config = apply_settings(config.get("global") or {}, self.settings)
        global_variables = dict(global_config.get("variables") or {})
        self._check_global_variables(global_variables)

        root = GroupDefaults(
            mode=_parse_mode(global_config.get("execution", "sequential"), "global.execution"),
            max_concurrency=_parse_concurrency(global_config.get("maxConcurrency"), "global.maxConcurrency"),
            continue_on_error=bool(global_config.get("continueOnError", False)),
            defaults=dict(global_config.get("defaults") or {}),
            variables=ChainMap(global_variables),
        )

        groups: List[ExecutionGroup] = []
        top_level = []
        if config.get("request"):
            top_level.append(config["request"])
        top_level.extend(config.get("requests") or [])
        if top_level:
            groups.append(self._build_group({"name": "requests", "requests": top_level}, root, inherit=True))

        collections = list(config.get("collections") or [])
        if config.get("collection"):
            collections.insert(0, config["collection"])
        for collection in collections:
            groups.append(self._build_group(collection, root))

        if not groups:
            raise ConfigurationError("Plan contains no requests", field="requests")

        ci = global_config.get("ci") or {}
        plan = ExecutionPlan(
            groups=tuple(groups),
            variables=tuple(global_variables.items()),
            continue_on_error=root.continue_on_error,
            dry_run=bool(global_config.get("dryRun", False)),
            ci=CIThresholds(
                strict_exit=bool(ci.get("strictExit", False)),
                fail_on=int(ci["failOn"]) if ci.get("failOn") is not None else None,
                fail_on_percentage=float(ci["failOnPercentage"]) if ci.get("failOnPercentage") is not None else None,
            ),
        )
        check_store_ordering(plan)
        logger.debug(f"Built plan with {len(plan.groups)} groups and {plan.request_count} requests")
        return plan

    def _check_global_variables(self, variables: Dict[str, Any]) -> None:
        """Global variables must resolve on their own; a failure here is fatal to the plan."""
        resolve_env = self.settings.resolve_env if self.settings else True
        context = VariableContext([variables], resolve_env=resolve_env)
        for name, value in variables.items():
            if any(store_key(ref) for ref in collect_references(value)):
                continue
            context.interpolate(value)

    def _build_group(self, collection: Mapping, parent: GroupDefaults, inherit: bool = False) -> ExecutionGroup:
        if not isinstance(collection, Mapping) or not isinstance(collection.get("requests"), list):
            raise ConfigurationError("A collection needs a 'requests' list", field="collection.requests")
        name = str(collection.get("name") or "collection")

        scope = GroupDefaults(
            mode=_parse_mode(collection["execution"], f"{name}.execution")
            if "execution" in collection
            else parent.mode,
            max_concurrency=_parse_concurrency(collection["maxConcurrency"], f"{name}.maxConcurrency")
            if "maxConcurrency" in collection
            else parent.max_concurrency,
            continue_on_error=bool(collection.get("continueOnError", parent.continue_on_error)),
            defaults=parent.defaults
            if inherit
            else merge_request_config(parent.defaults, collection.get("defaults") or {}),
            variables=parent.variables.new_child(dict(collection.get("variables") or {})),
        )

        items = []
        for entry in collection["requests"]:
            if isinstance(entry, Mapping) and isinstance(entry.get("requests"), list):
                items.append(self._build_group(entry, scope))
                continue
            if not isinstance(entry, Mapping):
                raise ConfigurationError(f"Request entries in '{name}' must be mappings", field="requests")
            self._counter += 1
            merged = merge_request_config(scope.defaults, entry)
            items.append(build_request(merged, name, self._counter, scope.variables))

        return ExecutionGroup(
            name=name,
            items=tuple(items),
            mode=scope.mode,
            max_concurrency=scope.max_concurrency,
            continue_on_error=scope.continue_on_error,
        )


def build_plan(config: Mapping, settings: Optional[Settings] = None) -> ExecutionPlan:
    """Build an ExecutionPlan from a parsed configuration mapping."""
    return PlanBuilder(settings).build(config)


def consumed_store_keys(spec: RequestSpec) -> Set[str]:
    """Store keys a request reads, following variable indirection."""
    variables = spec.variable_map
    templates: List[Any] = [spec.url, spec.header_map, dict(spec.params), spec.body, list(spec.store_map.values())]
    if spec.auth is not None:
        templates.append(spec.auth.templates())
    if spec.expect is not None:
        templates.append(spec.expect.raw)
    if isinstance(spec.when, str):
        templates.append(spec.when)

    keys: Set[str] = set()
    if spec.when is not None:
        keys.update(_condition_store_keys(parse_condition(spec.when)))

    seen: Set[str] = set()
    pending = [name for template in templates for name in collect_references(template)]
    while pending:
        name = pending.pop()
        key = store_key(name)
        if key:
            keys.add(key)
        elif name in variables and name not in seen:
            seen.add(name)
            pending.extend(collect_references(variables[name]))
    return keys


def _condition_store_keys(condition: Any) -> Set[str]:
    if isinstance(condition, CompoundCondition):
        keys: Set[str] = set()
        for child in condition.children:
            keys.update(_condition_store_keys(child))
        return keys
    if isinstance(condition, Condition):
        key = store_key(condition.left)
        return {key} if key else set()
    return set()


def _unit_edges(item: Any) -> Tuple[Dict[str, str], Dict[str, str]]:
    """(produced key -> request name, consumed key -> request name) for a group member."""
    produced: Dict[str, str] = {}
    consumed: Dict[str, str] = {}
    specs = item.iter_requests() if isinstance(item, ExecutionGroup) else [item]
    for spec in specs:
        for key in consumed_store_keys(spec):
            # Reads satisfied by an earlier write inside the same sequential unit are safe
            if key not in produced:
                consumed.setdefault(key, spec.name)
        for key, _ in spec.store:
            produced.setdefault(key, spec.name)
    return produced, consumed


def check_store_ordering(plan: ExecutionPlan) -> None:
    """Raise StoreOrderingViolation when parallel siblings depend on each other's store writes."""
    for group in plan.groups:
        _check_group(group)


def _check_group(group: ExecutionGroup) -> None:
    if group.mode == ExecutionMode.PARALLEL:
        edges = [_unit_edges(item) for item in group.items]
        for i, (_, consumed) in enumerate(edges):
            for j, (produced, _) in enumerate(edges):
                if i == j:
                    continue
                for key, consumer in consumed.items():
                    if key in produced:
                        raise StoreOrderingViolation(key, produced[key], consumer, group.name)
    for item in group.items:
        if isinstance(item, ExecutionGroup):
            _check_group(item)

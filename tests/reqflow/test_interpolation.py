"""Tests for ${...} template interpolation."""

import re

import pytest

from reqflow.primitives.errors import CircularReference, UnresolvedVariable
from reqflow.runtime.interpolation import (
    VariableContext,
    build_context,
    collect_references,
    extract_references,
    split_expression,
    store_key,
)
from reqflow.runtime.store import ValueStore


def context(*scopes, store=None, **kwargs):
    kwargs.setdefault("resolve_env", False)
    return VariableContext(list(scopes), store=store, **kwargs)


class TestExtractReferences:
    """Brace matching and colon splitting."""

    def test_nested_braces(self):
        """A nested placeholder stays inside its parent reference."""
        refs = extract_references("a ${X:${Y:z}} b")
        assert len(refs) == 1
        assert refs[0].expression == "X:${Y:z}"

    def test_unterminated_left_alone(self):
        """Unterminated placeholders are not references."""
        assert extract_references("${abc") == []

    def test_split_top_level_colons(self):
        """Colons inside nested placeholders are not split points."""
        assert split_expression("X:${Y:z}:w") == ["X", "${Y:z}", "w"]


class TestBasicResolution:
    """Plain lookups and scope priority."""

    def test_resolve_string(self):
        """Placeholders inside text are substituted."""
        ctx = context({"HOST": "api.test", "PORT": 8080})
        assert ctx.resolve("https://${HOST}:${PORT}/v1") == "https://api.test:8080/v1"

    def test_whole_placeholder_keeps_type(self):
        """A template that is one placeholder returns the raw value."""
        ctx = context({"PORT": 8080, "DEBUG": True})
        assert ctx.interpolate("${PORT}") == 8080
        assert ctx.interpolate("${DEBUG}") is True
        assert ctx.interpolate("debug=${DEBUG}") == "debug=true"

    def test_scope_priority(self):
        """Earlier scopes win over later ones."""
        ctx = context({"A": "request"}, {"A": "global", "B": "g"})
        assert ctx.resolve("${A}-${B}") == "request-g"

    def test_nested_values_resolve_to_fixpoint(self):
        """Values that hold placeholders are expanded again."""
        ctx = context({"URL": "${HOST}/x", "HOST": "h"})
        assert ctx.resolve("${URL}") == "h/x"

    def test_structures(self):
        """dict keys and values and list items are interpolated."""
        ctx = context({"HOST": "h", "KEY": "k"})
        assert ctx.interpolate({"a": ["${HOST}", 1], "${KEY}": "v"}) == {"a": ["h", 1], "k": "v"}

    def test_scopes_never_mutated(self):
        """Resolution leaves caller scopes untouched."""
        scope = {"A": "${B}", "B": "b"}
        ctx = context(scope)
        ctx.resolve("${A}")
        assert scope == {"A": "${B}", "B": "b"}
        with pytest.raises(TypeError):
            ctx.variables["A"] = "changed"

    def test_deterministic(self):
        """Same scopes and template give the same output."""
        ctx = context({"A": "1", "B": "${A}${A}"})
        assert ctx.resolve("${B}") == ctx.resolve("${B}") == "11"


class TestDefaultsAndConditionals:
    """Default values, conditionals and transforms."""

    def test_default(self):
        """Missing names fall back to the default."""
        assert context({}).resolve("${MISSING_X:fallback}") == "fallback"

    def test_nested_default(self):
        """Defaults may themselves be placeholders."""
        assert context({"B": "g"}).resolve("${MISSING_X:${B}}") == "g"

    def test_default_not_used_when_present(self):
        """Present names ignore the default."""
        assert context({"X": "set"}).resolve("${X:fallback}") == "set"

    def test_url_default(self):
        """A URL default is not mistaken for a conditional."""
        assert context({}).resolve("${BASE:http://localhost:3000}") == "http://localhost:3000"

    def test_conditional(self):
        """NAME:expected:then:else picks a branch."""
        template = "${ENV:prod:live:test}"
        assert context({"ENV": "prod"}).resolve(template) == "live"
        assert context({"ENV": "dev"}).resolve(template) == "test"
        assert context({}).resolve(template) == "test"

    def test_transforms(self):
        """upper / lower transforms."""
        ctx = context({"NAME": "Bob"})
        assert ctx.resolve("${NAME:upper}") == "BOB"
        assert ctx.resolve("${NAME:lower}") == "bob"


class TestStoreReferences:
    """${store.NAME} lookups."""

    def test_store_value_and_subpath(self):
        """Whole values keep their type; subpaths reach inside."""
        store = ValueStore({"token": {"id": "t1"}})
        ctx = context({}, store=store)
        assert ctx.interpolate("${store.token}") == {"id": "t1"}
        assert ctx.resolve("Bearer ${store.token.id}") == "Bearer t1"

    def test_missing_store_value(self):
        """A missing store value without default is unresolved."""
        with pytest.raises(UnresolvedVariable):
            context({}, store=ValueStore()).resolve("${store.token}")

    def test_missing_store_value_with_default(self):
        """A store reference may carry a default."""
        assert context({}, store=ValueStore()).resolve("${store.token:anon}") == "anon"


class TestResolutionErrors:
    """Unresolved and circular references."""

    def test_unresolved(self):
        """Unknown names without default raise UnresolvedVariable."""
        with pytest.raises(UnresolvedVariable) as exc:
            context({}).resolve("${NOPE}")
        assert exc.value.name == "NOPE"

    def test_two_step_cycle(self):
        """A -> B -> A is detected."""
        with pytest.raises(CircularReference) as exc:
            context({"A": "${B}", "B": "${A}"}).resolve("${A}")
        assert exc.value.chain == ["A", "B", "A"]

    def test_self_reference(self):
        """A name that contains itself is circular."""
        with pytest.raises(CircularReference):
            context({"A": "x${A}"}).resolve("${A}")

    def test_depth_bound(self):
        """Chains longer than max_depth are rejected."""
        scope = {f"V{i}": f"${{V{i + 1}}}" for i in range(11)}
        scope["V11"] = "end"
        with pytest.raises(CircularReference):
            context(scope, max_depth=10).resolve("${V0}")
        assert context(scope, max_depth=20).resolve("${V0}") == "end"


class TestDynamicValues:
    """Generated values."""

    def test_uuid(self):
        """UUID and UUID:short."""
        ctx = context({})
        assert re.fullmatch(r"[0-9a-f-]{36}", ctx.resolve("${UUID}"))
        assert len(ctx.resolve("${UUID:short}")) == 8

    def test_random(self):
        """RANDOM ranges and strings."""
        ctx = context({})
        assert 1 <= int(ctx.resolve("${RANDOM:1-5}")) <= 5
        assert re.fullmatch(r"[A-Za-z0-9]{12}", ctx.resolve("${RANDOM:string:12}"))

    def test_date_time_timestamp(self):
        """DATE, TIME and TIMESTAMP formats."""
        ctx = context({})
        assert re.fullmatch(r"\d{4}-\d{2}-\d{2}", ctx.resolve("${DATE:YYYY-MM-DD}"))
        assert re.fullmatch(r"\d{2}:\d{2}:\d{2}", ctx.resolve("${TIME:HH:mm:ss}"))
        assert ctx.resolve("${TIMESTAMP}").isdigit()


class TestEnvironment:
    """Environment variables as the lowest scope."""

    def test_env_lookup(self, monkeypatch):
        """Environment is consulted when enabled."""
        monkeypatch.setenv("REQFLOW_TEST_HOME", "/home/test")
        assert build_context({}).resolve("${REQFLOW_TEST_HOME}") == "/home/test"

    def test_scopes_override_env(self, monkeypatch):
        """Configured variables win over the environment."""
        monkeypatch.setenv("REQFLOW_TEST_HOME", "/home/test")
        assert build_context({"REQFLOW_TEST_HOME": "/cfg"}).resolve("${REQFLOW_TEST_HOME}") == "/cfg"

    def test_env_disabled(self, monkeypatch):
        """With resolve_env off, environment names are unresolved."""
        monkeypatch.setenv("REQFLOW_TEST_HOME", "/home/test")
        with pytest.raises(UnresolvedVariable):
            build_context({}, resolve_env=False).resolve("${REQFLOW_TEST_HOME}")


class TestReferenceCollection:
    """collect_references and store_key for static analysis."""

    def test_collects_nested_heads(self):
        """Heads of nested defaults are collected; dynamic values are not."""
        refs = collect_references("${store.token.id:${FALLBACK}} ${UUID}")
        assert refs == ["store.token.id", "FALLBACK"]

    def test_collects_from_structures(self):
        """Dicts and lists are walked."""
        refs = collect_references({"auth": ["${A}"], "${B}": 1})
        assert sorted(refs) == ["A", "B"]

    def test_store_key(self):
        """store_key keeps only the store name."""
        assert store_key("store.token.id") == "token"
        assert store_key("HOST") is None

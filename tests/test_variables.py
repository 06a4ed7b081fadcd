"""
Tests for {{name}} substitution - Scopes and VariableResolver.
"""

import pytest

from lxcmanager.execution.variables import (
    Scopes,
    VariableResolver,
    find_tokens,
    format_value,
)
from lxcmanager.timeouts import NOT_DEFINED


@pytest.fixture
def scopes():
    return Scopes(
        inputs={"name": "from-input", "vm_id": 101, "only_input": "i"},
        outputs={"name": "from-output", "only_output": "o"},
        defaults={"name": "from-default", "only_default": "d", "vm_id": 999},
    )


@pytest.fixture
def resolver(scopes):
    return VariableResolver(scopes)


class TestPrecedence:
    """Resolution order: override > outputs > inputs > defaults."""

    def test_output_wins_over_input_and_default(self, resolver):
        assert resolver.resolve("{{name}}") == "from-output"

    def test_input_wins_over_default(self, resolver):
        assert resolver.resolve("{{vm_id}}") == "101"

    def test_default_used_as_last_resort(self, resolver):
        assert resolver.resolve("{{only_default}}") == "d"

    def test_override_wins_over_everything(self, resolver):
        assert resolver.resolve("{{name}}", override={"name": "override"}) == "override"

    def test_override_falls_through_for_missing_names(self, resolver):
        assert resolver.resolve("{{only_input}}", override={"name": "x"}) == "i"

    def test_resolver_sees_later_scope_mutations(self, scopes, resolver):
        scopes.outputs["fresh"] = "new"
        assert resolver.resolve("{{fresh}}") == "new"


class TestUndefinedNames:
    """Unknown names resolve to NOT_DEFINED and never raise."""

    def test_unknown_name(self, resolver):
        assert resolver.resolve("{{missing}}") == NOT_DEFINED

    def test_unknown_name_inside_text(self, resolver):
        assert resolver.resolve("a={{missing}};b={{only_output}}") == f"a={NOT_DEFINED};b=o"

    def test_none_value_counts_as_undefined(self):
        resolver = VariableResolver(Scopes(outputs={"x": None}, defaults={"x": "d"}))
        assert resolver.resolve("{{x}}") == "d"


class TestTokenSyntax:
    def test_whitespace_inside_braces(self, resolver):
        assert resolver.resolve('VMID="{{ vm_id }}"') == 'VMID="101"'

    def test_multiple_tokens(self, resolver):
        assert resolver.resolve("{{vm_id}}-{{only_output}}-{{vm_id}}") == "101-o-101"

    def test_single_pass_no_recursion(self):
        scopes = Scopes(outputs={"a": "{{b}}", "b": "deep"})
        assert VariableResolver(scopes).resolve("{{a}}") == "{{b}}"

    def test_text_without_tokens_unchanged(self, resolver):
        text = "echo '{not a token}' { {x} }"
        assert resolver.resolve(text) == text

    def test_resolve_value_passes_non_strings_through(self, resolver):
        assert resolver.resolve_value(42) == 42
        assert resolver.resolve_value(True) is True
        assert resolver.resolve_value(None) is None
        assert resolver.resolve_value("{{vm_id}}") == "101"


class TestFormatValue:
    @pytest.mark.parametrize(
        "value,expected",
        [
            (True, "true"),
            (False, "false"),
            (101, "101"),
            (2.0, "2"),
            (2.5, "2.5"),
            ("text", "text"),
        ],
    )
    def test_format(self, value, expected):
        assert format_value(value) == expected


class TestScopes:
    def test_replace_clears_and_repopulates_in_place(self):
        scopes = Scopes(inputs={"a": 1}, outputs={"b": 2}, defaults={"c": 3})
        outputs_ref = scopes.outputs
        scopes.replace({"x": 1}, {"y": 2}, {})
        assert scopes.inputs == {"x": 1}
        assert scopes.outputs == {"y": 2}
        assert scopes.defaults == {}
        assert scopes.outputs is outputs_ref


class TestFindTokens:
    def test_order_and_uniqueness(self):
        assert find_tokens("{{ b }} {{a}} {{b}}") == ["b", "a"]

    def test_no_tokens(self):
        assert find_tokens("plain") == []

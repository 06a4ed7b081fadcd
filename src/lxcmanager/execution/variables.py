"""
Variable substitution for step payloads.

``{{name}}`` tokens are replaced in a single pass with the first value found
in the precedence chain::

    override > outputs > inputs > defaults

Unknown names become ``NOT_DEFINED`` instead of raising, so that a
properties step can drop a value nobody provided.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

from lxcmanager.execution.models import ScopeValue
from lxcmanager.timeouts import NOT_DEFINED

TOKEN_PATTERN = re.compile(r"\{\{\s*([A-Za-z0-9_.\-]+)\s*\}\}")


def format_value(value: ScopeValue) -> str:
    """Render a scope value the way shell scripts expect it."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


@dataclass
class Scopes:
    """The three value maps of a run, owned by the executor."""
    inputs: Dict[str, ScopeValue] = field(default_factory=dict)
    outputs: Dict[str, ScopeValue] = field(default_factory=dict)
    defaults: Dict[str, ScopeValue] = field(default_factory=dict)

    def lookup(
        self, name: str, override: Optional[Mapping[str, ScopeValue]] = None
    ) -> Optional[ScopeValue]:
        for scope in (override or {}, self.outputs, self.inputs, self.defaults):
            if name in scope and scope[name] is not None:
                return scope[name]
        return None

    def replace(
        self,
        inputs: Mapping[str, ScopeValue],
        outputs: Mapping[str, ScopeValue],
        defaults: Mapping[str, ScopeValue],
    ) -> None:
        """Clear all scopes and repopulate them in place."""
        for scope, values in (
            (self.inputs, inputs),
            (self.outputs, outputs),
            (self.defaults, defaults),
        ):
            scope.clear()
            scope.update(values)


class VariableResolver:
    """Resolves ``{{name}}`` tokens against a live :class:`Scopes` object."""

    def __init__(self, scopes: Scopes):
        self.scopes = scopes

    def resolve(
        self, text: str, override: Optional[Mapping[str, ScopeValue]] = None
    ) -> str:
        """Replace every token in ``text``.

        Args:
            text: Payload text
            override: Highest-precedence values, used for host discovery

        Returns:
            The substituted text; replacements are never re-scanned.
        """
        def _replace(match: re.Match) -> str:
            value = self.scopes.lookup(match.group(1), override)
            if value is None:
                return NOT_DEFINED
            return format_value(value)

        return TOKEN_PATTERN.sub(_replace, text)

    def resolve_value(
        self, value: Optional[ScopeValue], override: Optional[Mapping[str, ScopeValue]] = None
    ) -> Optional[ScopeValue]:
        """Resolve tokens in string values; other types pass through."""
        if isinstance(value, str):
            return self.resolve(value, override)
        return value


def find_tokens(text: str) -> List[str]:
    """Names referenced by ``text``, in order of first appearance."""
    seen: List[str] = []
    for match in TOKEN_PATTERN.finditer(text):
        name = match.group(1)
        if name not in seen:
            seen.append(name)
    return seen

"""
Template variable interpolation.

Targets reference dashboard variables as ``$name``, ``${name}``, ``${name:format}``
or ``[[name]]``. The query pipeline only depends on the TemplateInterpolator
protocol; TemplateSrv is the in-process implementation used by the datasource
and the CLI.
"""

from __future__ import annotations

import re
from typing import Any, Mapping, Protocol, Sequence

# Multi-value formats
FORMAT_PIPE = "pipe"
FORMAT_DISTRIBUTED = "distributed"
FORMAT_GLOB = "glob"
FORMAT_CSV = "csv"
FORMAT_REGEX = "regex"

VARIABLE_PATTERN = re.compile(
    r"\$(\w+)"
    r"|\[\[(\w+?)(?::(\w+))?\]\]"
    r"|\$\{(\w+)(?::([^}]+))?\}"
)

ScopedVars = Mapping[str, Any]


class TemplateInterpolator(Protocol):
    """Contract for the template substitution collaborator."""

    def replace(
        self,
        text: str | None,
        scoped_vars: ScopedVars | None = None,
        fmt: str | None = None,
    ) -> str:
        ...

    def variable_exists(self, text: str | None) -> bool:
        ...


def _unwrap(value: Any) -> Any:
    # Scoped vars arrive as {"text": ..., "value": ...}
    if isinstance(value, Mapping) and "value" in value:
        return value["value"]
    return value


def format_value(value: Any, fmt: str | None, name: str = "") -> str:
    """Render a (possibly multi-valued) variable value in the given format."""
    if isinstance(value, (list, tuple)):
        values = [str(v) for v in value]
        if len(values) == 1 and fmt != FORMAT_REGEX:
            return values[0]
        if fmt == FORMAT_PIPE:
            return "|".join(values)
        if fmt == FORMAT_DISTRIBUTED:
            return ",".join(values[:1] + [f"{name}={v}" for v in values[1:]])
        if fmt == FORMAT_CSV:
            return ",".join(values)
        if fmt == FORMAT_REGEX:
            return "(" + "|".join(re.escape(v) for v in values) + ")"
        return "{" + ",".join(values) + "}"

    text = "" if value is None else str(value)
    if fmt == FORMAT_REGEX:
        return re.escape(text)
    return text


class TemplateSrv:
    """Dashboard variable store with Grafana-compatible substitution rules."""

    def __init__(self, variables: Mapping[str, str | Sequence[str]] | None = None) -> None:
        self._variables: dict[str, Any] = dict(variables or {})

    def set_variable(self, name: str, value: str | Sequence[str]) -> None:
        self._variables[name] = value

    @property
    def variables(self) -> dict[str, Any]:
        return dict(self._variables)

    def _lookup(self, name: str, scoped_vars: ScopedVars | None) -> tuple[bool, Any]:
        if scoped_vars and name in scoped_vars:
            return True, _unwrap(scoped_vars[name])
        if name in self._variables:
            return True, _unwrap(self._variables[name])
        return False, None

    def replace(
        self,
        text: str | None,
        scoped_vars: ScopedVars | None = None,
        fmt: str | None = None,
    ) -> str:
        """Substitute every known variable reference in ``text``.

        Unknown references are left as written.
        """
        if not text:
            return text or ""

        def _substitute(match: re.Match[str]) -> str:
            name = match.group(1) or match.group(2) or match.group(4)
            inline_fmt = match.group(3) or match.group(5)
            found, value = self._lookup(name, scoped_vars)
            if not found:
                return match.group(0)
            return format_value(value, inline_fmt or fmt, name)

        return VARIABLE_PATTERN.sub(_substitute, text)

    def variable_exists(self, text: str | None) -> bool:
        if not text:
            return False
        match = VARIABLE_PATTERN.search(text)
        if not match:
            return False
        name = match.group(1) or match.group(2) or match.group(4)
        return name in self._variables

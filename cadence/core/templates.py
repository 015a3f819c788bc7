"""Inert ``{{identifier}}`` substitution for action configs.

No expressions, no attribute access, no code execution.  Unknown
identifiers are left in place verbatim so a typo in a template shows up in
the rendered text instead of failing the step.
"""

import re
from typing import Any, Mapping

_TOKEN_RE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


def render(template: str, context: Mapping[str, Any]) -> str:
    """Replace each ``{{name}}`` in *template* with ``str(context[name])``.

    Case-sensitive.  ``None`` values render as an empty string.
    """
    if not template:
        return template or ""

    def _sub(m: re.Match) -> str:
        name = m.group(1)
        if name not in context:
            return m.group(0)
        value = context[name]
        return "" if value is None else str(value)

    return _TOKEN_RE.sub(_sub, template)


def unresolved_tokens(text: str) -> list[str]:
    """Identifiers still present as ``{{name}}`` tokens in *text*."""
    return _TOKEN_RE.findall(text or "")


def referenced_tokens(template: str) -> set[str]:
    return set(_TOKEN_RE.findall(template or ""))


def count_tokens(text: str) -> int:
    """Number of well-formed ``{{name}}`` tokens in *text*."""
    return len(_TOKEN_RE.findall(text or ""))

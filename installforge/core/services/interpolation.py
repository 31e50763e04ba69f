"""
Placeholder interpolation over a parsed compose mapping.

Supported forms (the compose-file subset)::

    ${NAME}            value of NAME
    ${NAME:-default}   default when NAME is unset or empty
    ${NAME-default}    default when NAME is unset
    ${NAME:?message}   required, unset or empty is unresolved
    ${NAME?message}    required, unset is unresolved
    $$                 literal "$"

A placeholder with no value and no inline default is left verbatim and
recorded as unresolved; it is never an error here.  A string that is
exactly one placeholder takes the variable's native value (an int stays
an int).  Only values are interpolated, never mapping keys.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

_PLACEHOLDER_RE = re.compile(
    r"\$(?:"
    r"(?P<escaped>\$)"
    r"|\{(?P<name>[A-Za-z_][A-Za-z0-9_]*)"
    r"(?:(?P<op>:?[-?])(?P<arg>[^}]*))?\}"
    r")"
)


@dataclass(frozen=True)
class UnresolvedPlaceholder:
    """A placeholder that had no value and no inline default."""

    module: str
    variable: str
    location: str    # dotted path into the document, e.g. services.app.image
    text: str        # the verbatim placeholder
    message: str = ""

    def to_dict(self) -> dict[str, str]:
        return {
            "module": self.module,
            "variable": self.variable,
            "location": self.location,
            "text": self.text,
            "message": self.message,
        }


def _render(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


@dataclass
class Interpolator:
    """Substitutes placeholders and collects the unresolved ones."""

    variables: dict[str, Any]
    module: str = ""
    unresolved: list[UnresolvedPlaceholder] = field(default_factory=list)

    def _lookup(self, match: re.Match[str], location: str) -> tuple[bool, Any]:
        """Return (resolved, value) for one placeholder match."""
        name = match.group("name")
        op = match.group("op") or ""
        arg = match.group("arg") or ""

        is_set = name in self.variables
        value = self.variables.get(name)
        is_empty = not is_set or value is None or value == ""

        if op == ":-":
            return True, (arg if is_empty else value)
        if op == "-":
            return True, (value if is_set else arg)
        if (op == ":?" and is_empty) or (op == "?" and not is_set) or (not op and not is_set):
            self.unresolved.append(UnresolvedPlaceholder(
                module=self.module,
                variable=name,
                location=location,
                text=match.group(0),
                message=arg if op.endswith("?") else "",
            ))
            return False, match.group(0)
        return True, value

    def interpolate_string(self, text: str, location: str) -> Any:
        if "$" not in text:
            return text

        whole = _PLACEHOLDER_RE.fullmatch(text)
        if whole and whole.group("name"):
            resolved, value = self._lookup(whole, location)
            return value if resolved else text

        def _sub(match: re.Match[str]) -> str:
            if match.group("escaped"):
                return "$"
            _, value = self._lookup(match, location)
            return _render(value)

        return _PLACEHOLDER_RE.sub(_sub, text)

    def interpolate(self, value: Any, location: str = "") -> Any:
        """Interpolate *value* recursively, returning a new structure."""
        if isinstance(value, str):
            return self.interpolate_string(value, location)
        if isinstance(value, dict):
            return {
                k: self.interpolate(v, f"{location}.{k}" if location else str(k))
                for k, v in value.items()
            }
        if isinstance(value, list):
            return [self.interpolate(v, f"{location}[{i}]") for i, v in enumerate(value)]
        return value


def interpolate_document(
    data: dict[str, Any],
    variables: dict[str, Any],
    *,
    module: str = "",
) -> tuple[dict[str, Any], list[UnresolvedPlaceholder]]:
    """Interpolate a parsed compose mapping.

    Returns:
        (new mapping, unresolved placeholders in document order)
    """
    interp = Interpolator(variables=variables, module=module)
    result = interp.interpolate(data)
    return result, interp.unresolved

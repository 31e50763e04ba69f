"""
Variable resolution — defaults overlaid by overrides.

Values keep their native type (a bool override stays a bool).  No type
validation happens here; the only failure is input that is not a
key→value mapping at all.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any

from installforge.core.errors import ConfigurationError

logger = logging.getLogger(__name__)


def coerce_variable_map(value: Any, *, source: str = "variables") -> dict[str, Any]:
    """Accept a mapping, JSON object text or None and return a plain dict.

    Raises:
        ConfigurationError: For anything that is not a key→value map.
    """
    if value is None:
        return {}
    if isinstance(value, (str, bytes)):
        try:
            text = value.decode("utf-8") if isinstance(value, bytes) else value
        except UnicodeDecodeError as e:
            raise ConfigurationError(f"{source}: not valid UTF-8 text", entity=source) from e
        if not text.strip():
            return {}
        try:
            value = json.loads(text)
        except json.JSONDecodeError as e:
            raise ConfigurationError(
                f"{source}: invalid JSON ({e.msg} at line {e.lineno})",
                entity=source,
            ) from e
    if not isinstance(value, Mapping):
        raise ConfigurationError(
            f"{source}: expected a key/value object, got {type(value).__name__}",
            entity=source,
        )
    return {str(k): v for k, v in value.items()}


def resolve_variables(defaults: Any, *overlays: Any) -> dict[str, Any]:
    """Compute an effective variable set.

    Start from *defaults*; each overlay, in order, replaces values
    key-by-key and adds keys the defaults do not have.  Later overlays win.

    Example::

        resolve_variables({"PORT": 80, "TAG": "1"}, {"PORT": 8080, "X": True})
        → {"PORT": 8080, "TAG": "1", "X": True}
    """
    effective = coerce_variable_map(defaults, source="defaults")
    for idx, overlay in enumerate(overlays):
        layer = coerce_variable_map(overlay, source=f"overrides[{idx}]")
        effective.update(layer)
    return effective

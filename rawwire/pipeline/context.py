from __future__ import annotations

import json
import re
from collections.abc import Mapping, Sequence
from typing import Any

from rawwire.core.errors import InterpolationError


class _Missing:
    __slots__ = ()

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()

_PLACEHOLDER_RE = re.compile(r"\{\{([^}]+)\}\}")


def resolve_path(data: Any, path: str) -> Any:
    """Walk ``a.b.0.c`` through nested mappings and sequences.

    Returns ``MISSING`` when any segment cannot be resolved. An empty path resolves
    to ``data`` itself.
    """
    if not path:
        return data
    current = data
    for segment in path.split("."):
        if isinstance(current, Mapping):
            if segment not in current:
                return MISSING
            current = current[segment]
        elif isinstance(current, Sequence) and not isinstance(current, (str, bytes)):
            try:
                current = current[int(segment)]
            except (ValueError, IndexError):
                return MISSING
        else:
            return MISSING
    return current


def lookup(data: Any, path: str, default: Any = None) -> Any:
    value = resolve_path(data, path)
    return default if value is MISSING else value


def render_value(value: Any) -> str:
    if value is None or value is MISSING:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, (bool, dict, list)):
        return json.dumps(value)
    return str(value)


def interpolate(template: str, context: Mapping[str, Any], *, strict: bool = False) -> str:
    """Replace ``{{path}}`` placeholders with values from ``context``.

    Unresolved paths render as an empty string unless ``strict`` is set, in which
    case they raise ``InterpolationError``.
    """

    def replace(match: re.Match[str]) -> str:
        path = match.group(1).strip()
        value = resolve_path(context, path)
        if value is MISSING and strict:
            raise InterpolationError(f"unresolved template path: {path}")
        return render_value(value)

    return _PLACEHOLDER_RE.sub(replace, template)


def interpolate_value(value: Any, context: Mapping[str, Any], *, strict: bool = False) -> Any:
    if isinstance(value, str):
        return interpolate(value, context, strict=strict)
    if isinstance(value, dict):
        return {key: interpolate_value(item, context, strict=strict) for key, item in value.items()}
    if isinstance(value, list):
        return [interpolate_value(item, context, strict=strict) for item in value]
    return value


def new_context(payload: Mapping[str, Any]) -> dict[str, Any]:
    return {"data": dict(payload), "previous_result": None}

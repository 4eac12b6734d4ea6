from __future__ import annotations

import json
from typing import Any

from rawwire.core.errors import ValidationError
from rawwire.pipeline.context import MISSING, lookup, resolve_path
from rawwire.schemas.pipelines import (
    CountTransform,
    FilterTransform,
    FirstTransform,
    JsonDecodeTransform,
    JsonEncodeTransform,
    LastTransform,
    MapTransform,
    PluckTransform,
    Transform,
)


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _loose_equals(actual: Any, expected: Any) -> bool:
    if actual == expected:
        return True
    left, right = _as_number(actual), _as_number(expected)
    if left is not None and right is not None and (isinstance(actual, str) or isinstance(expected, str)):
        return left == right
    return False


def _compare(actual: Any, expected: Any) -> int | None:
    left, right = _as_number(actual), _as_number(expected)
    if left is not None and right is not None:
        return (left > right) - (left < right)
    try:
        return (actual > expected) - (actual < expected)
    except TypeError:
        return None


def evaluate_condition(actual: Any, operator: str, expected: Any) -> bool:
    if actual is MISSING:
        actual = None
    if operator == "equals":
        return _loose_equals(actual, expected)
    if operator == "strict_equals":
        return type(actual) is type(expected) and actual == expected
    if operator == "not_equals":
        return not _loose_equals(actual, expected)
    if operator == "greater":
        return _compare(actual, expected) == 1
    if operator == "less":
        return _compare(actual, expected) == -1
    if operator == "contains":
        if isinstance(actual, str):
            return isinstance(expected, str) and expected in actual
        if isinstance(actual, (list, tuple)):
            return expected in actual
        return False
    if operator == "exists":
        return actual is not None
    if operator == "empty":
        return not actual
    if operator == "not_empty":
        return bool(actual)
    raise ValidationError(f"unknown condition operator: {operator}")


def _extract_fields(item: Any, fields: list[str] | dict[str, str]) -> dict[str, Any]:
    pairs = fields.items() if isinstance(fields, dict) else ((path, path) for path in fields)
    return {alias: lookup(item, path) for alias, path in pairs}


def apply_transform(data: Any, transform: Transform) -> Any:
    """Apply one transform; list-only transforms leave non-list input untouched."""
    if isinstance(transform, MapTransform):
        if not isinstance(data, list):
            return data
        return [_extract_fields(item, transform.fields) for item in data]
    if isinstance(transform, FilterTransform):
        if not isinstance(data, list):
            return data
        return [
            item
            for item in data
            if evaluate_condition(resolve_path(item, transform.field), transform.operator, transform.value)
        ]
    if isinstance(transform, PluckTransform):
        if not isinstance(data, list):
            return data
        values = (resolve_path(item, transform.field) for item in data)
        return [value for value in values if value is not MISSING]
    if isinstance(transform, FirstTransform):
        if isinstance(data, list):
            return data[0] if data else None
        return data
    if isinstance(transform, LastTransform):
        if isinstance(data, list):
            return data[-1] if data else None
        return data
    if isinstance(transform, CountTransform):
        if isinstance(data, (list, dict)):
            return len(data)
        return 0
    if isinstance(transform, JsonEncodeTransform):
        return json.dumps(data, default=str)
    if isinstance(transform, JsonDecodeTransform):
        if not isinstance(data, str):
            return data
        try:
            return json.loads(data)
        except json.JSONDecodeError as exc:
            raise ValidationError(f"json_decode failed: {exc}") from exc
    raise ValidationError(f"unsupported transform: {type(transform).__name__}")


def apply_transforms(data: Any, transforms: list[Transform]) -> Any:
    for transform in transforms:
        data = apply_transform(data, transform)
    return data

"""Single-predicate filter evaluator for loop record sets."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Iterable, List

import field_codec


logger = logging.getLogger("docbind.resolve")

OPERATORS = {"equals", "notEquals", "contains", "notContains"}


@dataclass
class FilterEvalError(Exception):
    code: str
    message: str
    path: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base


class UnknownOperatorError(FilterEvalError):
    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__("FILTER_UNKNOWN_OPERATOR", message, path)


class FilterSchemaError(FilterEvalError):
    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__("FILTER_SCHEMA_ERROR", message, path)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == []


def _to_float(value: Any) -> float | None:
    if _is_number(value):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            number = float(value.strip().replace(",", ""))
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


def _condition_keys(expected: Any, field: dict | None) -> set[str]:
    """Option ids and labels the condition value may stand for."""
    keys: set[str] = set()
    items = expected if isinstance(expected, list) else [expected]
    for item in items:
        if isinstance(item, dict):
            if item.get("id") is not None:
                keys.add(str(item["id"]))
            label = field_codec.option_label(item)
            if label and item.get("id") is None:
                keys.add(label)
            continue
        if item is None:
            continue
        text = str(item).strip()
        keys.add(text)
        found = field_codec.resolve_option(text, field)
        if found is not None and found.get("id") is not None:
            keys.add(str(found["id"]))
    return keys


def _value_keys(value: Any, field: dict | None) -> set[str]:
    keys: set[str] = set()
    items = value if isinstance(value, list) else [value]
    for item in items:
        if item is None or item == "":
            continue
        if isinstance(item, dict):
            if item.get("id") is not None:
                keys.add(str(item["id"]))
            label = field_codec.option_label(item)
            if label:
                keys.add(label)
            continue
        text = str(item).strip()
        keys.add(text)
        found = field_codec.resolve_option(text, field)
        if found is not None:
            if found.get("id") is not None:
                keys.add(str(found["id"]))
            keys.add(field_codec.option_label(found))
    return keys


def _equals(value: Any, expected: Any, field: dict | None) -> bool:
    kind = (field or {}).get("kind")
    if _is_empty(value):
        return _is_empty(expected)
    if _is_empty(expected):
        return False

    if kind in field_codec.SELECT_KINDS or kind in field_codec.RELATION_KINDS:
        return bool(_value_keys(value, field) & _condition_keys(expected, field))

    if kind == "checkbox":
        return field_codec.is_checked(value) == field_codec.is_checked(expected)

    if kind in field_codec.NUMERIC_KINDS:
        left = _to_float(value)
        right = _to_float(expected)
        if left is not None and right is not None:
            return left == right

    left_text = field_codec.normalize(value, kind, field).strip()
    if isinstance(expected, dict):
        right_text = field_codec.normalize(expected, kind, field).strip()
    else:
        right_text = str(expected).strip()
    return left_text == right_text


def _contains(value: Any, expected: Any, field: dict | None) -> bool:
    if _is_empty(value):
        return False
    kind = (field or {}).get("kind")
    if isinstance(expected, dict):
        needle = field_codec.option_label(expected) or str(expected.get("id") or "")
    else:
        needle = "" if expected is None else str(expected)
    needle = needle.strip().lower()
    haystack = field_codec.normalize(value, kind, field).lower()
    return needle in haystack


def matches(value: Any, condition: dict, field: dict | None = None) -> bool:
    """Evaluate one filter condition against a field value."""
    if not isinstance(condition, dict):
        raise FilterSchemaError("Condition must be object", "$")
    op = condition.get("operator")
    expected = condition.get("value")
    if op == "equals":
        return _equals(value, expected, field)
    if op == "notEquals":
        return not _equals(value, expected, field)
    if op == "contains":
        return _contains(value, expected, field)
    if op == "notContains":
        return not _contains(value, expected, field)
    raise UnknownOperatorError(f"Unknown operator: {op}", "$.operator")


def find_filter_field(condition: dict, fields: Iterable[dict]) -> dict | None:
    field_list = list(fields or [])
    field_id = condition.get("field_id")
    if field_id:
        for field in field_list:
            if field.get("id") == field_id:
                return field
    # Legacy templates reference the filter field by name.
    name = condition.get("field_path") or (field_id if field_id else None)
    if name:
        for field in field_list:
            if field.get("name") == name:
                return field
    return None


def filter_records(records: List[dict], condition: dict | None, fields: Iterable[dict]) -> List[dict]:
    """Linear scan keeping records whose filter field satisfies the condition."""
    if not condition:
        return list(records)
    field = find_filter_field(condition, fields)
    if field is None:
        logger.warning(
            "filter_field_missing field_id=%s field_path=%s",
            condition.get("field_id"),
            condition.get("field_path"),
        )
        return list(records)
    field_id = field.get("id")
    return [
        record
        for record in records
        if matches((record.get("fields") or {}).get(field_id), condition, field)
    ]

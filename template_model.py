"""Template documents: legacy normalization, validation and traversal."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Tuple


Issue = Dict[str, Any]

ELEMENT_TYPES = {"text", "field", "loop", "table", "image", "link"}
TABLE_DATA_SOURCES = {"static", "dynamic", "loop"}
CELL_TYPES = {"text", "field"}
FILTER_OPERATORS = {"equals", "notEquals", "contains", "notContains"}
REQUIRED_TEMPLATE_KEYS = ("id", "name", "version", "elements", "styles")
MAX_LOOP_DEPTH = 1
DEFAULT_TITLE_SLOT_ID = "title"

# Legacy camelCase keys and their canonical names.
_KEY_ALIASES = {
    "fieldId": "field_id",
    "fieldPath": "field_path",
    "fieldName": "relation_field_name",
    "relationFieldId": "relation_field_id",
    "relationFieldName": "relation_field_name",
    "isTitleSlot": "is_title_slot",
    "labelPrefix": "label_prefix",
    "emptyText": "empty_text",
    "showLabel": "show_label",
    "dataSource": "data_source",
    "showHeader": "show_header",
    "columnConfig": "column_config",
    "canWriteback": "can_writeback",
    "displayText": "display_text",
    "columnId": "column_id",
    "createdAt": "created_at",
    "updatedAt": "updated_at",
    "fontSize": "font_size",
    "fontWeight": "font_weight",
    "fontFamily": "font_family",
    "lineHeight": "line_height",
    "pageWidth": "page_width",
    "pageHeight": "page_height",
}


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


@dataclass
class TemplateValidationError(Exception):
    message: str
    errors: List[Issue] = field(default_factory=list)
    code: str = "TEMPLATE_INVALID"
    path: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.code}: {self.message} ({len(self.errors)} issue(s))"


def _rename_keys(obj: dict) -> dict:
    out: dict = {}
    for key, value in obj.items():
        out[_KEY_ALIASES.get(key, key)] = value
    return out


def _normalize_filter(raw: Any) -> dict | None:
    if not isinstance(raw, dict):
        return None
    item = _rename_keys(raw)
    condition = {
        "field_id": item.get("field_id"),
        "field_path": item.get("field_path"),
        "operator": item.get("operator"),
        "value": item.get("value"),
    }
    return condition


def _normalize_column(raw: Any) -> dict:
    item = _rename_keys(raw) if isinstance(raw, dict) else {"label": str(raw)}
    column = dict(item)
    column.setdefault("id", column.get("field_id") or column.get("label"))
    if not column.get("type"):
        column["type"] = "field" if column.get("field_id") or column.get("field_path") else "fixed"
    column.setdefault("label", "")
    return column


def _normalize_row(raw: Any, idx: int) -> dict:
    item = _rename_keys(raw) if isinstance(raw, dict) else {}
    cells = []
    for cell in item.get("cells") or []:
        if not isinstance(cell, dict):
            continue
        cell_item = _rename_keys(cell)
        if not cell_item.get("type"):
            cell_item["type"] = "field" if cell_item.get("field_id") else "text"
        cells.append(cell_item)
    return {"id": item.get("id") or f"row_{idx}", "cells": cells}


def _normalize_column_config(raw: Any) -> dict:
    if not isinstance(raw, dict):
        return {}
    out = {}
    for column_id, conf in raw.items():
        if isinstance(conf, dict):
            out[column_id] = _rename_keys(conf)
    return out


def _normalize_element(raw: Any) -> Any:
    if not isinstance(raw, dict):
        return raw
    item = _rename_keys(raw)
    config = item.pop("config", None)
    if isinstance(config, dict):
        for key, value in _rename_keys(config).items():
            item.setdefault(key, value)

    etype = item.get("type")
    if etype == "text":
        item.setdefault("content", "")
        style = dict(item.get("style") or {})
        for key in ("font_size", "font_weight", "color", "align"):
            if key in item:
                style.setdefault(key, item.pop(key))
        item["style"] = style
    elif etype == "field":
        item.setdefault("field_id", None)
        item.setdefault("field_path", None)
        item["is_title_slot"] = bool(item.get("is_title_slot"))
        item.setdefault("label_prefix", None)
    elif etype == "loop":
        if "children" not in item:
            item["children"] = item.pop("template", None) or []
        else:
            item.pop("template", None)
        if not item.get("relation_field_id") and item.get("field_id"):
            item["relation_field_id"] = item.pop("field_id")
        item.setdefault("relation_field_id", None)
        item.setdefault("relation_field_name", None)
        item["filter"] = _normalize_filter(item.get("filter"))
        item["children"] = [_normalize_element(child) for child in item.get("children") or []]
    elif etype == "table":
        item["columns"] = [_normalize_column(col) for col in item.get("columns") or []]
        item["rows"] = [_normalize_row(row, idx) for idx, row in enumerate(item.get("rows") or [])]
        item["data_source"] = item.get("data_source") or "static"
        item["show_header"] = item.get("show_header", True) is not False
        item["bordered"] = item.get("bordered", True) is not False
        item["column_config"] = _normalize_column_config(item.get("column_config"))
    elif etype == "image":
        item.setdefault("field_id", None)
        item.setdefault("field_path", None)
    elif etype == "link":
        item.setdefault("field_id", None)
        item.setdefault("field_path", None)
        if "text" in item and "display_text" not in item:
            item["display_text"] = item.pop("text")
    return item


def normalize_template(raw: Any) -> Any:
    """Rewrite legacy template shapes into the canonical dict layout."""
    if not isinstance(raw, dict):
        return raw
    template = _rename_keys(copy.deepcopy(raw))
    template["elements"] = [_normalize_element(el) for el in template.get("elements") or []]
    styles = template.get("styles")
    if isinstance(styles, dict):
        template["styles"] = _rename_keys(styles)
    return template


def _validate_filter(condition: Any, path: str, errors: List[Issue]) -> None:
    if condition is None:
        return
    if not isinstance(condition, dict):
        errors.append(_issue("FILTER_INVALID", "filter must be an object", path))
        return
    if not condition.get("field_id") and not condition.get("field_path"):
        errors.append(_issue("FILTER_FIELD_REQUIRED", "filter needs field_id or field_path", path))
    if condition.get("operator") not in FILTER_OPERATORS:
        errors.append(
            _issue(
                "FILTER_OPERATOR_INVALID",
                f"Unsupported filter operator: {condition.get('operator')}",
                f"{path}.operator",
                {"allowed": sorted(FILTER_OPERATORS)},
            )
        )


def _validate_table(element: dict, path: str, loop_depth: int, errors: List[Issue], warnings: List[Issue]) -> None:
    source = element.get("data_source")
    if source not in TABLE_DATA_SOURCES:
        errors.append(_issue("TABLE_DATA_SOURCE_INVALID", f"Unknown data_source: {source}", f"{path}.data_source"))
    elif source == "loop" and loop_depth == 0:
        errors.append(_issue("TABLE_LOOP_OUTSIDE_LOOP", "loop tables must sit inside a loop", f"{path}.data_source"))
    columns = element.get("columns")
    if not isinstance(columns, list):
        errors.append(_issue("TABLE_COLUMNS_INVALID", "columns must be a list", f"{path}.columns"))
        return
    if not columns:
        warnings.append(_issue("TABLE_UNCONFIGURED", "table has no columns", f"{path}.columns"))
    column_ids = set()
    for idx, column in enumerate(columns):
        cid = column.get("id") if isinstance(column, dict) else None
        if not cid:
            errors.append(_issue("TABLE_COLUMN_ID_REQUIRED", "column id required", f"{path}.columns[{idx}]"))
            continue
        if cid in column_ids:
            errors.append(_issue("TABLE_COLUMN_ID_DUPLICATE", f"duplicate column id: {cid}", f"{path}.columns[{idx}]"))
        column_ids.add(cid)
    for ridx, row in enumerate(element.get("rows") or []):
        for cidx, cell in enumerate(row.get("cells") or []):
            cell_path = f"{path}.rows[{ridx}].cells[{cidx}]"
            if cell.get("type") not in CELL_TYPES:
                errors.append(_issue("TABLE_CELL_TYPE_INVALID", f"Unknown cell type: {cell.get('type')}", cell_path))
            if cell.get("column_id") not in column_ids:
                warnings.append(_issue("TABLE_CELL_COLUMN_UNKNOWN", "cell references an unknown column", cell_path))
    for column_id, conf in (element.get("column_config") or {}).items():
        if conf.get("type") == "concat" and not isinstance(conf.get("fields"), list):
            errors.append(
                _issue("TABLE_COLUMN_CONFIG_INVALID", "concat columns need a fields list", f"{path}.column_config.{column_id}")
            )


def _validate_elements(
    elements: Any,
    path: str,
    loop_depth: int,
    seen_ids: set,
    errors: List[Issue],
    warnings: List[Issue],
) -> None:
    if not isinstance(elements, list):
        errors.append(_issue("ELEMENTS_INVALID", "elements must be a list", path))
        return
    for idx, element in enumerate(elements):
        el_path = f"{path}[{idx}]"
        if not isinstance(element, dict):
            errors.append(_issue("ELEMENT_INVALID", "element must be an object", el_path))
            continue
        element_id = element.get("id")
        if not isinstance(element_id, str) or not element_id:
            errors.append(_issue("ELEMENT_ID_REQUIRED", "element id must be a non-empty string", f"{el_path}.id"))
        elif element_id in seen_ids:
            errors.append(_issue("ELEMENT_ID_DUPLICATE", f"duplicate element id: {element_id}", f"{el_path}.id"))
        else:
            seen_ids.add(element_id)

        etype = element.get("type")
        if etype not in ELEMENT_TYPES:
            errors.append(_issue("ELEMENT_TYPE_INVALID", f"Unknown element type: {etype}", f"{el_path}.type"))
            continue

        if etype in {"field", "image", "link"}:
            if not element.get("field_id") and not element.get("field_path"):
                warnings.append(_issue("FIELD_REFERENCE_MISSING", "element is not bound to a field", el_path))
        elif etype == "loop":
            if loop_depth + 1 > MAX_LOOP_DEPTH:
                errors.append(
                    _issue(
                        "LOOP_NESTING_EXCEEDED",
                        f"loops may nest at most {MAX_LOOP_DEPTH} level(s)",
                        el_path,
                        {"max_depth": MAX_LOOP_DEPTH},
                    )
                )
            if not element.get("relation_field_id") and not element.get("relation_field_name"):
                errors.append(_issue("LOOP_RELATION_REQUIRED", "loop needs a relation field", el_path))
            elif not element.get("relation_field_id"):
                warnings.append(_issue("LOOP_RELATION_BY_NAME", "loop relation resolved by name", el_path))
            _validate_filter(element.get("filter"), f"{el_path}.filter", errors)
            _validate_elements(
                element.get("children"), f"{el_path}.children", loop_depth + 1, seen_ids, errors, warnings
            )
        elif etype == "table":
            _validate_table(element, el_path, loop_depth, errors, warnings)


def validate_template(template: Any, title_slot_id: str = DEFAULT_TITLE_SLOT_ID) -> Tuple[List[Issue], List[Issue]]:
    errors: List[Issue] = []
    warnings: List[Issue] = []
    if not isinstance(template, dict):
        return [_issue("TEMPLATE_INVALID", "template must be an object", "$")], warnings
    for key in REQUIRED_TEMPLATE_KEYS:
        if key not in template:
            errors.append(_issue("TEMPLATE_KEY_REQUIRED", f"Missing required key: {key}", key))
    if "styles" in template and not isinstance(template.get("styles"), dict):
        errors.append(_issue("TEMPLATE_STYLES_INVALID", "styles must be an object", "styles"))
    _validate_elements(template.get("elements", []), "elements", 0, set(), errors, warnings)

    title_slots = [
        el
        for el, _depth in iter_elements(template)
        if el.get("type") == "field" and (el.get("id") == title_slot_id or el.get("is_title_slot"))
    ]
    if len(title_slots) > 1:
        warnings.append(_issue("TITLE_SLOT_DUPLICATE", "more than one title slot", "elements"))
    return errors, warnings


def validate_template_raw(raw: Any, title_slot_id: str = DEFAULT_TITLE_SLOT_ID) -> Tuple[Any, List[Issue], List[Issue]]:
    normalized = normalize_template(raw)
    errors, warnings = validate_template(normalized, title_slot_id)
    return normalized, errors, warnings


def load_template(raw: Any, title_slot_id: str = DEFAULT_TITLE_SLOT_ID) -> dict:
    normalized, errors, _warnings = validate_template_raw(raw, title_slot_id)
    if errors:
        raise TemplateValidationError("Template failed validation", errors)
    return normalized


def iter_elements(template: Any) -> Iterator[Tuple[dict, int]]:
    """Yield (element, loop_depth) depth-first in document order."""
    if not isinstance(template, dict):
        return
    stack: List[Tuple[dict, int]] = []
    for element in reversed(template.get("elements") or []):
        if isinstance(element, dict):
            stack.append((element, 0))
    while stack:
        element, depth = stack.pop()
        yield element, depth
        if element.get("type") == "loop":
            for child in reversed(element.get("children") or []):
                if isinstance(child, dict):
                    stack.append((child, depth + 1))

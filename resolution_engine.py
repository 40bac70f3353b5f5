"""Bind a template to live records and flatten it into a renderer-ready document."""

from __future__ import annotations

import asyncio
import copy
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

import field_codec
import filter_eval
from template_model import DEFAULT_TITLE_SLOT_ID


logger = logging.getLogger("docbind.resolve")

Issue = Dict[str, Any]
Node = Dict[str, Any]

DEFAULT_TITLE_FALLBACK = "Untitled record"
DEFAULT_CONCAT_SEPARATOR = ","


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


def default_title_render(base: str, suffix: str, version: str) -> str:
    if suffix and version:
        tail = f"{suffix}-{version}"
    else:
        tail = suffix or version
    return f"{base} {tail}" if tail else base


def is_field_editable(field: dict | None, allow_list: Iterable[str] | None) -> bool:
    """Editable needs a writable kind *and* membership in the external allow-list."""
    if not field:
        return False
    kind = field.get("kind")
    if field_codec.is_read_only(kind) or kind in field_codec.NON_TEXT_EDIT_KINDS:
        return False
    return field.get("id") in set(allow_list or ())


def find_field(fields: Iterable[dict], field_id: Any = None, field_path: Any = None) -> dict | None:
    """Look a field up by id, then by legacy name/path in the given field set."""
    field_list = [f for f in fields or [] if isinstance(f, dict)]
    if field_id:
        for field in field_list:
            if field.get("id") == field_id:
                return field
    for name in (field_path, field_id):
        if not isinstance(name, str) or not name:
            continue
        for field in field_list:
            if field.get("name") == name:
                return field
        # "Table.Field" paths address the last segment.
        if "." in name:
            leaf = name.rsplit(".", 1)[-1]
            for field in field_list:
                if field.get("name") == leaf:
                    return field
    return None


def find_relation_field(element: dict, fields: Iterable[dict]) -> tuple[dict | None, bool]:
    """Return (relation field, matched_by_name) for a loop element."""
    field_list = [f for f in fields or [] if isinstance(f, dict)]
    relation_id = element.get("relation_field_id")
    if relation_id:
        for field in field_list:
            if field.get("id") == relation_id:
                return field, False
    name = element.get("relation_field_name") or relation_id
    if not name:
        return None, False
    candidates = [f for f in field_list if f.get("kind") in field_codec.RELATION_KINDS]
    for field in candidates:
        if field.get("name") == name:
            return field, True
    for field in candidates:
        field_name = field.get("name") or ""
        if field_name and (name in field_name or field_name in name):
            return field, True
    return None, False


def _split_runs(children: List[dict]) -> List[tuple[str, List[dict]]]:
    """Group loop children into ("table", [loop table]) and ("repeat", [...]) runs."""
    runs: List[tuple[str, List[dict]]] = []
    for child in children:
        if isinstance(child, dict) and child.get("type") == "table" and child.get("data_source") == "loop":
            runs.append(("table", [child]))
            continue
        if runs and runs[-1][0] == "repeat":
            runs[-1][1].append(child)
        else:
            runs.append(("repeat", [child]))
    return runs


class _Resolver:
    def __init__(
        self,
        template: dict,
        root_record: dict,
        root_fields: List[dict],
        relation_fetcher: Any,
        comment_index: Any,
        options: dict,
    ) -> None:
        self.template = template
        self.root_record = root_record or {}
        self.root_table_id = self.root_record.get("table_id")
        self.root_fields = list(root_fields or [])
        self.fetcher = relation_fetcher
        self.comment_index = comment_index
        self.allow_list = set(options.get("edit_allow_list") or ())
        policy = dict(options.get("title_policy") or {})
        self.title_slot_id = policy.get("slot_id") or DEFAULT_TITLE_SLOT_ID
        self.title_suffix = policy.get("suffix") or ""
        self.title_version_field_id = policy.get("version_field_id")
        self.title_fallback = policy.get("fallback") or DEFAULT_TITLE_FALLBACK
        self.title_render: Callable[[str, str, str], str] = policy.get("render") or default_title_render
        self.nodes: List[Node] = []
        self.warnings: List[Issue] = []
        self._record_cache: Dict[str, dict] = {}
        self._relations: Dict[str, Any] = {}

    # -- scope helpers -------------------------------------------------

    def _root_scope(self) -> dict:
        return {
            "record": self.root_record,
            "fields": self.root_fields,
            "table_id": self.root_table_id,
            "loop": None,
        }

    async def _load_record(self, scope: dict) -> dict:
        record = scope["record"]
        key = f"{scope.get('table_id')}:{record.get('record_id')}"
        if key in self._record_cache:
            return self._record_cache[key]
        loaded: dict = {}
        reader = getattr(self.fetcher, "read_record", None)
        if reader is not None and record.get("record_id"):
            try:
                loaded = await reader(scope.get("table_id"), record.get("record_id")) or {}
            except Exception as exc:
                logger.warning(
                    "record_read_failed table=%s record=%s error=%s",
                    scope.get("table_id"),
                    record.get("record_id"),
                    exc,
                )
                loaded = {}
        self._record_cache[key] = loaded
        return loaded

    async def _value(self, scope: dict, field_id: str) -> Any:
        fields_map = scope["record"].get("fields") or {}
        if field_id in fields_map:
            return fields_map[field_id]
        loaded = await self._load_record(scope)
        return loaded.get(field_id)

    def _comments(self, record_id: Any, field_id: Any) -> dict | None:
        if self.comment_index is None or not record_id:
            return None
        try:
            stats = self.comment_index.stats(record_id, field_id)
        except Exception as exc:
            logger.warning("comment_stats_failed record=%s field=%s error=%s", record_id, field_id, exc)
            return None
        if not stats:
            return {"total": 0, "unresolved": 0, "show_badge": False}
        total = int(stats.get("total") or 0)
        unresolved = int(stats.get("unresolved") or 0)
        return {"total": total, "unresolved": unresolved, "show_badge": total > 0}

    # -- node builders -------------------------------------------------

    def _node(self, node_id: str, element: dict, ntype: str, scope: dict, **payload: Any) -> Node:
        node = {
            "node_id": node_id,
            "element_id": element.get("id"),
            "type": ntype,
            "loop": copy.deepcopy(scope.get("loop")),
        }
        node.update(payload)
        return node

    def _placeholder(self, node_id: str, element: dict, scope: dict, reason: str, message: str) -> Node:
        return self._node(node_id, element, "placeholder", scope, reason=reason, message=message)

    def _missing_field(self, node_id: str, element: dict, scope: dict, field_id: Any) -> Node:
        ref = field_id or element.get("field_path")
        self.warnings.append(
            _issue(
                "MISSING_FIELD",
                f"Field not found: {ref}",
                element.get("id"),
                {"table_id": scope.get("table_id")},
            )
        )
        return self._placeholder(node_id, element, scope, "missing_field", f"Field not found: {ref}")

    async def _field_payload(self, field: dict, scope: dict) -> dict:
        field_id = field.get("id")
        kind = field.get("kind")
        raw = await self._value(scope, field_id)
        display_text = field_codec.normalize(raw, kind, field)
        record_id = scope["record"].get("record_id")
        table_id = scope.get("table_id")
        editable = is_field_editable(field, self.allow_list)
        return {
            "record_id": record_id,
            "table_id": table_id,
            "field_id": field_id,
            "field_name": field.get("name"),
            "kind": kind,
            "raw_value": copy.deepcopy(raw),
            "display_text": display_text,
            "segments": field_codec.parse_rich_segments(raw, kind),
            "editable": editable,
            "edit": {
                "record_id": record_id,
                "field_id": field_id,
                "table_id": table_id,
                "root_table_id": self.root_table_id,
                "is_relation_edit": scope.get("loop") is not None,
                "field": copy.deepcopy(field),
                "raw_value": copy.deepcopy(raw),
                "display_text": display_text,
            }
            if editable
            else None,
            "comments": self._comments(record_id, field_id),
        }

    def _is_title_slot(self, element: dict) -> bool:
        return element.get("id") == self.title_slot_id or bool(element.get("is_title_slot"))

    async def _title_node(self, node_id: str, element: dict, scope: dict) -> Node:
        field = find_field(scope["fields"], element.get("field_id"), element.get("field_path"))
        payload: dict = {}
        base = ""
        if field is not None:
            payload = await self._field_payload(field, scope)
            base = payload["display_text"].strip()
        elif element.get("field_id") or element.get("field_path"):
            ref = element.get("field_id") or element.get("field_path")
            self.warnings.append(
                _issue(
                    "MISSING_FIELD",
                    f"Field not found: {ref}",
                    element.get("id"),
                    {"table_id": scope.get("table_id")},
                )
            )
        base = base or self.title_fallback
        version = ""
        if self.title_version_field_id:
            version_field = find_field(scope["fields"], self.title_version_field_id)
            if version_field is not None:
                raw_version = await self._value(scope, version_field.get("id"))
                version = field_codec.normalize(raw_version, version_field.get("kind"), version_field).strip()
        try:
            text = self.title_render(base, self.title_suffix, version)
        except Exception as exc:
            logger.warning("title_render_failed element=%s error=%s", element.get("id"), exc)
            text = default_title_render(base, self.title_suffix, version)
        payload.update({"text": text, "base": base, "suffix": self.title_suffix, "version": version})
        payload.setdefault("editable", False)
        payload.setdefault("edit", None)
        return self._node(node_id, element, "title", scope, **payload)

    async def _field_node(self, node_id: str, element: dict, scope: dict) -> Node:
        if self._is_title_slot(element):
            return await self._title_node(node_id, element, scope)
        field = find_field(scope["fields"], element.get("field_id"), element.get("field_path"))
        if field is None:
            return self._missing_field(node_id, element, scope, element.get("field_id"))
        payload = await self._field_payload(field, scope)
        payload.update(
            {
                "label_prefix": element.get("label_prefix"),
                "show_label": bool(element.get("show_label")),
                "empty_text": element.get("empty_text"),
                "format": element.get("format"),
            }
        )
        return self._node(node_id, element, "field", scope, **payload)

    async def _image_node(self, node_id: str, element: dict, scope: dict) -> Node:
        field = find_field(scope["fields"], element.get("field_id"), element.get("field_path"))
        if field is None:
            return self._missing_field(node_id, element, scope, element.get("field_id"))
        raw = await self._value(scope, field.get("id"))
        return self._node(
            node_id,
            element,
            "image",
            scope,
            field_id=field.get("id"),
            urls=field_codec.image_urls(raw),
            width=element.get("width"),
            height=element.get("height"),
        )

    async def _link_node(self, node_id: str, element: dict, scope: dict) -> Node:
        field = find_field(scope["fields"], element.get("field_id"), element.get("field_path"))
        if field is None:
            return self._missing_field(node_id, element, scope, element.get("field_id"))
        raw = await self._value(scope, field.get("id"))
        url = field_codec.link_url(raw)
        text = element.get("display_text") or field_codec.normalize(raw, field.get("kind"), field) or url
        return self._node(node_id, element, "link", scope, field_id=field.get("id"), url=url, text=text)

    # -- tables --------------------------------------------------------

    def _columns(self, element: dict) -> List[dict]:
        return [
            {
                "id": col.get("id"),
                "label": col.get("label") or "",
                "width": col.get("width"),
                "align": col.get("align"),
            }
            for col in element.get("columns") or []
        ]

    async def _field_cell(self, cell_id: str, column_id: str, field_id: Any, field_path: Any, scope: dict) -> dict:
        field = find_field(scope["fields"], field_id, field_path)
        if field is None:
            self.warnings.append(
                _issue("MISSING_FIELD", f"Field not found: {field_id or field_path}", cell_id, {"table_id": scope.get("table_id")})
            )
            return {"cell_id": cell_id, "column_id": column_id, "type": "placeholder", "reason": "missing_field"}
        cell = {"cell_id": cell_id, "column_id": column_id, "type": "field"}
        cell.update(await self._field_payload(field, scope))
        return cell

    async def _static_rows(self, node_id: str, element: dict, scope: dict) -> List[dict]:
        rows = []
        for ridx, row in enumerate(element.get("rows") or []):
            cells = []
            for cell in row.get("cells") or []:
                column_id = cell.get("column_id")
                cell_id = f"{node_id}:{ridx}:{column_id}"
                if cell.get("type") == "field":
                    cells.append(await self._field_cell(cell_id, column_id, cell.get("field_id"), cell.get("field_path"), scope))
                else:
                    cells.append({"cell_id": cell_id, "column_id": column_id, "type": "text", "text": cell.get("content") or ""})
            rows.append({"row_id": row.get("id"), "record_id": scope["record"].get("record_id"), "cells": cells})
        return rows

    async def _flat_row(self, node_id: str, element: dict, scope: dict) -> List[dict]:
        cells = []
        for col in element.get("columns") or []:
            column_id = col.get("id")
            cell_id = f"{node_id}:0:{column_id}"
            if col.get("type") == "field":
                cells.append(await self._field_cell(cell_id, column_id, col.get("field_id"), col.get("field_path"), scope))
            else:
                cells.append({"cell_id": cell_id, "column_id": column_id, "type": "text", "text": ""})
        return [{"row_id": "row_0", "record_id": scope["record"].get("record_id"), "cells": cells}]

    async def _loop_rows(self, node_id: str, element: dict, scope: dict, records: List[dict]) -> List[dict]:
        column_config = element.get("column_config") or {}
        rows = []
        for ridx, record in enumerate(records):
            row_scope = dict(scope, record=record)
            cells = []
            for col in element.get("columns") or []:
                column_id = col.get("id")
                cell_id = f"{node_id}:{ridx}:{column_id}"
                conf = column_config.get(column_id) or {}
                if conf.get("type") == "concat":
                    parts = []
                    for fid in conf.get("fields") or []:
                        field = find_field(scope["fields"], fid)
                        if field is None:
                            parts.append("")
                            continue
                        raw = await self._value(row_scope, field.get("id"))
                        parts.append(field_codec.normalize(raw, field.get("kind"), field))
                    separator = conf.get("separator") or DEFAULT_CONCAT_SEPARATOR
                    cells.append({"cell_id": cell_id, "column_id": column_id, "type": "text", "text": separator.join(parts)})
                    continue
                if col.get("type") != "field":
                    cells.append({"cell_id": cell_id, "column_id": column_id, "type": "text", "text": ""})
                    continue
                cell = await self._field_cell(cell_id, column_id, col.get("field_id"), col.get("field_path"), row_scope)
                if cell["type"] == "field" and col.get("format") == "date" and cell["raw_value"] is not None:
                    cell["display_text"] = field_codec.format_date_only(cell["raw_value"], cell["display_text"])
                    cell["segments"] = [{"type": "text", "text": cell["display_text"]}]
                cells.append(cell)
            rows.append({"row_id": f"row_{ridx}", "record_id": record.get("record_id"), "cells": cells})
        return rows

    async def _table_node(self, node_id: str, element: dict, scope: dict, records: Optional[List[dict]] = None) -> Node:
        if not element.get("columns"):
            return self._placeholder(node_id, element, scope, "unconfigured", "Table has no columns")
        source = element.get("data_source") or "static"
        if source == "loop":
            if records is None:
                return self._placeholder(node_id, element, scope, "loop_table_outside_loop", "Loop table outside a loop")
            rows = await self._loop_rows(node_id, element, scope, records)
        elif source == "static" and element.get("rows"):
            rows = await self._static_rows(node_id, element, scope)
        else:
            rows = await self._flat_row(node_id, element, scope)
        return self._node(
            node_id,
            element,
            "table",
            scope,
            data_source=source,
            columns=self._columns(element),
            rows=rows,
            show_header=element.get("show_header", True),
            bordered=element.get("bordered", True),
        )

    # -- loops ---------------------------------------------------------

    async def _fetch_relation(self, element: dict, scope: dict) -> dict:
        field, by_name = find_relation_field(element, scope["fields"])
        if field is None:
            raise LookupError(f"relation field not found: {element.get('relation_field_id') or element.get('relation_field_name')}")
        if by_name:
            logger.warning("loop_relation_by_name element=%s field=%s", element.get("id"), field.get("id"))
        result = await self.fetcher.fetch(scope.get("table_id"), scope["record"].get("record_id"), field.get("id"))
        if not result or result.get("fields") is None:
            raise LookupError(f"relation metadata unavailable: {field.get('id')}")
        return {
            "relation_field_id": field.get("id"),
            "records": list(result.get("records") or []),
            "fields": list(result.get("fields") or []),
            "table_id": result.get("table_id"),
        }

    async def prefetch(self, elements: List[dict]) -> None:
        loops = [el for el in elements if isinstance(el, dict) and el.get("type") == "loop" and el.get("id")]
        if not loops:
            return
        scope = self._root_scope()
        results = await asyncio.gather(
            *(self._fetch_relation(el, scope) for el in loops),
            return_exceptions=True,
        )
        for element, result in zip(loops, results):
            self._relations[element["id"]] = result

    async def _with_filter_values(self, records: List[dict], condition: dict, relation: dict) -> List[dict]:
        """Load the filter field for records whose field map does not carry it yet."""
        field = filter_eval.find_filter_field(condition, relation["fields"])
        if field is None:
            return records
        field_id = field.get("id")
        out = []
        for record in records:
            values = record.get("fields") or {}
            if field_id in values:
                out.append(record)
                continue
            scope = {"record": record, "table_id": relation["table_id"]}
            filled = dict(record)
            filled["fields"] = dict(values)
            filled["fields"][field_id] = await self._value(scope, field_id)
            out.append(filled)
        return out

    async def _loop_nodes(self, node_id: str, element: dict, scope: dict) -> List[Node]:
        if scope.get("loop") is not None:
            return [self._placeholder(node_id, element, scope, "loop_nesting_exceeded", "Loops nest at most one level")]

        relation = self._relations.get(element.get("id"))
        if relation is None:
            try:
                relation = await self._fetch_relation(element, scope)
            except Exception as exc:
                relation = exc
        if isinstance(relation, BaseException):
            logger.warning("loop_fetch_failed element=%s error=%s", element.get("id"), relation)
            self.warnings.append(
                _issue("MISSING_RELATION_METADATA", str(relation), element.get("id"))
            )
            relation = {"relation_field_id": element.get("relation_field_id"), "records": [], "fields": [], "table_id": None}

        records = relation["records"]
        condition = element.get("filter")
        if condition:
            records = await self._with_filter_values(records, condition, relation)
            try:
                records = filter_eval.filter_records(records, condition, relation["fields"])
            except filter_eval.FilterEvalError as exc:
                logger.warning("loop_filter_ignored element=%s error=%s", element.get("id"), exc)
                self.warnings.append(_issue(exc.code, exc.message, element.get("id")))

        header = self._node(
            node_id,
            element,
            "loop",
            scope,
            relation_field_id=relation["relation_field_id"],
            related_table_id=relation["table_id"],
            record_count=len(records),
            groups=[
                {"index": idx, "record_id": rec.get("record_id"), "node_ids": []}
                for idx, rec in enumerate(records)
            ],
        )
        out: List[Node] = [header]
        base_scope = {
            "record": {},
            "fields": relation["fields"],
            "table_id": relation["table_id"],
            "loop": {"loop_id": node_id, "index": None, "record_id": None},
        }
        runs = _split_runs(element.get("children") or [])

        if not records:
            out.append(
                self._placeholder(
                    f"{node_id}:empty", element, scope, "no_related_records", "No related records"
                )
            )

        for kind, children in runs:
            if kind == "table":
                table = children[0]
                out.append(await self._guarded(f"{node_id}:{table.get('id')}", table, base_scope, records))
                continue
            for idx, record in enumerate(records):
                rep_scope = dict(
                    base_scope,
                    record=record,
                    loop={"loop_id": node_id, "index": idx, "record_id": record.get("record_id")},
                )
                for child in children:
                    child_id = f"{node_id}:{idx}:{child.get('id') if isinstance(child, dict) else 'invalid'}"
                    child_nodes = await self._element_nodes(child_id, child, rep_scope)
                    header["groups"][idx]["node_ids"].extend(n["node_id"] for n in child_nodes)
                    out.extend(child_nodes)
        return out

    # -- dispatch ------------------------------------------------------

    async def _dispatch(self, node_id: str, element: dict, scope: dict, records: Optional[List[dict]] = None) -> Node:
        etype = element.get("type")
        if etype == "text":
            return self._node(node_id, element, "text", scope, content=element.get("content") or "", style=element.get("style") or {})
        if etype == "field":
            return await self._field_node(node_id, element, scope)
        if etype == "image":
            return await self._image_node(node_id, element, scope)
        if etype == "link":
            return await self._link_node(node_id, element, scope)
        if etype == "table":
            return await self._table_node(node_id, element, scope, records)
        return self._placeholder(node_id, element, scope, "unknown_element", f"Unknown element type: {etype}")

    async def _guarded(self, node_id: str, element: dict, scope: dict, records: Optional[List[dict]] = None) -> Node:
        try:
            return await self._dispatch(node_id, element, scope, records)
        except Exception as exc:
            logger.exception("resolve_element_failed element=%s", element.get("id"))
            return self._placeholder(node_id, element, scope, "resolve_error", str(exc))

    async def _element_nodes(self, node_id: str, element: Any, scope: dict) -> List[Node]:
        if not isinstance(element, dict):
            return [self._placeholder(node_id, {}, scope, "resolve_error", "Element must be an object")]
        if element.get("type") == "loop":
            try:
                return await self._loop_nodes(node_id, element, scope)
            except Exception as exc:
                logger.exception("resolve_loop_failed element=%s", element.get("id"))
                return [self._placeholder(node_id, element, scope, "resolve_error", str(exc))]
        return [await self._guarded(node_id, element, scope)]

    async def run(self) -> List[Node]:
        elements = self.template.get("elements") or []
        await self.prefetch(elements)
        scope = self._root_scope()
        for idx, element in enumerate(elements):
            node_id = element.get("id") if isinstance(element, dict) and element.get("id") else f"element_{idx}"
            self.nodes.extend(await self._element_nodes(node_id, element, scope))
        return self.nodes


async def resolve(
    template: dict,
    root_record: dict,
    root_fields: List[dict],
    relation_fetcher: Any,
    comment_index: Any = None,
    options: dict | None = None,
) -> dict:
    """Resolve a template against a root record. Never raises."""
    opts = options or {}
    root = root_record if isinstance(root_record, dict) else {}
    document = {
        "template_id": template.get("id") if isinstance(template, dict) else None,
        "record_id": root.get("record_id"),
        "table_id": root.get("table_id"),
        "refresh_epoch": opts.get("refresh_epoch"),
        "nodes": [],
        "warnings": [],
    }
    resolver = None
    try:
        if not isinstance(template, dict):
            raise TypeError("template must be an object")
        resolver = _Resolver(template, root, root_fields, relation_fetcher, comment_index, opts)
        document["nodes"] = await resolver.run()
        document["warnings"] = resolver.warnings
    except Exception as exc:
        logger.exception("resolve_failed template=%s", document["template_id"])
        if resolver is not None:
            document["warnings"] = resolver.warnings
        document["nodes"] = (resolver.nodes if resolver is not None else []) + [
            {
                "node_id": "resolve_error",
                "element_id": None,
                "type": "placeholder",
                "loop": None,
                "reason": "resolve_error",
                "message": str(exc),
            }
        ]
    logger.debug(
        "resolved template=%s record=%s nodes=%s warnings=%s",
        document["template_id"],
        document["record_id"],
        len(document["nodes"]),
        len(document["warnings"]),
    )
    return document


def iter_nodes(document: dict) -> Iterable[Node]:
    for node in (document or {}).get("nodes") or []:
        yield node
        if node.get("type") == "table":
            for row in node.get("rows") or []:
                for cell in row.get("cells") or []:
                    yield cell


def find_node(document: dict, node_id: str) -> Node | None:
    """Locate a node, or a table cell by its cell id."""
    for node in iter_nodes(document):
        if node.get("node_id") == node_id or node.get("cell_id") == node_id:
            return node
    return None


def count_placeholders(document: dict) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for node in iter_nodes(document):
        if node.get("type") == "placeholder":
            reason = node.get("reason") or "unknown"
            counts[reason] = counts.get(reason, 0) + 1
    return counts

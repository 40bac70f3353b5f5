"""In-memory stores for records, templates and comment counts."""

from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Tuple

import field_codec


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class RecordStoreError(Exception):
    code: str
    message: str
    path: str | None = None
    status: int | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base


def related_record_ids(value: Any) -> List[str]:
    """Record ids referenced by a relation field value."""
    ids: List[str] = []
    items = value if isinstance(value, list) else [value]
    for item in items:
        if item is None or item == "":
            continue
        if isinstance(item, dict):
            if isinstance(item.get("record_ids"), list):
                ids.extend(str(rid) for rid in item["record_ids"])
            elif item.get("record_id") or item.get("id"):
                ids.append(str(item.get("record_id") or item.get("id")))
            continue
        ids.append(str(item))
    seen = set()
    out = []
    for rid in ids:
        if rid not in seen:
            seen.add(rid)
            out.append(rid)
    return out


class MemoryRecordStore:
    """Async RecordStore over plain dicts; values are coerced per field kind on write."""

    def __init__(self) -> None:
        self._tables: Dict[str, dict] = {}
        self.calls: List[Tuple[str, ...]] = []

    def add_table(self, table_id: str, fields: List[dict]) -> None:
        self._tables[table_id] = {"fields": copy.deepcopy(fields), "records": {}}

    def put_record(self, table_id: str, record_id: str, values: dict) -> None:
        table = self._table(table_id)
        table["records"][record_id] = copy.deepcopy(values)

    def _table(self, table_id: str) -> dict:
        table = self._tables.get(table_id)
        if table is None:
            raise RecordStoreError("TABLE_NOT_FOUND", f"Unknown table: {table_id}", table_id, 404)
        return table

    def _row(self, table_id: str, record_id: str) -> dict:
        row = self._table(table_id)["records"].get(record_id)
        if row is None:
            raise RecordStoreError("RECORD_NOT_FOUND", f"Unknown record: {record_id}", f"{table_id}/{record_id}", 404)
        return row

    def _field(self, table_id: str, field_id: str) -> dict:
        for field in self._table(table_id)["fields"]:
            if field.get("id") == field_id:
                return field
        raise RecordStoreError("FIELD_NOT_FOUND", f"Unknown field: {field_id}", f"{table_id}/{field_id}", 404)

    def _ref(self, table_id: str, record_id: str, values: dict) -> dict:
        return {"record_id": record_id, "table_id": table_id, "fields": copy.deepcopy(values)}

    async def get_field_metadata(self, table_id: str) -> List[dict]:
        self.calls.append(("get_field_metadata", table_id))
        return copy.deepcopy(self._table(table_id)["fields"])

    async def get_record(self, table_id: str, record_id: str) -> dict:
        self.calls.append(("get_record", table_id, record_id))
        return copy.deepcopy(self._row(table_id, record_id))

    async def write_field(self, table_id: str, record_id: str, field_id: str, value: Any) -> Any:
        self.calls.append(("write_field", table_id, record_id, field_id))
        field = self._field(table_id, field_id)
        if field_codec.is_read_only(field.get("kind")):
            raise RecordStoreError("FIELD_READ_ONLY", f"Field is computed: {field_id}", f"{table_id}/{field_id}", 400)
        row = self._row(table_id, record_id)
        stored = field_codec.coerce_value(value, field.get("kind"), field)
        row[field_id] = stored
        return copy.deepcopy(stored)

    async def fetch_related(self, table_id: str, record_id: str, relation_field_id: str) -> Tuple[List[dict], str | None]:
        self.calls.append(("fetch_related", table_id, record_id, relation_field_id))
        field = self._field(table_id, relation_field_id)
        related_table_id = field.get("related_table_id")
        if not related_table_id:
            raise RecordStoreError("RELATION_METADATA_MISSING", f"No related table for {relation_field_id}", relation_field_id)
        related = self._table(related_table_id)["records"]
        row = self._row(table_id, record_id)
        refs = []
        for rid in related_record_ids(row.get(relation_field_id)):
            if rid in related:
                refs.append(self._ref(related_table_id, rid, related[rid]))
        return refs, related_table_id

    async def list_records(self, table_id: str) -> List[dict]:
        self.calls.append(("list_records", table_id))
        rows = self._table(table_id)["records"]
        return [self._ref(table_id, rid, values) for rid, values in rows.items()]

    def call_count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)


class MemoryTemplateStore:
    def __init__(self) -> None:
        self._items: Dict[str, dict] = {}

    def create(self, record: dict) -> dict:
        item = copy.deepcopy(record)
        item.setdefault("id", str(uuid.uuid4()))
        item.setdefault("created_at", _now())
        item.setdefault("updated_at", _now())
        self._items[item["id"]] = item
        return copy.deepcopy(item)

    def update(self, template_id: str, updates: dict) -> dict | None:
        item = self._items.get(template_id)
        if not item:
            return None
        item.update(copy.deepcopy(updates))
        item["id"] = template_id
        item["updated_at"] = _now()
        return copy.deepcopy(item)

    def get(self, template_id: str) -> dict | None:
        item = self._items.get(template_id)
        return copy.deepcopy(item) if item else None

    def list(self) -> list[dict]:
        items = list(self._items.values())
        items.sort(key=lambda t: t.get("created_at", ""), reverse=True)
        return [copy.deepcopy(t) for t in items]


class MemoryCommentIndex:
    """Comment counts per record/field; thread storage lives elsewhere."""

    def __init__(self) -> None:
        self._counts: Dict[str, dict] = {}

    def _key(self, record_id: str, field_id: str) -> str:
        return f"{record_id}:{field_id}"

    def add_comment(self, record_id: str, field_id: str, resolved: bool = False) -> dict:
        entry = self._counts.setdefault(self._key(record_id, field_id), {"total": 0, "unresolved": 0})
        entry["total"] += 1
        if not resolved:
            entry["unresolved"] += 1
        return dict(entry)

    def resolve_comment(self, record_id: str, field_id: str) -> dict | None:
        entry = self._counts.get(self._key(record_id, field_id))
        if not entry:
            return None
        entry["unresolved"] = max(entry["unresolved"] - 1, 0)
        return dict(entry)

    def stats(self, record_id: str, field_id: str) -> dict | None:
        entry = self._counts.get(self._key(record_id, field_id))
        return dict(entry) if entry else None

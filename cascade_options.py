"""Dependent select options narrowed by a sibling field's value."""

from __future__ import annotations

import logging
from typing import Any, Dict, List

import field_codec


logger = logging.getLogger("docbind.cascade")

Option = Dict[str, Any]


def _value_keys(value: Any) -> set[str]:
    keys: set[str] = set()
    items = value if isinstance(value, list) else [value]
    for item in items:
        if item is None or item == "":
            continue
        if isinstance(item, dict):
            for key in ("id", "record_id", "text", "name", "label"):
                if item.get(key) not in (None, ""):
                    keys.add(str(item[key]).strip())
            for rid in item.get("record_ids") or []:
                keys.add(str(rid))
            continue
        if isinstance(item, bool):
            continue
        keys.add(str(item).strip())
    return keys


def normalize_config(raw: Any) -> Dict[str, dict]:
    """Index cascade configs by target field id; malformed entries are skipped."""
    out: Dict[str, dict] = {}
    if not isinstance(raw, list):
        return out
    for item in raw:
        if not isinstance(item, dict):
            continue
        target = item.get("target_field_id") or item.get("targetFieldId")
        source = item.get("source_field_id") or item.get("sourceFieldId")
        if not target or not source:
            logger.warning("cascade_config_skipped entry=%s", item)
            continue
        out[target] = {
            "target_field_id": target,
            "source_field_id": source,
            "options_table_id": item.get("options_table_id") or item.get("optionsTableId"),
            "option_field_id": item.get("option_field_id") or item.get("optionFieldId"),
            "filter_field_id": item.get("filter_field_id") or item.get("filterFieldId"),
        }
    return out


class CascadeOptionResolver:
    def __init__(self, record_store: Any, configs: Any = None) -> None:
        self._store = record_store
        self._configs = normalize_config(configs or [])
        self._tables: Dict[str, dict] = {}

    def config_for(self, field_id: str) -> dict | None:
        return self._configs.get(field_id)

    def _options_table(self, field: dict, conf: dict | None) -> str | None:
        if conf and conf.get("options_table_id"):
            return conf["options_table_id"]
        return field.get("options_table_id") or field.get("related_table_id")

    def is_relation_sourced(self, field: dict, conf: dict | None = None) -> bool:
        if field.get("kind") in field_codec.RELATION_KINDS or field.get("options_table_id"):
            return True
        return bool(conf and conf.get("options_table_id"))

    async def _scan(self, table_id: str) -> dict:
        cached = self._tables.get(table_id)
        if cached is not None:
            return cached
        fields = await self._store.get_field_metadata(table_id)
        records = await self._store.list_records(table_id)
        scanned = {"fields": list(fields or []), "records": list(records or [])}
        self._tables[table_id] = scanned
        logger.debug("cascade_scan table=%s records=%s", table_id, len(scanned["records"]))
        return scanned

    def _label(self, record: dict, fields: List[dict], conf: dict | None) -> str:
        values = record.get("fields") or {}
        option_field_id = (conf or {}).get("option_field_id")
        candidates = []
        if option_field_id:
            candidates = [f for f in fields if f.get("id") == option_field_id]
        if not candidates:
            candidates = [f for f in fields if f.get("kind") == "text"][:1]
        for field in candidates:
            label = field_codec.normalize(values.get(field.get("id")), field.get("kind"), field).strip()
            if label:
                return label
        return str(record.get("record_id") or "")

    def _record_options(self, records: List[dict], fields: List[dict], conf: dict | None) -> List[Option]:
        return [{"id": rec.get("record_id"), "label": self._label(rec, fields, conf)} for rec in records]

    def _local_options(self, field: dict) -> List[Option]:
        return [
            {"id": opt.get("id"), "label": field_codec.option_label(opt)}
            for opt in field_codec.descriptor_options(field)
        ]

    def _matches(self, record: dict, source_keys: set[str], conf: dict) -> bool:
        values = record.get("fields") or {}
        if record.get("record_id") is not None and str(record["record_id"]) in source_keys:
            return True
        filter_field_id = conf.get("filter_field_id")
        if filter_field_id:
            candidates = [values.get(filter_field_id)]
        else:
            candidates = list(values.values())
        return any(_value_keys(value) & source_keys for value in candidates)

    async def options_for(self, target_field: dict, row_record: dict | None) -> List[Option]:
        """Options for a target field given the current row; never returns fewer than the
        full list when narrowing is impossible."""
        field = target_field or {}
        conf = self.config_for(field.get("id"))
        local = self._local_options(field)
        if not self.is_relation_sourced(field, conf):
            return local

        table_id = self._options_table(field, conf)
        if not table_id:
            logger.warning("cascade_fail_open field=%s reason=no_table", field.get("id"))
            return local
        try:
            scanned = await self._scan(table_id)
        except Exception as exc:
            logger.warning("cascade_fail_open field=%s reason=scan_failed error=%s", field.get("id"), exc)
            return local

        full = local or self._record_options(scanned["records"], scanned["fields"], conf)
        if conf is None:
            return full
        source_value = ((row_record or {}).get("fields") or {}).get(conf["source_field_id"])
        source_keys = _value_keys(source_value)
        if not source_keys:
            return full

        matched = [rec for rec in scanned["records"] if self._matches(rec, source_keys, conf)]
        if not matched:
            logger.info("cascade_fail_open field=%s reason=no_matches", field.get("id"))
            return full
        return self._record_options(matched, scanned["fields"], conf)

    def invalidate(self, table_id: str | None = None) -> None:
        if table_id is None:
            self._tables.clear()
        else:
            self._tables.pop(table_id, None)

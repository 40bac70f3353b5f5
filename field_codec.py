"""Field value codec: external field values to display text and back."""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List


TEXT_KINDS = {"text", "email", "phone", "barcode"}
NUMERIC_KINDS = {"number", "currency", "percent"}
SELECT_KINDS = {"single_select", "multi_select"}
RELATION_KINDS = {"relation_one", "relation_many"}
READ_ONLY_KINDS = {
    "formula",
    "lookup",
    "auto_number",
    "created_time",
    "modified_time",
    "created_by",
    "modified_by",
}
FIELD_KINDS = (
    TEXT_KINDS
    | NUMERIC_KINDS
    | SELECT_KINDS
    | RELATION_KINDS
    | READ_ONLY_KINDS
    | {"datetime", "checkbox", "person", "attachment", "url", "location"}
)
# Kinds that are never edited through a text round-trip.
NON_TEXT_EDIT_KINDS = {"person", "attachment", "location"} | RELATION_KINDS

DEFAULT_CURRENCY_SYMBOL = "¥"
DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"
DATE_FORMAT = "%Y-%m-%d"
CHECKED_MARK = "✓"
TRUTHY_MARKERS = {"是", "√", "✓", "true", "1", "yes"}

_URL_RE = re.compile(r"(https?://[^\s<>\"{}|\\^`\[\]]+)")
_DATE_PREFIX_RE = re.compile(r"^\d{4}-\d{2}-\d{2}")
_INTEGER_RE = re.compile(r"^[+-]?\d+$")
_LABEL_KEYS = ("text", "name", "en_name", "title", "label")

Segment = Dict[str, Any]


@dataclass
class FieldValueError(Exception):
    code: str
    message: str
    path: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base


def is_read_only(kind: str | None) -> bool:
    return kind in READ_ONLY_KINDS


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _format_number(value: Any) -> str:
    if isinstance(value, float):
        if not math.isfinite(value):
            return ""
        if value.is_integer():
            return str(int(value))
        return repr(value)
    return str(value)


def _truncated_json(value: Any, limit: int) -> str:
    try:
        text = json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return ""
    return text[:limit] + "..." if len(text) > limit else text


def _object_text(value: dict, limit: int = 100) -> str:
    for key in _LABEL_KEYS:
        if value.get(key) is not None:
            return str(value[key])
    for prop in value.values():
        if isinstance(prop, str) and prop.strip():
            return prop
        if _is_number(prop):
            return _format_number(prop)
    if not value:
        return ""
    return _truncated_json(value, limit)


def _item_label(item: Any, keys: tuple[str, ...] = ("text", "name")) -> str:
    if item is None:
        return ""
    if isinstance(item, dict):
        for key in keys:
            if item.get(key):
                return str(item[key])
        return ""
    return str(item)


def option_label(option: Any) -> str:
    if isinstance(option, dict):
        return _item_label(option, ("name", "text", "label"))
    return "" if option is None else str(option)


def descriptor_options(descriptor: dict | None) -> list[dict]:
    options = (descriptor or {}).get("options") or []
    return [opt for opt in options if isinstance(opt, dict)]


def _option_by_id(options: list[dict], option_id: Any) -> dict | None:
    for opt in options:
        if opt.get("id") is not None and opt.get("id") == option_id:
            return opt
    return None


def _option_by_label(options: list[dict], label: str) -> dict | None:
    # First declared match wins when labels collide.
    for opt in options:
        if option_label(opt) == label:
            return opt
    return None


def resolve_option(raw: Any, descriptor: dict | None) -> dict | None:
    """Find the declared option for a raw value: by id first, then by label."""
    options = descriptor_options(descriptor)
    if isinstance(raw, dict):
        if raw.get("id") is not None:
            found = _option_by_id(options, raw.get("id"))
            if found:
                return found
        label = option_label(raw)
        return _option_by_label(options, label) if label else None
    if raw is None:
        return None
    text = str(raw)
    return _option_by_id(options, text) or _option_by_label(options, text)


def _select_text(raw: Any, descriptor: dict | None) -> str:
    if isinstance(raw, str):
        found = _option_by_id(descriptor_options(descriptor), raw)
        return option_label(found) if found else raw
    if isinstance(raw, dict):
        label = _item_label(raw)
        if label:
            return label
        found = resolve_option(raw, descriptor)
        return option_label(found) if found else ""
    return ""


def _format_datetime(raw: Any) -> str:
    if _is_number(raw):
        try:
            stamp = datetime.fromtimestamp(raw / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return _format_number(raw)
        return stamp.strftime(DATETIME_FORMAT)
    if isinstance(raw, str):
        return raw
    return ""


def _join(values: list[str], sep: str = ", ") -> str:
    return sep.join(v for v in values if v)


def normalize(raw: Any, kind: str | None, descriptor: dict | None = None) -> str:
    """Render an external field value as display text. Never raises."""
    if raw is None:
        return ""

    # Structured single values collapse the same way for every kind.
    if isinstance(raw, dict) and kind not in {"url", "location", "attachment"} | SELECT_KINDS:
        return _object_text(raw, 200 if kind in READ_ONLY_KINDS else 100)

    if kind in TEXT_KINDS:
        if isinstance(raw, list):
            return _join([_item_label(v, ("text", "name", "value")) for v in raw], "\n")
        return str(raw)

    if kind == "url":
        if isinstance(raw, list):
            return _join([_item_label(v, ("text", "name", "link", "url")) for v in raw], "\n")
        if isinstance(raw, dict):
            return _item_label(raw, ("text", "name", "link", "url"))
        return str(raw)

    if kind == "number":
        return _format_number(raw) if _is_number(raw) else str(raw)

    if kind == "currency":
        if _is_number(raw):
            symbol = (descriptor or {}).get("symbol") or DEFAULT_CURRENCY_SYMBOL
            return f"{symbol}{raw:.2f}"
        return str(raw)

    if kind == "percent":
        return f"{raw * 100:.2f}%" if _is_number(raw) else str(raw)

    if kind == "datetime":
        return _format_datetime(raw)

    if kind == "single_select":
        if isinstance(raw, list):
            return _join([_select_text(v, descriptor) for v in raw])
        return _select_text(raw, descriptor)

    if kind == "multi_select":
        if isinstance(raw, list):
            return _join([_select_text(v, descriptor) for v in raw])
        return _select_text(raw, descriptor)

    if kind == "checkbox":
        return CHECKED_MARK if is_checked(raw) else ""

    if kind == "person":
        if isinstance(raw, list):
            return _join([_item_label(u, ("name", "en_name", "id")) for u in raw])
        return str(raw)

    if kind == "attachment":
        if isinstance(raw, list):
            names = [_item_label(a, ("name", "filename")) for a in raw]
            if any(names):
                return _join(names)
            return f"{len(raw)} attachment(s)"
        if isinstance(raw, dict):
            return raw.get("name") or "1 attachment(s)"
        return "1 attachment(s)"

    if kind in RELATION_KINDS:
        if isinstance(raw, list):
            return _join([_item_label(r, ("text", "name", "id")) for r in raw])
        return str(raw)

    if kind == "location":
        if isinstance(raw, dict):
            return str(raw.get("address") or raw.get("location") or "")
        return str(raw)

    if kind in READ_ONLY_KINDS or kind is None:
        if isinstance(raw, list):
            return _join([normalize(v, "text") for v in raw])
        return _format_number(raw) if _is_number(raw) else str(raw)

    if isinstance(raw, list):
        return _join([_item_label(v, ("text", "name", "label")) for v in raw])
    return str(raw)


def _parse_number(text: str, kind: str, descriptor: dict | None) -> float | int | None:
    cleaned = text.strip()
    if not cleaned:
        return None
    if kind == "currency":
        symbol = (descriptor or {}).get("symbol") or DEFAULT_CURRENCY_SYMBOL
        cleaned = cleaned.replace(symbol, "")
    if kind == "percent":
        cleaned = cleaned.rstrip("%")
    cleaned = cleaned.replace(",", "").strip()
    if kind != "percent" and _INTEGER_RE.match(cleaned):
        return int(cleaned)
    try:
        number = float(cleaned)
    except ValueError:
        raise FieldValueError("FIELD_VALUE_INVALID", f"Not a number: {text!r}")
    if not math.isfinite(number):
        raise FieldValueError("FIELD_VALUE_INVALID", f"Not a finite number: {text!r}")
    if kind == "percent":
        return number / 100
    return number


def _parse_datetime(text: str) -> int | None:
    cleaned = text.strip()
    if not cleaned:
        return None
    for fmt in (DATETIME_FORMAT, "%Y-%m-%d %H:%M", DATE_FORMAT):
        try:
            stamp = datetime.strptime(cleaned, fmt).replace(tzinfo=timezone.utc)
            return int(stamp.timestamp() * 1000)
        except ValueError:
            continue
    try:
        stamp = datetime.fromisoformat(cleaned.replace("Z", "+00:00"))
    except ValueError:
        raise FieldValueError("FIELD_VALUE_INVALID", f"Not a date: {text!r}")
    if stamp.tzinfo is None:
        stamp = stamp.replace(tzinfo=timezone.utc)
    return int(stamp.timestamp() * 1000)


def _denormalize_option(value: Any, descriptor: dict | None) -> Any:
    if isinstance(value, dict):
        return resolve_option(value, descriptor) or value
    text = str(value).strip()
    if not text:
        return None
    return resolve_option(text, descriptor) or text


def denormalize(display_text: Any, kind: str | None, descriptor: dict | None = None) -> Any:
    """Map display text (or a picked option/boolean) back to an external value."""
    if kind in READ_ONLY_KINDS:
        raise FieldValueError("FIELD_READ_ONLY", f"{kind} fields are computed")
    if kind in NON_TEXT_EDIT_KINDS:
        raise FieldValueError("FIELD_NOT_TEXT_EDITABLE", f"{kind} fields cannot be edited as text")

    if kind == "checkbox":
        return is_checked(display_text)

    if display_text is None:
        return None

    if kind in TEXT_KINDS or kind == "url":
        return display_text if isinstance(display_text, str) else str(display_text)

    if kind in NUMERIC_KINDS:
        if _is_number(display_text):
            return display_text
        return _parse_number(str(display_text), kind, descriptor)

    if kind == "datetime":
        if _is_number(display_text):
            return display_text
        return _parse_datetime(str(display_text))

    if kind == "single_select":
        return _denormalize_option(display_text, descriptor)

    if kind == "multi_select":
        if isinstance(display_text, list):
            items = display_text
        else:
            items = [part for part in str(display_text).split(",")]
        resolved = [_denormalize_option(item, descriptor) for item in items]
        return [item for item in resolved if item not in (None, "")]

    return display_text


def _split_links(text: str) -> list[Segment]:
    if not text:
        return [{"type": "text", "text": ""}]
    parts = _URL_RE.split(text)
    if len(parts) == 1:
        return [{"type": "text", "text": text}]
    segments: list[Segment] = []
    for idx, part in enumerate(parts):
        if not part:
            continue
        # re.split puts captured URLs at odd indices.
        if idx % 2 == 1:
            segments.append({"type": "link", "text": part, "url": part})
        else:
            segments.append({"type": "text", "text": part})
    return segments


def _item_link(item: dict) -> str:
    link = item.get("link") or item.get("url")
    return link if isinstance(link, str) else ""


def parse_rich_segments(raw: Any, kind: str | None) -> list[Segment]:
    """Split a value into ordered text and link segments for renderers."""
    if raw is None or raw == "" or raw == [] or raw is False:
        return [{"type": "text", "text": ""}]

    if isinstance(raw, str):
        return _split_links(raw)

    if kind == "url" and isinstance(raw, (list, dict)):
        items = raw if isinstance(raw, list) else [raw]
        segments: list[Segment] = []
        for idx, item in enumerate(items):
            if isinstance(item, dict):
                text = _item_label(item, ("text", "name", "link", "url"))
                url = _item_link(item)
                if url:
                    segments.append({"type": "link", "text": text, "url": url})
                else:
                    segments.append({"type": "text", "text": text})
            else:
                segments.append({"type": "text", "text": "" if item is None else str(item)})
            if idx < len(items) - 1:
                segments.append({"type": "text", "text": ", "})
        return segments

    if isinstance(raw, dict) and _item_link(raw):
        url = _item_link(raw)
        return [{"type": "link", "text": _item_label(raw, ("text", "name")) or url, "url": url}]

    if isinstance(raw, list):
        segments = []
        for item in raw:
            if not item:
                continue
            if isinstance(item, str):
                segments.extend(_split_links(item))
                continue
            if not isinstance(item, dict):
                segments.append({"type": "text", "text": str(item)})
                continue
            url = _item_link(item)
            if url:
                segments.append({"type": "link", "text": _item_label(item, ("text", "name")) or url, "url": url})
                continue
            content = _item_label(item, ("text", "name", "value"))
            if content:
                segments.extend(_split_links(content))
        if segments:
            return segments

    return [{"type": "text", "text": normalize(raw, kind)}]


def is_checked(raw: Any) -> bool:
    if raw is None:
        return False
    if isinstance(raw, bool):
        return raw
    if _is_number(raw):
        return raw != 0
    if isinstance(raw, str):
        return raw.strip().lower() in TRUTHY_MARKERS
    if isinstance(raw, list):
        return bool(raw) and is_checked(raw[0])
    if isinstance(raw, dict):
        return is_checked(raw.get("text") or raw.get("name") or raw.get("value") or "")
    return False


def extract_text(raw: Any) -> str:
    """Plain editable text of a value (list segments are concatenated)."""
    if raw is None:
        return ""
    if isinstance(raw, str):
        return raw
    if _is_number(raw):
        return _format_number(raw)
    if isinstance(raw, list):
        return "".join(_item_label(v, ("text", "name", "value")) for v in raw)
    if isinstance(raw, dict):
        return _item_label(raw, ("text", "name", "value"))
    return str(raw)


def option_identity(raw: Any, descriptor: dict | None = None) -> tuple:
    """Comparable identity of a select value: sorted option ids (labels as fallback)."""
    if raw is None or raw == "":
        return ()
    items = raw if isinstance(raw, list) else [raw]
    keys = []
    for item in items:
        found = resolve_option(item, descriptor)
        if found is not None and found.get("id") is not None:
            keys.append(str(found["id"]))
        elif isinstance(item, dict):
            keys.append(str(item.get("id") or option_label(item)))
        elif item not in (None, ""):
            keys.append(str(item))
    return tuple(sorted(keys))


def coerce_value(raw: Any, kind: str | None, descriptor: dict | None = None) -> Any:
    """Reduce an untyped external value to the closed Python shape for its kind."""
    if raw is None:
        return None
    if kind in TEXT_KINDS or kind == "url":
        if isinstance(raw, list) and kind in TEXT_KINDS:
            return extract_text(raw)
        return normalize(raw, kind, descriptor)
    if kind in NUMERIC_KINDS:
        if _is_number(raw):
            return raw
        try:
            return _parse_number(extract_text(raw), kind if kind != "percent" else "number", descriptor)
        except FieldValueError:
            return None
    if kind == "datetime":
        if _is_number(raw):
            return int(raw)
        try:
            return _parse_datetime(str(raw))
        except FieldValueError:
            return None
    if kind == "checkbox":
        return is_checked(raw)
    if kind == "single_select":
        if isinstance(raw, list):
            raw = raw[0] if raw else None
        found = resolve_option(raw, descriptor)
        if found:
            return {"id": found.get("id"), "name": option_label(found)}
        return {"id": raw.get("id"), "name": option_label(raw)} if isinstance(raw, dict) else {"id": None, "name": str(raw)}
    if kind == "multi_select" or kind in RELATION_KINDS or kind in {"person", "attachment"}:
        items = raw if isinstance(raw, list) else [raw]
        return [item if isinstance(item, dict) else {"id": item, "name": str(item)} for item in items]
    if kind == "location":
        return raw if isinstance(raw, dict) else {"address": str(raw)}
    return raw


def image_urls(raw: Any) -> list[str]:
    items = raw if isinstance(raw, list) else [raw]
    urls: list[str] = []
    for item in items:
        if isinstance(item, dict):
            url = item.get("url") or item.get("tmp_url") or item.get("tmpUrl") or item.get("link")
            if isinstance(url, str) and url:
                urls.append(url)
        elif isinstance(item, str) and item.startswith(("http://", "https://")):
            urls.append(item)
    return urls


def link_url(raw: Any) -> str:
    if isinstance(raw, str):
        return raw
    if isinstance(raw, list):
        for item in raw:
            url = link_url(item)
            if url:
                return url
        return ""
    if isinstance(raw, dict):
        return _item_link(raw)
    return ""


def format_date_only(raw: Any, display_text: str) -> str:
    """Date part of a datetime cell for columns configured with format 'date'."""
    if _is_number(raw):
        try:
            return datetime.fromtimestamp(raw / 1000, tz=timezone.utc).strftime(DATE_FORMAT)
        except (OverflowError, OSError, ValueError):
            return display_text
    match = _DATE_PREFIX_RE.match(display_text or "")
    return match.group(0) if match else display_text


def list_kinds() -> List[str]:
    return sorted(FIELD_KINDS)

"""Session events: field commits, reverts and manual refreshes."""

from __future__ import annotations

import copy
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Tuple

from docbind.canonical_json import canonical_dumps


logger = logging.getLogger("docbind.session")

Event = Dict[str, Any]
Handler = Callable[[Event], None]

FIELD_COMMITTED = "field.committed"
FIELD_REVERTED = "field.reverted"
DOCUMENT_REFRESHED = "document.refreshed"

_FIELD_KEYS = ("record_id", "field_id", "table_id")
REQUIRED_PAYLOAD: Dict[str, Tuple[str, ...]] = {
    FIELD_COMMITTED: _FIELD_KEYS,
    FIELD_REVERTED: _FIELD_KEYS,
    DOCUMENT_REFRESHED: ("refresh_epoch",),
}


@dataclass
class EventValidationError(Exception):
    code: str
    message: str
    path: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base


def validate_event(event: Any) -> None:
    if not isinstance(event, dict):
        raise EventValidationError("EVENT_INVALID", "event must be object")
    name = event.get("name")
    if name not in REQUIRED_PAYLOAD:
        raise EventValidationError("EVENT_NAME_INVALID", f"unknown event {name!r}", "name")

    payload = event.get("payload")
    if not isinstance(payload, dict):
        raise EventValidationError("PAYLOAD_INVALID", "payload must be an object", "payload")
    for key in REQUIRED_PAYLOAD[name]:
        if payload.get(key) is None:
            raise EventValidationError("PAYLOAD_FIELD_MISSING", f"{name} needs {key}", f"payload.{key}")
    try:
        canonical_dumps(payload)
    except (TypeError, ValueError) as exc:
        raise EventValidationError("PAYLOAD_INVALID", str(exc), "payload") from exc

    meta = event.get("meta")
    if not isinstance(meta, dict):
        raise EventValidationError("META_INVALID", "meta must be object", "meta")
    if not isinstance(meta.get("session_id"), str):
        raise EventValidationError("META_SESSION_ID_INVALID", "session_id must be string", "meta.session_id")
    occurred_at = meta.get("occurred_at")
    if not isinstance(occurred_at, str) or not occurred_at.endswith("Z"):
        raise EventValidationError("META_OCCURRED_AT_INVALID", "occurred_at must be a UTC timestamp", "meta.occurred_at")
    template_hash = meta.get("template_hash")
    if template_hash is not None and not str(template_hash).startswith("sha256:"):
        raise EventValidationError("META_TEMPLATE_HASH_INVALID", "template_hash must start with 'sha256:'", "meta.template_hash")


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def make_event(name: str, payload: dict, meta: dict) -> Event:
    meta_out = dict(meta or {})
    meta_out.setdefault("event_id", str(uuid.uuid4()))
    meta_out.setdefault("occurred_at", utc_now())
    event = {"name": name, "payload": copy.deepcopy(payload), "meta": meta_out}
    validate_event(event)
    return event


class EventBus:
    """Synchronous fan-out; a failing handler is logged and the rest still run."""

    def __init__(self) -> None:
        self._subs: Dict[str, List[Handler]] = {}
        self._counts: Dict[str, int] = {}

    def subscribe(self, name: str, handler: Handler) -> None:
        if name not in REQUIRED_PAYLOAD:
            raise EventValidationError("EVENT_NAME_INVALID", f"unknown event {name!r}", "name")
        self._subs.setdefault(name, []).append(handler)

    def publish(self, event: dict) -> None:
        validate_event(event)
        name = event["name"]
        self._counts[name] = self._counts.get(name, 0) + 1
        for handler in list(self._subs.get(name, [])):
            try:
                handler(event)
            except Exception:
                logger.exception("event_handler_failed name=%s event_id=%s", name, event["meta"].get("event_id"))

    def counts(self) -> Dict[str, int]:
        return dict(self._counts)

"""Edit capture, change detection and write-back for resolved field nodes."""

from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict

import field_codec
from change_outbox import ChangeOutbox, change_key, make_change
from docbind.template_hash import value_fingerprint
from event_bus import FIELD_COMMITTED, FIELD_REVERTED, EventBus, make_event


logger = logging.getLogger("docbind.edit")

Issue = Dict[str, Any]
EditSession = Dict[str, Any]


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


@dataclass
class NotEditableError(Exception):
    message: str
    code: str = "FIELD_NOT_EDITABLE"
    path: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base


class _WriteFailed(Exception):
    pass


def is_changed(session: EditSession, new_value: Any) -> bool:
    """Text kinds compare trimmed display text; select/checkbox compare identity."""
    kind = session.get("kind")
    field = session.get("field")
    if kind == "checkbox":
        return field_codec.is_checked(new_value) != field_codec.is_checked(session.get("old_value"))
    if kind in field_codec.SELECT_KINDS:
        return field_codec.option_identity(new_value, field) != field_codec.option_identity(
            session.get("old_value"), field
        )
    new_text = "" if new_value is None else str(new_value)
    return new_text.strip() != (session.get("old_display_text") or "").strip()


class EditCoordinator:
    def __init__(
        self,
        record_store: Any,
        outbox: ChangeOutbox | None = None,
        undo_log: Any = None,
        bus: EventBus | None = None,
        event_meta: dict | None = None,
    ) -> None:
        self._store = record_store
        self._outbox = outbox or ChangeOutbox()
        self._undo_log = undo_log
        self._bus = bus
        self._event_meta = dict(event_meta or {})
        self._active: set[str] = set()
        self._waiters: Dict[str, asyncio.Future] = {}
        self._open_session: EditSession | None = None

    @property
    def outbox(self) -> ChangeOutbox:
        return self._outbox

    @property
    def open_session(self) -> EditSession | None:
        return self._open_session

    # -- sessions ------------------------------------------------------

    def begin_edit(self, node: dict) -> EditSession:
        if not isinstance(node, dict) or not node.get("editable") or not node.get("edit"):
            node_id = node.get("node_id") or node.get("cell_id") if isinstance(node, dict) else None
            raise NotEditableError("Node is not editable", path=node_id)
        ref = node["edit"]
        field = ref.get("field") or {}
        session = {
            "session_id": str(uuid.uuid4()),
            "node_id": node.get("node_id") or node.get("cell_id"),
            "record_id": ref.get("record_id"),
            "field_id": ref.get("field_id"),
            "field_name": field.get("name"),
            "table_id": ref.get("table_id"),
            "root_table_id": ref.get("root_table_id"),
            "is_relation_edit": bool(ref.get("is_relation_edit")),
            "kind": field.get("kind"),
            "field": copy.deepcopy(field),
            "old_display_text": node.get("display_text", ref.get("display_text") or ""),
            "old_value": copy.deepcopy(ref.get("raw_value")),
            "status": "open",
        }
        self._open_session = session
        return session

    def cancel_edit(self, session: EditSession) -> None:
        session["status"] = "cancelled"
        if self._open_session is session:
            self._open_session = None

    def _close(self, session: EditSession, status: str) -> None:
        session["status"] = status
        if self._open_session is session:
            self._open_session = None

    def _failed(self, session: EditSession, issue: Issue) -> dict:
        self._close(session, "failed")
        return {
            "ok": False,
            "changed": True,
            "status": "failed",
            "value": copy.deepcopy(session.get("old_value")),
            "display_text": session.get("old_display_text") or "",
            "errors": [issue],
        }

    # -- commits -------------------------------------------------------

    async def commit_edit(self, session: EditSession, new_display_text: Any) -> dict:
        if not is_changed(session, new_display_text):
            self._close(session, "unchanged")
            return {
                "ok": True,
                "changed": False,
                "status": "unchanged",
                "value": copy.deepcopy(session.get("old_value")),
                "display_text": session.get("old_display_text") or "",
                "errors": [],
            }

        kind = session.get("kind")
        text = new_display_text.strip() if isinstance(new_display_text, str) else new_display_text
        try:
            new_value = field_codec.denormalize(text, kind, session.get("field"))
        except field_codec.FieldValueError as exc:
            return self._failed(session, _issue(exc.code, exc.message, session.get("field_id")))

        table_id = session.get("table_id")
        if not table_id:
            return self._failed(
                session,
                _issue("OWNER_TABLE_MISSING", "Owner table unknown for edit", session.get("field_id")),
            )

        change = make_change(
            session["record_id"],
            session["field_id"],
            table_id,
            session.get("old_value"),
            new_value,
            session.get("field_name"),
        )
        change["is_relation_edit"] = session.get("is_relation_edit", False)
        change["related_table_id"] = table_id if session.get("is_relation_edit") else None
        key = change_key(session["record_id"], session["field_id"])

        previous = self._outbox.track(change)
        if previous is not None:
            self._resolve_coalesced(previous["change_id"], change["change_id"])
        logger.info(
            "edit_committed record=%s field=%s table=%s value=%s",
            session["record_id"],
            session["field_id"],
            table_id,
            value_fingerprint(new_value),
        )

        result = await self._run(key, change["change_id"])
        if result["status"] == "synced":
            result["display_text"] = field_codec.normalize(result["value"], kind, session.get("field"))
        elif result["status"] == "failed":
            result["value"] = copy.deepcopy(session.get("old_value"))
            result["display_text"] = session.get("old_display_text") or ""
        self._close(session, result["status"])
        return result

    def _resolve_coalesced(self, change_id: str, replaced_by: str) -> None:
        waiter = self._waiters.pop(change_id, None)
        logger.info("edit_coalesced change=%s replaced_by=%s", change_id, replaced_by)
        if waiter is not None and not waiter.done():
            waiter.set_result(
                {
                    "ok": True,
                    "changed": True,
                    "status": "coalesced",
                    "value": None,
                    "display_text": None,
                    "replaced_by": replaced_by,
                    "errors": [],
                }
            )

    def _settle(self, change_id: str, result: dict) -> None:
        waiter = self._waiters.pop(change_id, None)
        if waiter is not None and not waiter.done():
            waiter.set_result(result)

    async def _drain(self, key: str) -> None:
        while True:
            change = self._outbox.take(key)
            if change is None:
                return
            try:
                result = await self._send(change)
            except Exception as exc:
                logger.exception(
                    "write_back_crashed record=%s field=%s table=%s",
                    change["record_id"],
                    change["field_id"],
                    change["table_id"],
                )
                self._abort(key, change, exc)
                return
            self._settle(change["change_id"], result)

    def _abort(self, key: str, change: dict, exc: Exception) -> None:
        """Fail the change that crashed and everything still queued behind it."""
        while change is not None:
            self._outbox.mark_failed(change["change_id"], str(exc))
            self._settle(change["change_id"], self._failure(change, "WRITE_BACK_FAILED", f"Write-back failed: {exc}"))
            change = self._outbox.take(key)

    def _failure(self, change: dict, code: str, message: str) -> dict:
        return {
            "ok": False,
            "changed": True,
            "status": "failed",
            "value": copy.deepcopy(change.get("old_value")),
            "display_text": None,
            "change_id": change.get("change_id"),
            "errors": [
                _issue(
                    code,
                    message,
                    change.get("field_id"),
                    {"record_id": change.get("record_id"), "table_id": change.get("table_id")},
                )
            ],
        }

    async def _run(self, key: str, change_id: str) -> dict:
        future = asyncio.get_running_loop().create_future()
        self._waiters[change_id] = future
        if key not in self._active:
            self._active.add(key)
            try:
                await self._drain(key)
            finally:
                self._active.discard(key)
        return dict(await future)

    async def resync(self, change_id: str) -> dict:
        """Send a failed change again. display_text is left to the next resolve."""
        change = self._outbox.requeue(change_id)
        if change is None:
            return self._failure(
                {"change_id": change_id}, "CHANGE_NOT_FOUND", f"No failed change {change_id} to resync"
            )
        logger.info("edit_resync change=%s record=%s field=%s", change_id, change["record_id"], change["field_id"])
        return await self._run(change_key(change["record_id"], change["field_id"]), change_id)

    def discard(self, change_id: str) -> bool:
        dropped = self._outbox.discard(change_id)
        if dropped:
            logger.info("edit_discarded change=%s", change_id)
            self._settle(change_id, self._failure({"change_id": change_id}, "CHANGE_DISCARDED", "Change discarded"))
        return dropped

    async def _write_through(self, table_id: str, record_id: str, field_id: str, value: Any) -> Any:
        """Write one value, then re-read it once as the canonical stored value."""
        try:
            committed = await self._store.write_field(table_id, record_id, field_id, value)
        except Exception as exc:
            raise _WriteFailed(str(exc)) from exc
        canonical = value if committed is None else committed
        try:
            fields_map = await self._store.get_record(table_id, record_id)
        except Exception as exc:
            logger.warning("reread_failed table=%s record=%s field=%s error=%s", table_id, record_id, field_id, exc)
            return canonical
        if isinstance(fields_map, dict) and field_id in fields_map:
            return fields_map[field_id]
        return canonical

    async def _send(self, change: dict) -> dict:
        try:
            canonical = await self._write_through(
                change["table_id"], change["record_id"], change["field_id"], change["new_value"]
            )
        except _WriteFailed as exc:
            self._outbox.mark_failed(change["change_id"], str(exc))
            logger.warning(
                "write_back_failed record=%s field=%s table=%s error=%s",
                change["record_id"],
                change["field_id"],
                change["table_id"],
                exc,
            )
            return self._failure(change, "WRITE_BACK_FAILED", f"Write-back failed: {exc}")

        self._outbox.mark_synced(change["change_id"])
        action = dict(change)
        action["sync_status"] = "synced"
        action["new_value"] = copy.deepcopy(canonical)
        if self._undo_log is not None:
            self._undo_log.push(action)
        self._publish(FIELD_COMMITTED, change)
        return {
            "ok": True,
            "changed": True,
            "status": "synced",
            "value": copy.deepcopy(canonical),
            "display_text": None,
            "change_id": change["change_id"],
            "errors": [],
        }

    def _publish(self, name: str, change: dict) -> None:
        if self._bus is None:
            return
        meta = dict(self._event_meta)
        meta.setdefault("session_id", "")
        payload = {
            "record_id": change["record_id"],
            "field_id": change["field_id"],
            "table_id": change["table_id"],
            "change_id": change.get("change_id"),
            "value": value_fingerprint(change.get("new_value")),
        }
        self._bus.publish(make_event(name, payload, meta))

    # -- immediate commits ---------------------------------------------

    async def toggle(self, node: dict) -> dict:
        session = self.begin_edit(node)
        if session.get("kind") != "checkbox":
            self.cancel_edit(session)
            raise NotEditableError("toggle needs a checkbox field", path=session.get("node_id"))
        return await self.commit_edit(session, not field_codec.is_checked(session.get("old_value")))

    async def select(self, node: dict, option: Any) -> dict:
        session = self.begin_edit(node)
        if session.get("kind") not in field_codec.SELECT_KINDS:
            self.cancel_edit(session)
            raise NotEditableError("select needs a select field", path=session.get("node_id"))
        return await self.commit_edit(session, option)

    # -- history -------------------------------------------------------

    async def apply_action(self, action: dict, direction: str) -> dict:
        """Write an action's old (undo) or new (redo) value without recording history."""
        value = action.get("old_value") if direction == "undo" else action.get("new_value")
        table_id = action.get("table_id")
        if not table_id:
            return {
                "ok": False,
                "value": None,
                "errors": [_issue("OWNER_TABLE_MISSING", "Owner table unknown for action", action.get("field_id"))],
            }
        try:
            canonical = await self._write_through(table_id, action["record_id"], action["field_id"], value)
        except _WriteFailed as exc:
            logger.warning(
                "apply_action_failed direction=%s record=%s field=%s error=%s",
                direction,
                action.get("record_id"),
                action.get("field_id"),
                exc,
            )
            return {
                "ok": False,
                "value": None,
                "errors": [_issue("WRITE_BACK_FAILED", f"Write-back failed: {exc}", action.get("field_id"))],
            }
        reverted = dict(action)
        reverted["new_value"] = value
        self._publish(FIELD_REVERTED, reverted)
        return {"ok": True, "value": copy.deepcopy(canonical), "errors": []}

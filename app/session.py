"""Per-document session context: caches, collaborators and refresh gating."""

from __future__ import annotations

import copy
import logging
import uuid
from typing import Any, Dict, List

import resolution_engine
from app.settings import Settings
from app.stores import RecordStoreError
from app.template_render import make_title_renderer
from cascade_options import CascadeOptionResolver
from change_outbox import ChangeOutbox
from docbind.template_hash import template_hash
from edit_coordinator import EditCoordinator, NotEditableError
from event_bus import DOCUMENT_REFRESHED, FIELD_COMMITTED, FIELD_REVERTED, EventBus, make_event
from template_model import load_template
from undo_redo import UndoRedoLog


logger = logging.getLogger("docbind.session")


class StoreRelationFetcher:
    """RelationFetcher over a RecordStore with a per-session field metadata cache."""

    def __init__(self, store: Any) -> None:
        self._store = store
        self._fields: Dict[str, List[dict]] = {}

    async def fields_for(self, table_id: str) -> List[dict]:
        cached = self._fields.get(table_id)
        if cached is None:
            cached = list(await self._store.get_field_metadata(table_id) or [])
            self._fields[table_id] = cached
        return cached

    async def fetch(self, table_id: str, record_id: str, relation_field_id: str) -> dict:
        records, related_table_id = await self._store.fetch_related(table_id, record_id, relation_field_id)
        if not related_table_id:
            raise RecordStoreError(
                "MISSING_RELATION_METADATA",
                f"No related table for {relation_field_id}",
                relation_field_id,
            )
        fields = await self.fields_for(related_table_id)
        return {"records": list(records or []), "fields": fields, "table_id": related_table_id}

    async def read_record(self, table_id: str, record_id: str) -> dict:
        return await self._store.get_record(table_id, record_id)

    def cached_tables(self) -> List[str]:
        return sorted(self._fields)

    def invalidate(self) -> None:
        self._fields.clear()


class DocumentSession:
    def __init__(
        self,
        template: dict,
        table_id: str,
        record_id: str,
        store: Any,
        settings: Settings | None = None,
        comment_index: Any = None,
        session_id: str | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.session_id = session_id or str(uuid.uuid4())
        self.template = load_template(template, self.settings.title_slot_id)
        self.template_hash = template_hash(self.template)
        self.table_id = table_id
        self.record_id = record_id
        self.store = store
        self.comment_index = comment_index
        self.fetcher = StoreRelationFetcher(store)
        self.bus = EventBus()
        self.outbox = ChangeOutbox()
        self.undo_log = UndoRedoLog(capacity=self.settings.undo_capacity)
        self.editor = EditCoordinator(
            store,
            outbox=self.outbox,
            undo_log=self.undo_log,
            bus=self.bus,
            event_meta=self._event_meta(),
        )
        self.undo_log.bind(self.editor.apply_action)
        self.cascade = CascadeOptionResolver(store, self.settings.cascade_config)
        self._title_render = make_title_renderer(self.settings.title_format)
        self.refresh_epoch = 0
        self.latest_document: dict | None = None
        self._latest_epoch = -1
        self.bus.subscribe(FIELD_COMMITTED, self._on_field_change)
        self.bus.subscribe(FIELD_REVERTED, self._on_field_change)

    def _event_meta(self) -> dict:
        return {"session_id": self.session_id, "template_hash": self.template_hash}

    def _on_field_change(self, event: dict) -> None:
        self.refresh_epoch += 1
        self.cascade.invalidate(event["payload"].get("table_id"))
        logger.debug("refresh_bumped session=%s epoch=%s cause=%s", self.session_id, self.refresh_epoch, event["name"])

    def refresh(self) -> int:
        self.refresh_epoch += 1
        self.cascade.invalidate()
        self.bus.publish(
            make_event(DOCUMENT_REFRESHED, {"refresh_epoch": self.refresh_epoch}, self._event_meta())
        )
        logger.info("manual_refresh session=%s epoch=%s", self.session_id, self.refresh_epoch)
        return self.refresh_epoch

    def options(self) -> dict:
        policy = self.settings.title_policy()
        policy.pop("format", None)
        if self._title_render is not None:
            policy["render"] = self._title_render
        return {
            "edit_allow_list": list(self.settings.editable_fields),
            "title_policy": policy,
            "refresh_epoch": self.refresh_epoch,
        }

    async def resolve(self) -> dict:
        epoch = self.refresh_epoch
        root_fields = await self.fetcher.fields_for(self.table_id)
        root_values = await self.store.get_record(self.table_id, self.record_id)
        root_record = {"record_id": self.record_id, "table_id": self.table_id, "fields": root_values}
        options = self.options()
        options["refresh_epoch"] = epoch
        document = await resolution_engine.resolve(
            self.template,
            root_record,
            root_fields,
            self.fetcher,
            self.comment_index,
            options,
        )
        if epoch >= self._latest_epoch:
            self.latest_document = document
            self._latest_epoch = epoch
        else:
            logger.info("stale_document_discarded session=%s epoch=%s latest=%s", self.session_id, epoch, self._latest_epoch)
        return document

    async def document(self) -> dict:
        """Latest document, re-resolved when the refresh epoch moved on."""
        if self.latest_document is None or self._latest_epoch < self.refresh_epoch:
            await self.resolve()
        return self.latest_document

    async def node(self, node_id: str) -> dict:
        document = await self.document()
        node = resolution_engine.find_node(document, node_id)
        if node is None:
            raise KeyError(node_id)
        return node

    async def edit(self, node_id: str, text: Any) -> dict:
        node = await self.node(node_id)
        edit_session = self.editor.begin_edit(node)
        return await self.editor.commit_edit(edit_session, text)

    async def toggle(self, node_id: str) -> dict:
        return await self.editor.toggle(await self.node(node_id))

    async def select(self, node_id: str, option: Any) -> dict:
        return await self.editor.select(await self.node(node_id), option)

    async def undo(self) -> dict:
        return await self.undo_log.undo()

    async def redo(self) -> dict:
        return await self.undo_log.redo()

    async def options_for(self, node_id: str) -> List[dict]:
        node = await self.node(node_id)
        if node.get("type") not in {"field", "title"} and "cell_id" not in node:
            raise NotEditableError("Node has no field", path=node_id)
        table_id = node.get("table_id")
        fields = await self.fetcher.fields_for(table_id) if table_id else []
        field = resolution_engine.find_field(fields, node.get("field_id"))
        if field is None:
            edit_ref = node.get("edit") or {}
            field = edit_ref.get("field") or {"id": node.get("field_id"), "kind": node.get("kind")}
        row_record = {"record_id": node.get("record_id"), "fields": {}}
        if table_id and node.get("record_id"):
            row_record["fields"] = await self.fetcher.read_record(table_id, node["record_id"])
        return await self.cascade.options_for(copy.deepcopy(field), row_record)

    def changes(self) -> dict:
        return {"pending": self.outbox.pending(), "failed": self.outbox.failed()}

    async def resync(self, change_id: str) -> dict:
        return await self.editor.resync(change_id)

    def discard(self, change_id: str) -> bool:
        return self.editor.discard(change_id)

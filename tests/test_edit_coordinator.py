import asyncio
import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.stores import MemoryRecordStore, RecordStoreError
from edit_coordinator import EditCoordinator, NotEditableError, is_changed
from event_bus import FIELD_COMMITTED, FIELD_REVERTED, EventBus
from undo_redo import UndoRedoLog


NAME = {"id": "fld_name", "name": "Name", "kind": "text"}
QTY = {"id": "fld_qty", "name": "Qty", "kind": "number"}
DONE = {"id": "fld_done", "name": "Done", "kind": "checkbox"}
STATUS = {
    "id": "fld_status",
    "name": "Status",
    "kind": "single_select",
    "options": [{"id": "opt_a", "name": "Approved"}, {"id": "opt_b", "name": "Blocked"}],
}
NOTE = {"id": "fld_note", "name": "Note", "kind": "text"}


def _node(field: dict, raw, display: str, record_id: str = "rec_1", table_id: str = "tbl_root", relation: bool = False) -> dict:
    return {
        "node_id": f"n_{field['id']}",
        "type": "field",
        "display_text": display,
        "editable": True,
        "edit": {
            "record_id": record_id,
            "field_id": field["id"],
            "table_id": table_id,
            "root_table_id": "tbl_root",
            "is_relation_edit": relation,
            "field": dict(field),
            "raw_value": raw,
            "display_text": display,
        },
    }


def _store() -> MemoryRecordStore:
    store = MemoryRecordStore()
    store.add_table("tbl_root", [NAME, QTY, DONE, STATUS])
    store.put_record(
        "tbl_root",
        "rec_1",
        {"fld_name": "foo", "fld_qty": 3, "fld_done": False, "fld_status": {"id": "opt_a", "name": "Approved"}},
    )
    store.add_table("tbl_batches", [NOTE])
    store.put_record("tbl_batches", "b1", {"fld_note": "old note"})
    return store


class UppercaseStore(MemoryRecordStore):
    async def write_field(self, table_id, record_id, field_id, value):
        return await super().write_field(table_id, record_id, field_id, value.upper())


class BrokenStore(MemoryRecordStore):
    async def write_field(self, table_id, record_id, field_id, value):
        self.calls.append(("write_field", table_id, record_id, field_id))
        raise RecordStoreError("RECORD_STORE_UNREACHABLE", "connection refused")


class GatedStore(MemoryRecordStore):
    def __init__(self) -> None:
        super().__init__()
        self.gate = asyncio.Event()
        self.written = []

    async def write_field(self, table_id, record_id, field_id, value):
        self.written.append(value)
        await self.gate.wait()
        return await super().write_field(table_id, record_id, field_id, value)


class FlakyStore(MemoryRecordStore):
    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures

    async def write_field(self, table_id, record_id, field_id, value):
        if self.failures:
            self.failures -= 1
            raise RecordStoreError("RECORD_STORE_UNREACHABLE", "connection refused")
        return await super().write_field(table_id, record_id, field_id, value)


class ExplodingUndoLog(UndoRedoLog):
    def push(self, action):
        raise RuntimeError("history unavailable")


class TestIsChanged(unittest.TestCase):
    def test_text_compares_trimmed(self) -> None:
        session = {"kind": "text", "old_display_text": "foo", "old_value": "foo"}
        self.assertFalse(is_changed(session, " foo "))
        self.assertTrue(is_changed(session, "bar"))

    def test_select_compares_identity(self) -> None:
        session = {"kind": "single_select", "field": STATUS, "old_value": {"id": "opt_a", "name": "Approved"}}
        self.assertFalse(is_changed(session, "Approved"))
        self.assertFalse(is_changed(session, {"id": "opt_a"}))
        self.assertTrue(is_changed(session, "Blocked"))

    def test_checkbox(self) -> None:
        session = {"kind": "checkbox", "old_value": False}
        self.assertFalse(is_changed(session, ""))
        self.assertTrue(is_changed(session, True))


class TestEditCoordinator(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.store = _store()
        self.undo = UndoRedoLog()
        self.bus = EventBus()
        self.events = []
        self.bus.subscribe(FIELD_COMMITTED, self.events.append)
        self.bus.subscribe(FIELD_REVERTED, self.events.append)
        self.editor = EditCoordinator(self.store, undo_log=self.undo, bus=self.bus, event_meta={"session_id": "s1"})
        self.undo.bind(self.editor.apply_action)

    async def test_unchanged_edit_makes_no_calls(self) -> None:
        session = self.editor.begin_edit(_node(NAME, "foo", "foo"))
        result = await self.editor.commit_edit(session, "foo ")
        self.assertTrue(result["ok"])
        self.assertEqual(result["status"], "unchanged")
        self.assertEqual(self.store.calls, [])
        self.assertFalse(self.undo.can_undo())
        self.assertEqual(self.events, [])
        self.assertIsNone(self.editor.open_session)

    async def test_commit_writes_and_rereads(self) -> None:
        session = self.editor.begin_edit(_node(NAME, "foo", "foo"))
        result = await self.editor.commit_edit(session, "  bar ")
        self.assertEqual(result["status"], "synced")
        self.assertEqual(result["value"], "bar")
        self.assertEqual(result["display_text"], "bar")
        self.assertEqual(self.store.call_count("write_field"), 1)
        self.assertEqual(self.store.call_count("get_record"), 1)
        history = self.undo.history()["undo"]
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0]["old_value"], "foo")
        self.assertEqual(history[0]["new_value"], "bar")
        self.assertEqual(self.events[0]["name"], FIELD_COMMITTED)
        self.assertEqual(self.events[0]["meta"]["session_id"], "s1")
        self.assertNotIn("bar", str(self.events[0]["payload"]))
        self.assertEqual(self.editor.outbox.pending(), [])

    async def test_number_edit(self) -> None:
        session = self.editor.begin_edit(_node(QTY, 3, "3"))
        result = await self.editor.commit_edit(session, "12")
        self.assertTrue(result["ok"])
        self.assertEqual(result["display_text"], "12")
        self.assertEqual((await self.store.get_record("tbl_root", "rec_1"))["fld_qty"], 12)

    async def test_invalid_number_fails_without_write(self) -> None:
        session = self.editor.begin_edit(_node(QTY, 3, "3"))
        result = await self.editor.commit_edit(session, "twelve")
        self.assertFalse(result["ok"])
        self.assertEqual(result["display_text"], "3")
        self.assertEqual(self.store.call_count("write_field"), 0)

    async def test_canonical_value_comes_from_store(self) -> None:
        store = UppercaseStore()
        store.add_table("tbl_root", [NAME])
        store.put_record("tbl_root", "rec_1", {"fld_name": "foo"})
        undo = UndoRedoLog()
        editor = EditCoordinator(store, undo_log=undo)
        result = await editor.commit_edit(editor.begin_edit(_node(NAME, "foo", "foo")), "bar")
        self.assertEqual(result["value"], "BAR")
        self.assertEqual(result["display_text"], "BAR")
        self.assertEqual(undo.history()["undo"][0]["new_value"], "BAR")

    async def test_relation_edit_writes_related_table(self) -> None:
        node = _node(NOTE, "old note", "old note", record_id="b1", table_id="tbl_batches", relation=True)
        result = await self.editor.commit_edit(self.editor.begin_edit(node), "new note")
        self.assertTrue(result["ok"])
        self.assertIn(("write_field", "tbl_batches", "b1", "fld_note"), self.store.calls)
        self.assertEqual((await self.store.get_record("tbl_batches", "b1"))["fld_note"], "new note")

    async def test_missing_owner_table(self) -> None:
        node = _node(NOTE, "x", "x", table_id=None)
        result = await self.editor.commit_edit(self.editor.begin_edit(node), "y")
        self.assertEqual(result["errors"][0]["code"], "OWNER_TABLE_MISSING")
        self.assertEqual(self.store.calls, [])

    async def test_failed_write_keeps_old_text(self) -> None:
        store = BrokenStore()
        store.add_table("tbl_root", [NAME])
        store.put_record("tbl_root", "rec_1", {"fld_name": "foo"})
        undo = UndoRedoLog()
        editor = EditCoordinator(store, undo_log=undo)
        with self.assertLogs("docbind.edit", level="WARNING"):
            result = await editor.commit_edit(editor.begin_edit(_node(NAME, "foo", "foo")), "bar")
        self.assertFalse(result["ok"])
        self.assertEqual(result["status"], "failed")
        self.assertEqual(result["display_text"], "foo")
        self.assertEqual(result["value"], "foo")
        self.assertEqual(result["errors"][0]["code"], "WRITE_BACK_FAILED")
        self.assertFalse(undo.can_undo())
        self.assertEqual(len(editor.outbox.failed()), 1)

    async def test_rapid_commits_coalesce(self) -> None:
        store = GatedStore()
        store.add_table("tbl_root", [NAME])
        store.put_record("tbl_root", "rec_1", {"fld_name": "foo"})
        editor = EditCoordinator(store)
        node = _node(NAME, "foo", "foo")

        first = asyncio.create_task(editor.commit_edit(editor.begin_edit(node), "A1"))
        await asyncio.sleep(0)
        second = asyncio.create_task(editor.commit_edit(editor.begin_edit(node), "A2"))
        third = asyncio.create_task(editor.commit_edit(editor.begin_edit(node), "A3"))
        await asyncio.sleep(0)
        store.gate.set()
        r1, r2, r3 = await asyncio.gather(first, second, third)

        self.assertEqual(store.written, ["A1", "A3"])
        self.assertEqual(r1["status"], "synced")
        self.assertEqual(r2["status"], "coalesced")
        self.assertEqual(r2["replaced_by"], r3["change_id"])
        self.assertEqual(r3["status"], "synced")
        self.assertEqual((await store.get_record("tbl_root", "rec_1"))["fld_name"], "A3")
        self.assertEqual(editor.outbox.pending(), [])

    async def test_crash_after_write_fails_queued_changes(self) -> None:
        store = GatedStore()
        store.add_table("tbl_root", [NAME])
        store.put_record("tbl_root", "rec_1", {"fld_name": "foo"})
        editor = EditCoordinator(store, undo_log=ExplodingUndoLog())
        node = _node(NAME, "foo", "foo")

        first = asyncio.create_task(editor.commit_edit(editor.begin_edit(node), "A1"))
        await asyncio.sleep(0)
        second = asyncio.create_task(editor.commit_edit(editor.begin_edit(node), "A2"))
        await asyncio.sleep(0)
        store.gate.set()
        with self.assertLogs("docbind.edit", level="ERROR"):
            r1, r2 = await asyncio.wait_for(asyncio.gather(first, second), timeout=1)

        self.assertEqual(store.written, ["A1"])
        for result in (r1, r2):
            self.assertEqual(result["status"], "failed")
            self.assertEqual(result["display_text"], "foo")
            self.assertEqual(result["errors"][0]["code"], "WRITE_BACK_FAILED")
        self.assertIn("history unavailable", r1["errors"][0]["message"])
        self.assertEqual(editor.outbox.pending(), [])
        self.assertEqual([c["change_id"] for c in editor.outbox.failed()], [r2["change_id"]])

    async def test_resync_failed_change(self) -> None:
        store = FlakyStore(failures=1)
        store.add_table("tbl_root", [NAME])
        store.put_record("tbl_root", "rec_1", {"fld_name": "foo"})
        undo = UndoRedoLog()
        editor = EditCoordinator(store, undo_log=undo)
        with self.assertLogs("docbind.edit", level="WARNING"):
            failed = await editor.commit_edit(editor.begin_edit(_node(NAME, "foo", "foo")), "bar")
        change_id = failed["change_id"]
        self.assertEqual(editor.outbox.failed()[0]["change_id"], change_id)

        result = await editor.resync(change_id)
        self.assertEqual(result["status"], "synced")
        self.assertEqual(result["value"], "bar")
        self.assertEqual((await store.get_record("tbl_root", "rec_1"))["fld_name"], "bar")
        self.assertEqual(editor.outbox.failed(), [])
        self.assertEqual(undo.history()["undo"][0]["old_value"], "foo")

        again = await editor.resync(change_id)
        self.assertFalse(again["ok"])
        self.assertEqual(again["errors"][0]["code"], "CHANGE_NOT_FOUND")

    async def test_discard_failed_change(self) -> None:
        store = FlakyStore(failures=1)
        store.add_table("tbl_root", [NAME])
        store.put_record("tbl_root", "rec_1", {"fld_name": "foo"})
        editor = EditCoordinator(store)
        with self.assertLogs("docbind.edit", level="WARNING"):
            failed = await editor.commit_edit(editor.begin_edit(_node(NAME, "foo", "foo")), "bar")
        self.assertTrue(editor.discard(failed["change_id"]))
        self.assertEqual(editor.outbox.failed(), [])
        self.assertFalse(editor.discard(failed["change_id"]))
        self.assertEqual((await store.get_record("tbl_root", "rec_1"))["fld_name"], "foo")

    async def test_toggle_checkbox(self) -> None:
        result = await self.editor.toggle(_node(DONE, False, ""))
        self.assertTrue(result["ok"])
        self.assertIs(result["value"], True)
        self.assertEqual(result["display_text"], "✓")

    async def test_select_same_option_is_unchanged(self) -> None:
        node = _node(STATUS, {"id": "opt_a", "name": "Approved"}, "Approved")
        result = await self.editor.select(node, "Approved")
        self.assertEqual(result["status"], "unchanged")
        self.assertEqual(self.store.calls, [])
        result = await self.editor.select(node, {"id": "opt_b"})
        self.assertEqual(result["status"], "synced")
        self.assertEqual(result["display_text"], "Blocked")

    async def test_toggle_rejects_other_kinds(self) -> None:
        with self.assertRaises(NotEditableError):
            await self.editor.toggle(_node(NAME, "foo", "foo"))

    def test_read_only_node_rejected(self) -> None:
        node = _node(NAME, "foo", "foo")
        node["editable"] = False
        node["edit"] = None
        with self.assertRaises(NotEditableError) as ctx:
            self.editor.begin_edit(node)
        self.assertEqual(ctx.exception.code, "FIELD_NOT_EDITABLE")
        self.assertEqual(ctx.exception.path, "n_fld_name")

    async def test_undo_restores_prior_value(self) -> None:
        await self.editor.commit_edit(self.editor.begin_edit(_node(NAME, "foo", "foo")), "bar")
        result = await self.undo.undo()
        self.assertTrue(result["applied"])
        self.assertEqual((await self.store.get_record("tbl_root", "rec_1"))["fld_name"], "foo")
        self.assertEqual(self.events[-1]["name"], FIELD_REVERTED)
        result = await self.undo.redo()
        self.assertTrue(result["applied"])
        self.assertEqual((await self.store.get_record("tbl_root", "rec_1"))["fld_name"], "bar")
        self.assertEqual(len(self.undo.history()["undo"]), 1)


if __name__ == "__main__":
    unittest.main()

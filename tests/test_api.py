import os
import sys
import unittest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from fastapi.testclient import TestClient

os.environ.pop("DOCBIND_RECORD_STORE_URL", None)

import app.main as main
from app.settings import Settings
from app.stores import MemoryCommentIndex, MemoryRecordStore, MemoryTemplateStore, RecordStoreError


FIELDS = [
    {"id": "fld_name", "name": "Name", "kind": "text"},
    {"id": "fld_done", "name": "Done", "kind": "checkbox"},
    {
        "id": "fld_status",
        "name": "Status",
        "kind": "single_select",
        "options": [{"id": "opt_a", "name": "Approved"}, {"id": "opt_b", "name": "Blocked"}],
    },
]

TEMPLATE = {
    "id": "tpl_api",
    "name": "API sheet",
    "version": "1",
    "styles": {},
    "elements": [
        {"id": "title", "type": "field", "field_id": "fld_name"},
        {"id": "done", "type": "field", "field_id": "fld_done"},
        {"id": "status", "type": "field", "field_id": "fld_status"},
        {"id": "intro", "type": "text", "content": "Hello"},
    ],
}


class FlakyStore(MemoryRecordStore):
    def __init__(self) -> None:
        super().__init__()
        self.failures = 0

    async def write_field(self, table_id, record_id, field_id, value):
        if self.failures:
            self.failures -= 1
            raise RecordStoreError("RECORD_STORE_UNREACHABLE", "connection refused")
        return await super().write_field(table_id, record_id, field_id, value)


class TestDocumentApi(unittest.TestCase):
    def setUp(self) -> None:
        store = FlakyStore()
        store.add_table("tbl_root", FIELDS)
        store.put_record(
            "tbl_root", "rec_1", {"fld_name": "foo", "fld_done": False, "fld_status": {"id": "opt_a", "name": "Approved"}}
        )
        self.store = store
        main.record_store = store
        main.template_store = MemoryTemplateStore()
        main.comment_index = MemoryCommentIndex()
        main.sessions.clear()
        main.settings = Settings(editable_fields=["fld_name", "fld_done", "fld_status"])
        self.client = TestClient(main.app)

    def _open(self) -> str:
        res = self.client.post("/sessions", json={"template": TEMPLATE, "table_id": "tbl_root", "record_id": "rec_1"})
        self.assertEqual(res.status_code, 201, res.text)
        return res.json()["session_id"]

    def test_health(self) -> None:
        self.assertEqual(self.client.get("/health").json(), {"ok": True})

    def test_template_create_and_update(self) -> None:
        res = self.client.post("/templates", json={"template": TEMPLATE})
        self.assertEqual(res.status_code, 201)
        self.assertEqual(res.json()["template"]["id"], "tpl_api")
        res = self.client.post("/templates", json=TEMPLATE)
        self.assertEqual(res.status_code, 200)
        res = self.client.get("/templates/tpl_api")
        self.assertTrue(res.json()["ok"])
        self.assertEqual(self.client.get("/templates/missing").status_code, 404)

    def test_invalid_template(self) -> None:
        bad = dict(TEMPLATE, elements=[{"id": "x", "type": "chart"}])
        res = self.client.post("/templates", json=bad)
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["errors"][0]["code"], "ELEMENT_TYPE_INVALID")
        res = self.client.post("/sessions", json={"template": bad, "table_id": "tbl_root", "record_id": "rec_1"})
        self.assertEqual(res.status_code, 400)

    def test_session_from_saved_template(self) -> None:
        self.client.post("/templates", json=TEMPLATE)
        res = self.client.post("/sessions", json={"template_id": "tpl_api", "table_id": "tbl_root", "record_id": "rec_1"})
        self.assertEqual(res.status_code, 201)
        nodes = res.json()["document"]["nodes"]
        self.assertEqual([n["node_id"] for n in nodes], ["title", "done", "status", "intro"])
        res = self.client.post("/sessions", json={"template_id": "nope", "table_id": "tbl_root", "record_id": "rec_1"})
        self.assertEqual(res.status_code, 404)

    def test_edit_flow(self) -> None:
        session_id = self._open()
        res = self.client.post(f"/sessions/{session_id}/edits", json={"node_id": "title", "text": "bar"})
        body = res.json()
        self.assertEqual(res.status_code, 200, body)
        self.assertEqual(body["status"], "synced")
        self.assertEqual(body["display_text"], "bar")

        doc = self.client.get(f"/sessions/{session_id}/document").json()["document"]
        self.assertEqual(doc["refresh_epoch"], 1)
        self.assertEqual(doc["nodes"][0]["text"], "bar")

        history = self.client.get(f"/sessions/{session_id}/history").json()["history"]
        self.assertEqual(len(history["undo"]), 1)
        res = self.client.post(f"/sessions/{session_id}/undo")
        self.assertTrue(res.json()["applied"])
        self.assertEqual(self.store._tables["tbl_root"]["records"]["rec_1"]["fld_name"], "foo")
        res = self.client.post(f"/sessions/{session_id}/redo")
        self.assertTrue(res.json()["applied"])

    def test_resync_and_discard_failed_changes(self) -> None:
        session_id = self._open()
        self.store.failures = 2
        res = self.client.post(f"/sessions/{session_id}/edits", json={"node_id": "title", "text": "bar"})
        self.assertEqual(res.status_code, 409)
        failed_id = res.json()["change_id"]
        failed = self.client.get(f"/sessions/{session_id}/changes").json()["changes"]["failed"]
        self.assertEqual([c["change_id"] for c in failed], [failed_id])

        res = self.client.post(f"/sessions/{session_id}/changes/{failed_id}/resync")
        self.assertEqual(res.status_code, 409)
        res = self.client.post(f"/sessions/{session_id}/changes/{failed_id}/resync")
        self.assertEqual(res.status_code, 200, res.text)
        self.assertEqual(res.json()["status"], "synced")
        self.assertEqual(self.store._tables["tbl_root"]["records"]["rec_1"]["fld_name"], "bar")
        res = self.client.post(f"/sessions/{session_id}/changes/{failed_id}/resync")
        self.assertEqual(res.status_code, 404)
        self.assertEqual(res.json()["errors"][0]["code"], "CHANGE_NOT_FOUND")

        self.store.failures = 1
        res = self.client.post(f"/sessions/{session_id}/edits", json={"node_id": "title", "text": "baz"})
        failed_id = res.json()["change_id"]
        res = self.client.delete(f"/sessions/{session_id}/changes/{failed_id}")
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json()["changes"], {"pending": [], "failed": []})
        self.assertEqual(self.client.delete(f"/sessions/{session_id}/changes/{failed_id}").status_code, 404)

    def test_toggle_select_and_options(self) -> None:
        session_id = self._open()
        res = self.client.post(f"/sessions/{session_id}/toggle", json={"node_id": "done"})
        self.assertIs(res.json()["value"], True)
        res = self.client.get(f"/sessions/{session_id}/options", params={"node_id": "status"})
        self.assertEqual([o["id"] for o in res.json()["options"]], ["opt_a", "opt_b"])
        res = self.client.post(f"/sessions/{session_id}/select", json={"node_id": "status", "option": "Blocked"})
        self.assertEqual(res.json()["display_text"], "Blocked")

    def test_errors(self) -> None:
        session_id = self._open()
        res = self.client.post(f"/sessions/{session_id}/edits", json={"node_id": "intro", "text": "x"})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["errors"][0]["code"], "FIELD_NOT_EDITABLE")
        res = self.client.post(f"/sessions/{session_id}/edits", json={"node_id": "ghost", "text": "x"})
        self.assertEqual(res.status_code, 404)
        self.assertEqual(res.json()["errors"][0]["code"], "NODE_NOT_FOUND")
        res = self.client.post(f"/sessions/{session_id}/edits", json={"node_id": "title"})
        self.assertEqual(res.json()["errors"][0]["code"], "EDIT_INVALID")
        res = self.client.get("/sessions/unknown/document")
        self.assertEqual(res.status_code, 404)
        self.assertEqual(res.json()["errors"][0]["code"], "SESSION_NOT_FOUND")

    def test_record_store_errors_map_to_status(self) -> None:
        res = self.client.post("/sessions", json={"template": TEMPLATE, "table_id": "tbl_root", "record_id": "ghost"})
        self.assertEqual(res.status_code, 404)
        self.assertEqual(res.json()["errors"][0]["code"], "RECORD_NOT_FOUND")

    def test_refresh_changes_and_diagnostics(self) -> None:
        session_id = self._open()
        res = self.client.post(f"/sessions/{session_id}/refresh")
        self.assertEqual(res.json()["document"]["refresh_epoch"], 1)
        changes = self.client.get(f"/sessions/{session_id}/changes").json()["changes"]
        self.assertEqual(changes, {"pending": [], "failed": []})
        diag = self.client.get(f"/sessions/{session_id}/diagnostics").json()["diagnostics"]
        self.assertEqual(diag["template_id"], "tpl_api")
        self.assertFalse(diag["stale"])
        self.assertEqual(diag["nodes"], {"title": 1, "field": 2, "text": 1})


if __name__ == "__main__":
    unittest.main()

import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from change_outbox import ChangeOutbox, change_key, make_change


class TestChangeOutbox(unittest.TestCase):
    def test_track_coalesces_and_carries_old_value(self) -> None:
        outbox = ChangeOutbox()
        first = make_change("r1", "f1", "t1", "a", "b")
        second = make_change("r1", "f1", "t1", "b", "c")
        self.assertIsNone(outbox.track(first))
        replaced = outbox.track(second)
        self.assertEqual(replaced["change_id"], first["change_id"])
        self.assertEqual(replaced["sync_status"], "coalesced")
        pending = outbox.pending()
        self.assertEqual(len(pending), 1)
        self.assertEqual(pending[0]["old_value"], "a")
        self.assertEqual(pending[0]["new_value"], "c")

    def test_take_and_sync(self) -> None:
        outbox = ChangeOutbox()
        change = make_change("r1", "f1", "t1", None, 1)
        outbox.track(change)
        key = change_key("r1", "f1")
        claimed = outbox.take(key)
        self.assertEqual(claimed["change_id"], change["change_id"])
        self.assertIsNone(outbox.take(key))
        self.assertEqual(len(outbox.pending()), 1)
        self.assertTrue(outbox.mark_synced(change["change_id"]))
        self.assertEqual(outbox.pending(), [])
        self.assertFalse(outbox.mark_synced(change["change_id"]))

    def test_failed_ledger(self) -> None:
        outbox = ChangeOutbox()
        change = make_change("r1", "f1", "t1", None, 1)
        outbox.track(change)
        outbox.take(change_key("r1", "f1"))
        self.assertTrue(outbox.mark_failed(change["change_id"], "offline"))
        failed = outbox.failed()
        self.assertEqual(failed[0]["sync_status"], "failed")
        self.assertEqual(failed[0]["error"], "offline")
        outbox.track(make_change("r1", "f1", "t1", None, 2))
        self.assertEqual(outbox.failed(), [])
        outbox.clear()
        self.assertEqual(outbox.pending(), [])

    def test_requeue_and_discard(self) -> None:
        outbox = ChangeOutbox()
        key = change_key("r1", "f1")
        change = make_change("r1", "f1", "t1", "a", "b")
        outbox.track(change)
        outbox.take(key)
        outbox.mark_failed(change["change_id"], "offline")

        requeued = outbox.requeue(change["change_id"])
        self.assertEqual(requeued["sync_status"], "pending")
        self.assertNotIn("error", requeued)
        self.assertEqual(outbox.failed(), [])
        self.assertEqual(outbox.take(key)["change_id"], change["change_id"])
        outbox.mark_failed(change["change_id"], "offline")

        self.assertTrue(outbox.discard(change["change_id"]))
        self.assertFalse(outbox.discard(change["change_id"]))
        self.assertIsNone(outbox.requeue(change["change_id"]))
        self.assertEqual(outbox.failed(), [])

    def test_requeue_yields_to_newer_pending_edit(self) -> None:
        outbox = ChangeOutbox()
        change = make_change("r1", "f1", "t1", "a", "b")
        outbox.track(change)
        outbox.take(change_key("r1", "f1"))
        outbox.track(make_change("r1", "f1", "t1", "b", "c"))
        outbox.mark_failed(change["change_id"], "offline")
        self.assertIsNone(outbox.requeue(change["change_id"]))
        self.assertEqual([c["new_value"] for c in outbox.pending()], ["c"])
        self.assertEqual(outbox.failed(), [])

    def test_entries_are_copies(self) -> None:
        outbox = ChangeOutbox()
        change = make_change("r1", "f1", "t1", None, {"id": "x"})
        outbox.track(change)
        change["new_value"]["id"] = "mutated"
        self.assertEqual(outbox.pending()[0]["new_value"], {"id": "x"})


if __name__ == "__main__":
    unittest.main()

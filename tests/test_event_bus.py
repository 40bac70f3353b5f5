import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from event_bus import (
    DOCUMENT_REFRESHED,
    FIELD_COMMITTED,
    FIELD_REVERTED,
    EventBus,
    EventValidationError,
    make_event,
)


META = {"session_id": "s1", "template_hash": "sha256:abcd"}
FIELD = {"record_id": "r1", "field_id": "f1", "table_id": "t1"}


class TestEventBus(unittest.TestCase):
    def test_make_event_fills_meta(self) -> None:
        event = make_event(FIELD_COMMITTED, FIELD, META)
        self.assertTrue(event["meta"]["occurred_at"].endswith("Z"))
        self.assertIsInstance(event["meta"]["event_id"], str)
        self.assertNotIn("event_id", META)

    def test_handlers_called_in_order_and_counted(self) -> None:
        bus = EventBus()
        calls = []
        bus.subscribe(FIELD_COMMITTED, lambda evt: calls.append("h1"))
        bus.subscribe(FIELD_COMMITTED, lambda evt: calls.append("h2"))
        bus.subscribe(FIELD_REVERTED, lambda evt: calls.append("reverted"))
        bus.publish(make_event(FIELD_COMMITTED, FIELD, META))
        bus.publish(make_event(DOCUMENT_REFRESHED, {"refresh_epoch": 1}, META))
        self.assertEqual(calls, ["h1", "h2"])
        self.assertEqual(bus.counts(), {FIELD_COMMITTED: 1, DOCUMENT_REFRESHED: 1})

    def test_failing_handler_is_logged(self) -> None:
        bus = EventBus()
        calls = []

        def boom(evt: dict) -> None:
            raise RuntimeError("boom")

        bus.subscribe(FIELD_COMMITTED, boom)
        bus.subscribe(FIELD_COMMITTED, lambda evt: calls.append("after"))
        with self.assertLogs("docbind.session", level="ERROR"):
            bus.publish(make_event(FIELD_COMMITTED, FIELD, META))
        self.assertEqual(calls, ["after"])

    def test_unknown_event_name(self) -> None:
        with self.assertRaises(EventValidationError) as ctx:
            make_event("record.deleted", FIELD, META)
        self.assertEqual(ctx.exception.code, "EVENT_NAME_INVALID")
        with self.assertRaises(EventValidationError):
            EventBus().subscribe("record.deleted", print)

    def test_field_event_needs_location(self) -> None:
        with self.assertRaises(EventValidationError) as ctx:
            make_event(FIELD_REVERTED, {"record_id": "r1", "field_id": "f1"}, META)
        self.assertEqual(ctx.exception.code, "PAYLOAD_FIELD_MISSING")
        self.assertEqual(ctx.exception.path, "payload.table_id")

    def test_invalid_occurred_at(self) -> None:
        bus = EventBus()
        event = make_event(FIELD_COMMITTED, FIELD, META)
        event["meta"]["occurred_at"] = "2026-01-29T01:23:45"
        with self.assertRaises(EventValidationError):
            bus.publish(event)
        self.assertEqual(bus.counts(), {})

    def test_invalid_template_hash_prefix(self) -> None:
        with self.assertRaises(EventValidationError) as ctx:
            make_event(FIELD_COMMITTED, FIELD, {"session_id": "s1", "template_hash": "md5:bad"})
        self.assertEqual(ctx.exception.code, "META_TEMPLATE_HASH_INVALID")

    def test_missing_session_id(self) -> None:
        with self.assertRaises(EventValidationError):
            make_event(FIELD_COMMITTED, FIELD, {})

    def test_payload_rejects_nan(self) -> None:
        bus = EventBus()
        event = make_event(DOCUMENT_REFRESHED, {"refresh_epoch": 1}, META)
        event["payload"]["ratio"] = float("nan")
        with self.assertRaises(EventValidationError):
            bus.publish(event)


if __name__ == "__main__":
    unittest.main()

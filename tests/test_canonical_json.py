import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from docbind.canonical_json import CanonicalJsonTypeError, canonical_dumps
from docbind.template_hash import template_hash, value_fingerprint


class TestCanonicalJson(unittest.TestCase):
    def test_key_ordering_is_deterministic(self) -> None:
        self.assertEqual(canonical_dumps({"b": 1, "a": 2}), canonical_dumps({"a": 2, "b": 1}))

    def test_nested_dict_ordering(self) -> None:
        obj = {"b": 1, "a": {"d": 4, "c": 3}}
        self.assertEqual(canonical_dumps(obj), '{"a":{"c":3,"d":4},"b":1}')

    def test_tuples_serialize_as_lists(self) -> None:
        self.assertEqual(canonical_dumps({"ids": ("b", "a")}), '{"ids":["b","a"]}')

    def test_non_ascii_preserved(self) -> None:
        out = canonical_dumps({"name": "原料品质"})
        self.assertIn("原料品质", out)
        self.assertNotIn("\\u", out)

    def test_unsupported_type_raises(self) -> None:
        with self.assertRaises(CanonicalJsonTypeError):
            canonical_dumps({"bad": {1, 2, 3}})
        with self.assertRaises(CanonicalJsonTypeError):
            canonical_dumps({1: "int key"})

    def test_reject_non_finite(self) -> None:
        for value in (float("nan"), float("inf"), float("-inf")):
            with self.assertRaises(ValueError):
                canonical_dumps({"bad": value})


class TestTemplateHash(unittest.TestCase):
    def test_hash_ignores_key_order(self) -> None:
        a = {"id": "t", "elements": [], "styles": {"font_size": 12, "line_height": 1.5}}
        b = {"styles": {"line_height": 1.5, "font_size": 12}, "elements": [], "id": "t"}
        self.assertEqual(template_hash(a), template_hash(b))
        self.assertTrue(template_hash(a).startswith("sha256:"))

    def test_hash_changes_with_content(self) -> None:
        self.assertNotEqual(template_hash({"id": "t", "version": "1"}), template_hash({"id": "t", "version": "2"}))

    def test_value_fingerprint(self) -> None:
        self.assertEqual(len(value_fingerprint({"id": "opt"})), 12)
        self.assertEqual(value_fingerprint({"a": 1, "b": 2}), value_fingerprint({"b": 2, "a": 1}))
        self.assertEqual(len(value_fingerprint(object())), 12)


if __name__ == "__main__":
    unittest.main()

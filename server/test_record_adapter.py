import unittest
from dataclasses import dataclass
from typing import Optional

from pydantic import BaseModel

from key_codec import KEY_SEPARATOR, encode_key
from record_adapter import (
    chunked, dedupe, field_changes, get_path, prepare_for_write, record_id,
    strip_control_fields, to_record,
)
from storage_backend import IndexSlot
from store_errors import LogicalInputError

BINDINGS = [("name", IndexSlot("_1", "_-_1-index")), ("user.age", IndexSlot("_2", "_-_2-index"))]


@dataclass
class Memo:
    id: str
    name: str
    note: Optional[str] = None


class MemoModel(BaseModel):
    id: str
    name: str
    note: Optional[str] = None


class TestPrepareForWrite(unittest.TestCase):
    def test_slots_and_partition(self):
        physical = prepare_for_write("memos", {"id": "42", "name": "world", "user": {"age": 20}}, BINDINGS)
        self.assertEqual(physical["_"], "memos")
        self.assertEqual(physical["_1"], "world" + KEY_SEPARATOR + "42")
        self.assertEqual(physical["_2"], encode_key(20, "42"))
        self.assertEqual(physical["user"], {"age": 20})

    def test_empty_fields_are_dropped(self):
        physical = prepare_for_write("memos", {"id": "1", "name": "", "note": None, "n": 0}, BINDINGS)
        self.assertNotIn("name", physical)
        self.assertNotIn("note", physical)
        self.assertNotIn("_1", physical)
        self.assertEqual(physical["n"], 0)

    def test_reserved_fields(self):
        with self.assertRaises(LogicalInputError):
            prepare_for_write("memos", {"id": "1", "_": "other"}, BINDINGS)
        with self.assertRaises(LogicalInputError):
            prepare_for_write("memos", {"id": "1", "_1": "x"}, BINDINGS)
        # Not bound for this collection, so it is plain data
        self.assertEqual(prepare_for_write("memos", {"id": "1", "_3": "x"}, BINDINGS)["_3"], "x")

    def test_record_id(self):
        self.assertEqual(record_id({"id": "a"}), "a")
        for bad in ({}, {"id": ""}, {"id": 5}):
            with self.assertRaises(LogicalInputError):
                record_id(bad)

    def test_unindexable_value(self):
        with self.assertRaises(LogicalInputError):
            prepare_for_write("memos", {"id": "1", "name": ["a", "b"]}, BINDINGS)


class TestFieldChanges(unittest.TestCase):
    def test_removes(self):
        puts, removes = field_changes(
            "memos",
            {"id": "1", "name": "", "age": 3},
            BINDINGS[:1],
            previous={"id": "1", "name": "a", "age": 2, "city": "x"},
        )
        self.assertEqual(puts, {"age": 3})
        self.assertEqual(removes, ["name", "_1", "city"])

    def test_slot_kept_when_value_present(self):
        puts, removes = field_changes("memos", {"id": "1", "name": "b"}, BINDINGS)
        self.assertEqual(puts, {"name": "b", "_1": encode_key("b", "1")})
        self.assertEqual(removes, ["_2"])


class TestHelpers(unittest.TestCase):
    def test_get_path(self):
        record = {"user": {"name": "hello"}, "a.b": 1}
        self.assertEqual(get_path(record, "user.name"), "hello")
        self.assertEqual(get_path(record, "a.b"), 1)
        self.assertIsNone(get_path(record, "user.age"))
        self.assertIsNone(get_path(record, "user.name.first"))

    def test_to_record(self):
        expected = {"id": "1", "name": "n"}
        self.assertEqual(to_record(Memo("1", "n")), expected)
        self.assertEqual(to_record(MemoModel(id="1", name="n")), expected)
        self.assertEqual(to_record(dict(expected)), expected)
        with self.assertRaises(LogicalInputError):
            to_record(42)

    def test_strip_control_fields(self):
        records = [{"_": "memos", "id": "1", "_1": "k", "_3": "data"}]
        stripped = strip_control_fields(records, BINDINGS)
        self.assertEqual(stripped, [{"id": "1", "_3": "data"}])
        self.assertEqual(strip_control_fields(stripped, BINDINGS), stripped)

    def test_dedupe_first_wins(self):
        items = [{"id": "1", "v": 1}, {"id": "2"}, {"id": "1", "v": 2}]
        self.assertEqual(dedupe(items, key=lambda r: r["id"]), [{"id": "1", "v": 1}, {"id": "2"}])
        self.assertEqual(dedupe(["b", "a", "b"]), ["b", "a"])

    def test_chunked(self):
        self.assertEqual([len(c) for c in chunked(list(range(60)), 25)], [25, 25, 10])
        self.assertEqual(list(chunked([], 25)), [])
        with self.assertRaises(ValueError):
            list(chunked([1], 0))


if __name__ == "__main__":
    unittest.main()

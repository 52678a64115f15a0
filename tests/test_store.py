"""Tests for the local versioned record store."""

from __future__ import annotations

from pathlib import Path

from sktasks.sync.models import Record
from sktasks.sync.store import RecordStore, safe_name

OWNER = "a" * 128
OTHER = "b" * 128


def _rec(record_id: str, owner: str = OWNER, **kwargs) -> Record:
    return Record(record_id=record_id, owner=owner, fields={"title": record_id}, **kwargs)


class TestSafeName:
    """File names for arbitrary record ids."""

    def test_unsafe_chars(self) -> None:
        name = safe_name("../../etc/passwd")
        assert "/" not in name
        assert name.endswith(".json")

    def test_distinct_ids_distinct_names(self) -> None:
        assert safe_name("a/b") != safe_name("a_b")


class TestRecordStore:
    """put/get/delete and listings."""

    def test_get_missing(self, home: Path) -> None:
        assert RecordStore(home).get("nope") is None

    def test_put_and_get(self, home: Path) -> None:
        store = RecordStore(home)
        store.put(_rec("task_1", version=2, pending=False))
        got = store.get("task_1")
        assert got is not None
        assert got.version == 2 and not got.pending
        assert got.fields == {"title": "task_1"}

    def test_put_replaces_wholesale(self, home: Path) -> None:
        store = RecordStore(home)
        store.put(Record(record_id="r", owner=OWNER, fields={"a": 1, "b": 2}))
        store.put(Record(record_id="r", owner=OWNER, fields={"a": 3}))
        assert store.get("r").fields == {"a": 3}

    def test_no_temp_files_left(self, home: Path) -> None:
        store = RecordStore(home)
        store.put(_rec("r"))
        assert [p.name for p in store.path.iterdir() if p.name.startswith(".")] == []

    def test_delete(self, home: Path) -> None:
        store = RecordStore(home)
        store.put(_rec("r"))
        assert store.delete("r")
        assert store.get("r") is None
        assert not store.delete("r")

    def test_listings(self, home: Path) -> None:
        store = RecordStore(home)
        store.put(_rec("a1", pending=True))
        store.put(_rec("a2", pending=False, version=1))
        store.put(_rec("n1", collection="notes"))
        store.put(_rec("b1", owner=OTHER))

        assert {r.record_id for r in store.list_by_owner(OWNER)} == {"a1", "a2", "n1"}
        assert {r.record_id for r in store.list_by_owner(OWNER, "tasks")} == {"a1", "a2"}
        assert {r.record_id for r in store.list_pending(OWNER, "tasks")} == {"a1"}
        assert store.owners() == sorted([OWNER, OTHER])
        assert store.count() == 4

    def test_corrupt_file_skipped(self, home: Path) -> None:
        store = RecordStore(home)
        store.put(_rec("good"))
        (store.path / "broken.json").write_text("{not json", encoding="utf-8")
        assert [r.record_id for r in store.all()] == ["good"]

    def test_write_delegate_is_reader(self, home: Path) -> None:
        record = _rec("r", write_delegates=[OTHER])
        assert OTHER in record.read_delegates
        assert record.delegates == [OTHER]

"""Tests for the file-backed and in-memory key-value stores."""

import pytest

from drawio_pipeline.store import (
    CounterFileStore,
    MappingFileStore,
    MemoryStore,
    PersistenceError,
    atomic_write_text,
)


class TestMemoryStore:

    def test_compare_and_swap(self):
        store = MemoryStore()
        assert store.compare_and_swap("a", None, "1") is True
        assert store.compare_and_swap("a", None, "2") is False
        assert store.compare_and_swap("a", "1", "2") is True
        assert store.items() == [("a", "2")]


class TestMappingFileStore:

    def test_set_and_get(self, tmp_path):
        store = MappingFileStore(tmp_path / ".versions")
        store.set("004", "1.0")
        store.set("70", "0.1")
        store.set("004", "1.1")

        assert store.get("004") == "1.1"
        assert (tmp_path / ".versions").read_text() == "004:1.1\n70:0.1\n"

    def test_missing_file_reads_empty(self, tmp_path):
        store = MappingFileStore(tmp_path / "nope")
        assert store.get("004") is None
        assert store.items() == []

    def test_compare_and_swap_mismatch(self, tmp_path):
        store = MappingFileStore(tmp_path / ".versions")
        store.set("004", "1.0")
        assert store.compare_and_swap("004", "0.9", "2.0") is False
        assert store.get("004") == "1.0"

    def test_malformed_lines_are_skipped(self, tmp_path):
        path = tmp_path / ".versions"
        path.write_text("004:1.0\ngarbage\n\n70:2.0\n")
        assert dict(MappingFileStore(path).items()) == {"004": "1.0", "70": "2.0"}

    def test_lock_released_after_write(self, tmp_path):
        store = MappingFileStore(tmp_path / ".versions")
        store.set("004", "1.0")
        assert not (tmp_path / ".versions.lock").exists()

    def test_held_lock_surfaces_persistence_error(self, tmp_path):
        (tmp_path / ".versions.lock").mkdir()
        store = MappingFileStore(tmp_path / ".versions", {"wait_seconds": 0})
        with pytest.raises(PersistenceError):
            store.set("004", "1.0")


class TestCounterFileStore:

    def test_initialize_writes_000(self, tmp_path):
        path = tmp_path / ".counter"
        store = CounterFileStore(path)
        assert store.initialize() is True
        assert path.read_text() == "000\n"
        assert store.initialize() is False

    def test_non_numeric_content(self, tmp_path):
        path = tmp_path / ".counter"
        path.write_text("abc\n")
        with pytest.raises(PersistenceError):
            CounterFileStore(path).get(CounterFileStore.KEY)

    def test_only_counter_key(self, tmp_path):
        with pytest.raises(KeyError):
            CounterFileStore(tmp_path / ".counter").set("other", "1")


def test_atomic_write_leaves_no_temp_files(tmp_path):
    target = tmp_path / "out.txt"
    atomic_write_text(target, "hello\n")
    atomic_write_text(target, "world\n")
    assert target.read_text() == "world\n"
    assert [p.name for p in tmp_path.iterdir()] == ["out.txt"]

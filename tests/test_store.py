"""Tests for the output stores and history views."""

import pytest

from workflows.sqlite_store import SqliteOutputStore
from workflows.store import MemoryOutputStore


@pytest.fixture(params=["memory", "sqlite"])
def any_store(request, tmp_path):
    if request.param == "memory":
        s = MemoryOutputStore()
    else:
        s = SqliteOutputStore(str(tmp_path / "outputs.db"))
    yield s
    s.close()


class TestReadWrite:
    """Keyed reads and writes behave the same on every backend."""

    def test_missing_is_none(self, any_store):
        assert any_store.read("plan") is None
        assert any_store.read_latest("plan") is None
        assert not any_store.contains("plan")

    def test_negative_iteration_reads_none(self, any_store):
        any_store.write("plan", 0, {"v": 1})
        assert any_store.read("plan", -1) is None

    def test_write_then_read(self, any_store):
        record = any_store.write("plan", 0, {"steps": ["a", "b"]})
        assert record.node_id == "plan"
        assert record.iteration == 0

        got = any_store.read("plan", 0)
        assert got.payload == {"steps": ["a", "b"]}
        assert got.identity.node_id == "plan"

    def test_overwrite_replaces(self, any_store):
        any_store.write("plan", 0, {"v": 1})
        any_store.write("plan", 0, {"v": 2})
        assert any_store.read("plan", 0).payload == {"v": 2}
        assert any_store.iterations("plan") == [0]

    def test_payload_is_copied(self, any_store):
        payload = {"items": [1]}
        any_store.write("plan", 0, payload)
        payload["items"].append(2)
        assert any_store.read("plan", 0).payload == {"items": [1]}

    def test_read_latest(self, any_store):
        for i in (0, 1, 3):
            any_store.write("review", i, {"pass": i})
        assert any_store.read_latest("review").payload == {"pass": 3}
        assert any_store.read_latest("review", at_most=2).payload == {"pass": 1}
        assert any_store.read_latest("review", at_most=0).iteration == 0

    def test_negative_iteration_write_rejected(self, any_store):
        with pytest.raises(ValueError):
            any_store.write("plan", -1, {})

    def test_node_ids_and_snapshot(self, any_store):
        any_store.write("b", 0, {"x": 1})
        any_store.write("a", 0, {"x": 2})
        any_store.write("a", 1, {"x": 3})
        assert any_store.node_ids() == ["a", "b"]

        snap = any_store.snapshot()
        assert [r["iteration"] for r in snap["a"]] == [0, 1]
        assert snap["b"][0]["payload"] == {"x": 1}


class TestHistory:
    """OutputHistory is a live, restartable view."""

    def test_iterates_ascending(self, any_store):
        any_store.write("review", 2, {"n": 2})
        any_store.write("review", 0, {"n": 0})
        history = any_store.read_history("review")
        assert [r.iteration for r in history] == [0, 2]
        assert history.payloads() == [{"n": 0}, {"n": 2}]

    def test_until_absent_stops_at_gap(self, any_store):
        for i in (0, 1, 3):
            any_store.write("review", i, {"n": i})
        assert [r.iteration for r in any_store.read_history("review").until_absent()] == [0, 1]

    def test_sees_later_writes(self, any_store):
        history = any_store.read_history("review")
        assert list(history) == []
        any_store.write("review", 0, {"n": 0})
        assert len(list(history)) == 1
        # restartable
        assert len(list(history)) == 1


class TestSqliteOutputStore:
    """Persistence-specific behaviour."""

    def test_survives_reopen(self, tmp_path):
        path = str(tmp_path / "nested" / "outputs.db")
        s1 = SqliteOutputStore(path)
        s1.write("approve", 0, {"approved": True})
        s1.close()

        s2 = SqliteOutputStore(path)
        assert s2.read("approve", 0).payload == {"approved": True}
        s2.close()

    def test_delete(self, tmp_path):
        s = SqliteOutputStore(str(tmp_path / "outputs.db"))
        s.write("a", 0, {})
        s.write("a", 1, {})
        assert s.delete("a", 0) == 1
        assert s.iterations("a") == [1]
        assert s.delete("a") == 1
        assert s.node_ids() == []
        s.close()

    def test_in_memory_database(self):
        s = SqliteOutputStore(":memory:")
        s.write("a", 0, {"ok": True})
        assert s.read("a").payload == {"ok": True}
        s.close()

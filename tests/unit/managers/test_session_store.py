"""Unit tests for the session registry and its snapshot file."""

from __future__ import annotations

import json
from pathlib import Path

from berth.db.snapshot import SnapshotFile
from berth.managers.session import SessionStore
from berth.models.session import Session


def make_session(terminal_id: str, container: str | None, **kwargs) -> Session:
    defaults = dict(owner_id="alice", project_name="site", source="/tmp/x", image="node:20-alpine")
    defaults.update(kwargs)
    return Session(terminal_id=terminal_id, container_name=container, **defaults)


class TestSessionStoreIndices:
    def test_put_indexes_both_ways(self):
        store = SessionStore()
        session = make_session("t1", "c1")

        store.put(session)

        assert store.get("t1") is session
        assert store.by_container("c1") is session
        assert store.terminal_for_container("c1") == "t1"
        assert "t1" in store
        assert len(store) == 1

    def test_replacing_container_drops_old_entry(self):
        store = SessionStore()
        store.put(make_session("t1", "c1"))

        store.put(make_session("t1", "c2"))

        assert store.by_container("c1") is None
        assert store.by_container("c2").terminal_id == "t1"
        assert store.container_index() == {"c2": "t1"}

    def test_remove_clears_both(self):
        store = SessionStore()
        store.put(make_session("t1", "c1"))

        removed = store.remove("t1")

        assert removed is not None
        assert store.get("t1") is None
        assert store.container_index() == {}
        assert store.remove("t1") is None

    def test_owner_and_project_filters(self):
        store = SessionStore()
        store.put(make_session("t1", "c1", owner_id="alice", project_name="site"))
        store.put(make_session("t2", "c2", owner_id="bob", project_name="site"))
        store.put(make_session("t3", "c3", owner_id="alice", project_name="api"))

        assert {s.terminal_id for s in store.for_owner("alice")} == {"t1", "t3"}
        assert {s.terminal_id for s in store.for_project("site")} == {"t1", "t2"}


class TestSnapshotPersistence:
    def test_every_mutation_is_persisted(self, tmp_path: Path):
        path = tmp_path / "state" / "sessions.json"
        store = SessionStore(SnapshotFile(path))

        store.put(make_session("t1", "c1"))
        payload = json.loads(path.read_text())
        assert [entry[0] for entry in payload["sessions"]] == ["t1"]
        assert payload["containers"] == [["c1", "t1"]]
        assert "saved_at" in payload

        store.remove("t1")
        payload = json.loads(path.read_text())
        assert payload["sessions"] == []

    def test_round_trip_through_load(self, tmp_path: Path):
        path = tmp_path / "sessions.json"
        first = SessionStore(SnapshotFile(path))
        first.put(make_session("t1", "c1", working_directory="/workspace/src"))

        second = SessionStore(SnapshotFile(path))
        dropped = second.load(second.read_snapshot())

        assert dropped == []
        restored = second.get("t1")
        assert restored.working_directory == "/workspace/src"
        assert second.by_container("c1") is restored

    def test_load_respects_keep(self, tmp_path: Path):
        path = tmp_path / "sessions.json"
        first = SessionStore(SnapshotFile(path))
        first.put(make_session("t1", "c1"))
        first.put(make_session("t2", "c2"))

        second = SessionStore(SnapshotFile(path))
        dropped = second.load(second.read_snapshot(), keep=lambda s: s.terminal_id == "t1")

        assert [s.terminal_id for s in dropped] == ["t2"]
        assert second.container_index() == {"c1": "t1"}

    def test_missing_or_corrupt_file_is_empty(self, tmp_path: Path):
        assert SnapshotFile(tmp_path / "missing.json").load().sessions == {}

        corrupt = tmp_path / "corrupt.json"
        corrupt.write_text("{not json")
        assert SnapshotFile(corrupt).load().sessions == {}

    def test_wrong_shape_is_empty(self, tmp_path: Path):
        path = tmp_path / "sessions.json"
        for payload in ([], "x", 3, {"sessions": 5, "containers": {"c1": "t1"}}):
            path.write_text(json.dumps(payload))

            data = SnapshotFile(path).load()

            assert data.sessions == {}
            assert data.containers == {}

    def test_bad_entries_are_skipped(self, tmp_path: Path):
        path = tmp_path / "sessions.json"
        good = make_session("t1", "c1").model_dump(mode="json")
        path.write_text(
            json.dumps(
                {
                    "sessions": [["t1", good], ["t2", {"terminal_id": "t2"}], "garbage"],
                    "containers": [["c1", "t1"], ["broken"]],
                }
            )
        )

        data = SnapshotFile(path).load()

        assert list(data.sessions) == ["t1"]
        assert data.containers == {"c1": "t1"}

    def test_no_temp_files_left_behind(self, tmp_path: Path):
        store = SessionStore(SnapshotFile(tmp_path / "sessions.json"))
        for index in range(3):
            store.put(make_session(f"t{index}", f"c{index}"))

        assert [p.name for p in tmp_path.iterdir()] == ["sessions.json"]

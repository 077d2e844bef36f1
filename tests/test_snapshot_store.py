import json

import pytest

from core import CacheSnapshot, FetchResult, HierarchyBuilder, MalformedRecord, QuotaExceeded, Registry, SourceQuery, TaskNode
from core.snapshot import deserialize, parse_payload, serialize
from fakes import USER, record
from infrastructure.snapshot_store import FileSnapshotStore


def _hierarchy():
    registry = Registry()
    for raw in (
        record("R", assignee=USER, project="p1"),
        record("A", parent="R", completed=True, completed_at="2026-10-10T08:00:00Z"),
        record("B", parent="R"),
        record("X", parent="P", parent_name="Board", assignee=USER),
    ):
        registry.add(TaskNode.from_record(raw))
    return HierarchyBuilder(FetchResult(registry, ("R", "X"), USER)).build()


def test_snapshot_survives_json_roundtrip():
    hierarchy = _hierarchy()
    hierarchy.registry["A"].comments = [{"text": "not cached"}]
    snapshot = serialize(hierarchy.registry, hierarchy.root_ids, 1_790_000_000_000, SourceQuery("now"))

    restored = parse_payload(json.loads(json.dumps(snapshot.to_payload())))
    registry, root_ids = deserialize(restored)

    assert restored == snapshot
    assert root_ids == ["R", "P"]
    assert registry.ids() == hierarchy.registry.ids()
    assert registry["R"].children == ["A", "B"]
    assert registry["P"].is_placeholder
    assert registry["A"].completed_at == hierarchy.registry["A"].completed_at
    assert registry["A"].comments is None
    assert restored.query == SourceQuery("now")


@pytest.mark.parametrize(
    "payload",
    [
        None,
        [],
        {"rootIds": [], "entries": []},
        {"timestamp": True, "rootIds": [], "entries": []},
        {"timestamp": 1, "rootIds": "R", "entries": []},
        {"timestamp": 1, "rootIds": [], "entries": [["R"]]},
    ],
)
def test_malformed_payload_is_rejected(payload):
    with pytest.raises(MalformedRecord):
        parse_payload(payload)


def test_mismatched_entry_key_is_rejected():
    entry = TaskNode.from_record(record("R", assignee=USER)).to_entry()
    snapshot = CacheSnapshot(1, ("R",), (("other", entry),))

    with pytest.raises(MalformedRecord):
        deserialize(snapshot)


def test_file_store_roundtrip_and_clear(tmp_path):
    store = FileSnapshotStore(tmp_path / "cache")
    payload = {"timestamp": 5, "rootIds": ["R"], "entries": [], "query": {"completed_since": None}}

    assert store.load() is None
    store.save(payload)

    assert store.path.exists()
    assert store.load() == payload
    assert not list((tmp_path / "cache").glob("*.tmp"))

    store.clear()
    assert store.load() is None
    store.clear()


def test_file_store_enforces_quota(tmp_path):
    store = FileSnapshotStore(tmp_path, max_bytes=64)
    store.save({"timestamp": 1, "rootIds": [], "entries": []})

    with pytest.raises(QuotaExceeded):
        store.save({"timestamp": 2, "rootIds": ["x" * 100], "entries": []})

    assert store.load()["timestamp"] == 1


def test_file_store_ignores_corrupt_file(tmp_path):
    store = FileSnapshotStore(tmp_path)
    store.path.write_text("{not json", encoding="utf-8")

    assert store.load() is None


def test_file_store_rejects_path_like_keys(tmp_path):
    with pytest.raises(ValueError):
        FileSnapshotStore(tmp_path, key="../escape")

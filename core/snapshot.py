"""Serializable projection of a published Registry + RootSet.

Layout: {"timestamp": <int ms>, "rootIds": [...], "entries": [[id, entry], ...], "query": {...}}
Volatile per-node data (comments) is not part of the snapshot.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from .criteria import SourceQuery
from .errors import MalformedRecord
from .registry import Registry
from .task_node import TaskNode


@dataclass(frozen=True)
class CacheSnapshot:
    timestamp: int
    root_ids: Tuple[str, ...]
    entries: Tuple[Tuple[str, Dict[str, Any]], ...]
    query: SourceQuery = field(default_factory=SourceQuery)

    def age_ms(self, now_ms: int) -> int:
        return now_ms - self.timestamp

    def to_payload(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "rootIds": list(self.root_ids),
            "entries": [[node_id, dict(entry)] for node_id, entry in self.entries],
            "query": self.query.to_dict(),
        }


def serialize(registry: Registry, root_ids: List[str], timestamp: int, query: SourceQuery) -> CacheSnapshot:
    entries = tuple((node.id, node.to_entry()) for node in registry)
    return CacheSnapshot(int(timestamp), tuple(root_ids), entries, query)


def parse_payload(payload: Any) -> CacheSnapshot:
    if not isinstance(payload, dict):
        raise MalformedRecord("snapshot payload must be an object")
    timestamp = payload.get("timestamp")
    root_ids = payload.get("rootIds")
    entries = payload.get("entries")
    if not isinstance(timestamp, int) or isinstance(timestamp, bool):
        raise MalformedRecord("snapshot timestamp missing or not an integer")
    if not isinstance(root_ids, list) or not isinstance(entries, list):
        raise MalformedRecord("snapshot rootIds/entries must be lists")
    pairs: List[Tuple[str, Dict[str, Any]]] = []
    for item in entries:
        if not isinstance(item, (list, tuple)) or len(item) != 2 or not isinstance(item[1], dict):
            raise MalformedRecord(f"snapshot entry must be an [id, node] pair: {item!r}")
        pairs.append((str(item[0]), item[1]))
    return CacheSnapshot(timestamp, tuple(str(r) for r in root_ids), tuple(pairs), SourceQuery.from_dict(payload.get("query")))


def deserialize(snapshot: CacheSnapshot) -> Tuple[Registry, List[str]]:
    registry = Registry()
    for node_id, entry in snapshot.entries:
        node = TaskNode.from_entry(entry)
        if node.id != node_id:
            raise MalformedRecord(f"snapshot entry key {node_id!r} does not match node id {node.id!r}")
        if not registry.add(node):
            raise MalformedRecord(f"duplicate snapshot entry {node_id!r}")
    return registry, list(snapshot.root_ids)


__all__ = ["CacheSnapshot", "serialize", "parse_payload", "deserialize"]

"""Registry: the id -> TaskNode map owned by a single reconciliation pass.

Pure domain logic, no I/O. A Registry is populated by the fetch
orchestrator, reshaped by the hierarchy builder and then published; it is
never shared between two passes.
"""

from typing import Dict, Iterator, List, Optional, Set

from .errors import CycleDetected
from .task_node import TaskNode


class Registry:
    def __init__(self) -> None:
        self._nodes: Dict[str, TaskNode] = {}

    def add(self, node: TaskNode) -> bool:
        """Insert node unless its id is already present (first writer wins)."""
        if node.id in self._nodes:
            return False
        self._nodes[node.id] = node
        return True

    def get(self, node_id: Optional[str]) -> Optional[TaskNode]:
        if node_id is None:
            return None
        return self._nodes.get(node_id)

    def __getitem__(self, node_id: str) -> TaskNode:
        return self._nodes[node_id]

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[TaskNode]:
        return iter(list(self._nodes.values()))

    def ids(self) -> List[str]:
        return list(self._nodes.keys())

    def ancestors(self, node_id: str) -> List[TaskNode]:
        """Parents of node_id, nearest first, stopping at the first id not in the registry.

        Raises CycleDetected if the chain revisits a node.
        """
        chain: List[TaskNode] = []
        seen: Set[str] = {node_id}
        path: List[str] = [node_id]
        current = self._nodes.get(node_id)
        while current is not None and current.parent_id is not None:
            parent_id = current.parent_id
            path.append(parent_id)
            if parent_id in seen or len(seen) > len(self._nodes):
                raise CycleDetected(path)
            parent = self._nodes.get(parent_id)
            if parent is None:
                break
            seen.add(parent_id)
            chain.append(parent)
            current = parent
        return chain


__all__ = ["Registry"]

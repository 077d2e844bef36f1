"""Hierarchy synthesis from flat parent-pointer records.

Pure domain logic - receives a fully populated Registry (via FetchResult)
and reshapes it in place. Phases run strictly in order:
roots -> placeholders -> collapse -> dedupe.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Set, Tuple

from .criteria import SourceQuery
from .errors import CycleDetected, MalformedRecord
from .registry import Registry
from .task_node import CONTAINER_PARENT, TaskNode


PHASES = ("roots", "placeholders", "collapse", "dedupe")


@dataclass(frozen=True)
class FetchResult:
    """Output of a completed fetch pass; the only accepted Builder input."""

    registry: Registry
    assigned_ids: Tuple[str, ...]
    user_id: str
    query: SourceQuery = field(default_factory=SourceQuery)


@dataclass
class Hierarchy:
    registry: Registry
    root_ids: List[str]
    display_root_ids: List[str]

    @classmethod
    def from_snapshot(cls, registry: Registry, root_ids: List[str]) -> "Hierarchy":
        """Rebuild a published hierarchy from persisted entries (children already linked)."""
        roots = deduplicate(root_ids)
        hierarchy = cls(registry, roots, deduplicate(collapse_single_child_chains(registry, roots)))
        hierarchy.check_invariants()
        return hierarchy

    def is_root(self, node_id: str) -> bool:
        node = self.registry.get(node_id)
        if node is None:
            return False
        return node.parent_id is None or node.parent_id not in self.registry

    def check_invariants(self) -> None:
        """Raise if the registry/root pair is not publishable."""
        if len(set(self.root_ids)) != len(self.root_ids):
            raise MalformedRecord("duplicate ids in root set")
        missing = [rid for rid in self.root_ids if rid not in self.registry]
        if missing:
            raise MalformedRecord(f"root ids missing from registry: {missing}")
        root_set = set(self.root_ids)
        owners: Dict[str, str] = {}
        verified: Set[str] = set()
        for node in self.registry:
            ensure_acyclic(self.registry, node.id, verified)
            if self.is_root(node.id) != (node.id in root_set):
                raise MalformedRecord(f"root classification mismatch for {node.id}")
            for child_id in node.children:
                if child_id in owners and owners[child_id] != node.id:
                    raise MalformedRecord(f"{child_id} listed under {owners[child_id]} and {node.id}")
                owners[child_id] = node.id


def ensure_acyclic(registry: Registry, node_id: str, verified: Set[str]) -> None:
    """Walk parent links from node_id; raise CycleDetected on a loop.

    `verified` memoizes ids already known to reach a root, keeping the full
    scan linear in the registry size.
    """
    path: List[str] = []
    on_path: Set[str] = set()
    current = node_id
    while current is not None and current in registry and current not in verified:
        if current in on_path:
            raise CycleDetected(path + [current])
        on_path.add(current)
        path.append(current)
        current = registry[current].parent_id
    verified.update(on_path)


def collapse_single_child_chains(registry: Registry, root_ids: Iterable[str]) -> List[str]:
    """Replace single-child runs below each root with their deepest node.

    Skipped ancestors are recorded, in order, in that node's breadcrumb.
    Breadcrumbs are recomputed from scratch so repeated calls agree.
    """
    for node in registry:
        node.breadcrumb = []
    display: List[str] = []
    for root_id in root_ids:
        current = registry.get(root_id)
        if current is None:
            continue
        chain: List[TaskNode] = [current]
        visited: Set[str] = {current.id}
        while len(current.children) == 1:
            child = registry.get(current.children[0])
            if child is None:
                break
            if child.id in visited:
                raise CycleDetected([n.id for n in chain] + [child.id])
            visited.add(child.id)
            chain.append(child)
            current = child
        if len(chain) > 1:
            current.breadcrumb = [n.summary() for n in chain[:-1]]
        display.append(current.id)
    return display


def deduplicate(ids: Iterable[str]) -> List[str]:
    seen: Set[str] = set()
    result: List[str] = []
    for node_id in ids:
        if node_id in seen:
            continue
        seen.add(node_id)
        result.append(node_id)
    return result


class HierarchyBuilder:
    def __init__(self, fetch_result: FetchResult) -> None:
        if not isinstance(fetch_result, FetchResult):
            raise TypeError("HierarchyBuilder requires a FetchResult from a completed fetch pass")
        self.registry = fetch_result.registry
        self.root_ids: List[str] = []
        self.display_root_ids: List[str] = []
        self._root_set: Set[str] = set()
        self._phase = 0

    def _enter(self, phase: str) -> None:
        expected = PHASES[self._phase] if self._phase < len(PHASES) else None
        if phase != expected:
            raise RuntimeError(f"builder phase {phase!r} out of order (expected {expected!r})")

    def _advance(self) -> None:
        self._phase += 1

    def _add_root(self, node_id: str) -> None:
        if node_id not in self._root_set:
            self._root_set.add(node_id)
            self.root_ids.append(node_id)

    def determine_roots(self) -> List[str]:
        self._enter("roots")
        verified: Set[str] = set()
        for node in self.registry:
            node.children = []
        for node in self.registry:
            ensure_acyclic(self.registry, node.id, verified)
            if node.parent_id is None or node.parent_id not in self.registry:
                self._add_root(node.id)
                continue
            self.registry[node.parent_id].children.append(node.id)
        self._advance()
        return list(self.root_ids)

    def synthesize_placeholders(self) -> List[TaskNode]:
        """Group orphaned roots under a non-editable stand-in for their unfetched parent.

        Only roots whose record names the parent get a placeholder. Iterates the
        root list computed by determine_roots, never registry membership, since
        inserting a placeholder makes its id resolvable.
        """
        self._enter("placeholders")
        placeholders: Dict[str, TaskNode] = {}
        roots: List[str] = []
        for root_id in self.root_ids:
            node = self.registry[root_id]
            parent_ref = node.container(CONTAINER_PARENT)
            if node.parent_id is None or parent_ref is None or parent_ref.id != node.parent_id:
                roots.append(root_id)
                continue
            holder = placeholders.get(node.parent_id)
            if holder is None:
                holder = TaskNode(
                    id=node.parent_id,
                    name=parent_ref.name,
                    expanded=True,
                    is_placeholder=True,
                    container_refs=[ref for ref in node.container_refs if ref.kind != CONTAINER_PARENT],
                )
                placeholders[holder.id] = holder
                self.registry.add(holder)
                roots.append(holder.id)
            holder.children.append(root_id)
        self.root_ids = deduplicate(roots)
        self._root_set = set(self.root_ids)
        self._advance()
        return list(placeholders.values())

    def collapse_single_child_chains(self) -> List[str]:
        self._enter("collapse")
        self.display_root_ids = collapse_single_child_chains(self.registry, self.root_ids)
        self._advance()
        return list(self.display_root_ids)

    def deduplicate(self) -> None:
        self._enter("dedupe")
        self.root_ids = deduplicate(self.root_ids)
        self._root_set = set(self.root_ids)
        self.display_root_ids = deduplicate(self.display_root_ids)
        self._advance()

    def build(self) -> Hierarchy:
        self.determine_roots()
        self.synthesize_placeholders()
        self.collapse_single_child_chains()
        self.deduplicate()
        return Hierarchy(self.registry, list(self.root_ids), list(self.display_root_ids))


__all__ = [
    "FetchResult",
    "Hierarchy",
    "HierarchyBuilder",
    "collapse_single_child_chains",
    "deduplicate",
    "ensure_acyclic",
    "PHASES",
]

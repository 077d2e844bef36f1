"""Filter engine over a built hierarchy.

Pure and side-effect free: no network access, no cache mutation.
Evaluation order is fixed: scope -> completion -> date window.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set, Tuple

from .criteria import CompletionMode, DateWindow, FilterCriteria
from .errors import CycleDetected
from .hierarchy import Hierarchy
from .registry import Registry
from .task_node import AncestorSummary, TaskNode


@dataclass
class ViewRow:
    node: TaskNode
    depth: int = 0
    breadcrumb: List[AncestorSummary] = field(default_factory=list)


# a shown node with its kept, already filtered children
_Kept = Tuple[TaskNode, List[Any]]


def _own_completion(node: TaskNode, mode: CompletionMode) -> bool:
    if node.is_placeholder:
        return False
    if mode is CompletionMode.COMPLETE:
        return node.completed
    return not node.completed


def completion_index(registry: Registry, mode: CompletionMode) -> Dict[str, bool]:
    """match(n) = own(n) or any(match(c) for c in children), for every node.

    Single iterative post-order pass; each node is evaluated once.
    """
    memo: Dict[str, bool] = {}
    if mode is CompletionMode.BOTH:
        return {node.id: True for node in registry}
    for start in registry.ids():
        if start in memo:
            continue
        stack: List[tuple] = [(start, False)]
        on_stack: Set[str] = set()
        while stack:
            node_id, children_done = stack.pop()
            node = registry.get(node_id)
            if node is None:
                memo[node_id] = False
                continue
            if children_done:
                on_stack.discard(node_id)
                memo[node_id] = _own_completion(node, mode) or any(memo.get(c, False) for c in node.children)
                continue
            if node_id in memo:
                continue
            if node_id in on_stack:
                raise CycleDetected([node_id])
            on_stack.add(node_id)
            stack.append((node_id, True))
            for child_id in node.children:
                if child_id in on_stack:
                    raise CycleDetected([node_id, child_id])
                if child_id not in memo:
                    stack.append((child_id, False))
    return memo


def matches_completion(
    node: TaskNode,
    mode: CompletionMode,
    registry: Registry,
    memo: Optional[Dict[str, bool]] = None,
) -> bool:
    if mode is CompletionMode.BOTH:
        return True
    if memo is None:
        memo = completion_index(registry, mode)
    return memo.get(node.id, _own_completion(node, mode))


def matches_date_window(node: TaskNode, window: DateWindow, now: Optional[datetime] = None) -> bool:
    """Completed nodes must have completed_at inside the window; open nodes always pass."""
    if not node.completed:
        return True
    start, end = window.bounds(now or datetime.now(timezone.utc))
    if start is None and end is None:
        return True
    if node.completed_at is None:
        return False
    if start is not None and node.completed_at < start:
        return False
    if end is not None and node.completed_at > end:
        return False
    return True


def matches_scope(node: TaskNode, scope_id: Optional[str], registry: Registry) -> bool:
    if not scope_id:
        return True
    if node.id == scope_id:
        return True
    return any(ancestor.id == scope_id for ancestor in registry.ancestors(node.id))


def requires_refetch(old: Optional[FilterCriteria], new: FilterCriteria) -> bool:
    """Completion and window map to server-side query parameters; scope is display-only."""
    if old is None:
        return True
    return old.completion != new.completion or old.window != new.window


def filter_view(
    hierarchy: Hierarchy,
    criteria: FilterCriteria,
    now: Optional[datetime] = None,
) -> List[ViewRow]:
    """Render the hierarchy as ordered rows passing the criteria.

    Filtering runs over the structural tree from `root_ids`. A completion
    miss prunes the whole subtree (no descendant can match). Scope and
    date-window misses hide only the node; its kept descendants surface at
    the hidden node's depth. Single-child chains are collapsed afterwards,
    on the filtered forest, so a chain member that matches is never lost
    with a pruned leaf.
    """
    now = now or datetime.now(timezone.utc)
    registry = hierarchy.registry
    memo = completion_index(registry, criteria.completion)
    visited: Set[str] = set()

    def prune(node_id: str) -> List[_Kept]:
        node = registry.get(node_id)
        if node is None:
            return []
        if node_id in visited:
            raise CycleDetected([node_id])
        visited.add(node_id)
        in_scope = matches_scope(node, criteria.scope_id, registry)
        if not matches_completion(node, criteria.completion, registry, memo):
            return []
        kept: List[_Kept] = []
        for child_id in node.children:
            kept.extend(prune(child_id))
        if in_scope and matches_date_window(node, criteria.window, now):
            return [(node, kept)]
        return kept

    rows: List[ViewRow] = []

    def emit(entry: _Kept, depth: int, collapse: bool) -> None:
        node, kept = entry
        trail: List[AncestorSummary] = []
        while collapse and len(kept) == 1:
            trail.append(node.summary())
            node, kept = kept[0]
        rows.append(ViewRow(node, depth, trail))
        for child in kept:
            emit(child, depth + 1, False)

    forest: List[_Kept] = []
    for root_id in hierarchy.root_ids:
        forest.extend(prune(root_id))
    for entry in forest:
        emit(entry, 0, True)
    return rows


__all__ = [
    "ViewRow",
    "completion_index",
    "matches_completion",
    "matches_date_window",
    "matches_scope",
    "requires_refetch",
    "filter_view",
]

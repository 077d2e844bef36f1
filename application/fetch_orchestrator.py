"""Populate a fresh Registry with every task the current user may see.

Visibility rule for descendants: a child is included when it is assigned to
the current user, or when it is unassigned and its parent was assigned to
the current user. Children assigned to someone else are always hidden.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from application.ports import TaskSource
from core import FetchResult, Registry, SourceQuery, SourceUnavailable, StaleWrite, TaskNode

logger = logging.getLogger("taskscope.fetch")

DEFAULT_WORKERS = 4


class FetchOrchestrator:
    """Single-use fetch pass. Worker threads only perform I/O; every Registry
    write happens on the calling thread, in submission order."""

    def __init__(
        self,
        source: TaskSource,
        user_id: str,
        query: Optional[SourceQuery] = None,
        workers: int = DEFAULT_WORKERS,
        is_cancelled: Optional[Callable[[], bool]] = None,
        on_progress: Optional[Callable[[int, int], None]] = None,
    ) -> None:
        if not user_id:
            raise ValueError("user_id is required to evaluate visibility")
        self.source = source
        self.user_id = user_id
        self.query = query or SourceQuery()
        self.workers = max(1, int(workers or 1))
        self.registry = Registry()
        self.assigned_ids: List[str] = []
        self._is_cancelled = is_cancelled or (lambda: False)
        self._on_progress = on_progress
        self._consumed = False
        self.pages_fetched = 0
        self.subtree_requests = 0

    def _check_cancelled(self) -> None:
        if self._is_cancelled():
            raise StaleWrite("fetch pass superseded by a newer pass")

    def is_visible(self, node: TaskNode, ancestor_visible: bool) -> bool:
        if node.assignee_id == self.user_id:
            return True
        return node.assignee_id is None and ancestor_visible

    def fetch_assigned_roots(self) -> List[TaskNode]:
        """Follow continuation tokens until the source reports no further pages."""
        offset: Optional[str] = None
        seen_tokens: Set[str] = set()
        while True:
            self._check_cancelled()
            records, next_offset = self.source.list_assigned_page(self.query, offset)
            self.pages_fetched += 1
            for record in records or []:
                node = TaskNode.from_record(record)
                if self.registry.add(node):
                    self.assigned_ids.append(node.id)
            if not next_offset:
                break
            if next_offset in seen_tokens:
                raise SourceUnavailable(f"pagination did not advance (offset {next_offset!r} repeated)")
            seen_tokens.add(next_offset)
            offset = next_offset
        logger.info("Fetched %d assigned tasks in %d page(s)", len(self.assigned_ids), self.pages_fetched)
        return [self.registry[node_id] for node_id in self.assigned_ids]

    def fetch_visible_subtree(self, node_id: str, ancestor_visible: bool = True) -> None:
        """Fetch the visible descendants of node_id. No-op if already expanded."""
        node = self.registry.get(node_id)
        if node is None:
            raise KeyError(node_id)
        if node.expanded:
            return
        self._expand([(node_id, ancestor_visible)])

    def _absorb(self, node_id: str, ancestor_visible: bool, records: List[Any]) -> List[Tuple[str, bool]]:
        follow: List[Tuple[str, bool]] = []
        followed: Set[str] = set()
        for record in records or []:
            child = TaskNode.from_record(record)
            if child.parent_id is None:
                child.parent_id = node_id
            if not self.is_visible(child, ancestor_visible):
                continue
            self.registry.add(child)
            stored = self.registry[child.id]
            if not stored.expanded and stored.id not in followed:
                followed.add(stored.id)
                follow.append((stored.id, stored.assignee_id == self.user_id))
        return follow

    def _expand(self, frontier: List[Tuple[str, bool]]) -> None:
        """Breadth-first expansion of every visible subtree below `frontier`.

        A node is flagged `expanded` only once its own children and all of
        their subtrees were fetched; a failed pass leaves the flag unset on
        every node above the failure.
        """
        queued: Set[str] = set()
        pending: List[Tuple[str, bool]] = []
        waiting: Dict[str, int] = {}
        dependents: Dict[str, List[str]] = {}

        def enqueue(entries: List[Tuple[str, bool]]) -> None:
            for node_id, visible in entries:
                node = self.registry.get(node_id)
                if node is None or node.expanded or node_id in queued:
                    continue
                queued.add(node_id)
                pending.append((node_id, visible))

        def finish(node_id: str) -> None:
            stack = [node_id]
            while stack:
                current = stack.pop()
                self.registry[current].expanded = True
                for parent_id in dependents.pop(current, []):
                    waiting[parent_id] -= 1
                    if waiting[parent_id] == 0:
                        del waiting[parent_id]
                        stack.append(parent_id)

        enqueue(frontier)
        done = 0
        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            while pending:
                self._check_cancelled()
                batch = pending[: self.workers]
                del pending[: self.workers]
                futures = [executor.submit(self.source.list_subtasks, node_id, self.query) for node_id, _ in batch]
                self.subtree_requests += len(futures)
                try:
                    for (node_id, visible), future in zip(batch, futures):
                        follow = self._absorb(node_id, visible, future.result())
                        for child_id, _ in follow:
                            dependents.setdefault(child_id, []).append(node_id)
                        if follow:
                            waiting[node_id] = len(follow)
                        else:
                            finish(node_id)
                        enqueue(follow)
                except BaseException:
                    for future in futures:
                        future.cancel()
                    raise
                done += len(batch)
                if self._on_progress:
                    self._on_progress(done, done + len(pending))

    def run(self, on_roots_fetched: Optional[Callable[[int], None]] = None) -> FetchResult:
        """Full pass: every assigned root is expanded before the result exists."""
        if self._consumed:
            raise RuntimeError("FetchOrchestrator instances are single-use")
        self._consumed = True
        started = time.monotonic()
        self.fetch_assigned_roots()
        if on_roots_fetched:
            on_roots_fetched(len(self.assigned_ids))
        self._expand([(node_id, True) for node_id in self.assigned_ids])
        logger.info(
            "Fetch pass complete: %d visible tasks, %d subtree request(s), %.2fs",
            len(self.registry),
            self.subtree_requests,
            time.monotonic() - started,
        )
        return FetchResult(self.registry, tuple(self.assigned_ids), self.user_id, self.query)


def fetch_node(source: TaskSource, node_id: str) -> TaskNode:
    """Re-read a single task through the source's 'get single node' query."""
    return TaskNode.from_record(source.get_task(node_id))


__all__ = ["FetchOrchestrator", "fetch_node", "DEFAULT_WORKERS"]

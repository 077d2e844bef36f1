"""Cache store / sync controller: TTL lifecycle and stale-while-revalidate.

States: empty -> fresh (age <= TTL) -> stale (age > TTL) -> empty (evicted).

The published (hierarchy, snapshot, query) triple is replaced atomically
under a lock; readers take a reference and never see a partially built
Registry. Every pass carries the generation it started under and may only
publish while that generation is current, so a newer foreground pass
silently invalidates older passes.

Known race: a single-node mutation applied while a background pass is in
flight is lost when that pass publishes (last writer wins).
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from application.fetch_orchestrator import DEFAULT_WORKERS, FetchOrchestrator, fetch_node
from application.ports import MutableTaskSource, SnapshotStore
from core import (
    CacheSnapshot,
    CycleDetected,
    FilterCriteria,
    Hierarchy,
    HierarchyBuilder,
    MalformedRecord,
    QuotaExceeded,
    SourceQuery,
    SourceUnavailable,
    StaleWrite,
    TaskNode,
    ViewRow,
    filter_view,
    requires_refetch,
    source_query_for,
)
from core.hierarchy import collapse_single_child_chains, deduplicate
from core.snapshot import deserialize, parse_payload, serialize
from core.task_node import parse_timestamp

logger = logging.getLogger("taskscope.sync")

STATE_EMPTY = "empty"
STATE_FRESH = "fresh"
STATE_STALE = "stale"

DEFAULT_TTL_SECONDS = 24 * 60 * 60
DEFAULT_BACKGROUND_DELAY = 1.0

PHASE_FETCH = "fetch"
PHASE_EXPAND = "expand"
PHASE_BUILD = "build"
PHASE_PERSIST = "persist"

EDITABLE_FIELDS = ("name", "completed", "completed_at", "due_at")
CREATE_FIELDS = ("parent_id", "assignee_id")


@dataclass(frozen=True)
class PublishedState:
    hierarchy: Hierarchy
    snapshot: CacheSnapshot
    query: SourceQuery


class SyncController:
    def __init__(
        self,
        source: MutableTaskSource,
        store: SnapshotStore,
        user_id: str,
        *,
        criteria: Optional[FilterCriteria] = None,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        background_delay: float = DEFAULT_BACKGROUND_DELAY,
        workers: int = DEFAULT_WORKERS,
        clock: Callable[[], float] = time.time,
        on_phase: Optional[Callable[[str, int], None]] = None,
        on_reconciled: Optional[Callable[[], None]] = None,
        on_reconcile_failed: Optional[Callable[[str], None]] = None,
        on_warning: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.source = source
        self.store = store
        self.user_id = user_id
        self.criteria = criteria or FilterCriteria()
        self.ttl_seconds = float(ttl_seconds)
        self.background_delay = float(background_delay)
        self.workers = workers
        self.clock = clock
        self.on_phase = on_phase
        self.on_reconciled = on_reconciled
        self.on_reconcile_failed = on_reconcile_failed
        self.on_warning = on_warning
        self._lock = threading.RLock()
        self._published: Optional[PublishedState] = None
        self._generation = 0
        self._last_timestamp = 0
        self._background_in_flight = False
        self._foreground_active = 0
        self._background_timer: Optional[threading.Timer] = None
        self.last_error: Optional[str] = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def published(self) -> Optional[PublishedState]:
        return self._published

    @property
    def background_in_flight(self) -> bool:
        return self._background_in_flight

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc)

    def current_query(self) -> SourceQuery:
        return source_query_for(self.criteria, self._now())

    def classify(self, snapshot: Optional[CacheSnapshot]) -> str:
        if snapshot is None:
            return STATE_EMPTY
        if snapshot.age_ms(self._now_ms()) > self.ttl_seconds * 1000:
            return STATE_STALE
        return STATE_FRESH

    def state(self) -> str:
        state = self._published
        return self.classify(state.snapshot if state else None)

    def status(self) -> Dict[str, Any]:
        state = self._published
        return {
            "state": self.state(),
            "published_at": state.snapshot.timestamp if state else None,
            "tasks": len(state.hierarchy.registry) if state else 0,
            "background_in_flight": self._background_in_flight,
            "last_error": self.last_error,
        }

    def cached_status(self) -> Dict[str, Any]:
        """Status of the persisted snapshot, without touching the network."""
        snapshot = self._read_snapshot()
        return {
            "state": self.classify(snapshot),
            "published_at": snapshot.timestamp if snapshot else None,
            "tasks": len(snapshot.entries) if snapshot else 0,
            "background_in_flight": False,
            "last_error": None,
        }

    def _next_timestamp(self) -> int:
        self._last_timestamp = max(self._now_ms(), self._last_timestamp + 1)
        return self._last_timestamp

    def _report(self, phase: str, percent: int) -> None:
        logger.debug("phase %s %d%%", phase, percent)
        if self.on_phase:
            self.on_phase(phase, percent)

    # ------------------------------------------------------------------
    # Load / hydrate
    # ------------------------------------------------------------------

    def _read_snapshot(self) -> Optional[CacheSnapshot]:
        payload = self.store.load()
        if payload is None:
            return None
        try:
            return parse_payload(payload)
        except MalformedRecord as exc:
            logger.warning("Discarding unreadable cache snapshot: %s", exc)
            return None

    def _hydrate(self, snapshot: CacheSnapshot) -> PublishedState:
        registry, root_ids = deserialize(snapshot)
        hierarchy = Hierarchy.from_snapshot(registry, root_ids)
        state = PublishedState(hierarchy, snapshot, snapshot.query)
        with self._lock:
            self._published = state
            self._last_timestamp = max(self._last_timestamp, snapshot.timestamp)
        return state

    def evict(self) -> None:
        self.store.clear()

    def load(self) -> str:
        """Serve a fresh snapshot immediately, otherwise reconcile in the foreground.

        Returns the cache state observed on load.
        """
        snapshot = self._read_snapshot()
        state = self.classify(snapshot)
        if state == STATE_FRESH and snapshot.query != self.current_query():
            logger.info("Cached snapshot was built for a different query; reloading")
            state = STATE_STALE
        if state == STATE_FRESH:
            try:
                self._hydrate(snapshot)
            except CycleDetected as exc:
                logger.error("Cached snapshot contains a cycle, evicting: %s", exc)
                state = STATE_STALE
            except MalformedRecord as exc:
                logger.warning("Cached snapshot failed validation, evicting: %s", exc)
                state = STATE_STALE
            else:
                logger.info("Serving cached hierarchy (%d tasks); scheduling refresh", len(snapshot.entries))
                self.request_background_refresh()
                return STATE_FRESH
        if snapshot is not None:
            self.evict()
        self.request_foreground_reload()
        return state

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def _reconcile(self, generation: int, query: SourceQuery, report: Callable[[str, int], None]) -> PublishedState:
        def is_cancelled() -> bool:
            return self._generation != generation

        reached = [40]

        def on_progress(done: int, total: int) -> None:
            # newly discovered subtrees grow the total; never report going backwards
            reached[0] = max(reached[0], 40 + (30 * done) // max(total, 1))
            report(PHASE_EXPAND, reached[0])

        def on_roots_fetched(count: int) -> None:
            report(PHASE_FETCH, 30)
            report(PHASE_EXPAND, 40)

        report(PHASE_FETCH, 0)
        orchestrator = FetchOrchestrator(
            self.source,
            self.user_id,
            query,
            workers=self.workers,
            is_cancelled=is_cancelled,
            on_progress=on_progress,
        )
        result = orchestrator.run(on_roots_fetched=on_roots_fetched)
        report(PHASE_EXPAND, 70)
        if is_cancelled():
            raise StaleWrite("reconciliation superseded before build")
        report(PHASE_BUILD, 70)
        hierarchy = HierarchyBuilder(result).build()
        hierarchy.check_invariants()
        report(PHASE_BUILD, 90)
        report(PHASE_PERSIST, 90)
        state = self._publish(hierarchy, query, generation)
        report(PHASE_PERSIST, 100)
        return state

    def _publish(self, hierarchy: Hierarchy, query: SourceQuery, generation: int) -> PublishedState:
        with self._lock:
            if generation != self._generation:
                raise StaleWrite("a newer pass superseded this one")
            snapshot = serialize(hierarchy.registry, hierarchy.root_ids, self._next_timestamp(), query)
            state = PublishedState(hierarchy, snapshot, query)
            self._published = state
            self.last_error = None
            self._persist(snapshot)
        logger.info("Published hierarchy: %d tasks, %d roots", len(hierarchy.registry), len(hierarchy.root_ids))
        return state

    def _persist(self, snapshot: CacheSnapshot) -> None:
        try:
            self.store.save(snapshot.to_payload())
        except QuotaExceeded as exc:
            logger.warning("Snapshot not persisted, keeping in-memory state: %s", exc)
            if self.on_warning:
                self.on_warning(str(exc))

    def request_foreground_reload(self) -> Optional[PublishedState]:
        """Run a full pass now. Supersedes any in-flight pass; failures propagate."""
        with self._lock:
            self._generation += 1
            generation = self._generation
            self._foreground_active += 1
        try:
            state = self._reconcile(generation, self.current_query(), self._report)
        except StaleWrite:
            logger.info("Foreground reload superseded by a newer pass")
            return self._published
        except CycleDetected as exc:
            self.last_error = str(exc)
            logger.error("Hierarchy integrity violation: %s", exc)
            raise
        except Exception as exc:
            self.last_error = str(exc)
            logger.warning("Foreground reload failed: %s", exc)
            raise
        finally:
            with self._lock:
                self._foreground_active -= 1
        if self.on_reconciled:
            self.on_reconciled()
        return state

    def request_background_refresh(self, delay: Optional[float] = None) -> Optional[threading.Timer]:
        """Schedule a background pass; returns None while any pass is running."""
        with self._lock:
            if self._background_in_flight:
                logger.debug("Background refresh already in flight")
                return None
            if self._foreground_active:
                logger.debug("Foreground reload in flight; background refresh skipped")
                return None
            self._background_in_flight = True
            generation = self._generation
        wait = self.background_delay if delay is None else delay
        timer = threading.Timer(max(0.0, float(wait)), self._run_background, args=(generation,))
        timer.daemon = True
        self._background_timer = timer
        try:
            timer.start()
        except RuntimeError:
            self._run_background(generation)
        return timer

    def wait_for_background(self, timeout: Optional[float] = None) -> bool:
        """Block until the scheduled background pass finishes; False on timeout."""
        timer = self._background_timer
        if timer is None or not timer.is_alive():
            return True
        timer.join(timeout)
        return not timer.is_alive()

    def _run_background(self, generation: int) -> None:
        try:
            self._reconcile(generation, self.current_query(), lambda phase, percent: None)
        except StaleWrite:
            logger.info("Background reconciliation superseded; result discarded")
        except CycleDetected as exc:
            logger.error("Hierarchy integrity violation during background refresh: %s", exc)
            self._fail(exc)
        except (SourceUnavailable, MalformedRecord) as exc:
            logger.warning("Background reconciliation failed, keeping published state: %s", exc)
            self._fail(exc)
        except Exception as exc:
            logger.exception("Unexpected background reconciliation failure")
            self._fail(exc)
        else:
            if self.on_reconciled:
                self.on_reconciled()
        finally:
            with self._lock:
                self._background_in_flight = False

    def _fail(self, exc: Exception) -> None:
        self.last_error = f"{type(exc).__name__}: {exc}"
        if self.on_reconcile_failed:
            self.on_reconcile_failed(self.last_error)

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    def get_published_view(self, criteria: Optional[FilterCriteria] = None, now: Optional[datetime] = None) -> List[ViewRow]:
        """Filtered rows of the published hierarchy.

        Completion or window changes alter the server-side query and trigger a
        foreground reload; scope changes are applied locally.
        """
        criteria = criteria or self.criteria
        refetch = requires_refetch(self.criteria, criteria) or self._published is None
        self.criteria = criteria
        if refetch:
            self.request_foreground_reload()
        state = self._published
        if state is None:
            return []
        return filter_view(state.hierarchy, criteria, now or self._now())

    # ------------------------------------------------------------------
    # Mutation-through
    # ------------------------------------------------------------------

    def apply_local_mutation(self, node_id: str, patch: Dict[str, Any]) -> TaskNode:
        """Edit one published node in place and rewrite the snapshot.

        An unknown node_id together with a known `parent_id` creates a subtask.
        """
        unknown = set(patch) - set(EDITABLE_FIELDS) - set(CREATE_FIELDS)
        if unknown:
            raise ValueError(f"Unsupported fields in patch: {sorted(unknown)}")
        with self._lock:
            state = self._published
            if state is None:
                raise RuntimeError("no published hierarchy to mutate")
            hierarchy = state.hierarchy
            registry = hierarchy.registry
            node = registry.get(node_id)
            if node is None:
                parent = registry.get(patch.get("parent_id"))
                if parent is None:
                    raise KeyError(node_id)
                if parent.is_placeholder:
                    raise ValueError(f"{parent.id} is a placeholder and cannot take subtasks")
                node = TaskNode(id=node_id, parent_id=parent.id, assignee_id=patch.get("assignee_id"), expanded=True)
                registry.add(node)
                parent.children.append(node.id)
                hierarchy.display_root_ids = deduplicate(collapse_single_child_chains(registry, hierarchy.root_ids))
            else:
                if node.is_placeholder:
                    raise ValueError(f"{node_id} is a placeholder and is read-only")
                if "parent_id" in patch and patch["parent_id"] != node.parent_id:
                    raise ValueError("re-parenting requires a full reconciliation")
            if "name" in patch:
                node.name = str(patch["name"] or "")
            if "completed" in patch:
                completed = bool(patch["completed"])
                if completed and not node.completed:
                    node.completed_at = self._now()
                elif not completed:
                    node.completed_at = None
                node.completed = completed
            if "completed_at" in patch:
                node.completed_at = parse_timestamp(patch["completed_at"])
            if "due_at" in patch:
                node.due_at = parse_timestamp(patch["due_at"])
            snapshot = serialize(registry, hierarchy.root_ids, self._next_timestamp(), state.query)
            self._published = PublishedState(hierarchy, snapshot, state.query)
            self._persist(snapshot)
        return node

    def commit_mutation(self, node_id: str, patch: Dict[str, Any]) -> TaskNode:
        """Push an edit to the remote service, then apply it locally."""
        fields: Dict[str, Any] = {}
        if "name" in patch:
            fields["name"] = patch["name"]
        if "completed" in patch:
            fields["completed"] = bool(patch["completed"])
        if "due_at" in patch:
            due = parse_timestamp(patch["due_at"])
            fields["due_at"] = due.isoformat() if due else None
        if fields:
            self.source.update_task(node_id, fields)
        return self.apply_local_mutation(node_id, patch)

    def create_subtask(self, parent_id: str, name: str) -> TaskNode:
        record = self.source.create_subtask(parent_id, name, self.user_id)
        created = TaskNode.from_record(record)
        return self.apply_local_mutation(
            created.id,
            {"parent_id": parent_id, "assignee_id": created.assignee_id, "name": created.name or name},
        )

    def refresh_node(self, node_id: str) -> TaskNode:
        """Re-read one task from the source and apply its editable fields."""
        fresh = fetch_node(self.source, node_id)
        patch: Dict[str, Any] = {"name": fresh.name, "completed": fresh.completed, "due_at": fresh.due_at}
        if fresh.completed_at is not None:
            patch["completed_at"] = fresh.completed_at
        return self.apply_local_mutation(node_id, patch)

    # ------------------------------------------------------------------
    # Comments (volatile, never persisted)
    # ------------------------------------------------------------------

    def comments(self, node_id: str, refresh: bool = False) -> List[Dict[str, Any]]:
        state = self._published
        node = state.hierarchy.registry.get(node_id) if state else None
        if node is None:
            raise KeyError(node_id)
        if node.comments is None or refresh:
            node.comments = list(self.source.list_comments(node_id))
        return list(node.comments)

    def add_comment(self, node_id: str, text: str) -> Dict[str, Any]:
        created = self.source.add_comment(node_id, text)
        state = self._published
        node = state.hierarchy.registry.get(node_id) if state else None
        if node is not None:
            node.comments = None
        return created


__all__ = [
    "SyncController",
    "PublishedState",
    "STATE_EMPTY",
    "STATE_FRESH",
    "STATE_STALE",
    "DEFAULT_TTL_SECONDS",
    "PHASE_FETCH",
    "PHASE_EXPAND",
    "PHASE_BUILD",
    "PHASE_PERSIST",
]

import pytest

from application.fetch_orchestrator import FetchOrchestrator, fetch_node
from core import FetchResult, SourceQuery, SourceUnavailable, StaleWrite
from fakes import OTHER, USER, FakeTaskSource, record


def _tree():
    return [
        record("R", assignee=USER),
        record("A", parent="R", assignee=USER),
        record("B", parent="R"),
        record("C", parent="R", assignee=OTHER),
        record("A1", parent="A"),
        record("B1", parent="B"),
        record("C1", parent="C", assignee=USER),
        record("S", assignee=USER),
    ]


def test_follows_pagination_until_exhausted():
    source = FakeTaskSource(_tree(), page_size=2)
    orchestrator = FetchOrchestrator(source, USER, query=SourceQuery("now"))

    roots = orchestrator.fetch_assigned_roots()

    assert [n.id for n in roots] == ["R", "A", "C1", "S"]
    assert source.page_calls == [None, "2"]
    assert orchestrator.pages_fetched == 2
    assert all(q == SourceQuery("now") for q in source.queries)


def test_visibility_rule_for_descendants():
    source = FakeTaskSource(_tree())

    result = FetchOrchestrator(source, USER).run()

    assert isinstance(result, FetchResult)
    ids = set(result.registry.ids())
    # unassigned child of an assigned parent is visible, its own unassigned child is not
    assert {"R", "A", "B", "A1", "C1", "S"} == ids
    assert "C" not in ids
    assert "B1" not in ids
    assert result.assigned_ids == ("R", "A", "C1", "S")
    assert all(result.registry[node_id].expanded for node_id in ("R", "A", "A1", "S"))


def test_missing_parent_pointer_is_filled_from_request():
    source = FakeTaskSource([record("R", assignee=USER)])
    orig = source.list_subtasks

    def subtasks_without_parent(task_id, query=None):
        rows = orig(task_id, query)
        if task_id == "R":
            rows = [dict(record("K"), parent=None)]
        return rows

    source.list_subtasks = subtasks_without_parent

    result = FetchOrchestrator(source, USER).run()

    assert result.registry["K"].parent_id == "R"


def test_expand_is_idempotent():
    source = FakeTaskSource(_tree())
    orchestrator = FetchOrchestrator(source, USER)
    orchestrator.fetch_assigned_roots()

    orchestrator.fetch_visible_subtree("R")
    calls = list(source.subtask_calls)
    orchestrator.fetch_visible_subtree("R")

    assert source.subtask_calls == calls
    assert "R" in calls


def test_expand_unknown_node_raises():
    orchestrator = FetchOrchestrator(FakeTaskSource([]), USER)
    with pytest.raises(KeyError):
        orchestrator.fetch_visible_subtree("nope")


def test_subtree_failure_aborts_pass():
    source = FakeTaskSource(_tree())
    source.fail_subtasks_for = {"A"}

    with pytest.raises(SourceUnavailable):
        FetchOrchestrator(source, USER).run()


def test_failed_descendant_leaves_ancestors_unexpanded():
    source = FakeTaskSource([record("R", assignee=USER), record("A", parent="R"), record("A1", parent="A")])
    source.fail_subtasks_for = {"A"}
    orchestrator = FetchOrchestrator(source, USER)

    with pytest.raises(SourceUnavailable):
        orchestrator.run()

    assert orchestrator.registry["R"].expanded is False
    assert orchestrator.registry["A"].expanded is False

    source.fail_subtasks_for = set()
    orchestrator.fetch_visible_subtree("R")

    assert "A1" in orchestrator.registry
    assert all(orchestrator.registry[node_id].expanded for node_id in ("R", "A", "A1"))


def test_finished_sibling_subtree_stays_expanded_after_failure():
    source = FakeTaskSource(
        [
            record("R", assignee=USER),
            record("A", parent="R"),
            record("B", parent="R", assignee=USER),
            record("B1", parent="B"),
        ]
    )
    source.fail_subtasks_for = {"B1"}
    orchestrator = FetchOrchestrator(source, USER, workers=1)

    with pytest.raises(SourceUnavailable):
        orchestrator.run()

    assert orchestrator.registry["A"].expanded is True
    assert orchestrator.registry["B"].expanded is False
    assert orchestrator.registry["R"].expanded is False


def test_page_failure_aborts_pass():
    source = FakeTaskSource(_tree())
    source.fail_pages = True

    with pytest.raises(SourceUnavailable):
        FetchOrchestrator(source, USER).run()


def test_repeated_continuation_token_is_rejected():
    class LoopingSource(FakeTaskSource):
        def list_assigned_page(self, query, offset=None):
            return [record("R", assignee=USER)], "same"

    with pytest.raises(SourceUnavailable):
        FetchOrchestrator(LoopingSource([]), USER).fetch_assigned_roots()


def test_cancelled_pass_raises_stale_write():
    source = FakeTaskSource(_tree())

    with pytest.raises(StaleWrite):
        FetchOrchestrator(source, USER, is_cancelled=lambda: True).run()

    assert source.page_calls == []


def test_cancellation_between_batches_stops_expansion():
    source = FakeTaskSource(_tree())
    state = {"roots_done": False}

    def cancelled():
        return state["roots_done"]

    orchestrator = FetchOrchestrator(source, USER, is_cancelled=cancelled)
    with pytest.raises(StaleWrite):
        orchestrator.run(on_roots_fetched=lambda count: state.update(roots_done=True))

    assert source.subtask_calls == []


def test_single_worker_matches_parallel_result():
    serial = FetchOrchestrator(FakeTaskSource(_tree()), USER, workers=1).run()
    parallel = FetchOrchestrator(FakeTaskSource(_tree()), USER, workers=8).run()

    assert serial.registry.ids() == parallel.registry.ids()
    for node_id in serial.registry.ids():
        assert serial.registry[node_id].parent_id == parallel.registry[node_id].parent_id


def test_progress_reaches_total_and_run_is_single_use():
    progress = []
    orchestrator = FetchOrchestrator(FakeTaskSource(_tree()), USER, on_progress=lambda d, t: progress.append((d, t)))
    roots_seen = []

    orchestrator.run(on_roots_fetched=roots_seen.append)

    assert roots_seen == [4]
    assert progress
    assert progress[-1][0] == progress[-1][1]
    with pytest.raises(RuntimeError):
        orchestrator.run()


def test_user_id_is_required():
    with pytest.raises(ValueError):
        FetchOrchestrator(FakeTaskSource([]), "")


def test_fetch_node_reads_single_task():
    source = FakeTaskSource(_tree())
    node = fetch_node(source, "A1")
    assert node.parent_id == "A"

"""In-memory task service used across the sync tests."""

import threading
from typing import Any, Dict, List, Optional, Tuple

from core import SourceQuery
from core.errors import SourceUnavailable

USER = "u-me"
OTHER = "u-other"


def record(gid, parent=None, assignee=None, completed=False, completed_at=None, name=None, parent_name=None, project=None):
    data: Dict[str, Any] = {
        "gid": gid,
        "name": name or f"Task {gid}",
        "parent": None,
        "assignee": {"gid": assignee} if assignee else None,
        "completed": completed,
        "completed_at": completed_at,
        "due_on": None,
        "memberships": [],
    }
    if parent:
        data["parent"] = {"gid": parent, "name": parent_name} if parent_name else {"gid": parent}
    if project:
        data["memberships"] = [{"project": {"gid": project, "name": f"Project {project}"}}]
    return data


class FakeTaskSource:
    """Assigned listing is paginated by `page_size`; subtasks are derived from parent links."""

    def __init__(self, tasks: List[Dict[str, Any]], user: str = USER, page_size: int = 2) -> None:
        self.tasks = {t["gid"]: t for t in tasks}
        self.user = user
        self.page_size = page_size
        self.page_calls: List[Optional[str]] = []
        self.subtask_calls: List[str] = []
        self.queries: List[SourceQuery] = []
        self.fail_subtasks_for: set = set()
        self.fail_pages = False
        self.updates: List[Tuple[str, Dict[str, Any]]] = []
        self.comments: Dict[str, List[Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def _assigned(self) -> List[Dict[str, Any]]:
        return [t for t in self.tasks.values() if (t.get("assignee") or {}).get("gid") == self.user]

    def list_assigned_page(self, query: SourceQuery, offset: Optional[str] = None):
        with self._lock:
            self.page_calls.append(offset)
            self.queries.append(query)
        if self.fail_pages:
            raise SourceUnavailable("HTTP 503")
        assigned = self._assigned()
        start = int(offset or 0)
        page = assigned[start : start + self.page_size]
        nxt = start + self.page_size
        return [dict(t) for t in page], (str(nxt) if nxt < len(assigned) else None)

    def list_subtasks(self, task_id: str, query: Optional[SourceQuery] = None):
        with self._lock:
            self.subtask_calls.append(task_id)
        if task_id in self.fail_subtasks_for:
            raise SourceUnavailable(f"subtasks of {task_id} unavailable")
        return [dict(t) for t in self.tasks.values() if (t.get("parent") or {}).get("gid") == task_id]

    def get_task(self, task_id: str) -> Dict[str, Any]:
        return dict(self.tasks[task_id])

    def update_task(self, task_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        self.updates.append((task_id, dict(fields)))
        self.tasks[task_id].update(fields)
        return dict(self.tasks[task_id])

    def create_subtask(self, parent_id: str, name: str, assignee_id: Optional[str] = None) -> Dict[str, Any]:
        gid = f"new-{len(self.tasks) + 1}"
        created = record(gid, parent=parent_id, assignee=assignee_id, name=name)
        self.tasks[gid] = created
        return dict(created)

    def list_comments(self, task_id: str) -> List[Dict[str, Any]]:
        return list(self.comments.get(task_id, []))

    def add_comment(self, task_id: str, text: str) -> Dict[str, Any]:
        comment = {"gid": f"c-{task_id}-{len(self.comments.get(task_id, []))}", "type": "comment", "text": text}
        self.comments.setdefault(task_id, []).append(comment)
        return comment


class MemoryStore:
    def __init__(self, payload: Optional[Dict[str, Any]] = None, fail_with: Optional[Exception] = None) -> None:
        self.payload = payload
        self.fail_with = fail_with
        self.saves: List[Dict[str, Any]] = []
        self.cleared = 0

    def load(self):
        return self.payload

    def save(self, payload):
        if self.fail_with is not None:
            raise self.fail_with
        self.saves.append(payload)
        self.payload = payload

    def clear(self):
        self.cleared += 1
        self.payload = None

from typing import Any, Dict, List, Optional, Tuple

from core import SourceQuery
from core.errors import SourceUnavailable

from .api_client import ApiClient

TASK_FIELDS = ",".join(
    [
        "gid",
        "name",
        "parent",
        "parent.name",
        "assignee",
        "completed",
        "completed_at",
        "due_on",
        "due_at",
        "memberships.project.name",
        "memberships.section.name",
        "permalink_url",
    ]
)
COMMENT_FIELDS = "gid,type,text,created_at,created_by.name"
DEFAULT_PAGE_SIZE = 100


class RemoteTaskSource:
    """Task service reads and writes over the paginated REST API.

    List endpoints answer {"data": [...], "next_page": {"offset": ...} | null}.
    """

    def __init__(self, client: ApiClient, workspace_id: str, user_id: str, page_size: int = DEFAULT_PAGE_SIZE) -> None:
        self.client = client
        self.workspace_id = workspace_id
        self.user_id = user_id
        self.page_size = page_size

    @staticmethod
    def _page(body: Dict[str, Any]) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        data = body.get("data")
        if not isinstance(data, list):
            raise SourceUnavailable("list response without a data array")
        next_page = body.get("next_page") or {}
        offset = next_page.get("offset") if isinstance(next_page, dict) else None
        return data, (str(offset) if offset else None)

    def list_assigned_page(
        self, query: SourceQuery, offset: Optional[str] = None
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        params: Dict[str, Any] = {
            "assignee": self.user_id,
            "workspace": self.workspace_id,
            "limit": self.page_size,
            "opt_fields": TASK_FIELDS,
        }
        params.update(query.params())
        if offset:
            params["offset"] = offset
        return self._page(self.client.get("tasks", params))

    def list_subtasks(self, task_id: str, query: Optional[SourceQuery] = None) -> List[Dict[str, Any]]:
        records: List[Dict[str, Any]] = []
        offset: Optional[str] = None
        while True:
            params: Dict[str, Any] = {"limit": self.page_size, "opt_fields": TASK_FIELDS}
            if offset:
                params["offset"] = offset
            page, next_offset = self._page(self.client.get(f"tasks/{task_id}/subtasks", params))
            records.extend(page)
            if not next_offset or next_offset == offset:
                return records
            offset = next_offset

    def get_task(self, task_id: str) -> Dict[str, Any]:
        body = self.client.get(f"tasks/{task_id}", {"opt_fields": TASK_FIELDS})
        data = body.get("data")
        if not isinstance(data, dict):
            raise SourceUnavailable(f"task {task_id}: response without data object")
        return data

    def update_task(self, task_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        return self.client.put(f"tasks/{task_id}", fields).get("data") or {}

    def create_subtask(self, parent_id: str, name: str, assignee_id: Optional[str] = None) -> Dict[str, Any]:
        data: Dict[str, Any] = {"name": name}
        if assignee_id:
            data["assignee"] = assignee_id
        created = self.client.post(f"tasks/{parent_id}/subtasks", data).get("data") or {}
        created.setdefault("parent", {"gid": parent_id})
        created.setdefault("completed", False)
        return created

    def list_comments(self, task_id: str) -> List[Dict[str, Any]]:
        body = self.client.get(f"tasks/{task_id}/stories", {"opt_fields": COMMENT_FIELDS})
        stories, _ = self._page(body)
        return [story for story in stories if story.get("type") == "comment"]

    def add_comment(self, task_id: str, text: str) -> Dict[str, Any]:
        return self.client.post(f"tasks/{task_id}/stories", {"text": text}).get("data") or {}

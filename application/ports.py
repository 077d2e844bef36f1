from typing import Any, Dict, List, Optional, Protocol, Tuple

from core import SourceQuery


class TaskSource(Protocol):
    def list_assigned_page(self, query: SourceQuery, offset: Optional[str] = None) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        ...

    def list_subtasks(self, task_id: str, query: SourceQuery) -> List[Dict[str, Any]]:
        ...

    def get_task(self, task_id: str) -> Dict[str, Any]:
        ...


class MutableTaskSource(TaskSource, Protocol):
    def update_task(self, task_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        ...

    def create_subtask(self, parent_id: str, name: str, assignee_id: Optional[str] = None) -> Dict[str, Any]:
        ...

    def list_comments(self, task_id: str) -> List[Dict[str, Any]]:
        ...

    def add_comment(self, task_id: str, text: str) -> Dict[str, Any]:
        ...


class SnapshotStore(Protocol):
    def load(self) -> Optional[Dict[str, Any]]:
        ...

    def save(self, payload: Dict[str, Any]) -> None:
        ...

    def clear(self) -> None:
        ...

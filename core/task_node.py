from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .errors import MalformedRecord


CONTAINER_PARENT = "parent"
CONTAINER_PROJECT = "project"
CONTAINER_SECTION = "section"


@dataclass(frozen=True)
class ContainerRef:
    kind: str  # parent | project | section
    id: str
    name: str = ""


@dataclass(frozen=True)
class AncestorSummary:
    id: str
    name: str = ""


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse API timestamps (ISO 8601, trailing Z) and YYYY-MM-DD dates as aware UTC datetimes."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        if "T" in text:
            parsed = datetime.fromisoformat(text)
        else:
            parsed = datetime.strptime(text, "%Y-%m-%d")
    except ValueError as exc:
        raise MalformedRecord(f"invalid timestamp: {value!r}") from exc
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _ref_gid(ref: Any) -> Optional[str]:
    if ref is None:
        return None
    if isinstance(ref, dict):
        gid = ref.get("gid")
        return str(gid) if gid else None
    return str(ref) or None


@dataclass
class TaskNode:
    id: str
    name: str = ""
    parent_id: Optional[str] = None
    assignee_id: Optional[str] = None
    completed: bool = False
    completed_at: Optional[datetime] = None
    due_at: Optional[datetime] = None
    container_refs: List[ContainerRef] = field(default_factory=list)
    children: List[str] = field(default_factory=list)  # Builder-owned
    expanded: bool = False
    is_placeholder: bool = False
    breadcrumb: List[AncestorSummary] = field(default_factory=list)  # set by chain collapsing only
    permalink: str = ""
    comments: Optional[List[Dict[str, Any]]] = None  # volatile, never persisted

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "TaskNode":
        """Build a node from one remote task record.

        Raises MalformedRecord when the identifier or completion flag is missing.
        """
        if not isinstance(record, dict):
            raise MalformedRecord(f"task record must be an object, got {type(record).__name__}")
        gid = record.get("gid")
        if not gid:
            raise MalformedRecord(f"task record without gid: {record!r}")
        completed = record.get("completed")
        if not isinstance(completed, bool):
            raise MalformedRecord(f"task {gid}: 'completed' missing or not a boolean")

        parent = record.get("parent")
        refs: List[ContainerRef] = []
        parent_id = _ref_gid(parent)
        if parent_id and isinstance(parent, dict) and parent.get("name"):
            refs.append(ContainerRef(CONTAINER_PARENT, parent_id, str(parent["name"])))
        for membership in record.get("memberships") or []:
            if not isinstance(membership, dict):
                continue
            project = membership.get("project")
            if isinstance(project, dict) and project.get("gid"):
                refs.append(ContainerRef(CONTAINER_PROJECT, str(project["gid"]), str(project.get("name") or "")))
            section = membership.get("section")
            if isinstance(section, dict) and section.get("gid"):
                refs.append(ContainerRef(CONTAINER_SECTION, str(section["gid"]), str(section.get("name") or "")))

        due = record.get("due_at") or record.get("due_on")
        return cls(
            id=str(gid),
            name=str(record.get("name") or ""),
            parent_id=parent_id,
            assignee_id=_ref_gid(record.get("assignee")),
            completed=completed,
            completed_at=parse_timestamp(record.get("completed_at")),
            due_at=parse_timestamp(due),
            container_refs=refs,
            permalink=str(record.get("permalink_url") or ""),
        )

    def container(self, kind: str) -> Optional[ContainerRef]:
        for ref in self.container_refs:
            if ref.kind == kind:
                return ref
        return None

    def summary(self) -> AncestorSummary:
        return AncestorSummary(self.id, self.name)

    def to_entry(self) -> Dict[str, Any]:
        """Snapshot projection; comments are not included."""
        return {
            "id": self.id,
            "name": self.name,
            "parentId": self.parent_id,
            "assigneeId": self.assignee_id,
            "completed": self.completed,
            "completedAt": format_timestamp(self.completed_at),
            "dueAt": format_timestamp(self.due_at),
            "containerRefs": [[ref.kind, ref.id, ref.name] for ref in self.container_refs],
            "children": list(self.children),
            "expanded": self.expanded,
            "isPlaceholder": self.is_placeholder,
            "breadcrumb": [[crumb.id, crumb.name] for crumb in self.breadcrumb],
            "permalink": self.permalink,
        }

    @classmethod
    def from_entry(cls, entry: Dict[str, Any]) -> "TaskNode":
        if not isinstance(entry, dict) or not entry.get("id"):
            raise MalformedRecord(f"snapshot entry without id: {entry!r}")
        try:
            return cls(
                id=str(entry["id"]),
                name=str(entry.get("name") or ""),
                parent_id=entry.get("parentId"),
                assignee_id=entry.get("assigneeId"),
                completed=bool(entry.get("completed", False)),
                completed_at=parse_timestamp(entry.get("completedAt")),
                due_at=parse_timestamp(entry.get("dueAt")),
                container_refs=[ContainerRef(*ref) for ref in entry.get("containerRefs") or []],
                children=[str(c) for c in entry.get("children") or []],
                expanded=bool(entry.get("expanded", False)),
                is_placeholder=bool(entry.get("isPlaceholder", False)),
                breadcrumb=[AncestorSummary(*crumb) for crumb in entry.get("breadcrumb") or []],
                permalink=str(entry.get("permalink") or ""),
            )
        except TypeError as exc:
            raise MalformedRecord(f"snapshot entry {entry.get('id')!r} is malformed: {exc}") from exc


__all__ = [
    "CONTAINER_PARENT",
    "CONTAINER_PROJECT",
    "CONTAINER_SECTION",
    "ContainerRef",
    "AncestorSummary",
    "TaskNode",
    "parse_timestamp",
    "format_timestamp",
]

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional


class CompletionMode(Enum):
    INCOMPLETE = "incomplete"
    COMPLETE = "complete"
    BOTH = "both"

    @classmethod
    def from_string(cls, value: str) -> "CompletionMode":
        token = (value or "").strip().lower()
        for mode in cls:
            if mode.value == token:
                return mode
        raise ValueError(f"Invalid completion mode: {value!r}")


WINDOW_DAYS = {"7d": 7, "30d": 30, "90d": 90}


@dataclass(frozen=True)
class DateWindow:
    kind: str  # 7d | 30d | 90d | custom | all
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    @classmethod
    def last_days(cls, days: int) -> "DateWindow":
        kind = f"{days}d"
        if kind not in WINDOW_DAYS:
            raise ValueError(f"Unsupported window: {kind}")
        return cls(kind)

    @classmethod
    def custom(cls, start: datetime, end: datetime) -> "DateWindow":
        if end < start:
            raise ValueError("custom window end precedes start")
        return cls("custom", start, end)

    @classmethod
    def all(cls) -> "DateWindow":
        return cls("all")

    def bounds(self, now: datetime):
        """Inclusive (start, end) for this window, or (None, None) for 'all'."""
        if self.kind == "all":
            return None, None
        if self.kind == "custom":
            return self.start, self.end
        return now - timedelta(days=WINDOW_DAYS[self.kind]), now


@dataclass(frozen=True)
class FilterCriteria:
    completion: CompletionMode = CompletionMode.INCOMPLETE
    window: DateWindow = DateWindow("all")
    scope_id: Optional[str] = None


@dataclass(frozen=True)
class SourceQuery:
    """Server-side filtering parameters; a change means a new fetch pass."""

    completed_since: Optional[str] = None

    def params(self) -> Dict[str, Any]:
        return {"completed_since": self.completed_since} if self.completed_since else {}

    def to_dict(self) -> Dict[str, Any]:
        return {"completed_since": self.completed_since}

    @classmethod
    def from_dict(cls, data: Any) -> "SourceQuery":
        if not isinstance(data, dict):
            return cls()
        return cls(completed_since=data.get("completed_since"))


def source_query_for(criteria: FilterCriteria, now: datetime) -> SourceQuery:
    if criteria.completion is CompletionMode.INCOMPLETE:
        return SourceQuery(completed_since="now")
    start, _ = criteria.window.bounds(now)
    if start is None:
        return SourceQuery()
    # Day granularity keeps the query (and the cache identity) stable within a day.
    return SourceQuery(completed_since=start.date().isoformat())


__all__ = [
    "CompletionMode",
    "DateWindow",
    "FilterCriteria",
    "SourceQuery",
    "source_query_for",
    "WINDOW_DAYS",
]

from .errors import (
    TaskscopeError,
    SourceUnavailable,
    MalformedRecord,
    CycleDetected,
    QuotaExceeded,
    StaleWrite,
)
from .task_node import AncestorSummary, ContainerRef, TaskNode
from .registry import Registry
from .criteria import CompletionMode, DateWindow, FilterCriteria, SourceQuery, source_query_for
from .hierarchy import FetchResult, Hierarchy, HierarchyBuilder
from .filters import (
    ViewRow,
    filter_view,
    matches_completion,
    matches_date_window,
    matches_scope,
    requires_refetch,
)
from .snapshot import CacheSnapshot

__all__ = [
    # Errors
    "TaskscopeError",
    "SourceUnavailable",
    "MalformedRecord",
    "CycleDetected",
    "QuotaExceeded",
    "StaleWrite",
    # Model
    "AncestorSummary",
    "ContainerRef",
    "TaskNode",
    "Registry",
    "CacheSnapshot",
    # Criteria
    "CompletionMode",
    "DateWindow",
    "FilterCriteria",
    "SourceQuery",
    "source_query_for",
    # Hierarchy
    "FetchResult",
    "Hierarchy",
    "HierarchyBuilder",
    # Filters
    "ViewRow",
    "filter_view",
    "matches_completion",
    "matches_date_window",
    "matches_scope",
    "requires_refetch",
]

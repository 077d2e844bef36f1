"""Error taxonomy for synchronization passes."""


class TaskscopeError(RuntimeError):
    pass


class SourceUnavailable(TaskscopeError):
    """Network or HTTP failure while talking to the remote task service."""


class MalformedRecord(TaskscopeError):
    """A record (or cached entry) is missing a required field."""


class CycleDetected(TaskscopeError):
    """Parent or child links loop back on themselves."""

    def __init__(self, path):
        self.path = list(path)
        super().__init__("cycle detected: " + " -> ".join(self.path))


class QuotaExceeded(TaskscopeError):
    """Snapshot persistence failed; the in-memory state is still valid."""


class StaleWrite(TaskscopeError):
    """A superseded pass tried to publish."""


__all__ = [
    "TaskscopeError",
    "SourceUnavailable",
    "MalformedRecord",
    "CycleDetected",
    "QuotaExceeded",
    "StaleWrite",
]

from datetime import datetime, timezone
from typing import Any, Dict, Optional


def _age_label(published_at: Optional[int], now: datetime) -> str:
    if not published_at:
        return "-"
    seconds = max(0, int(now.timestamp() - published_at / 1000))
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m"
    return f"{seconds // 3600}h"


def sync_status_line(status: Dict[str, Any], phase: Optional[str] = None, percent: Optional[int] = None, now: Optional[datetime] = None) -> str:
    """Single-line cache/sync status for the CLI."""
    now = now or datetime.now(timezone.utc)
    state = status.get("state") or "empty"
    marker = {"fresh": "■", "stale": "□"}.get(state, "·")
    parts = [f"cache {marker} {state}", f"age={_age_label(status.get('published_at'), now)}", f"tasks={status.get('tasks', 0)}"]
    if phase:
        parts.append(f"{phase} {percent or 0}%")
    elif status.get("background_in_flight"):
        parts.append("refreshing…")
    if status.get("last_error"):
        parts.append(f"! {status['last_error']}")
    return "  ".join(parts)


__all__ = ["sync_status_line"]

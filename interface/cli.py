"""taskscope command line: show the assigned-task hierarchy and edit single tasks."""

import argparse
import logging
import sys
from datetime import datetime, timezone
from typing import List, Optional

from application.sync_controller import SyncController
from config import Settings, get_user_token, load_settings, set_user_id, set_user_token, set_workspace
from core import CompletionMode, DateWindow, FilterCriteria, TaskscopeError, ViewRow
from infrastructure.snapshot_store import FileSnapshotStore
from infrastructure.task_source import ApiClient, RateLimiter, RemoteTaskSource
from interface.cli_io import structured_error, structured_response
from util.sync_status import sync_status_line

logger = logging.getLogger("taskscope.cli")


def parse_window(value: str) -> DateWindow:
    token = (value or "").strip().lower()
    if token == "all":
        return DateWindow.all()
    if token in ("7d", "30d", "90d"):
        return DateWindow.last_days(int(token[:-1]))
    if ".." in token:
        start_raw, end_raw = token.split("..", 1)
        try:
            start = datetime.strptime(start_raw, "%Y-%m-%d").replace(tzinfo=timezone.utc)
            end = datetime.strptime(end_raw, "%Y-%m-%d").replace(hour=23, minute=59, second=59, tzinfo=timezone.utc)
        except ValueError as exc:
            raise argparse.ArgumentTypeError(f"invalid custom window {value!r}: {exc}") from exc
        try:
            return DateWindow.custom(start, end)
        except ValueError as exc:
            raise argparse.ArgumentTypeError(str(exc)) from exc
    raise argparse.ArgumentTypeError(f"unsupported window {value!r} (7d, 30d, 90d, all, START..END)")


def parse_completion(value: str) -> CompletionMode:
    try:
        return CompletionMode.from_string(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def build_controller(settings: Settings, criteria: Optional[FilterCriteria] = None) -> SyncController:
    if not settings.user_id or not settings.workspace:
        raise TaskscopeError("user id and workspace must be configured (taskscope config --user-id/--workspace)")
    client = ApiClient(settings.api_url, None, get_user_token, RateLimiter())
    source = RemoteTaskSource(client, settings.workspace, settings.user_id)
    store = FileSnapshotStore(settings.cache_dir, max_bytes=settings.cache_max_bytes)

    def on_phase(name: str, percent: int) -> None:
        print(f"\r{name:<8} {percent:>3}%", end="", file=sys.stderr, flush=True)
        if name == "persist" and percent >= 100:
            print(file=sys.stderr)

    return SyncController(
        source,
        store,
        settings.user_id,
        criteria=criteria,
        ttl_seconds=settings.cache_ttl_seconds,
        background_delay=settings.background_delay,
        workers=settings.sync_workers,
        on_phase=on_phase,
        on_reconcile_failed=lambda reason: logger.warning("Background refresh failed: %s", reason),
        on_warning=lambda message: logger.warning("%s", message),
    )


def render_rows(rows: List[ViewRow]) -> str:
    lines: List[str] = []
    for row in rows:
        node = row.node
        mark = "·" if node.is_placeholder else ("✓" if node.completed else "○")
        indent = "  " * row.depth
        if row.breadcrumb:
            trail = " › ".join(crumb.name or crumb.id for crumb in row.breadcrumb)
            lines.append(f"{indent}  {trail} ›")
        due = f"  due {node.due_at.date().isoformat()}" if node.due_at else ""
        lines.append(f"{indent}{mark} {node.name or node.id}{due}  [{node.id}]")
    return "\n".join(lines)


def cmd_show(args) -> int:
    criteria = FilterCriteria(args.completion, args.window, args.scope)
    controller = build_controller(load_settings(), criteria)
    if args.reload:
        controller.request_foreground_reload()
    else:
        controller.load()
    rows = controller.get_published_view(criteria)
    print(render_rows(rows) if rows else "No tasks.")
    print(sync_status_line(controller.status()), file=sys.stderr)
    if not args.no_wait:
        controller.wait_for_background(timeout=args.wait)
    return 0


def cmd_complete(args) -> int:
    controller = build_controller(load_settings())
    controller.load()
    node = controller.commit_mutation(args.task_id, {"completed": not args.undo})
    return structured_response("complete", message=f"{node.id} completed={node.completed}", payload={"id": node.id, "completed": node.completed})


def cmd_rename(args) -> int:
    controller = build_controller(load_settings())
    controller.load()
    node = controller.commit_mutation(args.task_id, {"name": args.name})
    return structured_response("rename", message=f"{node.id} renamed", payload={"id": node.id, "name": node.name})


def cmd_comments(args) -> int:
    controller = build_controller(load_settings())
    controller.load()
    if args.add:
        created = controller.add_comment(args.task_id, args.add)
        return structured_response("comments", message="comment added", payload={"comment": created})
    return structured_response("comments", payload={"id": args.task_id, "comments": controller.comments(args.task_id)})


def cmd_status(args) -> int:
    controller = build_controller(load_settings())
    print(sync_status_line(controller.cached_status()))
    return 0


def cmd_config(args) -> int:
    if args.token is not None:
        set_user_token(args.token)
    if args.user_id is not None:
        set_user_id(args.user_id)
    if args.workspace is not None:
        set_workspace(args.workspace)
    settings = load_settings()
    token = get_user_token()
    return structured_response(
        "config",
        payload={
            "user_id": settings.user_id,
            "workspace": settings.workspace,
            "api_url": settings.api_url,
            "cache_dir": str(settings.cache_dir),
            "token_preview": token[-4:] if token else "",
        },
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="taskscope: tasks assigned to you, as a tree")
    parser.add_argument("--verbose", "-v", action="store_true", help="debug logging")
    sub = parser.add_subparsers(dest="command")

    sp = sub.add_parser("show", help="Show the assigned-task hierarchy")
    sp.add_argument("--completion", type=parse_completion, default=CompletionMode.INCOMPLETE, help="incomplete | complete | both")
    sp.add_argument("--window", type=parse_window, default=DateWindow.all(), help="7d | 30d | 90d | all | YYYY-MM-DD..YYYY-MM-DD")
    sp.add_argument("--scope", help="only this task and its descendants")
    sp.add_argument("--reload", action="store_true", help="ignore the cache and fetch now")
    sp.add_argument("--no-wait", action="store_true", help="do not wait for the background refresh")
    sp.add_argument("--wait", type=float, default=60.0, help="seconds to wait for the background refresh")
    sp.set_defaults(func=cmd_show)

    cp = sub.add_parser("complete", help="Mark a task complete")
    cp.add_argument("task_id")
    cp.add_argument("--undo", action="store_true", help="mark incomplete instead")
    cp.set_defaults(func=cmd_complete)

    rp = sub.add_parser("rename", help="Rename a task")
    rp.add_argument("task_id")
    rp.add_argument("name")
    rp.set_defaults(func=cmd_rename)

    mp = sub.add_parser("comments", help="List or add comments")
    mp.add_argument("task_id")
    mp.add_argument("--add", help="comment text")
    mp.set_defaults(func=cmd_comments)

    st = sub.add_parser("status", help="Cache status")
    st.set_defaults(func=cmd_status)

    cf = sub.add_parser("config", help="Show or update settings")
    cf.add_argument("--token")
    cf.add_argument("--user-id", dest="user_id")
    cf.add_argument("--workspace")
    cf.set_defaults(func=cmd_config)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if not getattr(args, "command", None):
        parser.print_help()
        return 1
    try:
        return args.func(args)
    except (TaskscopeError, KeyError, ValueError) as exc:
        return structured_error(args.command, str(exc))


if __name__ == "__main__":
    sys.exit(main())

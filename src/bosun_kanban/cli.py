from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from rich.console import Console
from rich.table import Table

from .adapter import KanbanAdapter
from .config import VALID_BACKENDS, load_settings
from .errors import KanbanError
from .lease import LeaseManager
from .logging_utils import configure_logging
from .models import PRIORITIES, LeaseStatus, Task, TaskDraft, TaskFilter, TaskStatus
from .utils import _ms_to_datetime

Handler = Callable[[KanbanAdapter, argparse.Namespace], Awaitable[int]]

_STATUS_STYLES = {
    TaskStatus.TODO: "white",
    TaskStatus.INPROGRESS: "yellow",
    TaskStatus.DONE: "green",
    TaskStatus.IGNORED: "dim",
}


def _resolve_project_dir(project_dir: Optional[str]) -> Path:
    return Path(project_dir).expanduser().resolve() if project_dir else Path.cwd().resolve()


def _console() -> Console:
    return Console(file=sys.stdout, soft_wrap=True)


def _write_json(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, default=str) + "\n")


def _lease_label(task: Task) -> str:
    state = task.shared_state
    if state is None:
        return ""
    return f"{state.status.value} by {state.owner_id}"


def _print_tasks(tasks: list[Task]) -> None:
    table = Table(title=f"Tasks ({len(tasks)})", show_header=True)
    table.add_column("ID", style="cyan")
    table.add_column("Status", style="bold")
    table.add_column("Title")
    table.add_column("Labels", style="magenta")
    table.add_column("Lease", style="dim")
    for task in tasks:
        status = task.status.value
        table.add_row(
            task.id,
            f"[{_STATUS_STYLES[task.status]}]{status}[/{_STATUS_STYLES[task.status]}]",
            task.title[:80],
            ", ".join(task.labels),
            _lease_label(task),
        )
    _console().print(table)


def _print_task(task: Task) -> None:
    console = _console()
    console.print(f"[bold cyan]{task.id}[/bold cyan] {task.title}")
    console.print(f"  status: {task.status.value}")
    if task.labels:
        console.print(f"  labels: {', '.join(task.labels)}")
    if task.assignee:
        console.print(f"  assignee: {task.assignee}")
    if task.priority:
        console.print(f"  priority: {task.priority}")
    if task.branch_name:
        console.print(f"  branch: {task.branch_name}")
    if task.pr_number:
        console.print(f"  pr: #{task.pr_number}")
    if task.task_url:
        console.print(f"  url: {task.task_url}")
    if task.shared_state is not None:
        console.print(f"  lease: {_lease_label(task)} (retry {task.shared_state.retry_count})")
    if task.description:
        console.print()
        console.print(task.description)


async def _cmd_list(adapter: KanbanAdapter, args: argparse.Namespace) -> int:
    filters = TaskFilter(
        status=TaskStatus(args.status) if args.status else None,
        labels=list(args.label or []),
        limit=args.limit,
    )
    tasks = await adapter.list_tasks(args.scope, filters)
    if args.json:
        _write_json({"backend": adapter.backend_name, "tasks": [task.to_dict() for task in tasks]})
    else:
        _print_tasks(tasks)
    return 0


async def _cmd_get(adapter: KanbanAdapter, args: argparse.Namespace) -> int:
    task = await adapter.get_task(args.task_id)
    if args.json:
        _write_json({"task": task.to_dict()})
    else:
        _print_task(task)
    return 0


async def _cmd_create(adapter: KanbanAdapter, args: argparse.Namespace) -> int:
    draft = TaskDraft(
        title=args.title,
        description=args.description or "",
        labels=list(args.label or []),
        assignee=args.assignee,
        status=TaskStatus(args.status),
        priority=args.priority,
    )
    task = await adapter.create_task(args.scope, draft)
    _write_json({"task": task.to_dict()})
    return 0


async def _cmd_status(adapter: KanbanAdapter, args: argparse.Namespace) -> int:
    task = await adapter.update_task_status(args.task_id, TaskStatus(args.status))
    _write_json({"task": task.to_dict()})
    return 0


async def _cmd_comment(adapter: KanbanAdapter, args: argparse.Namespace) -> int:
    ok = await adapter.add_comment(args.task_id, args.body)
    _write_json({"task_id": args.task_id, "commented": ok})
    return 0 if ok else 1


async def _cmd_delete(adapter: KanbanAdapter, args: argparse.Namespace) -> int:
    ok = await adapter.delete_task(args.task_id)
    _write_json({"task_id": args.task_id, "deleted": ok})
    return 0 if ok else 1


async def _cmd_state(adapter: KanbanAdapter, args: argparse.Namespace) -> int:
    state = await adapter.read_shared_state(args.task_id)
    _write_json({"task_id": args.task_id, "shared_state": state.to_wire() if state else None})
    return 0


async def _cmd_ignore(adapter: KanbanAdapter, args: argparse.Namespace) -> int:
    ok = await adapter.mark_task_ignored(args.task_id, args.reason)
    _write_json({"task_id": args.task_id, "ignored": ok})
    return 0 if ok else 1


async def _cmd_claim(adapter: KanbanAdapter, args: argparse.Namespace) -> int:
    manager = LeaseManager(
        adapter,
        args.owner,
        lease_ttl_ms=adapter.settings.lease_ttl_ms,
        clock=adapter.coordination.clock,
    )
    result = await manager.claim(args.task_id)
    _write_json(
        {
            "task_id": args.task_id,
            "acquired": result.acquired,
            "reason": result.reason,
            "shared_state": result.lease.to_wire() if result.lease else None,
        }
    )
    return 0 if result.acquired else 1


async def _cmd_release(adapter: KanbanAdapter, args: argparse.Namespace) -> int:
    current = await adapter.read_shared_state(args.task_id)
    if current is None:
        sys.stderr.write(f"No lease found on {args.task_id}\n")
        return 1
    manager = LeaseManager(
        adapter,
        current.owner_id,
        lease_ttl_ms=adapter.settings.lease_ttl_ms,
        clock=adapter.coordination.clock,
    )
    ok = await manager.release(args.task_id, current, LeaseStatus(args.status))
    _write_json({"task_id": args.task_id, "released": ok})
    return 0 if ok else 1


async def _cmd_backoff(adapter: KanbanAdapter, args: argparse.Namespace) -> int:
    coordination = adapter.coordination
    entries = coordination.backoff.active()
    owners = coordination.owners.state
    if args.json:
        _write_json(
            {
                "backoff": {entry.key: entry.to_dict() for entry in entries},
                "invalid_owners": owners.to_dict(),
            }
        )
        return 0
    now = coordination.clock()
    table = Table(title="Active backoff", show_header=True)
    table.add_column("Key", style="cyan")
    table.add_column("Until", style="bold")
    table.add_column("Remaining", style="yellow")
    table.add_column("Reason", style="red")
    for entry in entries:
        table.add_row(
            entry.key,
            _ms_to_datetime(entry.until_ms).isoformat(timespec="seconds"),
            f"{max(0, entry.until_ms - now) // 1000}s",
            entry.reason[:60],
        )
    console = _console()
    console.print(table)
    if owners.invalid_owners:
        console.print(f"Invalid project owners: {', '.join(sorted(owners.invalid_owners))}")
    if owners.all_invalid_until > now:
        console.print(f"[red]All owner candidates invalid until {_ms_to_datetime(owners.all_invalid_until).isoformat(timespec='seconds')}[/red]")
    return 0


async def _run(adapter: KanbanAdapter, handler: Handler, args: argparse.Namespace) -> int:
    try:
        return await handler(adapter, args)
    finally:
        await adapter.aclose()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Inspect and mutate tasks on the configured kanban backend")
    parser.add_argument("--project-dir", default=None, help="Project directory holding .bosun/ (default: cwd)")
    parser.add_argument("--backend", default=None, choices=VALID_BACKENDS, help="Override the configured backend")
    parser.add_argument("--log-level", default="WARNING", help="Log level (default: WARNING)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    statuses = [status.value for status in TaskStatus]

    plist = subparsers.add_parser("list", help="List tasks")
    plist.add_argument("--scope", default=None, help="Backend scope (project number, project key, ...)")
    plist.add_argument("--status", default=None, choices=statuses)
    plist.add_argument("--label", action="append", help="Require a label (repeatable)")
    plist.add_argument("--limit", default=0, type=int)
    plist.add_argument("--json", action="store_true")
    plist.set_defaults(func=_cmd_list)

    pget = subparsers.add_parser("get", help="Show one task")
    pget.add_argument("task_id")
    pget.add_argument("--json", action="store_true")
    pget.set_defaults(func=_cmd_get)

    pcreate = subparsers.add_parser("create", help="Create a task")
    pcreate.add_argument("--title", required=True)
    pcreate.add_argument("--description", default="")
    pcreate.add_argument("--label", action="append")
    pcreate.add_argument("--assignee", default=None)
    pcreate.add_argument("--priority", default=None, choices=PRIORITIES)
    pcreate.add_argument("--status", default=TaskStatus.TODO.value, choices=statuses)
    pcreate.add_argument("--scope", default=None)
    pcreate.set_defaults(func=_cmd_create)

    pstatus = subparsers.add_parser("status", help="Change a task's status")
    pstatus.add_argument("task_id")
    pstatus.add_argument("status", choices=statuses)
    pstatus.set_defaults(func=_cmd_status)

    pcomment = subparsers.add_parser("comment", help="Add a comment")
    pcomment.add_argument("task_id")
    pcomment.add_argument("body")
    pcomment.set_defaults(func=_cmd_comment)

    pdelete = subparsers.add_parser("delete", help="Delete (or close as not planned) a task")
    pdelete.add_argument("task_id")
    pdelete.set_defaults(func=_cmd_delete)

    pstate = subparsers.add_parser("state", help="Show the lease recorded on a task")
    pstate.add_argument("task_id")
    pstate.set_defaults(func=_cmd_state)

    pignore = subparsers.add_parser("ignore", help="Mark a task as ignored")
    pignore.add_argument("task_id")
    pignore.add_argument("--reason", required=True)
    pignore.set_defaults(func=_cmd_ignore)

    pclaim = subparsers.add_parser("claim", help="Try to claim a task lease")
    pclaim.add_argument("task_id")
    pclaim.add_argument("--owner", default=None, help="Owner id as <host>/<worker> (default: this host)")
    pclaim.set_defaults(func=_cmd_claim)

    prelease = subparsers.add_parser("release", help="Release the lease on a task")
    prelease.add_argument("task_id")
    prelease.add_argument("--status", default=LeaseStatus.DONE.value, choices=[LeaseStatus.DONE.value])
    prelease.set_defaults(func=_cmd_release)

    pbackoff = subparsers.add_parser("backoff", help="Show active backoff entries and invalid owners")
    pbackoff.add_argument("--json", action="store_true")
    pbackoff.set_defaults(func=_cmd_backoff)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        return 1
    configure_logging(args.log_level)
    try:
        settings = load_settings(_resolve_project_dir(args.project_dir))
        adapter = KanbanAdapter(settings, backend=args.backend)
        return int(asyncio.run(_run(adapter, handler, args)) or 0)
    except (KanbanError, ValueError) as exc:
        sys.stderr.write(f"{exc}\n")
        return 1


if __name__ == "__main__":
    sys.exit(main())

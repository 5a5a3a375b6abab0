from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from typing import Any

from pydantic import ValidationError

from tasksync.config import load_config
from tasksync.errors import ConfigError, RemoteStoreError
from tasksync.models.task import TaskDraft, apply_category
from tasksync.session import Session
from tasksync.sync.views import ViewOptions, active_tasks, completed_tasks


def _port(raw: str | None) -> int:
    try:
        return int((raw or "8000").strip())
    except ValueError:
        return 8000


def _serve(args: Any) -> int:
    import uvicorn

    from tasksync.gateway.app import create_app

    session = Session.from_config(load_config())
    app = create_app(session, manage_lifecycle=True)
    uvicorn.run(
        app,
        host=args.host or os.getenv("GATEWAY_HOST", "0.0.0.0"),
        port=args.port or _port(os.getenv("GATEWAY_PORT")),
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )
    return 0


def _print_task(row: dict[str, Any], *, as_json: bool) -> None:
    if as_json:
        sys.stdout.write(json.dumps(row) + "\n")
        return
    mark = "x" if row.get("is_completed") else " "
    extras = []
    if row.get("category"):
        extras.append(f"#{row['category']}")
    if row.get("deadline"):
        extras.append(f"due {row['deadline']}")
    if row.get("isPending"):
        extras.append("pending")
    suffix = f"  ({', '.join(extras)})" if extras else ""
    sys.stdout.write(f"[{mark}] {row['task']}{suffix}  {row['id']}\n")


async def _list(args: Any) -> int:
    async with Session.from_config(load_config(), probe_interval=None) as session:
        opts = ViewOptions(
            context=args.context,
            search=args.search or "",
            deadline_filter=args.deadline,
            category=args.category,
            sort_by=args.sort,
        )
        select = completed_tasks if args.completed else active_tasks
        for task in select(session.engine.tasks, opts):
            _print_task(task.to_cache(), as_json=args.json)
    return 0


async def _add(args: Any) -> int:
    title = " ".join(args.title)
    if args.category:
        title = apply_category(title, args.category)
    try:
        draft = TaskDraft(
            task=title,
            description=args.description or "",
            importance=args.importance,
            deadline=args.deadline,
            context=args.context,
        )
    except ValidationError as exc:
        sys.stderr.write(f"error: invalid task: {exc.errors()[0]['msg']}\n")
        return 1
    async with Session.from_config(load_config(), probe_interval=None) as session:
        task = session.engine.create(draft)
        if task is None:
            sys.stderr.write("error: task title must be non-empty\n")
            return 1
        await session.engine.flush_pending()
        _print_task(session.engine.tasks[0].to_cache(), as_json=args.json)
    return 0


async def _sync(_: Any) -> int:
    async with Session.from_config(load_config(), probe_interval=None) as session:
        pending = sum(t.isPending for t in session.engine.tasks)
        sys.stdout.write(f"{len(session.engine.tasks)} tasks, {pending} pending\n")
    return 0


async def _archive_old(args: Any) -> int:
    config = load_config()
    async with Session.from_config(config, probe_interval=None) as session:
        days = config.archive_age_days if args.days is None else args.days
        result = session.archive.archive_older_than(args.context, days)
        if result.nothing_to_do:
            sys.stdout.write("nothing to archive\n")
        else:
            sys.stdout.write(f"archived {len(result.archived)} tasks\n")
    return 0


async def _keep_alive(_: Any) -> int:
    session = Session.from_config(load_config(), probe_interval=None)
    try:
        await session.keep_alive()
    except RemoteStoreError as exc:
        sys.stderr.write(f"error: keep-alive failed: {exc}\n")
        return 1
    finally:
        await session.close()
    sys.stdout.write("alive\n")
    return 0


def _add_context(p: argparse.ArgumentParser) -> None:
    p.add_argument("--context", choices=["personal", "work"], default="personal")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser("tasksync")
    sub = parser.add_subparsers(dest="cmd")

    p_serve = sub.add_parser("serve", help="Run the HTTP gateway")
    p_serve.add_argument("--host")
    p_serve.add_argument("--port", type=int)

    p_list = sub.add_parser("list", help="Print active (or completed) tasks")
    _add_context(p_list)
    p_list.add_argument("--completed", action="store_true")
    p_list.add_argument("--search")
    p_list.add_argument("--deadline", choices=["all", "scheduled", "anytime"], default="all")
    p_list.add_argument("--category")
    p_list.add_argument("--sort", choices=["newest", "deadline", "importance"], default="newest")
    p_list.add_argument("--json", action="store_true")

    p_add = sub.add_parser("add", help="Create a task; '#word' in the title sets its category")
    p_add.add_argument("title", nargs="+")
    _add_context(p_add)
    p_add.add_argument("--description")
    p_add.add_argument("--category", help="Overrides any #tag in the title")
    p_add.add_argument("--importance", type=int, choices=[1, 2, 3], default=2)
    p_add.add_argument("--deadline", help="YYYY-MM-DD")
    p_add.add_argument("--json", action="store_true")

    sub.add_parser("sync", help="Flush pending tasks and refresh from the remote store")

    p_old = sub.add_parser("archive-old", help="Archive tasks older than the configured age")
    _add_context(p_old)
    p_old.add_argument("--days", type=int)

    sub.add_parser("keep-alive", help="Ping the remote store")
    return parser


_COMMANDS = {
    "list": _list,
    "add": _add,
    "sync": _sync,
    "archive-old": _archive_old,
    "keep-alive": _keep_alive,
}


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    cmd = getattr(args, "cmd", None)
    if not cmd:
        parser.print_help()
        return
    try:
        if cmd == "serve":
            code = _serve(args)
        else:
            code = asyncio.run(_COMMANDS[cmd](args))
    except ConfigError as exc:
        sys.stderr.write(f"error: {exc}\n")
        raise SystemExit(2) from exc
    raise SystemExit(code)


if __name__ == "__main__":
    main()

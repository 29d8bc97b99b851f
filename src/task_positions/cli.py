from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Awaitable, Optional

from .config import get_log_level, load_positions_config
from .logging_utils import configure_logging
from .positioning.engine import PositionEngine
from .positioning.errors import PositioningError
from .positioning.model import OrderedItem, container_id_for


def _resolve_project_dir(project_dir: Optional[str]) -> Path:
    return Path(project_dir).expanduser().resolve() if project_dir else Path.cwd().resolve()


def _engine(args: argparse.Namespace) -> PositionEngine:
    return PositionEngine.for_project(_resolve_project_dir(args.project_dir))


def _container(args: argparse.Namespace) -> str:
    return container_id_for(args.job_id, args.parent_id)


def _emit(payload: dict[str, Any]) -> int:
    sys.stdout.write(json.dumps(payload, indent=2) + '\n')
    return 0


def _run(coro: Awaitable[Any]) -> tuple[Any, Optional[str]]:
    try:
        return asyncio.run(coro), None
    except PositioningError as exc:
        return None, str(exc)


def _item_result(coro: Awaitable[OrderedItem]) -> int:
    item, err = _run(coro)
    if err:
        sys.stderr.write(err + '\n')
        return 1
    return _emit({'task': item.to_dict()})


def _list(args: argparse.Namespace) -> int:
    items, err = _run(_engine(args).list_items(_container(args)))
    if err:
        sys.stderr.write(err + '\n')
        return 1
    return _emit({'container_id': _container(args), 'tasks': [item.to_dict() for item in items]})


def _append(args: argparse.Namespace) -> int:
    return _item_result(_engine(args).append(_container(args), args.task_id))


def _insert_after(args: argparse.Namespace) -> int:
    return _item_result(_engine(args).insert_after(_container(args), args.task_id, args.after))


def _insert_before(args: argparse.Namespace) -> int:
    return _item_result(_engine(args).insert_before(_container(args), args.task_id, args.before))


def _move(args: argparse.Namespace) -> int:
    position = 'first' if args.first else 'last' if args.last else None
    to_container_id = None
    if args.to_parent is not None or args.to_root:
        to_container_id = container_id_for(args.job_id, args.to_parent)
    return _item_result(
        _engine(args).move(
            _container(args),
            args.task_id,
            after_id=args.after,
            before_id=args.before,
            position=position,
            to_container_id=to_container_id,
        )
    )


def _remove(args: argparse.Namespace) -> int:
    return _item_result(_engine(args).remove(_container(args), args.task_id))


def _rebalance(args: argparse.Namespace) -> int:
    changed, err = _run(_engine(args).rebalance(_container(args), force=not args.if_needed))
    if err:
        sys.stderr.write(err + '\n')
        return 1
    return _emit({'container_id': _container(args), 'rebalanced': bool(changed)})


def _server(args: argparse.Namespace) -> int:
    try:
        import uvicorn
    except ImportError:
        sys.stderr.write("Install server extras: pip install 'task-positions[server]'\n")
        return 1

    from .server import create_app

    app = create_app(project_dir=_resolve_project_dir(args.project_dir))
    uvicorn.run(app, host=args.host, port=args.port, reload=args.reload)
    return 0


def _add_scope(parser: argparse.ArgumentParser) -> None:
    parser.add_argument('job_id')
    parser.add_argument('--parent-id', default=None, help='Order the subtasks of this task instead')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Task Positions CLI')
    parser.add_argument('--project-dir', default=None, help='Target project directory (default: current working directory)')
    parser.add_argument('--log-level', default=None, help='Log level (default: logging.level from config, else INFO)')
    subparsers = parser.add_subparsers(dest='command', required=True)

    server = subparsers.add_parser('server', help='Start the web server')
    server.add_argument('--host', default='127.0.0.1')
    server.add_argument('--port', default=8000, type=int)
    server.add_argument('--reload', action='store_true')
    server.set_defaults(func=_server)

    plist = subparsers.add_parser('list', help='List tasks in order')
    _add_scope(plist)
    plist.set_defaults(func=_list)

    pappend = subparsers.add_parser('append', help='Add a task at the end')
    _add_scope(pappend)
    pappend.add_argument('task_id')
    pappend.set_defaults(func=_append)

    pafter = subparsers.add_parser('insert-after', help='Add a task right after another (top if omitted)')
    _add_scope(pafter)
    pafter.add_argument('task_id')
    pafter.add_argument('--after', default=None)
    pafter.set_defaults(func=_insert_after)

    pbefore = subparsers.add_parser('insert-before', help='Add a task right before another')
    _add_scope(pbefore)
    pbefore.add_argument('task_id')
    pbefore.add_argument('before')
    pbefore.set_defaults(func=_insert_before)

    pmove = subparsers.add_parser('move', help='Move a task')
    _add_scope(pmove)
    pmove.add_argument('task_id')
    target = pmove.add_mutually_exclusive_group()
    target.add_argument('--after', default=None)
    target.add_argument('--before', default=None)
    target.add_argument('--first', action='store_true')
    target.add_argument('--last', action='store_true')
    parent = pmove.add_mutually_exclusive_group()
    parent.add_argument('--to-parent', default=None, metavar='PARENT', help='Re-parent under this task')
    parent.add_argument('--to-root', action='store_true', help="Re-parent to the job's top level")
    pmove.set_defaults(func=_move)

    premove = subparsers.add_parser('remove', help='Remove a task from the order')
    _add_scope(premove)
    premove.add_argument('task_id')
    premove.set_defaults(func=_remove)

    prebalance = subparsers.add_parser('rebalance', help='Re-space all keys')
    _add_scope(prebalance)
    prebalance.add_argument('--if-needed', action='store_true', help='Only rebalance when keys have grown too long')
    prebalance.set_defaults(func=_rebalance)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    level = args.log_level
    if level is None:
        config, _ = load_positions_config(_resolve_project_dir(args.project_dir))
        level = get_log_level(config)
    configure_logging(level)
    handler = getattr(args, 'func', None)
    if handler is None:
        parser.print_help()
        return 1
    return int(handler(args) or 0)


if __name__ == '__main__':
    sys.exit(main())

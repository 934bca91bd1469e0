"""Command-line front-end: python -m refman <command>

Library commands (list, search, cite, add, update, remove) go through the
execution context, so they run against a live server when one owns the
library and load the file directly otherwise. ``server`` manages the
background process.

Exit codes: 0 success, 1 user-input conflict or not found, 2 usage error,
3 internal error.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path

from refman.config import RefmanConfig, load_config
from refman.context import create_execution_context, describe, get_library
from refman.core.interface import CiteOptions, LibraryOperations, ListOptions, SearchOptions
from refman.core.library import parse_library
from refman.errors import (
    InternalError,
    InvalidInputError,
    ReferenceNotFoundError,
    UserInputError,
)
from refman.local import load_local_library
from refman.operations.format import format_page
from refman.operations.pagination import SORT_ALIASES, SORT_FIELDS, SEARCH_SORT_FIELDS
from refman.server.lifecycle import server_start, server_status, server_stop

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_USER_ERROR = 1
EXIT_INTERNAL_ERROR = 3


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )


# ── Argument parsing ─────────────────────────────────────────


def _add_page_args(parser: argparse.ArgumentParser, sort_fields: tuple[str, ...]) -> None:
    aliases = [a for a, field in SORT_ALIASES.items() if field in sort_fields]
    parser.add_argument("--sort", default="updated", choices=[*sort_fields, *aliases])
    parser.add_argument("--order", default="desc", choices=["asc", "desc"])
    parser.add_argument("--limit", type=int, default=0, help="0 means no limit")
    parser.add_argument("--offset", type=int, default=0)
    out = parser.add_mutually_exclusive_group()
    out.add_argument("--json", action="store_const", dest="format", const="json")
    out.add_argument("--ids-only", action="store_const", dest="format", const="ids-only")
    out.add_argument("--uuid", action="store_const", dest="format", const="uuid")
    parser.set_defaults(format="pretty")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="refman", description="Manage a CSL-JSON reference library.")
    parser.add_argument("--library", type=Path, help="library file (default from config)")
    parser.add_argument("--config", type=Path, help="config TOML file")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR")
    commands = parser.add_subparsers(dest="command", required=True)

    p = commands.add_parser("list", help="list references")
    _add_page_args(p, SORT_FIELDS)

    p = commands.add_parser("search", help="search references")
    p.add_argument("query", nargs="+")
    _add_page_args(p, SEARCH_SORT_FIELDS)

    p = commands.add_parser("cite", help="format citations")
    p.add_argument("identifiers", nargs="+", metavar="ID")
    p.add_argument("--uuid", action="store_true", help="identifiers are UUIDs")
    p.add_argument("--in-text", action="store_true")
    p.add_argument("--style")
    p.add_argument("--locale")
    p.add_argument("--format", choices=["text", "html"])
    p.add_argument("--json", action="store_true")

    p = commands.add_parser("add", help="add references from a CSL-JSON file or stdin")
    p.add_argument("file", nargs="?", type=Path)
    p.add_argument("--json", action="store_true")

    p = commands.add_parser("update", help="update a reference from a CSL-JSON object")
    p.add_argument("identifier", metavar="ID")
    p.add_argument("file", type=Path, help="JSON object with the fields to change ('-' for stdin)")
    p.add_argument("--uuid", action="store_true")
    p.add_argument("--on-id-collision", choices=["fail", "suffix"], default="fail")
    p.add_argument("--json", action="store_true")

    p = commands.add_parser("remove", help="remove a reference")
    p.add_argument("identifier", metavar="ID")
    p.add_argument("--uuid", action="store_true")
    p.add_argument("--json", action="store_true")

    server = commands.add_parser("server", help="manage the background server")
    server_commands = server.add_subparsers(dest="server_command", required=True)
    p = server_commands.add_parser("start")
    p.add_argument("--port", type=int)
    mode = p.add_mutually_exclusive_group()
    mode.add_argument("--daemon", action="store_true", help="run detached in the background")
    mode.add_argument("--foreground", action="store_true", help="run in this process (default)")
    server_commands.add_parser("stop")
    p = server_commands.add_parser("status")
    p.add_argument("--json", action="store_true")
    return parser


# ── Input helpers ────────────────────────────────────────────


def _read_input(path: Path | None) -> str:
    if path is None or str(path) == "-":
        return sys.stdin.read()
    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        raise InvalidInputError(f"Cannot read {path}: {e}") from e


def _read_items(path: Path | None) -> list[dict]:
    text = _read_input(path)
    source = str(path) if path else "<stdin>"
    stripped = text.strip()
    if stripped.startswith("{"):
        text = f"[{stripped}]"
    return parse_library(text, source=source)


def _read_updates(path: Path) -> dict:
    text = _read_input(path)
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise InvalidInputError(f"Failed to parse JSON in {path}: {e}") from e
    if not isinstance(data, dict):
        raise InvalidInputError("Updates must be a JSON object")
    return data


def _print_json(data: object) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


# ── Library commands ─────────────────────────────────────────


async def _cmd_list(args: argparse.Namespace, library: LibraryOperations) -> int:
    options = ListOptions(sort=args.sort, order=args.order, limit=args.limit, offset=args.offset)
    output = format_page(await library.list(options), args.format)
    if output:
        print(output)
    return EXIT_OK


async def _cmd_search(args: argparse.Namespace, library: LibraryOperations) -> int:
    options = SearchOptions(
        query=" ".join(args.query),
        sort=args.sort,
        order=args.order,
        limit=args.limit,
        offset=args.offset,
    )
    output = format_page(await library.search(options), args.format)
    if output:
        print(output)
    return EXIT_OK


async def _cmd_cite(args: argparse.Namespace, library: LibraryOperations) -> int:
    result = await library.cite(
        CiteOptions(
            identifiers=args.identifiers,
            by_uuid=args.uuid,
            in_text=args.in_text,
            style=args.style,
            locale=args.locale,
            format=args.format,
        )
    )
    if args.json:
        _print_json(result.to_dict())
    else:
        for item in result.results:
            if item.success:
                print(item.citation)
            else:
                print(f"Error: {item.error}", file=sys.stderr)
    return EXIT_OK if all(r.success for r in result.results) else EXIT_USER_ERROR


async def _cmd_add(args: argparse.Namespace, library: LibraryOperations) -> int:
    items = _read_items(args.file)
    if not items:
        raise InvalidInputError("No references to add")
    added = [await library.add(item) for item in items]
    if args.json:
        _print_json(added)
    else:
        for item in added:
            print(f"Added: [{item.get('id')}] {item.get('title') or ''}".rstrip())
    return EXIT_OK


async def _cmd_update(args: argparse.Namespace, library: LibraryOperations) -> int:
    updates = _read_updates(args.file)
    result = await library.update(
        args.identifier, updates, by_uuid=args.uuid, on_id_collision=args.on_id_collision
    )
    if result.id_collision:
        raise UserInputError(
            f"Cannot change ID to '{updates.get('id')}': already in use (try --on-id-collision suffix)"
        )
    if not result.updated:
        raise ReferenceNotFoundError(args.identifier, by_uuid=args.uuid)
    if args.json:
        _print_json(result.to_dict())
    else:
        print(f"Updated: [{(result.item or {}).get('id')}]")
        if result.id_changed:
            print(f"ID changed to '{result.new_id}' to avoid a collision")
    return EXIT_OK


async def _cmd_remove(args: argparse.Namespace, library: LibraryOperations) -> int:
    result = await library.remove(args.identifier, by_uuid=args.uuid)
    if not result.removed:
        raise ReferenceNotFoundError(args.identifier, by_uuid=args.uuid)
    if args.json:
        _print_json(result.to_dict())
    else:
        print(f"Removed: [{(result.removed_item or {}).get('id')}]")
    return EXIT_OK


_LIBRARY_COMMANDS: dict[str, Callable[[argparse.Namespace, LibraryOperations], Awaitable[int]]] = {
    "list": _cmd_list,
    "search": _cmd_search,
    "cite": _cmd_cite,
    "add": _cmd_add,
    "update": _cmd_update,
    "remove": _cmd_remove,
}


async def _run_library_command(args: argparse.Namespace, config: RefmanConfig) -> int:
    context = await create_execution_context(
        config,
        lambda path: load_local_library(path, config.citation),
        config_path=args.config,
    )
    logger.debug("Running %s in %s mode", args.command, describe(context))
    library = get_library(context)
    try:
        return await _LIBRARY_COMMANDS[args.command](args, library)
    finally:
        await library.aclose()


# ── Server commands ──────────────────────────────────────────


async def _run_server_command(args: argparse.Namespace, config: RefmanConfig) -> int:
    if args.server_command == "start":
        record = await server_start(
            config, port=args.port, daemon=args.daemon, config_path=args.config
        )
        if record is not None:
            print(f"Server started (pid={record.pid}, port={record.port}, library={record.library})")
        return EXIT_OK

    if args.server_command == "stop":
        record = await server_stop(config)
        print(f"Server stopped (pid={record.pid})")
        return EXIT_OK

    status = server_status(config)
    if args.json:
        _print_json(status.to_dict())
    elif status.running:
        print(f"Server is running (pid={status.pid}, port={status.port})")
        print(f"  Library: {status.library}")
        if status.started_at:
            print(f"  Started: {status.started_at}")
    else:
        print("Server is not running")
    return EXIT_OK


# ── Entry point ──────────────────────────────────────────────


def run(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    config = load_config(args.config)
    if args.library is not None:
        config.library = args.library.expanduser()
    _setup_logging(args.log_level or config.log_level)

    try:
        if args.command == "server":
            return asyncio.run(_run_server_command(args, config))
        return asyncio.run(_run_library_command(args, config))
    except UserInputError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USER_ERROR
    except (InternalError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_INTERNAL_ERROR
    except KeyboardInterrupt:
        return EXIT_INTERNAL_ERROR


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":
    main()

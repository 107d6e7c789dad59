#!/usr/bin/env python3
"""
ycmbridge CLI - one-shot queries against a ycmd daemon.

Starts a daemon for the current directory, opens FILE, runs one query and
prints the result as LSP-shaped JSON. LINE and COL are 1-based, as shown by
editors.

Usage:
    ycmbridge --ycmd ~/ycmd --extra-conf ~/.ycm_extra_conf.py ping
    ycmbridge ... complete src/main.cpp 12 8
    ycmbridge ... hover src/main.cpp 12 8
    ycmbridge ... goto src/main.cpp 12 8
    ycmbridge ... diagnostics src/main.cpp
    ycmbridge ... fixit src/main.cpp 12 8

Config: YCMBRIDGE_* environment variables or a .env file; flags override.
"""

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Any

from lsprotocol import converters
from lsprotocol.types import Position

from core.config import Settings, load_settings
from core.errors import BridgeError, ConfigurationError
from core.logging import setup_logging
from client.adapter import ProtocolAdapter
from client.documents import DocumentStore, path_to_uri
from daemon.session import SessionManager

# File suffix -> editor language id
LANGUAGES = {
    ".c": "c",
    ".h": "cpp",
    ".cc": "cpp",
    ".cpp": "cpp",
    ".cxx": "cpp",
    ".hh": "cpp",
    ".hpp": "cpp",
    ".hxx": "cpp",
    ".m": "objective-c",
    ".mm": "objective-cpp",
}

POSITION_COMMANDS = ("complete", "hover", "goto", "fixit")


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------


def _print_status(msg):
    print(f"\033[36m[ycmbridge]\033[0m {msg}", file=sys.stderr)


def _print_error(msg):
    print(f"\033[31m[ycmbridge error]\033[0m {msg}", file=sys.stderr)


def _print_json(result: Any) -> None:
    print(json.dumps(converters.get_converter().unstructure(result), indent=2))


class ConsoleHost:
    """EditorHost for a terminal: warnings go to stderr, prompts need a TTY."""

    def show_warning(self, message: str) -> None:
        _print_error(message)

    async def ask(self, message: str, actions: list[str]) -> str | None:
        if not sys.stdin.isatty():
            _print_status(f"{message} (not interactive, skipped; use --trust-extra-conf)")
            return None
        answer = await asyncio.to_thread(input, f"{message} [{'/'.join(actions)}] ")
        for action in actions:
            if answer.strip().lower() == action.lower():
                return action
        return None


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def detect_language(path: Path) -> str:
    return LANGUAGES.get(path.suffix.lower(), "cpp")


def build_settings(args: argparse.Namespace) -> Settings:
    overrides: dict[str, Any] = {}
    if args.ycmd:
        overrides["ycmd_path"] = os.path.expanduser(args.ycmd)
    if args.python:
        overrides["python"] = args.python
    if args.extra_conf:
        overrides["global_extra_config"] = os.path.expanduser(args.extra_conf)
    if args.trust_extra_conf:
        overrides["confirm_extra_conf"] = False
    if args.verbose:
        overrides["debug"] = True
    return load_settings(**overrides)


async def _ping(sessions: SessionManager) -> int:
    session = await sessions.current()
    healthy = await sessions.transport.healthy(session)
    if healthy:
        _print_status(f"ycmd healthy on port {session.port} (pid {session.supervisor.pid})")
        return 0
    _print_error(f"ycmd on port {session.port} did not report healthy")
    return 1


async def _query(adapter: ProtocolAdapter, args: argparse.Namespace) -> Any:
    path = Path(args.file).resolve()
    text = path.read_text(encoding="utf-8", errors="replace")
    uri = path_to_uri(str(path))
    adapter.documents.open(uri, text, args.language or detect_language(path))
    await adapter.buffer_visit(uri)

    if args.command == "diagnostics":
        return await adapter.diagnostics(uri)

    position = Position(line=args.line - 1, character=args.col - 1)
    if args.command == "complete":
        return await adapter.completion(uri, position)
    if args.command == "hover":
        return await adapter.hover(uri, position)
    if args.command == "goto":
        return await adapter.definition(uri, position)
    actions = await adapter.fixits(uri, position)
    return [action.to_code_action() for action in actions]


async def run(args: argparse.Namespace, settings: Settings) -> int:
    sessions = SessionManager()
    adapter = ProtocolAdapter(sessions, DocumentStore(), ConsoleHost())
    try:
        sessions.configure(os.getcwd(), settings)
    except ConfigurationError as e:
        _print_error(str(e))
        return 2

    try:
        if args.command == "ping":
            return await _ping(sessions)
        _print_json(await _query(adapter, args))
        await adapter.drain()
        return 0
    except BridgeError as e:
        _print_error(str(e))
        return 1
    except OSError as e:
        _print_error(f"Cannot read {args.file}: {e}")
        return 1
    finally:
        await adapter.shutdown()
        await sessions.aclose()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ycmbridge",
        description="ycmbridge CLI - run one ycmd query against a file",
    )
    parser.add_argument("--ycmd", help="Path to the ycmd checkout (YCMBRIDGE_YCMD_PATH)")
    parser.add_argument("--python", help="Python interpreter used to run ycmd")
    parser.add_argument("--extra-conf", help="Global .ycm_extra_conf.py")
    parser.add_argument("--trust-extra-conf", action="store_true",
                        help="Load project extra config files without asking")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log to stderr")
    sub = parser.add_subparsers(dest="command", required=True)

    # ycmbridge ping
    sub.add_parser("ping", help="Start ycmd and check that it is healthy")

    # ycmbridge complete|hover|goto|fixit FILE LINE COL
    helps = {
        "complete": "List completions at a position",
        "hover": "Show the type under a position",
        "goto": "Find the definition of the symbol at a position",
        "fixit": "List quick fixes at a position",
    }
    for name in POSITION_COMMANDS:
        p = sub.add_parser(name, help=helps[name])
        p.add_argument("file", help="Source file")
        p.add_argument("line", type=int, help="Line (1-based)")
        p.add_argument("col", type=int, help="Column (1-based)")
        p.add_argument("--language", choices=sorted(set(LANGUAGES.values())),
                       help="Language id (default: from the file suffix)")

    # ycmbridge diagnostics FILE
    p_diag = sub.add_parser("diagnostics", help="Parse a file and list its diagnostics")
    p_diag.add_argument("file", help="Source file")
    p_diag.add_argument("--language", choices=sorted(set(LANGUAGES.values())),
                        help="Language id (default: from the file suffix)")

    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    setup_logging(verbose=args.verbose)
    sys.exit(asyncio.run(run(args, build_settings(args))))


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""Inspect and repair the video processing registry from the command line."""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Sequence

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import db  # noqa: E402
from integrations import JenkinsService, ProcessingRegistry, SettingsStore  # noqa: E402


def _registry() -> ProcessingRegistry:
    return ProcessingRegistry(JenkinsService(SettingsStore()))


def cmd_list(registry: ProcessingRegistry) -> int:
    records = registry.get_all_active()
    print(json.dumps([r.to_dict() for r in records], indent=2))
    return 0


def cmd_refresh(registry: ProcessingRegistry, paths: Sequence[str]) -> int:
    infos = asyncio.run(registry.get_for_paths_and_refresh(paths))
    print(json.dumps({path: info.to_dict() for path, info in infos.items()}, indent=2))
    return 0


def cmd_remove(registry: ProcessingRegistry, record_id: str) -> int:
    if not registry.remove(record_id):
        print(f"No processing record with id {record_id}", file=sys.stderr)
        return 1
    print(f"Removed {record_id}", file=sys.stderr)
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Vista processing registry CLI")
    parser.add_argument(
        "--db",
        type=Path,
        default=None,
        help="SQLite database file (defaults to VISTA_DB_PATH or VISTA_STATE_DIR/vista.db)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("list", help="Print active (queued or building) records as JSON")

    refresh_p = sub.add_parser("refresh", help="Reconcile the given host paths against Jenkins")
    refresh_p.add_argument("paths", nargs="+", help="Host video paths")

    remove_p = sub.add_parser("remove", help="Delete a stuck record by id")
    remove_p.add_argument("id", help="Record id")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    try:
        db.configure(args.db or db.default_path())
        db.ensure_schema()
        registry = _registry()
        if args.command == "list":
            return cmd_list(registry)
        if args.command == "refresh":
            return cmd_refresh(registry, args.paths)
        if args.command == "remove":
            return cmd_remove(registry, args.id)
        parser.error("Unknown command")
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
